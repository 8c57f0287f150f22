from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, List, NamedTuple, Optional, Tuple

import freshness


LOOKAHEAD_CHARS = 300
ARCHIVE_PREFIX = r"https?://web\.archive\.org/web/"

# Target of a markdown link: no whitespace, parentheses allowed when balanced (three levels).
_BALANCED_TARGET = r"(?:[^\s()]|\((?:[^\s()]|\((?:[^\s()]|\([^\s()]*\))*\))*\))"
_LINK_TITLE = r"""(?:\s+(?:"[^"]*"|'[^']*'|\([^()]*\)))?\s*"""
_LINK_START = r"(?:https?://|www\.)"


class LinkRule(NamedTuple):
    format: str
    pattern: str
    url_groups: Tuple[str, ...]


LINK_RULES: Tuple[LinkRule, ...] = (
    # Reference definitions are consumed without yielding a link.
    LinkRule(
        "reference",
        r"(?:^|(?<=\n))[ \t]{0,3}\[(?!\^)[^\[\]\n]+\]:[^\n]*",
        (),
    ),
    LinkRule(
        "markdown",
        rf"!?\[[^\[\]]*\]\((?P<md_url>{_LINK_START}{_BALANCED_TARGET}+){_LINK_TITLE}\)",
        ("md_url",),
    ),
    LinkRule(
        "html-anchor",
        r"<a\b[^>]*?(?<![\w-])href\s*=\s*"
        rf"(?:\"(?P<a_dq>{_LINK_START}[^\"]+)\"|'(?P<a_sq>{_LINK_START}[^']+)')"
        r"[^>]*>[\s\S]*?</a\s*>",
        ("a_dq", "a_sq"),
    ),
    LinkRule(
        "html-image",
        r"<img\b[^>]*?(?<![\w-])src\s*=\s*"
        rf"(?:\"(?P<i_dq>{_LINK_START}[^\"]+)\"|'(?P<i_sq>{_LINK_START}[^']+)')"
        r"[^>]*>",
        ("i_dq", "i_sq"),
    ),
    LinkRule(
        "autolink",
        r"<(?P<auto_url>https?://[^\s<>]+)>",
        ("auto_url",),
    ),
    LinkRule(
        "plain",
        r"(?<!\]\()(?<![<\"'=])(?P<plain_url>https?://(?:[^\s()<>\"'\[\]]|\([^\s()<>\"']*\))+(?<![.,;:!?]))",
        ("plain_url",),
    ),
)

LINK_RE = re.compile("|".join(rule.pattern for rule in LINK_RULES), re.IGNORECASE)
HTML_FORMATS = ("html-anchor", "html-image")

ADJACENT_ANNOTATION_RE = re.compile(
    r"[ \t]*(?:"
    rf"!?\[[^\[\]]*\]\({ARCHIVE_PREFIX}(?P<md_ts>\*|\d+){_BALANCED_TARGET}*\)"
    r"|<a\b[^>]*?(?<![\w-])href\s*=\s*"
    rf"(?:\"{ARCHIVE_PREFIX}(?P<dq_ts>\*|\d+)[^\"]*\"|'{ARCHIVE_PREFIX}(?P<sq_ts>\*|\d+)[^']*')"
    r"[^>]*>[\s\S]*?</a\s*>"
    r")",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class LinkMatch:
    start: int
    text: str
    url: str
    format: str

    @property
    def end(self) -> int:
        return self.start + len(self.text)

    @property
    def is_html(self) -> bool:
        return self.format in HTML_FORMATS


@dataclass(frozen=True)
class AdjacentAnnotation:
    text: str
    timestamp: Optional[str]


@dataclass(frozen=True)
class PatchResult:
    action: str
    offset: Optional[int] = None
    delta: int = 0

    @property
    def applied(self) -> bool:
        return self.action in ("inserted", "replaced")


def extract_url(match: re.Match) -> str:
    for rule in LINK_RULES:
        for group in rule.url_groups:
            value = match.group(group)
            if value:
                return value
    return ""


def _format_of(match: re.Match) -> str:
    for rule in LINK_RULES:
        if any(match.group(group) for group in rule.url_groups):
            return rule.format
    return ""


def find_links(text: str) -> Iterator[LinkMatch]:
    for match in LINK_RE.finditer(text):
        url = extract_url(match)
        if not url:
            continue
        yield LinkMatch(start=match.start(), text=match.group(0), url=url, format=_format_of(match))


def adjacent_annotation(text_after: str) -> Optional[AdjacentAnnotation]:
    match = ADJACENT_ANNOTATION_RE.match(text_after[:LOOKAHEAD_CHARS])
    if match is None:
        return None
    timestamp = match.group("md_ts") or match.group("dq_ts") or match.group("sq_ts")
    return AdjacentAnnotation(text=match.group(0), timestamp=timestamp)


def has_adjacent_annotation(text_after: str) -> bool:
    return adjacent_annotation(text_after) is not None


def adjacent_annotation_timestamp(text_after: str) -> Optional[str]:
    annotation = adjacent_annotation(text_after)
    return annotation.timestamp if annotation else None


def annotation_after(content: str, link: LinkMatch) -> Optional[AdjacentAnnotation]:
    return adjacent_annotation(content[link.end:link.end + LOOKAHEAD_CHARS])


def locate_link(latest_text: str, target_url: str, approximate_offset: int) -> Optional[int]:
    best: Optional[int] = None
    best_distance = 0
    for link in find_links(latest_text):
        if link.url != target_url:
            continue
        distance = abs(link.start - approximate_offset)
        if best is None or distance < best_distance:
            best = link.start
            best_distance = distance
    return best


def match_at(text: str, offset: int) -> Optional[LinkMatch]:
    for link in find_links(text):
        if link.start == offset:
            return link
        if link.start > offset:
            break
    return None


def links_for_url(text: str, url: str) -> List[LinkMatch]:
    return [link for link in find_links(text) if link.url == url]


def build_annotation(link: LinkMatch, archive_url: str, label: str) -> str:
    if link.is_html:
        escaped = archive_url.replace('"', "&quot;")
        return f' <a href="{escaped}">{label}</a>'
    return f" [{label}]({archive_url})"


def apply_archive_link(
    content: str,
    url: str,
    approximate_offset: int,
    archive_url: str,
    label: str,
    *,
    force: bool,
    freshness_days: float,
    now: datetime,
) -> Tuple[str, PatchResult]:
    offset = locate_link(content, url, approximate_offset)
    if offset is None:
        return content, PatchResult("deleted")
    link = match_at(content, offset)
    if link is None:
        return content, PatchResult("deleted")

    insert_at = link.end
    existing = annotation_after(content, link)
    if existing is not None and not force:
        decision = freshness.evaluate(existing.timestamp, freshness_days, now)
        if not decision.should_process:
            return content, PatchResult("fresh", offset)

    annotation = build_annotation(link, archive_url, label)
    if existing is not None:
        patched = content[:insert_at] + annotation + content[insert_at + len(existing.text):]
        return patched, PatchResult("replaced", offset, len(annotation) - len(existing.text))
    patched = content[:insert_at] + annotation + content[insert_at:]
    return patched, PatchResult("inserted", offset, len(annotation))
