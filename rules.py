from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Sequence


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubstitutionRule:
    find: str
    replace: str = ""
    regex: bool = False

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SubstitutionRule":
        return cls(
            find=str(payload.get("find") or ""),
            replace=str(payload.get("replace") or ""),
            regex=bool(payload.get("regex", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"find": self.find, "replace": self.replace, "regex": self.regex}


def _pattern_matches(text: str, pattern: str) -> bool:
    try:
        return re.search(pattern, text, re.IGNORECASE) is not None
    except re.error:
        return pattern in text


def matches_any(text: str, patterns: Optional[Iterable[str]]) -> bool:
    for pattern in patterns or ():
        if not pattern or not pattern.strip():
            continue
        if _pattern_matches(text, pattern):
            return True
    return False


def matches_any_literal(text: str, patterns: Optional[Iterable[str]]) -> bool:
    return any(pattern and pattern.strip() and pattern in text for pattern in patterns or ())


def is_included(text: str, patterns: Optional[Sequence[str]], literal: bool = False) -> bool:
    if not patterns:
        return True
    if literal:
        return matches_any_literal(text, patterns)
    return matches_any(text, patterns)


def apply_rules(url: str, rules: Optional[Iterable[SubstitutionRule]]) -> str:
    result = url
    for rule in rules or ():
        if not rule.find:
            continue
        if not rule.regex:
            result = result.replace(rule.find, rule.replace or "")
            continue
        try:
            result = re.sub(rule.find, rule.replace or "", result)
        except re.error as exc:
            logger.warning("Skipping substitution rule find=%r: %s", rule.find, exc)
    return result
