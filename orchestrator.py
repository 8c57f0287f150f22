from __future__ import annotations

import logging
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import requests

from archiver import ArchivalOutcome, ArchiveClient
from db import SQLiteStore
from freshness import is_fresh
from ledger import FailureLedger
from links import LinkMatch, PatchResult, annotation_after, apply_archive_link, find_links, links_for_url
from profiles import ArchiverSettings, load_active_settings, load_credentials
from rules import is_included, matches_any
from vault import Vault


ARCHIVE_HOST_MARKER = "web.archive.org/"
HTTP_URL_RE = re.compile(r"^https?://", re.IGNORECASE)

logger = logging.getLogger(__name__)

Selection = Tuple[int, int]
Notify = Callable[[str], None]
ProgressCallback = Callable[[Dict[str, object]], None]


@dataclass(frozen=True)
class CacheEntry:
    status: str
    url: str
    captured_at: datetime


@dataclass
class ArchiveSummary:
    archived: int = 0
    failed: int = 0
    skipped: int = 0

    def describe(self, title: str) -> str:
        message = f"{title} Archived: {self.archived}, Failed: {self.failed}"
        if self.skipped:
            message += f", Skipped: {self.skipped}"
        return message + "."

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def _log_notice(message: str) -> None:
    logger.info(message)


class ArchivalOrchestrator:
    def __init__(
        self,
        client: ArchiveClient,
        vault: Vault,
        ledger: FailureLedger,
        settings: ArchiverSettings,
        notify: Optional[Notify] = None,
        progress_callback: Optional[ProgressCallback] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client
        self.vault = vault
        self.ledger = ledger
        self.settings = settings
        self.notify = notify or _log_notice
        self.progress_callback = progress_callback
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep
        self._cache: Dict[str, CacheEntry] = {}

    @classmethod
    def from_store(
        cls,
        store: SQLiteStore,
        vault: Vault,
        notify: Optional[Notify] = None,
        progress_callback: Optional[ProgressCallback] = None,
        session: Optional[requests.Session] = None,
    ) -> "ArchivalOrchestrator":
        _, settings = load_active_settings(store)
        client = ArchiveClient(load_credentials(store), session=session)
        return cls(client, vault, FailureLedger(store), settings, notify=notify, progress_callback=progress_callback)

    def archive_links(self, path: str, selection: Optional[Selection] = None) -> ArchiveSummary:
        return self._run_document(path, selection, force=False)

    def force_archive_links(self, path: str, selection: Optional[Selection] = None) -> ArchiveSummary:
        return self._run_document(path, selection, force=True)

    def archive_vault(self) -> ArchiveSummary:
        return self._run_vault(force=False)

    def force_archive_vault(self) -> ArchiveSummary:
        return self._run_vault(force=True)

    def pace(self) -> None:
        if self.settings.api_delay > 0:
            self._sleep(self.settings.api_delay)

    def _emit_progress(self, **payload: object) -> None:
        if self.progress_callback is None:
            return
        self.progress_callback(payload)

    def _run_document(self, path: str, selection: Optional[Selection], force: bool) -> ArchiveSummary:
        self.client.ensure_configured()
        self._cache.clear()
        summary = ArchiveSummary()
        verb = "Force re-archiving" if force else "Archiving"
        if selection is None:
            self.notify(f"{verb} links in {path}...")
        self._process_document(path, summary, force, selection=selection)
        self.notify(summary.describe("Force re-archival complete." if force else "Archival complete."))
        return summary

    def _run_vault(self, force: bool) -> ArchiveSummary:
        self.client.ensure_configured()
        self._cache.clear()
        summary = ArchiveSummary()
        documents = self.vault.list_documents()
        verb = "force re-archiving" if force else "link archiving"
        self.notify(f"Starting vault-wide {verb}... This may take time.")
        total = len(documents)
        for idx, path in enumerate(documents, start=1):
            self._emit_progress(
                stage="vault",
                message="Scanning notes",
                percent=int(((idx - 1) / max(total, 1)) * 100),
                current_item=path,
                documents_done=idx - 1,
                documents_total=total,
            )
            self._process_document(path, summary, force, check_includes=True)
        title = "Vault force re-archival complete." if force else "Vault archival complete."
        self.notify(summary.describe(title))
        return summary

    def _document_included(self, path: str, content: str) -> bool:
        settings = self.settings
        if not is_included(path, settings.path_patterns):
            return False
        return is_included(content, settings.word_patterns, literal=True)

    def _process_document(
        self,
        path: str,
        summary: ArchiveSummary,
        force: bool,
        selection: Optional[Selection] = None,
        check_includes: bool = False,
    ) -> None:
        try:
            content = self.vault.read(path)
        except (OSError, ValueError) as exc:
            logger.warning("Could not read %s: %s", path, exc)
            self.notify(f"Error reading file: {path}")
            return

        if check_includes and not self._document_included(path, content):
            return

        base = 0
        scope = content
        if selection is not None:
            start, end = sorted(max(0, min(len(content), value)) for value in selection)
            base, scope = start, content[start:end]

        links, skipped = self._select_links(scope, content, base, force)
        summary.skipped += skipped
        if selection is not None:
            if not links:
                self.notify("No suitable links found in selection.")
                return
            self.notify(f"Processing {len(links)} links in selection...")

        shift = 0
        for position, link in enumerate(links, start=1):
            self._emit_progress(
                stage="archive",
                message="Archiving link",
                current_item=link.url,
                document=path,
                links_done=position - 1,
                links_total=len(links),
            )
            outcome = self._archive_url(link.url, force)
            if not outcome.ok:
                summary.failed += 1
                self.ledger.record(link.url, path, f"Archiving failed ({outcome.error or 'Unknown error'})")
                continue

            try:
                result = self.patch_document(path, link.url, base + link.start + shift, outcome.url, force)
            except (OSError, ValueError) as exc:
                summary.failed += 1
                logger.error("Could not save archive link for %s in %s: %s", link.url, path, exc)
                self.ledger.record(link.url, path, f"Could not save archive link ({exc})")
                self.notify(f"Error saving archive link for {link.url}")
                return

            shift += result.delta
            if result.applied:
                summary.archived += 1
            else:
                logger.debug("Skipped %s in %s: %s", link.url, path, result.action)
                summary.skipped += 1

    def _select_links(self, scope: str, content: str, base: int, force: bool) -> Tuple[List[LinkMatch], int]:
        settings = self.settings
        now = self._clock()
        selected: List[LinkMatch] = []
        skipped = 0
        for link in find_links(scope):
            url = link.url
            if ARCHIVE_HOST_MARKER in url:
                continue
            if not HTTP_URL_RE.match(url):
                skipped += 1
                continue
            if matches_any(url, settings.ignore_patterns) or not is_included(url, settings.url_patterns):
                skipped += 1
                continue
            if not force:
                absolute = LinkMatch(base + link.start, link.text, link.url, link.format)
                existing = annotation_after(content, absolute)
                if existing is not None and is_fresh(existing.timestamp, settings.archive_freshness_days, now):
                    skipped += 1
                    continue
            selected.append(link)
        return selected, skipped

    def _cache_valid(self, entry: CacheEntry) -> bool:
        window = self.settings.freshness_seconds
        if window <= 0:
            return True
        return (self._clock() - entry.captured_at).total_seconds() < window

    def _archive_url(self, url: str, force: bool) -> ArchivalOutcome:
        cached = self._cache.get(url)
        if not force and cached is not None and self._cache_valid(cached):
            logger.debug("Using cached archive result for %s", url)
            return ArchivalOutcome(cached.status, url=cached.url)
        outcome = self.client.archive(url, self.settings)
        if outcome.ok and outcome.url:
            self._cache[url] = CacheEntry(outcome.status, outcome.url, self._clock())
        return outcome

    def _label(self, now: datetime) -> str:
        return self.settings.archive_link_text.replace("{date}", now.astimezone().strftime(self.settings.date_format))

    def patch_document(
        self,
        path: str,
        url: str,
        approximate_offset: Optional[int],
        archive_url: str,
        force: bool,
    ) -> PatchResult:
        now = self._clock()
        label = self._label(now)

        def _apply(latest: str) -> Tuple[str, PatchResult]:
            offset = len(latest) if approximate_offset is None else approximate_offset
            return apply_archive_link(
                latest,
                url,
                offset,
                archive_url,
                label,
                force=force,
                freshness_days=self.settings.archive_freshness_days,
                now=now,
            )

        return self.vault.process(path, _apply)

    def has_fresh_annotation(self, path: str, url: str) -> bool:
        try:
            content = self.vault.read(path)
        except (OSError, ValueError):
            return False
        now = self._clock()
        for link in links_for_url(content, url):
            existing = annotation_after(content, link)
            if existing is not None and is_fresh(existing.timestamp, self.settings.archive_freshness_days, now):
                return True
        return False
