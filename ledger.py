from __future__ import annotations

import csv
import io
import json
import logging
import re
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from archiver import ArchiverError
from db import SQLiteStore


LOG_FILE_PREFIX = "wayback-archiver-failed-log-"
LOG_FILE_RE = re.compile(r"^wayback-archiver-failed-log-\d+\.(json|csv)$")
CSV_HEADER = ["url", "filePath", "timestamp", "error", "retryCount"]
FORMATS = ("json", "csv")

logger = logging.getLogger(__name__)

Confirm = Callable[[str, str], bool]
Notify = Callable[[str], None]


class LedgerFormatError(ArchiverError):
    pass


@dataclass
class FailedArchiveEntry:
    url: str
    file_path: str
    timestamp: int
    error: str
    retry_count: int = 0

    def to_record(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "filePath": self.file_path,
            "timestamp": self.timestamp,
            "error": self.error,
            "retryCount": self.retry_count,
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "FailedArchiveEntry":
        if not isinstance(record, dict) or not record.get("url"):
            raise LedgerFormatError("Ledger entry is missing a url")
        try:
            return cls(
                url=str(record["url"]),
                file_path=str(record.get("filePath") or ""),
                timestamp=int(record.get("timestamp") or 0),
                error=str(record.get("error") or ""),
                retry_count=int(record.get("retryCount") or 0),
            )
        except (TypeError, ValueError) as exc:
            raise LedgerFormatError(f"Invalid ledger entry for {record.get('url')}: {exc}") from exc

    @property
    def key(self) -> tuple:
        return (self.url, self.file_path)


@dataclass
class RetrySummary:
    total: int = 0
    succeeded: int = 0
    still_failed: int = 0
    dropped: int = 0
    cancelled: bool = False
    log_deleted: bool = False

    def describe(self) -> str:
        if self.cancelled:
            return "Retry cancelled."
        message = f"Retry complete. Retried {self.total} links. Success: {self.succeeded}, still failed: {self.still_failed}."
        if self.dropped:
            message += f" Already archived: {self.dropped}."
        return message

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def format_of(path: Path) -> str:
    suffix = path.suffix.lower().lstrip(".")
    if suffix not in FORMATS:
        raise LedgerFormatError(f"Unsupported ledger file format: {path.name}")
    return suffix


def dump_entries(entries: Iterable[FailedArchiveEntry], fmt: str) -> str:
    if fmt == "json":
        return json.dumps([entry.to_record() for entry in entries], indent=2)
    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for entry in entries:
            record = entry.to_record()
            writer.writerow([record[column] for column in CSV_HEADER])
        return buffer.getvalue()
    raise LedgerFormatError(f"Unsupported ledger format: {fmt}")


def parse_entries(content: str, fmt: str) -> List[FailedArchiveEntry]:
    if fmt == "json":
        try:
            records = json.loads(content)
        except ValueError as exc:
            raise LedgerFormatError(f"Ledger file is not valid JSON: {exc}") from exc
        if not isinstance(records, list):
            raise LedgerFormatError("Ledger JSON must be an array of entries")
        return [FailedArchiveEntry.from_record(record) for record in records]
    if fmt == "csv":
        try:
            rows = [row for row in csv.reader(io.StringIO(content)) if any(cell.strip() for cell in row)]
        except csv.Error as exc:
            raise LedgerFormatError(f"Ledger file is not valid CSV: {exc}") from exc
        if not rows:
            return []
        entries: List[FailedArchiveEntry] = []
        for row in rows[1:]:
            if len(row) < 2:
                raise LedgerFormatError(f"Ledger CSV row has too few columns: {row!r}")
            padded = row + [""] * (len(CSV_HEADER) - len(row))
            entries.append(FailedArchiveEntry.from_record(dict(zip(CSV_HEADER, padded))))
        return entries
    raise LedgerFormatError(f"Unsupported ledger format: {fmt}")


def load_export(path: Path) -> List[FailedArchiveEntry]:
    fmt = format_of(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise LedgerFormatError(f"Could not read ledger file {path.name}: {exc}") from exc
    return parse_entries(content, fmt)


def write_export(path: Path, entries: List[FailedArchiveEntry]) -> None:
    path.write_text(dump_entries(entries, format_of(path)), encoding="utf-8")


def list_exports(folder: Path) -> List[Path]:
    if not folder.is_dir():
        return []
    return sorted(p for p in folder.iterdir() if p.is_file() and LOG_FILE_RE.match(p.name))


class FailureLedger:
    def __init__(self, store: SQLiteStore, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    def record(self, url: str, file_path: str, error: str, retry_count: int = 0) -> FailedArchiveEntry:
        entry = FailedArchiveEntry(
            url=url,
            file_path=file_path,
            timestamp=int(self._clock() * 1000),
            error=error,
            retry_count=retry_count,
        )
        self.store.add_failed_archive(entry.url, entry.file_path, entry.timestamp, entry.error, entry.retry_count)
        logger.info("Recorded failed archive for %s in %s: %s", url, file_path, error)
        return entry

    def entries(self) -> List[FailedArchiveEntry]:
        return [
            FailedArchiveEntry(
                url=row["url"],
                file_path=row["file_path"],
                timestamp=int(row["timestamp"]),
                error=row["error"],
                retry_count=int(row["retry_count"]),
            )
            for row in self.store.list_failed_archives()
        ]

    def count(self) -> int:
        return self.store.count_failed_archives()

    def remove(self, url: str, file_path: str) -> bool:
        return self.store.remove_failed_archive(url, file_path)

    def clear(self) -> int:
        return self.store.clear_failed_archives()

    def export(self, fmt: str, folder: Path, now: Optional[datetime] = None) -> Optional[Path]:
        if fmt not in FORMATS:
            raise LedgerFormatError(f"Unsupported export format: {fmt}")
        entries = self.entries()
        if not entries:
            return None
        stamp = (now or datetime.now()).strftime("%Y%m%d%H%M%S")
        folder.mkdir(parents=True, exist_ok=True)
        path = folder / f"{LOG_FILE_PREFIX}{stamp}.{fmt}"
        path.write_text(dump_entries(entries, fmt), encoding="utf-8")
        logger.info("Exported %s failed archives to %s", len(entries), path)
        return path

    def retry(
        self,
        export_path: Path,
        orchestrator,
        force: bool = False,
        confirm: Optional[Confirm] = None,
        notify: Optional[Notify] = None,
    ) -> RetrySummary:
        notify = notify or orchestrator.notify
        settings = orchestrator.settings
        orchestrator.client.ensure_configured()

        entries = load_export(export_path)
        summary = RetrySummary(total=len(entries))
        if not entries:
            notify("No failed archives found in selected file.")
            return summary

        if not settings.auto_clear_failed_logs and confirm is not None:
            preview = "\n".join(f"{e.url} ({e.file_path})" for e in entries[:5])
            if len(entries) > 5:
                preview += f"\n...and {len(entries) - 5} more"
            title = "Force retry failed archives?" if force else "Retry failed archives?"
            if not confirm(title, f"{'Force retry' if force else 'Retry'} all {len(entries)} failed archives?\n\nSample:\n{preview}"):
                summary.cancelled = True
                notify(summary.describe())
                return summary

        notify(f"Retrying {len(entries)} failed archives...")
        remaining: List[FailedArchiveEntry] = []
        for entry in entries:
            if not force and orchestrator.has_fresh_annotation(entry.file_path, entry.url):
                self.remove(entry.url, entry.file_path)
                summary.dropped += 1
                continue

            orchestrator.pace()
            outcome = orchestrator.client.archive(entry.url, settings)
            if outcome.ok:
                summary.succeeded += 1
                self.remove(entry.url, entry.file_path)
                self._patch_document(orchestrator, entry, outcome.url, force)
                continue

            entry.retry_count += 1
            entry.error = f"Retry failed ({outcome.error or outcome.status})"
            self.store.update_failed_archive(entry.url, entry.file_path, entry.error, entry.retry_count)
            remaining.append(entry)
            summary.still_failed += 1

        try:
            if remaining:
                write_export(export_path, remaining)
            else:
                export_path.unlink()
                summary.log_deleted = True
                notify("All failed entries retried successfully. Log file deleted.")
        except OSError as exc:
            logger.error("Could not update ledger file %s: %s", export_path, exc)
            notify(f"Error updating or deleting failed log file: {exc}")

        notify(summary.describe())
        return summary

    def _patch_document(self, orchestrator, entry: FailedArchiveEntry, archive_url: str, force: bool) -> None:
        try:
            result = orchestrator.patch_document(entry.file_path, entry.url, None, archive_url, force)
        except (OSError, ValueError) as exc:
            logger.warning("Could not update %s for %s after retry: %s", entry.file_path, entry.url, exc)
            return
        if not result.applied:
            logger.info("Link %s not updated in %s after retry (%s)", entry.url, entry.file_path, result.action)
