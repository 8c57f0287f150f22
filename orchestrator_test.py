from __future__ import annotations

import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional
from unittest.mock import patch

from archiver import ArchivalOutcome, ConfigurationError
from db import SQLiteStore
from ledger import FailureLedger
from orchestrator import ArchivalOrchestrator
from profiles import ArchiverSettings
from vault import Vault


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
LABEL = "(Archived on " + NOW.astimezone().strftime("%Y-%m-%d") + ")"


def snapshot(url: str) -> str:
    return f"https://web.archive.org/web/20260301120000/{url}"


class FakeClient:
    def __init__(
        self,
        outcomes: Optional[Dict[str, ArchivalOutcome]] = None,
        on_archive: Optional[Callable[[str], None]] = None,
        configured: bool = True,
    ) -> None:
        self.outcomes = outcomes or {}
        self.on_archive = on_archive
        self.configured = configured
        self.calls: List[str] = []

    def ensure_configured(self) -> None:
        if not self.configured:
            raise ConfigurationError("Archive.org SPN API keys are not configured.")

    def archive(self, url: str, settings: ArchiverSettings) -> ArchivalOutcome:
        self.calls.append(url)
        if self.on_archive is not None:
            self.on_archive(url)
        return self.outcomes.get(url) or ArchivalOutcome.success(snapshot(url))


class ArchivingTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.vault = Vault(root / "vault")
        self.vault.root.mkdir(parents=True)
        self.store = SQLiteStore(root / "state.sqlite3")
        self.ledger = FailureLedger(self.store)
        self.messages: List[str] = []

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def _write(self, path: str, content: str) -> None:
        target = self.vault.root / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    def _orchestrator(self, client: FakeClient, **settings) -> ArchivalOrchestrator:
        return ArchivalOrchestrator(
            client,
            self.vault,
            self.ledger,
            ArchiverSettings(api_delay=0, **settings),
            notify=self.messages.append,
            clock=lambda: NOW,
            sleep=lambda _seconds: None,
        )


class OrchestratorTest(ArchivingTestCase):
    def test_archives_every_link_in_document(self) -> None:
        self._write("note.md", "See [A](https://a.com) and https://b.com.\n")
        summary = self._orchestrator(FakeClient()).archive_links("note.md")

        self.assertEqual((summary.archived, summary.failed, summary.skipped), (2, 0, 0))
        self.assertEqual(
            self.vault.read("note.md"),
            f"See [A](https://a.com) [{LABEL}]({snapshot('https://a.com')}) and "
            f"https://b.com [{LABEL}]({snapshot('https://b.com')}).\n",
        )
        self.assertEqual(self.messages[-1], "Archival complete. Archived: 2, Failed: 0.")

    def test_second_run_is_idempotent(self) -> None:
        self._write("note.md", "[A](https://a.com) <a href=\"https://b.com\">B</a>")
        self._orchestrator(FakeClient()).archive_links("note.md")
        first = self.vault.read("note.md")

        client = FakeClient()
        summary = self._orchestrator(client).archive_links("note.md")
        self.assertEqual(self.vault.read("note.md"), first)
        self.assertEqual(client.calls, [])
        self.assertEqual(summary.skipped, 2)
        self.assertIn(f' <a href="{snapshot("https://b.com")}">{LABEL}</a>', first)

    def test_stale_annotation_is_replaced(self) -> None:
        self._write("note.md", "[A](https://a.com) [old](https://web.archive.org/web/20200101000000/https://a.com)")
        summary = self._orchestrator(FakeClient(), archive_freshness_days=30).archive_links("note.md")
        self.assertEqual(summary.archived, 1)
        self.assertEqual(self.vault.read("note.md"), f"[A](https://a.com) [{LABEL}]({snapshot('https://a.com')})")

    def test_wildcard_annotation_is_retried_later(self) -> None:
        self._write("note.md", "[A](https://a.com)")
        wildcard = ArchivalOutcome.rate_limited("https://web.archive.org/web/*/https://a.com")
        self._orchestrator(FakeClient({"https://a.com": wildcard})).archive_links("note.md")
        self.assertIn("web/*/https://a.com", self.vault.read("note.md"))

        client = FakeClient()
        self._orchestrator(client).archive_links("note.md")
        self.assertEqual(client.calls, ["https://a.com"])
        self.assertEqual(self.vault.read("note.md"), f"[A](https://a.com) [{LABEL}]({snapshot('https://a.com')})")

    def test_edit_during_capture_keeps_annotation_next_to_link(self) -> None:
        self._write("note.md", "See [A](https://a.com) end")

        def _prepend(_url: str) -> None:
            self.vault.write("note.md", "# Header\n\n" + self.vault.read("note.md"))

        summary = self._orchestrator(FakeClient(on_archive=_prepend)).archive_links("note.md")
        self.assertEqual(summary.archived, 1)
        self.assertEqual(
            self.vault.read("note.md"),
            f"# Header\n\nSee [A](https://a.com) [{LABEL}]({snapshot('https://a.com')}) end",
        )

    def test_link_deleted_during_capture_is_left_alone(self) -> None:
        self._write("note.md", "See [A](https://a.com) end")

        def _delete(_url: str) -> None:
            self.vault.write("note.md", "The link is gone.")

        summary = self._orchestrator(FakeClient(on_archive=_delete)).archive_links("note.md")
        self.assertEqual((summary.archived, summary.skipped), (0, 1))
        self.assertEqual(self.vault.read("note.md"), "The link is gone.")

    def test_force_failure_keeps_document_and_records_ledger_entry(self) -> None:
        content = "[A](https://a.com) [old](https://web.archive.org/web/20260228000000/https://a.com)"
        self._write("note.md", content)
        client = FakeClient({"https://a.com": ArchivalOutcome.failed("Timeout")})
        summary = self._orchestrator(client).force_archive_links("note.md")

        self.assertEqual((summary.archived, summary.failed), (0, 1))
        self.assertEqual(self.vault.read("note.md"), content)
        entries = self.ledger.entries()
        self.assertEqual(len(entries), 1)
        self.assertEqual((entries[0].url, entries[0].file_path), ("https://a.com", "note.md"))
        self.assertEqual(entries[0].error, "Archiving failed (Timeout)")
        self.assertEqual(self.messages[-1], "Force re-archival complete. Archived: 0, Failed: 1.")

    def test_force_bypasses_cache_and_fresh_annotations(self) -> None:
        self._write("note.md", "[A](https://a.com) [old](https://web.archive.org/web/20260228000000/https://a.com) https://a.com")
        client = FakeClient()
        summary = self._orchestrator(client).force_archive_links("note.md")
        self.assertEqual(client.calls, ["https://a.com", "https://a.com"])
        self.assertEqual(summary.archived, 2)
        self.assertNotIn("20260228000000", self.vault.read("note.md"))

    def test_duplicate_urls_share_one_capture(self) -> None:
        self._write("note.md", "https://a.com and again https://a.com")
        client = FakeClient()
        summary = self._orchestrator(client).archive_links("note.md")
        self.assertEqual(client.calls, ["https://a.com"])
        self.assertEqual(summary.archived, 2)
        self.assertEqual(self.vault.read("note.md").count(snapshot("https://a.com")), 2)

    def test_ignored_and_non_http_links_are_skipped(self) -> None:
        self._write(
            "note.md",
            "[w](www.example.com) https://skip.example.org/x "
            "https://web.archive.org/web/20200101000000/https://x.com [ok](https://ok.com)",
        )
        client = FakeClient()
        summary = self._orchestrator(
            client,
            ignore_patterns=("web.archive.org/", r"skip\.example"),
        ).archive_links("note.md")
        self.assertEqual(client.calls, ["https://ok.com"])
        self.assertEqual((summary.archived, summary.skipped), (1, 2))

    def test_url_include_patterns(self) -> None:
        self._write("note.md", "https://a.com https://b.org")
        client = FakeClient()
        summary = self._orchestrator(client, url_patterns=(r"\.org",)).archive_links("note.md")
        self.assertEqual(client.calls, ["https://b.org"])
        self.assertEqual(summary.skipped, 1)

    def test_selection_limits_links(self) -> None:
        self._write("note.md", "[A](https://a.com) [B](https://b.com)")
        client = FakeClient()
        summary = self._orchestrator(client).archive_links("note.md", (18, 0))
        self.assertEqual(client.calls, ["https://a.com"])
        self.assertEqual(summary.archived, 1)
        self.assertIn("Processing 1 links in selection...", self.messages)
        self.assertTrue(self.vault.read("note.md").endswith(" [B](https://b.com)"))

    def test_selection_without_links_notifies(self) -> None:
        self._write("note.md", "plain words [A](https://a.com)")
        summary = self._orchestrator(FakeClient()).archive_links("note.md", (0, 5))
        self.assertEqual(summary.archived, 0)
        self.assertIn("No suitable links found in selection.", self.messages)

    def test_write_failure_is_recorded_and_abandons_document(self) -> None:
        self._write("note.md", "https://a.com https://b.com")
        client = FakeClient()
        orchestrator = self._orchestrator(client)
        with patch.object(self.vault, "write", side_effect=OSError("disk full")):
            summary = orchestrator.archive_links("note.md")
        self.assertEqual(client.calls, ["https://a.com"])
        self.assertEqual(summary.failed, 1)
        self.assertEqual(self.ledger.entries()[0].error, "Could not save archive link (disk full)")
        self.assertEqual(self.vault.read("note.md"), "https://a.com https://b.com")

    def test_missing_document_is_reported(self) -> None:
        summary = self._orchestrator(FakeClient()).archive_links("missing.md")
        self.assertEqual(summary.to_dict(), {"archived": 0, "failed": 0, "skipped": 0})
        self.assertIn("Error reading file: missing.md", self.messages)

    def test_annotations_keep_markdown_syntax_intact(self) -> None:
        self._write(
            "note.md",
            '[A](https://a.com "Title") then <https://b.com>\n\n[ref]: https://c.com\n',
        )
        client = FakeClient()
        summary = self._orchestrator(client).archive_links("note.md")
        self.assertEqual(client.calls, ["https://a.com", "https://b.com"])
        self.assertEqual(summary.archived, 2)
        self.assertEqual(
            self.vault.read("note.md"),
            f'[A](https://a.com "Title") [{LABEL}]({snapshot("https://a.com")}) then '
            f"<https://b.com> [{LABEL}]({snapshot('https://b.com')})\n\n[ref]: https://c.com\n",
        )

    def test_cached_result_expires_after_freshness_window(self) -> None:
        self._write("note.md", "https://a.com and again https://a.com")
        clock = [NOW]

        def _advance(payload: dict) -> None:
            if payload.get("links_done") == 1:
                clock[0] = NOW + timedelta(days=2)

        client = FakeClient()
        orchestrator = ArchivalOrchestrator(
            client,
            self.vault,
            self.ledger,
            ArchiverSettings(api_delay=0, archive_freshness_days=1),
            notify=self.messages.append,
            progress_callback=_advance,
            clock=lambda: clock[0],
            sleep=lambda _seconds: None,
        )
        summary = orchestrator.archive_links("note.md")
        self.assertEqual(client.calls, ["https://a.com", "https://a.com"])
        self.assertEqual(summary.archived, 2)

    def test_cached_result_reused_within_freshness_window(self) -> None:
        self._write("note.md", "https://a.com and again https://a.com")
        client = FakeClient()
        self._orchestrator(client, archive_freshness_days=1).archive_links("note.md")
        self.assertEqual(client.calls, ["https://a.com"])

    def test_missing_credentials_stop_before_any_work(self) -> None:
        self._write("note.md", "https://a.com")
        with self.assertRaises(ConfigurationError):
            self._orchestrator(FakeClient(configured=False)).archive_vault()
        self.assertEqual(self.vault.read("note.md"), "https://a.com")


class VaultRunTest(ArchivingTestCase):
    def test_vault_run_visits_every_note(self) -> None:
        self._write("a.md", "https://a.com")
        self._write("sub/b.md", "https://b.com")
        self._write(".hidden/c.md", "https://c.com")
        self._write("d.txt", "https://d.com")
        client = FakeClient()
        summary = self._orchestrator(client).archive_vault()
        self.assertEqual(client.calls, ["https://a.com", "https://b.com"])
        self.assertEqual(summary.archived, 2)
        self.assertEqual(self.messages[0], "Starting vault-wide link archiving... This may take time.")
        self.assertEqual(self.messages[-1], "Vault archival complete. Archived: 2, Failed: 0.")

    def test_vault_path_and_word_filters(self) -> None:
        self._write("projects/a.md", "#archive https://a.com")
        self._write("projects/b.md", "https://b.com")
        self._write("journal/c.md", "#archive https://c.com")
        client = FakeClient()
        self._orchestrator(client, path_patterns=("^projects/",), word_patterns=("#archive",)).archive_vault()
        self.assertEqual(client.calls, ["https://a.com"])

    def test_path_filters_do_not_apply_to_single_note(self) -> None:
        self._write("journal/c.md", "https://c.com")
        client = FakeClient()
        self._orchestrator(client, path_patterns=("^projects/",)).archive_links("journal/c.md")
        self.assertEqual(client.calls, ["https://c.com"])

    def test_unreadable_note_does_not_stop_vault_run(self) -> None:
        self._write("a.md", "https://a.com")
        self._write("b.md", "https://b.com")
        self._write("c.md", "https://c.com")
        read = self.vault.read

        def _read(path: str) -> str:
            if path == "b.md":
                raise OSError("permission denied")
            return read(path)

        client = FakeClient()
        with patch.object(self.vault, "read", side_effect=_read):
            summary = self._orchestrator(client).archive_vault()
        self.assertEqual(client.calls, ["https://a.com", "https://c.com"])
        self.assertEqual((summary.archived, summary.failed), (2, 0))
        self.assertIn("Error reading file: b.md", self.messages)
        self.assertIn(snapshot("https://c.com"), read("c.md"))

    def test_force_vault_run_messages(self) -> None:
        self._write("a.md", "https://a.com")
        self._orchestrator(FakeClient()).force_archive_vault()
        self.assertEqual(self.messages[0], "Starting vault-wide force re-archiving... This may take time.")
        self.assertEqual(self.messages[-1], "Vault force re-archival complete. Archived: 1, Failed: 0.")


if __name__ == "__main__":
    unittest.main()
