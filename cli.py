from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Callable, List, Optional

from archiver import ArchiverError
from db import SQLiteStore
from ledger import FORMATS, FailureLedger, list_exports
from orchestrator import ArchivalOrchestrator
from profiles import Credentials, load_active_settings, save_credentials, set_active_profile
from vault import Vault


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _prompt_confirm(assume_yes: bool) -> Callable[[str, str], bool]:
    def _confirm(title: str, message: str) -> bool:
        if assume_yes:
            return True
        print(title)
        print(message)
        answer = input("Proceed? [y/N] ").strip().lower()
        return answer in {"y", "yes"}

    return _confirm


def _print(message: str) -> None:
    print(message)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Archive links in markdown notes via the Wayback Machine.")
    parser.add_argument("--vault", default=os.environ.get("VAULT_DIR", "."), help="Directory holding the notes")
    parser.add_argument("--db", default=os.environ.get("ARCHIVER_DB_PATH", "archiver.sqlite3"), help="SQLite state file")
    parser.add_argument("--logs-dir", default=os.environ.get("FAILED_LOGS_DIR", "failed_logs"), help="Folder for exported failure logs")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "WARNING"), help="Python logging level")
    sub = parser.add_subparsers(dest="command", required=True)

    archive = sub.add_parser("archive", help="Archive links in one note (or a character range of it)")
    archive.add_argument("path", help="Note path relative to the vault")
    archive.add_argument("--start", type=int, default=None, help="Selection start offset")
    archive.add_argument("--end", type=int, default=None, help="Selection end offset")
    archive.add_argument("--force", action="store_true", help="Replace existing archive links")

    archive_vault = sub.add_parser("archive-vault", help="Archive links in every note of the vault")
    archive_vault.add_argument("--force", action="store_true", help="Replace existing archive links")
    archive_vault.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    export = sub.add_parser("export-failures", help="Export the failed archive log")
    export.add_argument("--format", choices=FORMATS, default="json")
    export.add_argument("--clear", action="store_true", help="Clear the log after exporting")

    retry = sub.add_parser("retry-failures", help="Retry the entries of an exported failure log")
    retry.add_argument("file", nargs="?", default=None, help="Exported log file (defaults to the newest)")
    retry.add_argument("--force", action="store_true", help="Replace existing archive links")
    retry.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    clear = sub.add_parser("clear-failures", help="Clear the failed archive log")
    clear.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    sub.add_parser("list-failures", help="Show the failed archive log")

    profile = sub.add_parser("use-profile", help="Activate a settings profile")
    profile.add_argument("profile_id")

    keys = sub.add_parser("set-keys", help="Store Archive.org SPN API keys")
    keys.add_argument("access_key")
    keys.add_argument("secret_key")

    serve = sub.add_parser("serve", help="Run the JSON API")
    serve.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
    serve.add_argument("--port", type=int, default=int(os.environ.get("PORT", "5000")))
    return parser


def _resolve_log_file(logs_dir: Path, name: Optional[str]) -> Optional[Path]:
    if name:
        candidate = Path(name)
        return candidate if candidate.is_file() else logs_dir / name
    exports = list_exports(logs_dir)
    return exports[-1] if exports else None


def main(argv: Optional[List[str]] = None) -> int:
    load_env_file(Path.cwd() / ".env")
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=str(args.log_level).upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "serve":
        os.environ["VAULT_DIR"] = str(Path(args.vault).resolve())
        os.environ["ARCHIVER_DB_PATH"] = str(Path(args.db).resolve())
        os.environ["FAILED_LOGS_DIR"] = str(Path(args.logs_dir).resolve())
        from app import app

        app.run(host=args.host, port=args.port, use_reloader=False, threaded=True)
        return 0

    store = SQLiteStore(Path(args.db).resolve())
    vault = Vault(Path(args.vault))
    logs_dir = Path(args.logs_dir).resolve()
    ledger = FailureLedger(store)

    try:
        if args.command == "archive":
            orchestrator = ArchivalOrchestrator.from_store(store, vault, notify=_print)
            if not vault.exists(args.path):
                print(f"Document not found: {args.path}")
                return 1
            selection = (args.start, args.end) if args.start is not None and args.end is not None else None
            run = orchestrator.force_archive_links if args.force else orchestrator.archive_links
            summary = run(args.path, selection)
            return 1 if summary.failed else 0

        if args.command == "archive-vault":
            message = (
                "This will scan every note and overwrite archive links that follow them."
                if args.force
                else "This will scan every note and archive external links that have no archive link yet."
            )
            title = "Force re-archive all links?" if args.force else "Archive all links?"
            if not _prompt_confirm(args.yes)(title, message):
                print("Vault-wide archiving cancelled.")
                return 1
            orchestrator = ArchivalOrchestrator.from_store(store, vault, notify=_print)
            run = orchestrator.force_archive_vault if args.force else orchestrator.archive_vault
            summary = run()
            return 1 if summary.failed else 0

        if args.command == "export-failures":
            path = ledger.export(args.format, logs_dir)
            if path is None:
                print("No failed archives to export.")
                return 0
            print(f"Failed archive log exported successfully to {path}")
            if args.clear:
                ledger.clear()
                print("Failed archive log cleared.")
            return 0

        if args.command == "retry-failures":
            path = _resolve_log_file(logs_dir, args.file)
            if path is None or not path.is_file():
                print("No failed log files found in folder.")
                return 1
            orchestrator = ArchivalOrchestrator.from_store(store, vault, notify=_print)
            summary = ledger.retry(path, orchestrator, force=args.force, confirm=_prompt_confirm(args.yes))
            return 1 if summary.still_failed else 0

        if args.command == "clear-failures":
            if ledger.count() == 0:
                print("Failed archive log is already empty.")
                return 0
            if not _prompt_confirm(args.yes)("Clear failed archive log", "Are you sure you want to clear the failed archive log?"):
                return 1
            ledger.clear()
            print("Failed archive log cleared.")
            return 0

        if args.command == "list-failures":
            for entry in ledger.entries():
                print(f"{entry.url}\t{entry.file_path}\t{entry.retry_count}\t{entry.error}")
            return 0

        if args.command == "use-profile":
            set_active_profile(store, args.profile_id)
            active_id, _ = load_active_settings(store)
            print(f"Active profile: {active_id}")
            return 0

        if args.command == "set-keys":
            save_credentials(store, Credentials(args.access_key, args.secret_key))
            print("SPN API keys saved.")
            return 0
    except KeyError as exc:
        print(f"Profile not found: {exc}")
        return 1
    except ArchiverError as exc:
        print(f"Error: {exc}")
        return 2
    return 1


if __name__ == "__main__":
    sys.exit(main())
