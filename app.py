from __future__ import annotations

import os
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Optional

from flask import Flask, jsonify, request

from archiver import ArchiverError
from db import SQLiteStore
from ledger import FORMATS, FailureLedger, list_exports
from orchestrator import ArchivalOrchestrator
from profiles import load_active_settings, save_profile, set_active_profile
from vault import Vault


BASE_DIR = Path(__file__).resolve().parent
VAULT_DIR = Path(os.environ.get("VAULT_DIR", str(BASE_DIR / "vault"))).expanduser().resolve()
DB_PATH = Path(os.environ.get("ARCHIVER_DB_PATH", str(BASE_DIR / "archiver.sqlite3"))).expanduser().resolve()
FAILED_LOGS_DIR = Path(os.environ.get("FAILED_LOGS_DIR", str(BASE_DIR / "failed_logs"))).expanduser().resolve()
MAX_ACTIVE_JOBS = int(os.environ.get("MAX_ACTIVE_JOBS", "1"))
JOB_RETENTION_SECONDS = int(os.environ.get("JOB_RETENTION_SECONDS", "3600"))
DB_JOBS_RETENTION_SECONDS = int(os.environ.get("DB_JOBS_RETENTION_SECONDS", str(30 * 24 * 3600)))

app = Flask(__name__)
store = SQLiteStore(DB_PATH)
vault = Vault(VAULT_DIR)
JOBS: dict[str, dict] = {}
JOBS_LOCK = threading.Lock()
ACTIVE_JOBS_LOCK = threading.Lock()
ACTIVE_JOBS_COUNT = 0


class JobCapacityError(RuntimeError):
    pass


def _parse_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _parse_optional_int(value: object) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _params() -> dict:
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


def _error(message: str, status: int = 400):
    return jsonify({"ok": False, "error": message}), status


def _claim_job_slot() -> None:
    global ACTIVE_JOBS_COUNT
    with ACTIVE_JOBS_LOCK:
        if ACTIVE_JOBS_COUNT >= max(1, MAX_ACTIVE_JOBS):
            raise JobCapacityError(f"Too many active jobs ({ACTIVE_JOBS_COUNT}/{MAX_ACTIVE_JOBS}). Wait for current jobs to finish.")
        ACTIVE_JOBS_COUNT += 1


def _release_job_slot() -> None:
    global ACTIVE_JOBS_COUNT
    with ACTIVE_JOBS_LOCK:
        ACTIVE_JOBS_COUNT = max(0, ACTIVE_JOBS_COUNT - 1)


def _cleanup_old_jobs() -> None:
    now = time.time()
    with JOBS_LOCK:
        for job_id, job in list(JOBS.items()):
            if job.get("state") not in {"done", "error"}:
                continue
            if (now - float(job.get("started_at") or now)) > max(60, JOB_RETENTION_SECONDS):
                JOBS.pop(job_id, None)


def _build_orchestrator(job_id: str) -> ArchivalOrchestrator:
    def _notify(message: str) -> None:
        with JOBS_LOCK:
            if job_id in JOBS:
                JOBS[job_id]["notifications"].append(message)
                JOBS[job_id]["progress"]["message"] = message

    def _update(payload: dict) -> None:
        with JOBS_LOCK:
            if job_id in JOBS:
                JOBS[job_id]["state"] = "running"
                progress = dict(JOBS[job_id].get("progress", {}))
                progress.update(payload)
                JOBS[job_id]["progress"] = progress

    return ArchivalOrchestrator.from_store(store, vault, notify=_notify, progress_callback=_update)


def _start_job(job_type: str, scope: str, work: Callable[[ArchivalOrchestrator], dict]) -> str:
    _cleanup_old_jobs()
    _claim_job_slot()
    job_id = uuid.uuid4().hex
    started_at = time.time()
    with JOBS_LOCK:
        JOBS[job_id] = {
            "type": job_type,
            "scope": scope,
            "state": "queued",
            "error": None,
            "started_at": started_at,
            "progress": {"stage": "queued", "message": "Job queued", "current_item": ""},
            "notifications": [],
            "result": None,
        }

    def _runner() -> None:
        try:
            orchestrator = _build_orchestrator(job_id)
            result = work(orchestrator)
            store.add_job_history(job_type, scope, "done", summary=result)
            with JOBS_LOCK:
                if job_id in JOBS:
                    JOBS[job_id]["state"] = "done"
                    JOBS[job_id]["result"] = result
                    JOBS[job_id]["progress"]["stage"] = "done"
        except Exception as exc:
            store.add_job_history(job_type, scope, "error", summary={"error": str(exc)})
            with JOBS_LOCK:
                if job_id in JOBS:
                    JOBS[job_id]["state"] = "error"
                    JOBS[job_id]["error"] = str(exc)
                    JOBS[job_id]["progress"]["stage"] = "error"
                    JOBS[job_id]["progress"]["message"] = str(exc)
        finally:
            _release_job_slot()

    thread = threading.Thread(target=_runner, daemon=True)
    thread.start()
    return job_id


def _job_status(job_id: str):
    with JOBS_LOCK:
        job = JOBS.get(job_id)
        if not job:
            return _error("Job not found", 404)
        payload = {
            "ok": True,
            "type": job["type"],
            "state": job["state"],
            "error": job["error"],
            "progress": dict(job["progress"]),
            "notifications": list(job["notifications"]),
            "result": job["result"],
        }
    return jsonify(payload)


def _failed_log_path(name: str) -> Optional[Path]:
    for path in list_exports(FAILED_LOGS_DIR):
        if path.name == name:
            return path
    return None


@app.get("/health")
def health():
    return jsonify({"ok": True, "vault": str(vault.root), "documents": len(vault.list_documents())})


@app.get("/profiles")
def list_profiles():
    active_id, settings = load_active_settings(store)
    return jsonify({"ok": True, "active": active_id, "settings": settings.to_dict(), "profiles": store.list_profiles()})


@app.post("/profiles")
def save_profile_route():
    params = _params()
    profile_id = str(params.get("profile_id") or "").strip()
    if not profile_id:
        return _error("profile_id is required")
    try:
        settings = save_profile(store, profile_id, params.get("settings") or {})
    except (TypeError, ValueError) as exc:
        return _error(f"Invalid settings: {exc}")
    return jsonify({"ok": True, "profile_id": profile_id, "settings": settings.to_dict()})


@app.post("/profiles/active")
def activate_profile():
    profile_id = str(_params().get("profile_id") or "").strip()
    if not profile_id:
        return _error("profile_id is required")
    try:
        set_active_profile(store, profile_id)
    except KeyError:
        return _error("Profile not found", 404)
    return jsonify({"ok": True, "active": profile_id})


@app.post("/archive/start")
def archive_start():
    params = _params()
    path = str(params.get("path") or "").strip()
    if not path:
        return _error("path is required")
    if not vault.exists(path):
        return _error("Document not found", 404)
    force = _parse_bool(params.get("force"))
    start = _parse_optional_int(params.get("selection_start"))
    end = _parse_optional_int(params.get("selection_end"))
    selection = (start, end) if start is not None and end is not None and start != end else None

    def _work(orchestrator: ArchivalOrchestrator) -> dict:
        run = orchestrator.force_archive_links if force else orchestrator.archive_links
        return run(path, selection).to_dict()

    try:
        job_id = _start_job("archive", path, _work)
    except JobCapacityError as exc:
        return _error(str(exc), 409)
    return jsonify({"ok": True, "job_id": job_id})


@app.post("/archive-vault/start")
def archive_vault_start():
    params = _params()
    if not _parse_bool(params.get("confirm")):
        return _error("Confirmation required: vault-wide archiving may take a long time.")
    force = _parse_bool(params.get("force"))

    def _work(orchestrator: ArchivalOrchestrator) -> dict:
        run = orchestrator.force_archive_vault if force else orchestrator.archive_vault
        return run().to_dict()

    try:
        job_id = _start_job("archive-vault", str(vault.root), _work)
    except JobCapacityError as exc:
        return _error(str(exc), 409)
    return jsonify({"ok": True, "job_id": job_id})


@app.get("/archive/status/<job_id>")
def archive_status(job_id: str):
    return _job_status(job_id)


@app.get("/failures")
def list_failures():
    entries = FailureLedger(store).entries()
    return jsonify({"ok": True, "count": len(entries), "entries": [entry.to_record() for entry in entries]})


@app.post("/failures/export")
def export_failures():
    params = _params()
    fmt = str(params.get("format") or "").strip().lower()
    if fmt not in FORMATS:
        return _error("format must be json or csv")
    ledger = FailureLedger(store)
    try:
        path = ledger.export(fmt, FAILED_LOGS_DIR)
    except (OSError, ArchiverError) as exc:
        return _error(f"Error exporting failed log: {exc}", 500)
    if path is None:
        return jsonify({"ok": True, "path": None, "message": "No failed archives to export."})
    cleared = ledger.clear() if _parse_bool(params.get("clear")) else 0
    return jsonify({"ok": True, "path": str(path), "name": path.name, "cleared": cleared})


@app.get("/failures/logs")
def list_failure_logs():
    return jsonify({"ok": True, "logs": [path.name for path in list_exports(FAILED_LOGS_DIR)]})


@app.post("/failures/retry/start")
def retry_failures_start():
    params = _params()
    name = str(params.get("file") or "").strip()
    if not name:
        return _error("file is required")
    path = _failed_log_path(name)
    if path is None:
        return _error("Failed log file not found", 404)
    force = _parse_bool(params.get("force"))
    confirmed = _parse_bool(params.get("confirm"))
    _, settings = load_active_settings(store)
    if not settings.auto_clear_failed_logs and not confirmed:
        return _error("Confirmation required to retry failed archives.")

    def _work(orchestrator: ArchivalOrchestrator) -> dict:
        summary = orchestrator.ledger.retry(path, orchestrator, force=force)
        return summary.to_dict()

    try:
        job_id = _start_job("retry-failures", name, _work)
    except JobCapacityError as exc:
        return _error(str(exc), 409)
    return jsonify({"ok": True, "job_id": job_id})


@app.get("/failures/retry/status/<job_id>")
def retry_failures_status(job_id: str):
    return _job_status(job_id)


@app.post("/failures/clear")
def clear_failures():
    if not _parse_bool(_params().get("confirm")):
        return _error("Confirmation required to clear the failed archive log.")
    ledger = FailureLedger(store)
    if ledger.count() == 0:
        return jsonify({"ok": True, "cleared": 0, "message": "Failed archive log is already empty."})
    return jsonify({"ok": True, "cleared": ledger.clear(), "message": "Failed archive log cleared."})


@app.get("/history")
def job_history():
    store.prune_old_data(DB_JOBS_RETENTION_SECONDS)
    return jsonify({"ok": True, "jobs": store.list_job_history()})


if __name__ == "__main__":
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "5000"))
    debug = _parse_bool(os.environ.get("FLASK_DEBUG"), default=False)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)
