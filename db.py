from __future__ import annotations

import json
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional


class SQLiteStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._init_db()

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                    profile_id TEXT PRIMARY KEY,
                    payload_json TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS app_state (
                    key TEXT PRIMARY KEY,
                    value TEXT,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS failed_archives (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    error TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_type TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    state TEXT NOT NULL,
                    summary_json TEXT,
                    created_at INTEGER NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_failed_archives_url_path ON failed_archives(url, file_path)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_history_created ON jobs_history(created_at DESC)")

    def list_profiles(self) -> Dict[str, Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute("SELECT profile_id, payload_json FROM profiles ORDER BY profile_id").fetchall()
        out: Dict[str, Dict[str, Any]] = {}
        for row in rows:
            try:
                out[row["profile_id"]] = json.loads(row["payload_json"])
            except (TypeError, ValueError):
                out[row["profile_id"]] = {}
        return out

    def get_profile(self, profile_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT payload_json FROM profiles WHERE profile_id = ?", (profile_id,)).fetchone()
        if not row:
            return None
        try:
            payload = json.loads(row["payload_json"])
        except (TypeError, ValueError):
            return {}
        return payload if isinstance(payload, dict) else {}

    def save_profile(self, profile_id: str, payload: Dict[str, Any]) -> None:
        now = int(time.time())
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO profiles(profile_id,payload_json,created_at,updated_at)
                VALUES(?,?,?,?)
                ON CONFLICT(profile_id) DO UPDATE SET
                    payload_json=excluded.payload_json,
                    updated_at=excluded.updated_at
                """,
                (profile_id, json.dumps(payload), now, now),
            )

    def delete_profile(self, profile_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM profiles WHERE profile_id = ?", (profile_id,))
            return int(cur.rowcount or 0) > 0

    def get_state(self, key: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM app_state WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: Optional[str]) -> None:
        now = int(time.time())
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO app_state(key,value,updated_at)
                VALUES(?,?,?)
                ON CONFLICT(key) DO UPDATE SET
                    value=excluded.value,
                    updated_at=excluded.updated_at
                """,
                (key, value, now),
            )

    def add_failed_archive(self, url: str, file_path: str, timestamp: int, error: str, retry_count: int = 0) -> int:
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO failed_archives(url,file_path,timestamp,error,retry_count)
                VALUES(?,?,?,?,?)
                """,
                (url, file_path, int(timestamp), error, int(retry_count)),
            )
            return int(cur.lastrowid or 0)

    def list_failed_archives(self) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, url, file_path, timestamp, error, retry_count
                FROM failed_archives
                ORDER BY id
                """
            ).fetchall()
        return [dict(row) for row in rows]

    def count_failed_archives(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM failed_archives").fetchone()
        return int(row["total"] or 0) if row else 0

    def remove_failed_archive(self, url: str, file_path: str) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM failed_archives
                WHERE id = (
                    SELECT id FROM failed_archives
                    WHERE url = ? AND file_path = ?
                    ORDER BY id
                    LIMIT 1
                )
                """,
                (url, file_path),
            )
            return int(cur.rowcount or 0) > 0

    def update_failed_archive(self, url: str, file_path: str, error: str, retry_count: int) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE failed_archives
                SET error = ?, retry_count = ?
                WHERE id = (
                    SELECT id FROM failed_archives
                    WHERE url = ? AND file_path = ?
                    ORDER BY id
                    LIMIT 1
                )
                """,
                (error, int(retry_count), url, file_path),
            )
            return int(cur.rowcount or 0) > 0

    def clear_failed_archives(self) -> int:
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM failed_archives")
            return int(cur.rowcount or 0)

    def add_job_history(self, job_type: str, scope: str, state: str, summary: Optional[Dict[str, Any]] = None) -> None:
        now = int(time.time())
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO jobs_history(job_type,scope,state,summary_json,created_at)
                VALUES(?,?,?,?,?)
                """,
                (job_type, scope, state, json.dumps(summary or {}), now),
            )

    def list_job_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT job_type, scope, state, summary_json, created_at
                FROM jobs_history
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        out: List[Dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            try:
                item["summary"] = json.loads(item.pop("summary_json") or "{}")
            except (TypeError, ValueError):
                item["summary"] = {}
            out.append(item)
        return out

    def prune_old_data(self, jobs_retention_seconds: int) -> Dict[str, int]:
        cutoff = int(time.time()) - max(0, int(jobs_retention_seconds))
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM jobs_history WHERE created_at < ?", (cutoff,))
            return {"jobs_history": int(cur.rowcount or 0)}
