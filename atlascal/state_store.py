from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from atlascal.models import utc_now


def _utc_now() -> str:
    return utc_now().isoformat()


class AuditLog:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            calendar_id TEXT NOT NULL,
            action TEXT NOT NULL,
            revision INTEGER,
            details_json TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_audit_events_calendar
            ON audit_events(calendar_id, id);
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def record(
        self,
        *,
        calendar_id: str,
        action: str,
        details: dict[str, Any] | None = None,
        revision: int | None = None,
    ) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO audit_events(created_at, calendar_id, action, revision, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        _utc_now(),
                        calendar_id,
                        action,
                        revision,
                        json.dumps(details or {}, ensure_ascii=False),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent(self, limit: int = 100, calendar_id: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if calendar_id is None:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, calendar_id, action, revision, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, calendar_id, action, revision, details_json
                        FROM audit_events
                        WHERE calendar_id = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(calendar_id), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output
