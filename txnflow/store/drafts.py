"""SQLite-backed draft store: the local progress sink and resume source."""
from __future__ import annotations

import json
import sqlite3
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from txnflow.engine.resume import REQUEST_STATUSES, DraftRecord, RequestStatusRecord

if TYPE_CHECKING:
    from pathlib import Path

INIT_SQL = """
CREATE TABLE IF NOT EXISTS drafts (
    request_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL DEFAULT '',
    transaction_type TEXT NOT NULL,
    entity TEXT,
    form_data TEXT NOT NULL DEFAULT '{}',
    last_completed_step INTEGER NOT NULL DEFAULT -1,
    status TEXT NOT NULL DEFAULT 'PENDING',
    rejection_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS draft_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id TEXT NOT NULL,
    status TEXT NOT NULL,
    note TEXT,
    timestamp TEXT NOT NULL DEFAULT (datetime('now'))
);
"""


def _now() -> str:
    return datetime.now(tz=UTC).strftime("%Y-%m-%d %H:%M:%S")


class DraftStore:
    def __init__(self, db_path: str | Path):
        self.db = sqlite3.connect(str(db_path))
        self.db.execute("PRAGMA journal_mode = WAL")
        self.db.executescript(INIT_SQL)

    def save_draft(self, draft: DraftRecord) -> str:
        """Persist a draft and return its new request id."""
        request_id = uuid.uuid4().hex[:12]
        now = _now()
        self.db.execute(
            """INSERT INTO drafts
               (request_id, user_id, transaction_type, entity, form_data,
                last_completed_step, status, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                request_id,
                draft.user_id,
                draft.transaction_type,
                json.dumps(draft.entity) if draft.entity is not None else None,
                json.dumps(draft.form_data, ensure_ascii=False),
                draft.last_completed_step,
                draft.status,
                now,
                now,
            ),
        )
        self._add_history(request_id, draft.status, "saved")
        self.db.commit()
        return request_id

    def get_request_status(self, request_id: str) -> RequestStatusRecord | None:
        row = self.db.execute(
            "SELECT request_id, status, transaction_type, form_data, last_completed_step, rejection_reason "
            "FROM drafts WHERE request_id = ?",
            (request_id,),
        ).fetchone()
        if not row:
            return None
        return RequestStatusRecord(
            id=row[0],
            status=row[1],
            transaction_type=row[2],
            form_data=json.loads(row[3]),
            last_completed_step=row[4],
            rejection_reason=row[5],
        )

    def update_status(self, request_id: str, status: str, rejection_reason: str | None = None) -> bool:
        if status not in REQUEST_STATUSES:
            raise ValueError(f"Unknown status {status!r}. Expected one of: {', '.join(REQUEST_STATUSES)}")
        cur = self.db.execute(
            "UPDATE drafts SET status = ?, rejection_reason = ?, updated_at = ? WHERE request_id = ?",
            (status, rejection_reason, _now(), request_id),
        )
        if cur.rowcount:
            self._add_history(request_id, status, rejection_reason)
        self.db.commit()
        return cur.rowcount > 0

    def list_drafts(self, user_id: str | None = None) -> list[dict]:
        query = (
            "SELECT request_id, user_id, transaction_type, status, last_completed_step, updated_at "
            "FROM drafts"
        )
        params: tuple = ()
        if user_id:
            query += " WHERE user_id = ?"
            params = (user_id,)
        rows = self.db.execute(query + " ORDER BY updated_at DESC, request_id", params).fetchall()
        return [
            {"request_id": r[0], "user_id": r[1], "transaction_type": r[2],
             "status": r[3], "last_completed_step": r[4], "updated_at": r[5]}
            for r in rows
        ]

    def get_history(self, request_id: str) -> list[dict]:
        rows = self.db.execute(
            "SELECT status, note, timestamp FROM draft_history WHERE request_id = ? ORDER BY id",
            (request_id,),
        ).fetchall()
        return [{"status": r[0], "note": r[1], "timestamp": r[2]} for r in rows]

    def delete(self, request_id: str) -> None:
        self.db.execute("DELETE FROM drafts WHERE request_id = ?", (request_id,))
        self.db.execute("DELETE FROM draft_history WHERE request_id = ?", (request_id,))
        self.db.commit()

    def reset(self) -> None:
        self.db.execute("DELETE FROM drafts")
        self.db.execute("DELETE FROM draft_history")
        self.db.commit()

    def close(self) -> None:
        self.db.close()

    def _add_history(self, request_id: str, status: str, note: str | None = None) -> None:
        self.db.execute(
            "INSERT INTO draft_history (request_id, status, note) VALUES (?, ?, ?)",
            (request_id, status, note),
        )
