"""
Write audit trail.

Hash-chained log of every chain write the orchestrator issues: one
``attempted`` entry before the call and one outcome entry after it. Each entry
references the previous entry's hash, so tampering or deletion is detectable
with ``verify_chain``.

Independent of the read model: rewinding the projection never touches it.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

logger = logging.getLogger(__name__)


class AuditStatus(str, Enum):
    ATTEMPTED = "attempted"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    TRANSIENT_FAILURE = "transient_failure"
    EXHAUSTED = "exhausted"


def _entry_hash(entry: Dict[str, Any]) -> str:
    check = {k: v for k, v in entry.items() if k not in ("hash", "id")}
    return hashlib.sha256(json.dumps(check, sort_keys=True, separators=(",", ":")).encode()).hexdigest()


class AuditTrail:
    """Hash-chained audit log. Every entry references the previous hash."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = str(db_path)
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS audit_trail (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    status TEXT NOT NULL,
                    task_id TEXT,
                    details TEXT NOT NULL,
                    prev_hash TEXT,
                    hash TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_audit_task ON audit_trail(task_id)")

    def record(
        self,
        operation: str,
        status: AuditStatus,
        task_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "operation": operation,
            "status": AuditStatus(status).value,
            "task_id": task_id,
            "details": json.loads(json.dumps(details or {}, sort_keys=True, default=str)),
            "prev_hash": None,
        }
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT hash FROM audit_trail ORDER BY id DESC LIMIT 1").fetchone()
                entry["prev_hash"] = row["hash"] if row else None
                entry["hash"] = _entry_hash(entry)
                cursor = conn.execute(
                    """
                    INSERT INTO audit_trail (timestamp, operation, status, task_id, details, prev_hash, hash)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry["timestamp"],
                        entry["operation"],
                        entry["status"],
                        entry["task_id"],
                        json.dumps(entry["details"], sort_keys=True),
                        entry["prev_hash"],
                        entry["hash"],
                    ),
                )
                entry["id"] = cursor.lastrowid
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        logger.debug("audit %s %s task=%s", operation, entry["status"], task_id)
        return entry

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> Dict[str, Any]:
        entry = dict(row)
        entry["details"] = json.loads(entry["details"])
        return entry

    def list_entries(
        self,
        task_id: Optional[str] = None,
        operation: Optional[str] = None,
        limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        """Entries in insertion order, optionally filtered."""
        query = "SELECT * FROM audit_trail WHERE 1 = 1"
        params: List[Any] = []
        if task_id is not None:
            query += " AND task_id = ?"
            params.append(task_id)
        if operation is not None:
            query += " AND operation = ?"
            params.append(operation)
        query += " ORDER BY id LIMIT ?"
        params.append(limit)
        with self._conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def verify_chain(self) -> bool:
        """Verify no entries have been tampered with or removed."""
        with self._conn() as conn:
            rows = conn.execute("SELECT * FROM audit_trail ORDER BY id").fetchall()
        prev_hash = None
        for row in rows:
            entry = self._row_to_entry(row)
            if entry.get("prev_hash") != prev_hash:
                return False
            if entry.get("hash") != _entry_hash(entry):
                return False
            prev_hash = entry["hash"]
        return True
