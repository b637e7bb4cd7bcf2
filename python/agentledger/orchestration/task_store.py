"""
Orchestrator task store.

One row per task (one code-change submission). Holds the state machine
position plus every effect the task has caused, so a restart resumes from
persisted state without repeating writes:

- request hashes per validator (set before the writes are issued)
- the verdict, written once (``UPDATE ... WHERE verdict IS NULL``)
- the allocated feedback index and evidence locator for the feedback write
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from agentledger.exceptions import InvalidTransitionError, TaskNotFoundError

logger = logging.getLogger(__name__)


class TaskState(str, Enum):
    CREATED = "created"
    VALIDATION_REQUESTED = "validation_requested"
    VALIDATION_COLLECTING = "validation_collecting"
    VALIDATION_DECIDED = "validation_decided"
    FEEDBACK_SUBMITTED = "feedback_submitted"
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.CLOSED, TaskState.FAILED)


# Allowed forward transitions. FAILED is reachable from any non-terminal state.
TRANSITIONS: Dict[TaskState, Sequence[TaskState]] = {
    TaskState.CREATED: (TaskState.VALIDATION_REQUESTED,),
    TaskState.VALIDATION_REQUESTED: (TaskState.VALIDATION_COLLECTING,),
    TaskState.VALIDATION_COLLECTING: (TaskState.VALIDATION_DECIDED,),
    TaskState.VALIDATION_DECIDED: (TaskState.FEEDBACK_SUBMITTED,),
    TaskState.FEEDBACK_SUBMITTED: (TaskState.CLOSED,),
    TaskState.CLOSED: (),
    TaskState.FAILED: (),
}


@dataclass
class TaskRecord:
    task_id: str
    agent_id: int
    artifact_uri: str
    validators: List[str]
    state: TaskState = TaskState.CREATED
    request_uri: Optional[str] = None
    request_content_hash: Optional[str] = None
    request_hashes: Dict[str, str] = field(default_factory=dict)
    collecting_since: Optional[float] = None
    verdict: Optional[str] = None
    decision: Dict[str, Any] = field(default_factory=dict)
    feedback_client: Optional[str] = None
    feedback_score: Optional[int] = None
    feedback_index: Optional[int] = None
    feedback_uri: Optional[str] = None
    feedback_hash: Optional[str] = None
    merge_unblocked: Optional[bool] = None
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "agent_id": self.agent_id,
            "artifact_uri": self.artifact_uri,
            "validators": list(self.validators),
            "state": self.state.value,
            "request_uri": self.request_uri,
            "request_content_hash": self.request_content_hash,
            "request_hashes": dict(self.request_hashes),
            "collecting_since": self.collecting_since,
            "verdict": self.verdict,
            "decision": dict(self.decision),
            "feedback_client": self.feedback_client,
            "feedback_score": self.feedback_score,
            "feedback_index": self.feedback_index,
            "feedback_uri": self.feedback_uri,
            "feedback_hash": self.feedback_hash,
            "merge_unblocked": self.merge_unblocked,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


_JSON_COLUMNS = ("validators", "request_hashes", "decision")
_COLUMNS = (
    "task_id", "agent_id", "artifact_uri", "validators", "state", "request_uri",
    "request_content_hash", "request_hashes", "collecting_since", "verdict", "decision",
    "feedback_client", "feedback_score", "feedback_index", "feedback_uri", "feedback_hash",
    "merge_unblocked", "error_kind", "error_message", "created_at", "updated_at",
)


class TaskStore:
    """SQLite-backed task rows."""

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
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    agent_id INTEGER NOT NULL,
                    artifact_uri TEXT NOT NULL,
                    validators TEXT NOT NULL,
                    state TEXT NOT NULL,
                    request_uri TEXT,
                    request_content_hash TEXT,
                    request_hashes TEXT NOT NULL DEFAULT '{}',
                    collecting_since REAL,
                    verdict TEXT,
                    decision TEXT NOT NULL DEFAULT '{}',
                    feedback_client TEXT,
                    feedback_score INTEGER,
                    feedback_index INTEGER,
                    feedback_uri TEXT,
                    feedback_hash TEXT,
                    merge_unblocked INTEGER,
                    error_kind TEXT,
                    error_message TEXT,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_tasks_state ON tasks(state);
                CREATE INDEX IF NOT EXISTS idx_tasks_feedback ON tasks(agent_id, feedback_client);
                """
            )

    @staticmethod
    def _encode(name: str, value: Any) -> Any:
        if name in _JSON_COLUMNS:
            return json.dumps(value, sort_keys=True)
        if name == "state" and isinstance(value, TaskState):
            return value.value
        if name == "merge_unblocked" and value is not None:
            return int(bool(value))
        return value

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> TaskRecord:
        data = dict(row)
        for name in _JSON_COLUMNS:
            data[name] = json.loads(data[name])
        data["state"] = TaskState(data["state"])
        if data["merge_unblocked"] is not None:
            data["merge_unblocked"] = bool(data["merge_unblocked"])
        return TaskRecord(**data)

    def create(self, record: TaskRecord) -> TaskRecord:
        """Insert a new task; an existing task id is returned unchanged."""
        values = [self._encode(name, getattr(record, name)) for name in _COLUMNS]
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._conn() as conn:
            conn.execute(
                f"INSERT INTO tasks ({', '.join(_COLUMNS)}) VALUES ({placeholders}) "
                "ON CONFLICT(task_id) DO NOTHING",
                values,
            )
        return self.get(record.task_id)

    def get(self, task_id: str) -> TaskRecord:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return self._row_to_record(row)

    def list(self, states: Optional[Sequence[TaskState]] = None) -> List[TaskRecord]:
        query = "SELECT * FROM tasks"
        params: List[Any] = []
        if states:
            query += f" WHERE state IN ({', '.join('?' for _ in states)})"
            params = [TaskState(s).value for s in states]
        query += " ORDER BY created_at, task_id"
        with self._conn() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(row) for row in rows]

    def list_active(self) -> List[TaskRecord]:
        return self.list([s for s in TaskState if not s.terminal])

    def update(self, task_id: str, **changes: Any) -> TaskRecord:
        """Persist field changes (not state, not verdict)."""
        forbidden = {"task_id", "state", "verdict"} & set(changes)
        if forbidden:
            raise ValueError(f"use transition()/set_verdict() for {sorted(forbidden)}")
        changes["updated_at"] = time.time()
        assignments = ", ".join(f"{name} = ?" for name in changes)
        values = [self._encode(name, value) for name, value in changes.items()]
        with self._conn() as conn:
            cursor = conn.execute(f"UPDATE tasks SET {assignments} WHERE task_id = ?", values + [task_id])
            if cursor.rowcount == 0:
                raise TaskNotFoundError(f"Task {task_id} not found")
        return self.get(task_id)

    def transition(self, task_id: str, to_state: TaskState, **changes: Any) -> TaskRecord:
        """Move a task forward (or to FAILED), guarded by the transition table."""
        current = self.get(task_id)
        if current.state == to_state:
            return current
        allowed = TRANSITIONS[current.state]
        if to_state not in allowed and not (to_state == TaskState.FAILED and not current.state.terminal):
            raise InvalidTransitionError(
                f"Task {task_id}: {current.state.value} -> {to_state.value} not allowed",
                details={"task_id": task_id, "from": current.state.value, "to": to_state.value},
            )
        changes["updated_at"] = time.time()
        assignments = ", ".join(f"{name} = ?" for name in changes)
        values = [self._encode(name, value) for name, value in changes.items()]
        with self._conn() as conn:
            cursor = conn.execute(
                f"UPDATE tasks SET state = ?, {assignments} WHERE task_id = ? AND state = ?",
                [to_state.value] + values + [task_id, current.state.value],
            )
            if cursor.rowcount == 0:
                raise InvalidTransitionError(f"Task {task_id} changed state concurrently")
        logger.info("Task %s: %s -> %s", task_id, current.state.value, to_state.value)
        return self.get(task_id)

    def set_verdict(self, task_id: str, verdict: str, decision: Dict[str, Any]) -> bool:
        """Record the verdict once. Returns False if one was already recorded."""
        with self._conn() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET verdict = ?, decision = ?, updated_at = ? "
                "WHERE task_id = ? AND verdict IS NULL",
                (verdict, json.dumps(decision, sort_keys=True), time.time(), task_id),
            )
        return cursor.rowcount == 1

    def max_allocated_index(self, agent_id: int, client: str) -> Optional[int]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT MAX(feedback_index) AS last FROM tasks WHERE agent_id = ? AND feedback_client = ?",
                (agent_id, client.lower()),
            ).fetchone()
        return row["last"]
