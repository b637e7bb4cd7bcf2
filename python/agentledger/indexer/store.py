"""
SQLite read model.

The projection is event-sourced: every row carries the (block_number,
log_index) of the event that produced it and is keyed by the event's
deterministic identifier, so re-applying a block is an upsert and discarding a
block is ``DELETE ... WHERE block_number = ?``.

Atomicity:
- ``apply_block`` writes one block (its rows, block hash and the checkpoint) in
  a single ``BEGIN IMMEDIATE`` transaction.
- ``rewind_to`` discards one block per transaction, highest first, so an
  interrupted rewind leaves a consistent prefix.

Validation responses whose request is unknown are quarantined with the request
hash. When the request is applied later they are released into the
projection, so application order does not change the result.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

from agentledger.chain.events import (
    BlockBatch,
    ChainEvent,
    EventKind,
    FeedbackRevoked,
    MetadataSet,
    NewFeedback,
    Registered,
    ResponseAppended,
    ValidationRequested,
    ValidationResponded,
    normalize_event,
)
from agentledger.exceptions import MalformedEvent, ReorgDetected
from agentledger.indexer.models import (
    AgentView,
    Checkpoint,
    FeedbackResponseView,
    FeedbackView,
    QuarantineRecord,
    ReputationSummary,
    ValidationRequestView,
    ValidationResponseView,
    ValidationSummary,
)

logger = logging.getLogger(__name__)

REASON_MALFORMED = "malformed"
REASON_UNKNOWN_REQUEST = "unknown_request"
REASON_VALIDATOR_MISMATCH = "validator_mismatch"

SCHEMA = """
CREATE TABLE IF NOT EXISTS checkpoint (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    block_number INTEGER NOT NULL,
    block_hash TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS blocks (
    block_number INTEGER PRIMARY KEY,
    block_hash TEXT NOT NULL,
    parent_hash TEXT NOT NULL,
    block_time INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS agents (
    agent_id INTEGER PRIMARY KEY,
    owner TEXT NOT NULL,
    token_uri TEXT NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    block_time INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_metadata (
    agent_id INTEGER NOT NULL,
    key TEXT NOT NULL,
    value BLOB NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    block_time INTEGER NOT NULL,
    PRIMARY KEY (agent_id, key, block_number, log_index)
);

CREATE TABLE IF NOT EXISTS validation_requests (
    request_hash TEXT PRIMARY KEY,
    validator TEXT NOT NULL,
    agent_id INTEGER NOT NULL,
    request_uri TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    block_time INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_requests_agent ON validation_requests(agent_id);

CREATE TABLE IF NOT EXISTS validation_responses (
    request_hash TEXT NOT NULL,
    validator TEXT NOT NULL,
    score INTEGER NOT NULL,
    response_uri TEXT NOT NULL,
    response_hash TEXT NOT NULL,
    tag TEXT NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    block_time INTEGER NOT NULL,
    raw_json TEXT NOT NULL,
    PRIMARY KEY (request_hash, block_number, log_index)
);

CREATE TABLE IF NOT EXISTS feedback (
    agent_id INTEGER NOT NULL,
    client TEXT NOT NULL,
    feedback_index INTEGER NOT NULL,
    score INTEGER NOT NULL,
    tag1 TEXT NOT NULL,
    tag2 TEXT NOT NULL,
    file_uri TEXT NOT NULL,
    file_hash TEXT NOT NULL,
    auth_ref TEXT NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    block_time INTEGER NOT NULL,
    PRIMARY KEY (agent_id, client, feedback_index)
);

CREATE TABLE IF NOT EXISTS feedback_revocations (
    agent_id INTEGER NOT NULL,
    client TEXT NOT NULL,
    feedback_index INTEGER NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    PRIMARY KEY (agent_id, client, feedback_index)
);

CREATE TABLE IF NOT EXISTS feedback_responses (
    agent_id INTEGER NOT NULL,
    client TEXT NOT NULL,
    feedback_index INTEGER NOT NULL,
    responder TEXT NOT NULL,
    response_uri TEXT NOT NULL,
    response_hash TEXT NOT NULL,
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    PRIMARY KEY (agent_id, client, feedback_index, block_number, log_index)
);

CREATE TABLE IF NOT EXISTS quarantine (
    block_number INTEGER NOT NULL,
    log_index INTEGER NOT NULL,
    block_hash TEXT NOT NULL,
    block_time INTEGER NOT NULL,
    event_kind TEXT NOT NULL,
    reason TEXT NOT NULL,
    raw_json TEXT NOT NULL,
    request_hash TEXT,
    PRIMARY KEY (block_number, log_index)
);
CREATE INDEX IF NOT EXISTS idx_quarantine_request ON quarantine(request_hash);
"""

# Tables whose rows originate from a block and are discarded on rewind.
PROJECTION_TABLES = (
    "agents",
    "agent_metadata",
    "validation_requests",
    "validation_responses",
    "feedback",
    "feedback_revocations",
    "feedback_responses",
    "quarantine",
)


def _raw_json(raw: Dict[str, Any]) -> str:
    return json.dumps(raw, sort_keys=True, default=str)


class SqliteReadModel:
    """Read model backed by a SQLite file. Implements IReadModel.

    The Event Indexer is the only caller of the mutating methods
    (``apply_block``, ``rewind_to``, ``reset``).
    """

    def __init__(self, db_path: Union[str, Path], max_reorg_depth: int = 128):
        self.db_path = str(db_path)
        self.max_reorg_depth = max_reorg_depth
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._conn() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA)

    # ------------------------------------------------------------------
    # Checkpoint & block window
    # ------------------------------------------------------------------

    def get_checkpoint(self) -> Optional[Checkpoint]:
        with self._conn() as conn:
            row = conn.execute("SELECT block_number, block_hash FROM checkpoint WHERE id = 1").fetchone()
        if row is None:
            return None
        return Checkpoint(block_number=row["block_number"], block_hash=row["block_hash"])

    def get_block_hash(self, block_number: int) -> Optional[str]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT block_hash FROM blocks WHERE block_number = ?", (block_number,)
            ).fetchone()
        return row["block_hash"] if row else None

    def window(self) -> Dict[int, str]:
        """Stored block hashes within the reorg window, by number."""
        with self._conn() as conn:
            rows = conn.execute("SELECT block_number, block_hash FROM blocks ORDER BY block_number").fetchall()
        return {row["block_number"]: row["block_hash"] for row in rows}

    def _set_checkpoint(self, conn: sqlite3.Connection, block_number: int, block_hash: str) -> None:
        conn.execute(
            "INSERT INTO checkpoint (id, block_number, block_hash) VALUES (1, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET block_number = excluded.block_number, "
            "block_hash = excluded.block_hash",
            (block_number, block_hash),
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply_block(self, batch: BlockBatch) -> None:
        """Apply one block's events atomically and advance the checkpoint.

        Re-applying the same (number, hash) is a no-op in effect. Applying a
        different hash at an already-stored height raises ReorgDetected; the
        caller must rewind first.
        """
        header = batch.header
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT block_hash FROM blocks WHERE block_number = ?", (header.number,)
            ).fetchone()
            if existing is not None and existing["block_hash"] != header.hash:
                raise ReorgDetected(header.number, existing["block_hash"], header.hash)

            conn.execute(
                "INSERT INTO blocks (block_number, block_hash, parent_hash, block_time) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(block_number) DO NOTHING",
                (header.number, header.hash, header.parent_hash, header.timestamp),
            )
            for event in batch.events:
                self._apply_event(conn, event, header.timestamp)
            for position, error in enumerate(batch.malformed):
                self._quarantine_malformed(conn, header.number, header.hash, header.timestamp, error, position)

            current = conn.execute("SELECT block_number FROM checkpoint WHERE id = 1").fetchone()
            if current is None or header.number >= current["block_number"]:
                self._set_checkpoint(conn, header.number, header.hash)
                conn.execute(
                    "DELETE FROM blocks WHERE block_number <= ?",
                    (header.number - self.max_reorg_depth,),
                )

        logger.debug(
            "Applied block %d (%s): %d events, %d malformed",
            header.number, header.hash[:10], len(batch.events), len(batch.malformed),
        )

    def _apply_event(self, conn: sqlite3.Connection, event: ChainEvent, block_time: int) -> None:
        handler = getattr(self, self._HANDLERS[event.kind])
        handler(conn, event, block_time)

    _HANDLERS = {
        EventKind.REGISTERED: "_apply_registered",
        EventKind.METADATA_SET: "_apply_metadata_set",
        EventKind.VALIDATION_REQUEST: "_apply_validation_request",
        EventKind.VALIDATION_RESPONSE: "_apply_validation_response",
        EventKind.NEW_FEEDBACK: "_apply_new_feedback",
        EventKind.FEEDBACK_REVOKED: "_apply_feedback_revoked",
        EventKind.RESPONSE_APPENDED: "_apply_response_appended",
    }

    def _apply_registered(self, conn: sqlite3.Connection, event: ChainEvent, block_time: int) -> None:
        p: Registered = event.payload
        # An agent id is immutable once registered: the earliest event wins.
        conn.execute(
            """
            INSERT INTO agents (agent_id, owner, token_uri, block_number, log_index, block_time)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(agent_id) DO UPDATE SET
                owner = excluded.owner,
                token_uri = excluded.token_uri,
                block_number = excluded.block_number,
                log_index = excluded.log_index,
                block_time = excluded.block_time
            WHERE (excluded.block_number, excluded.log_index) < (agents.block_number, agents.log_index)
            """,
            (p.agent_id, p.owner, p.token_uri, event.block_number, event.log_index, block_time),
        )

    def _apply_metadata_set(self, conn: sqlite3.Connection, event: ChainEvent, block_time: int) -> None:
        p: MetadataSet = event.payload
        conn.execute(
            """
            INSERT INTO agent_metadata (agent_id, key, value, block_number, log_index, block_time)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(agent_id, key, block_number, log_index) DO UPDATE SET value = excluded.value
            """,
            (p.agent_id, p.key, p.value, event.block_number, event.log_index, block_time),
        )

    def _apply_validation_request(self, conn: sqlite3.Connection, event: ChainEvent, block_time: int) -> None:
        p: ValidationRequested = event.payload
        conn.execute(
            """
            INSERT INTO validation_requests
                (request_hash, validator, agent_id, request_uri, content_hash, block_number, log_index, block_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(request_hash) DO UPDATE SET
                validator = excluded.validator,
                agent_id = excluded.agent_id,
                request_uri = excluded.request_uri,
                content_hash = excluded.content_hash,
                block_number = excluded.block_number,
                log_index = excluded.log_index,
                block_time = excluded.block_time
            WHERE (excluded.block_number, excluded.log_index)
                < (validation_requests.block_number, validation_requests.log_index)
            """,
            (p.request_hash, p.validator, p.agent_id, p.request_uri, p.content_hash,
             event.block_number, event.log_index, block_time),
        )
        self._release_orphans(conn, p.request_hash)

    def _apply_validation_response(self, conn: sqlite3.Connection, event: ChainEvent, block_time: int) -> None:
        p: ValidationResponded = event.payload
        request = conn.execute(
            "SELECT validator FROM validation_requests WHERE request_hash = ?", (p.request_hash,)
        ).fetchone()
        if request is None:
            self._quarantine(conn, event, block_time, REASON_UNKNOWN_REQUEST, p.request_hash)
            return
        if request["validator"] != p.validator:
            self._quarantine(conn, event, block_time, REASON_VALIDATOR_MISMATCH, p.request_hash)
            return
        conn.execute(
            """
            INSERT INTO validation_responses
                (request_hash, validator, score, response_uri, response_hash, tag,
                 block_number, log_index, block_time, raw_json)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(request_hash, block_number, log_index) DO UPDATE SET
                validator = excluded.validator,
                score = excluded.score,
                response_uri = excluded.response_uri,
                response_hash = excluded.response_hash,
                tag = excluded.tag,
                block_time = excluded.block_time,
                raw_json = excluded.raw_json
            """,
            (p.request_hash, p.validator, p.score, p.response_uri, p.response_hash, p.tag,
             event.block_number, event.log_index, block_time, _raw_json(event.raw)),
        )
        conn.execute(
            "DELETE FROM quarantine WHERE block_number = ? AND log_index = ?",
            (event.block_number, event.log_index),
        )

    def _apply_new_feedback(self, conn: sqlite3.Connection, event: ChainEvent, block_time: int) -> None:
        p: NewFeedback = event.payload
        conn.execute(
            """
            INSERT INTO feedback
                (agent_id, client, feedback_index, score, tag1, tag2, file_uri, file_hash, auth_ref,
                 block_number, log_index, block_time)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(agent_id, client, feedback_index) DO UPDATE SET
                score = excluded.score,
                tag1 = excluded.tag1,
                tag2 = excluded.tag2,
                file_uri = excluded.file_uri,
                file_hash = excluded.file_hash,
                auth_ref = excluded.auth_ref,
                block_number = excluded.block_number,
                log_index = excluded.log_index,
                block_time = excluded.block_time
            """,
            (p.agent_id, p.client, p.feedback_index, p.score, p.tag1, p.tag2, p.file_uri, p.file_hash,
             p.auth_ref, event.block_number, event.log_index, block_time),
        )

    def _apply_feedback_revoked(self, conn: sqlite3.Connection, event: ChainEvent, block_time: int) -> None:
        p: FeedbackRevoked = event.payload
        conn.execute(
            """
            INSERT INTO feedback_revocations (agent_id, client, feedback_index, block_number, log_index)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(agent_id, client, feedback_index) DO UPDATE SET
                block_number = excluded.block_number,
                log_index = excluded.log_index
            WHERE (excluded.block_number, excluded.log_index)
                < (feedback_revocations.block_number, feedback_revocations.log_index)
            """,
            (p.agent_id, p.client, p.feedback_index, event.block_number, event.log_index),
        )

    def _apply_response_appended(self, conn: sqlite3.Connection, event: ChainEvent, block_time: int) -> None:
        p: ResponseAppended = event.payload
        conn.execute(
            """
            INSERT INTO feedback_responses
                (agent_id, client, feedback_index, responder, response_uri, response_hash, block_number, log_index)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(agent_id, client, feedback_index, block_number, log_index) DO UPDATE SET
                responder = excluded.responder,
                response_uri = excluded.response_uri,
                response_hash = excluded.response_hash
            """,
            (p.agent_id, p.client, p.feedback_index, p.responder, p.response_uri, p.response_hash,
             event.block_number, event.log_index),
        )

    # ------------------------------------------------------------------
    # Quarantine
    # ------------------------------------------------------------------

    def _quarantine(
        self,
        conn: sqlite3.Connection,
        event: ChainEvent,
        block_time: int,
        reason: str,
        request_hash: Optional[str] = None,
    ) -> None:
        logger.warning(
            "Quarantined %s at block %d log %d: %s",
            event.kind.value, event.block_number, event.log_index, reason,
        )
        self._insert_quarantine(
            conn, event.block_number, event.log_index, event.block_hash, block_time,
            event.kind.value, reason, _raw_json(event.raw), request_hash,
        )

    def _quarantine_malformed(
        self,
        conn: sqlite3.Connection,
        block_number: int,
        block_hash: str,
        block_time: int,
        error: MalformedEvent,
        position: int,
    ) -> None:
        raw = error.raw or {}
        log_index = raw.get("log_index")
        if not isinstance(log_index, int):
            # Unpositioned garbage gets a synthetic negative slot.
            log_index = -(position + 1)
        kind = raw.get("event") if isinstance(raw.get("event"), str) else "unknown"
        self._insert_quarantine(
            conn, block_number, log_index, block_hash, block_time,
            kind, f"{REASON_MALFORMED}: {error.message}", _raw_json(raw), None,
        )

    def _insert_quarantine(
        self,
        conn: sqlite3.Connection,
        block_number: int,
        log_index: int,
        block_hash: str,
        block_time: int,
        event_kind: str,
        reason: str,
        raw_json: str,
        request_hash: Optional[str],
    ) -> None:
        conn.execute(
            """
            INSERT INTO quarantine
                (block_number, log_index, block_hash, block_time, event_kind, reason, raw_json, request_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(block_number, log_index) DO UPDATE SET
                block_hash = excluded.block_hash,
                block_time = excluded.block_time,
                event_kind = excluded.event_kind,
                reason = excluded.reason,
                raw_json = excluded.raw_json,
                request_hash = excluded.request_hash
            """,
            (block_number, log_index, block_hash, block_time, event_kind, reason, raw_json, request_hash),
        )

    def _release_orphans(self, conn: sqlite3.Connection, request_hash: str) -> None:
        rows = conn.execute(
            "SELECT raw_json, block_time FROM quarantine WHERE request_hash = ? AND reason = ?",
            (request_hash, REASON_UNKNOWN_REQUEST),
        ).fetchall()
        for row in rows:
            event = normalize_event(json.loads(row["raw_json"]))
            logger.info(
                "Releasing quarantined response at block %d log %d for %s",
                event.block_number, event.log_index, request_hash[:10],
            )
            self._apply_validation_response(conn, event, row["block_time"])

    def _requarantine_orphans(self, conn: sqlite3.Connection) -> None:
        rows = conn.execute(
            """
            SELECT * FROM validation_responses
            WHERE request_hash NOT IN (SELECT request_hash FROM validation_requests)
            """
        ).fetchall()
        for row in rows:
            raw = json.loads(row["raw_json"])
            self._insert_quarantine(
                conn, row["block_number"], row["log_index"], raw.get("block_hash", ""), row["block_time"],
                EventKind.VALIDATION_RESPONSE.value, REASON_UNKNOWN_REQUEST, row["raw_json"], row["request_hash"],
            )
            conn.execute(
                "DELETE FROM validation_responses WHERE request_hash = ? AND block_number = ? AND log_index = ?",
                (row["request_hash"], row["block_number"], row["log_index"]),
            )

    # ------------------------------------------------------------------
    # Rewind
    # ------------------------------------------------------------------

    def rewind_to(self, ancestor: int) -> int:
        """Discard every row from blocks above ``ancestor``, one block per transaction.

        Returns the number of blocks discarded.
        """
        checkpoint = self.get_checkpoint()
        if checkpoint is None or checkpoint.block_number <= ancestor:
            return 0
        discarded = 0
        for number in range(checkpoint.block_number, ancestor, -1):
            with self._transaction() as conn:
                for table in PROJECTION_TABLES:
                    conn.execute(f"DELETE FROM {table} WHERE block_number >= ?", (number,))
                self._requarantine_orphans(conn)
                conn.execute("DELETE FROM blocks WHERE block_number >= ?", (number,))
                parent = conn.execute(
                    "SELECT block_hash FROM blocks WHERE block_number = ?", (number - 1,)
                ).fetchone()
                if parent is None and number - 1 < 0:
                    conn.execute("DELETE FROM checkpoint WHERE id = 1")
                else:
                    self._set_checkpoint(conn, number - 1, parent["block_hash"] if parent else "")
            discarded += 1
        logger.info("Rewound read model to block %d (%d blocks discarded)", ancestor, discarded)
        return discarded

    def reset(self) -> None:
        """Drop the whole projection and checkpoint (full rebuild)."""
        with self._transaction() as conn:
            for table in PROJECTION_TABLES + ("blocks", "checkpoint"):
                conn.execute(f"DELETE FROM {table}")
        logger.warning("Read model reset; rebuilding from start block")

    # ------------------------------------------------------------------
    # Queries (IReadModel)
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: int) -> Optional[AgentView]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM agents WHERE agent_id = ?", (agent_id,)).fetchone()
            if row is None:
                return None
            metadata_rows = conn.execute(
                """
                SELECT key, value, block_number, block_time FROM agent_metadata
                WHERE agent_id = ? ORDER BY block_number, log_index
                """,
                (agent_id,),
            ).fetchall()
        metadata: Dict[str, bytes] = {}
        updated_block, updated_time = row["block_number"], row["block_time"]
        for meta in metadata_rows:
            metadata[meta["key"]] = bytes(meta["value"])
            if meta["block_number"] > updated_block:
                updated_block, updated_time = meta["block_number"], meta["block_time"]
        return AgentView(
            agent_id=row["agent_id"],
            owner=row["owner"],
            token_uri=row["token_uri"],
            created_block=row["block_number"],
            created_time=row["block_time"],
            updated_block=updated_block,
            updated_time=updated_time,
            metadata=metadata,
        )

    def get_metadata(self, agent_id: int, key: str) -> Optional[bytes]:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT value FROM agent_metadata WHERE agent_id = ? AND key = ?
                ORDER BY block_number DESC, log_index DESC LIMIT 1
                """,
                (agent_id, key),
            ).fetchone()
        return bytes(row["value"]) if row else None

    @staticmethod
    def _response_view(row: sqlite3.Row) -> ValidationResponseView:
        return ValidationResponseView(
            request_hash=row["request_hash"],
            validator=row["validator"],
            score=row["score"],
            response_uri=row["response_uri"],
            response_hash=row["response_hash"],
            tag=row["tag"],
            block_number=row["block_number"],
            block_time=row["block_time"],
        )

    def _latest_response(self, conn: sqlite3.Connection, request_hash: str) -> Optional[ValidationResponseView]:
        row = conn.execute(
            """
            SELECT * FROM validation_responses WHERE request_hash = ?
            ORDER BY block_number DESC, log_index DESC LIMIT 1
            """,
            (request_hash,),
        ).fetchone()
        return self._response_view(row) if row else None

    def _request_view(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ValidationRequestView:
        return ValidationRequestView(
            request_hash=row["request_hash"],
            validator=row["validator"],
            agent_id=row["agent_id"],
            request_uri=row["request_uri"],
            content_hash=row["content_hash"],
            block_number=row["block_number"],
            block_time=row["block_time"],
            response=self._latest_response(conn, row["request_hash"]),
        )

    def get_validation_request(self, request_hash: str) -> Optional[ValidationRequestView]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM validation_requests WHERE request_hash = ?", (request_hash,)
            ).fetchone()
            return self._request_view(conn, row) if row else None

    def get_responses(self, request_hashes: Iterable[str]) -> Dict[str, ValidationResponseView]:
        responses: Dict[str, ValidationResponseView] = {}
        with self._conn() as conn:
            for request_hash in request_hashes:
                response = self._latest_response(conn, request_hash)
                if response is not None:
                    responses[request_hash] = response
        return responses

    def list_agent_validations(self, agent_id: int) -> List[ValidationRequestView]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM validation_requests WHERE agent_id = ? ORDER BY block_number, log_index",
                (agent_id,),
            ).fetchall()
            return [self._request_view(conn, row) for row in rows]

    def next_feedback_index(self, agent_id: int, client: str) -> int:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT MAX(feedback_index) AS last FROM feedback WHERE agent_id = ? AND client = ?",
                (agent_id, client.lower()),
            ).fetchone()
        return 0 if row["last"] is None else row["last"] + 1

    def _feedback_view(self, conn: sqlite3.Connection, row: sqlite3.Row) -> FeedbackView:
        key = (row["agent_id"], row["client"], row["feedback_index"])
        revoked = conn.execute(
            "SELECT 1 FROM feedback_revocations WHERE agent_id = ? AND client = ? AND feedback_index = ?", key
        ).fetchone() is not None
        responses = conn.execute(
            """
            SELECT responder, response_uri, response_hash, block_number FROM feedback_responses
            WHERE agent_id = ? AND client = ? AND feedback_index = ?
            ORDER BY block_number, log_index
            """,
            key,
        ).fetchall()
        return FeedbackView(
            agent_id=row["agent_id"],
            client=row["client"],
            feedback_index=row["feedback_index"],
            score=row["score"],
            tag1=row["tag1"],
            tag2=row["tag2"],
            file_uri=row["file_uri"],
            file_hash=row["file_hash"],
            auth_ref=row["auth_ref"],
            block_number=row["block_number"],
            block_time=row["block_time"],
            revoked=revoked,
            responses=[
                FeedbackResponseView(
                    responder=r["responder"],
                    response_uri=r["response_uri"],
                    response_hash=r["response_hash"],
                    block_number=r["block_number"],
                )
                for r in responses
            ],
        )

    def get_feedback(self, agent_id: int, client: str, feedback_index: int) -> Optional[FeedbackView]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM feedback WHERE agent_id = ? AND client = ? AND feedback_index = ?",
                (agent_id, client.lower(), feedback_index),
            ).fetchone()
            return self._feedback_view(conn, row) if row else None

    def find_feedback_by_hash(self, agent_id: int, client: str, file_hash: str) -> Optional[FeedbackView]:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT * FROM feedback WHERE agent_id = ? AND client = ? AND file_hash = ?
                ORDER BY feedback_index LIMIT 1
                """,
                (agent_id, client.lower(), file_hash),
            ).fetchone()
            return self._feedback_view(conn, row) if row else None

    def list_feedback(
        self, agent_id: int, client: Optional[str] = None, include_revoked: bool = True
    ) -> List[FeedbackView]:
        query = "SELECT * FROM feedback WHERE agent_id = ?"
        params: List[Any] = [agent_id]
        if client is not None:
            query += " AND client = ?"
            params.append(client.lower())
        query += " ORDER BY client, feedback_index"
        with self._conn() as conn:
            rows = conn.execute(query, params).fetchall()
            views = [self._feedback_view(conn, row) for row in rows]
        if not include_revoked:
            views = [v for v in views if not v.revoked]
        return views

    def reputation_summary(
        self, agent_id: int, tag1: Optional[str] = None, tag2: Optional[str] = None
    ) -> ReputationSummary:
        query = """
            SELECT COUNT(*) AS n, AVG(f.score) AS mean FROM feedback f
            WHERE f.agent_id = ?
              AND NOT EXISTS (
                SELECT 1 FROM feedback_revocations r
                WHERE r.agent_id = f.agent_id AND r.client = f.client AND r.feedback_index = f.feedback_index
              )
        """
        params: List[Any] = [agent_id]
        if tag1 is not None:
            query += " AND f.tag1 = ?"
            params.append(tag1)
        if tag2 is not None:
            query += " AND f.tag2 = ?"
            params.append(tag2)
        with self._conn() as conn:
            row = conn.execute(query, params).fetchone()
        return ReputationSummary(agent_id=agent_id, count=row["n"], average_score=float(row["mean"] or 0.0))

    def validation_summary(self, agent_id: int) -> ValidationSummary:
        requests = self.list_agent_validations(agent_id)
        scores = [r.response.score for r in requests if r.response is not None]
        return ValidationSummary(
            agent_id=agent_id,
            requests=len(requests),
            responded=len(scores),
            average_score=sum(scores) / len(scores) if scores else 0.0,
        )

    def list_quarantine(self, limit: int = 100) -> List[QuarantineRecord]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM quarantine ORDER BY block_number, log_index LIMIT ?", (limit,)
            ).fetchall()
        return [
            QuarantineRecord(
                block_number=row["block_number"],
                log_index=row["log_index"],
                block_hash=row["block_hash"],
                event_kind=row["event_kind"],
                reason=row["reason"],
                raw_json=row["raw_json"],
                request_hash=row["request_hash"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, List[tuple]]:
        """Every projection row, sorted, for equivalence checks."""
        snap: Dict[str, List[tuple]] = {}
        with self._conn() as conn:
            for table in PROJECTION_TABLES:
                rows = conn.execute(f"SELECT * FROM {table}").fetchall()
                snap[table] = sorted(tuple(row) for row in rows)
        return snap

    def stats(self) -> Dict[str, int]:
        with self._conn() as conn:
            return {
                table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in PROJECTION_TABLES
            }
