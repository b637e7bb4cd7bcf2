"""In-process ledger for development and tests.

Simulates the Identity, Validation and Reputation registries closely enough
to exercise the indexer and orchestrator end to end:

- every accepted write is mined into its own block with deterministic hashes
- registry rules are enforced (owner-only metadata, bound validator,
  signed feedback credentials with expiry and index limit, no self-feedback)
- ``reorg()`` truncates the chain and re-mines the dropped transactions on a
  fork with different block hashes
- ``fail_next()`` injects transient or deterministic errors per method

Usage::

    ledger = LocalLedger()
    owner = ledger.client(owner_address)
    receipt = await owner.register("ipfs://agent-card")
    agent_id = receipt.value
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Sequence, Tuple

from agentledger.chain.events import SCORE_MAX, SCORE_MIN, BlockHeader, EventKind
from agentledger.chain.identifiers import canonical_json, derive_request_hash
from agentledger.exceptions import (
    InvalidCredentialError,
    LedgerException,
    RejectedWriteError,
    StaleAuthorization,
)
from agentledger.interfaces.chain import WriteReceipt
from agentledger.reputation.authorization import FeedbackAuthorization

logger = logging.getLogger(__name__)

GENESIS_PARENT = "0x" + "00" * 32


@dataclass
class _Tx:
    tx_hash: str
    sender: str
    method: str
    args: Dict[str, Any]


@dataclass
class _Block:
    header: BlockHeader
    txs: List[_Tx] = field(default_factory=list)
    logs: List[Dict[str, Any]] = field(default_factory=list)
    values: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _RegistryState:
    next_agent_id: int
    agents: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    requests: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    feedback: Dict[Tuple[int, str], List[Dict[str, Any]]] = field(default_factory=dict)


class LocalLedger:
    """Deterministic single-node chain with the three registries."""

    def __init__(
        self,
        chain_id: int = 31337,
        first_agent_id: int = 1,
        genesis_timestamp: Optional[int] = None,
        block_time: int = 1,
    ) -> None:
        self.chain_id = chain_id
        self.first_agent_id = first_agent_id
        self.block_time = block_time
        self._genesis_ts = int(genesis_timestamp if genesis_timestamp is not None else time.time())
        self._state = _RegistryState(next_agent_id=first_agent_id)
        self._nonce = 0
        self._fork = 0
        self._faults: Dict[str, Deque[Exception]] = defaultdict(deque)
        self._head_changed = asyncio.Event()
        genesis = BlockHeader(
            number=0,
            hash=self._block_hash(GENESIS_PARENT, 0, self._genesis_ts, []),
            parent_hash=GENESIS_PARENT,
            timestamp=self._genesis_ts,
        )
        self._blocks: List[_Block] = [_Block(header=genesis)]

    # ── Accounts ─────────────────────────────────────────────────────

    def client(self, address: str) -> "LocalLedgerClient":
        """A chain client that sends from ``address``."""
        return LocalLedgerClient(self, address.lower())

    # ── Fault injection ──────────────────────────────────────────────

    def fail_next(self, method: str, error: Exception, times: int = 1) -> None:
        """Raise ``error`` on the next ``times`` calls of ``method`` ("*" = any)."""
        for _ in range(times):
            self._faults[method].append(error)

    def _maybe_fail(self, method: str) -> None:
        for key in (method, "*"):
            queue = self._faults.get(key)
            if queue:
                raise queue.popleft()

    # ── Chain shape ──────────────────────────────────────────────────

    @property
    def head(self) -> BlockHeader:
        return self._blocks[-1].header

    def _block_hash(self, parent: str, number: int, timestamp: int, tx_hashes: List[str]) -> str:
        material = canonical_json({
            "parent": parent,
            "number": number,
            "timestamp": timestamp,
            "txs": tx_hashes,
            "fork": self._fork,
        })
        return "0x" + hashlib.sha256(material).hexdigest()

    def _next_header(self, tx_hashes: List[str]) -> BlockHeader:
        parent = self.head
        number = parent.number + 1
        timestamp = self._genesis_ts + number * self.block_time
        return BlockHeader(
            number=number,
            hash=self._block_hash(parent.hash, number, timestamp, tx_hashes),
            parent_hash=parent.hash,
            timestamp=timestamp,
        )

    def mine(self, count: int = 1) -> List[BlockHeader]:
        """Append empty blocks."""
        mined = []
        for _ in range(count):
            header = self._next_header([])
            self._blocks.append(_Block(header=header))
            mined.append(header)
        self._notify_head()
        return mined

    def _notify_head(self) -> None:
        self._head_changed.set()
        self._head_changed = asyncio.Event()

    def reorg(self, depth: int, replay_dropped: bool = True, extra_blocks: int = 1) -> List[str]:
        """Replace the last ``depth`` blocks with a fork.

        Dropped transactions are re-executed on the fork when
        ``replay_dropped`` (those that are still valid land in new blocks
        with new hashes), then ``extra_blocks`` empty blocks are mined so the
        fork is strictly longer. Returns the dropped tx hashes.
        """
        if depth < 1 or depth >= len(self._blocks):
            raise ValueError(f"cannot reorg {depth} blocks of a {len(self._blocks)}-block chain")
        dropped = self._blocks[-depth:]
        self._blocks = self._blocks[:-depth]
        self._fork += 1
        self._rebuild_state()
        dropped_txs = [tx for block in dropped for tx in block.txs]
        logger.info(
            "Local ledger reorg: dropped blocks %d-%d (%d txs), fork %d",
            dropped[0].header.number, dropped[-1].header.number, len(dropped_txs), self._fork,
        )
        if replay_dropped:
            for tx in dropped_txs:
                try:
                    self._mine_tx(tx)
                except LedgerException as exc:
                    logger.info("Dropped tx %s not replayed: %s", tx.tx_hash, exc)
        for _ in range(extra_blocks):
            header = self._next_header([])
            self._blocks.append(_Block(header=header))
        self._notify_head()
        return [tx.tx_hash for tx in dropped_txs]

    def _rebuild_state(self) -> None:
        self._state = _RegistryState(next_agent_id=self.first_agent_id)
        for block in self._blocks[1:]:
            for tx in block.txs:
                self._execute(self._state, tx, block.header)

    # ── Transactions ─────────────────────────────────────────────────

    def _submit(self, sender: str, method: str, args: Dict[str, Any]) -> WriteReceipt:
        self._maybe_fail(method)
        self._nonce += 1
        tx_hash = "0x" + hashlib.sha256(
            canonical_json({"sender": sender, "method": method, "args": args, "nonce": self._nonce})
        ).hexdigest()
        tx = _Tx(tx_hash=tx_hash, sender=sender, method=method, args=args)
        block = self._mine_tx(tx)
        self._notify_head()
        return WriteReceipt(
            tx_hash=tx_hash,
            block_number=block.header.number,
            block_hash=block.header.hash,
            value=block.values.get(tx_hash),
        )

    def _mine_tx(self, tx: _Tx) -> _Block:
        header = self._next_header([tx.tx_hash])
        value, emitted = self._execute(self._state, tx, header)
        block = _Block(header=header, txs=[tx])
        block.values[tx.tx_hash] = value
        for log_index, (kind, args) in enumerate(emitted):
            block.logs.append({
                "event": kind.value,
                "block_number": header.number,
                "block_hash": header.hash,
                "log_index": log_index,
                "tx_hash": tx.tx_hash,
                "args": args,
            })
        self._blocks.append(block)
        return block

    def _execute(
        self, state: _RegistryState, tx: _Tx, header: BlockHeader
    ) -> Tuple[Any, List[Tuple[EventKind, Dict[str, Any]]]]:
        """Apply one tx to ``state``. Validates fully before mutating."""
        handler = getattr(self, f"_tx_{tx.method}")
        return handler(state, tx.sender, tx.args, header)

    # Identity registry

    def _tx_register(self, state, sender, args, header):
        agent_id = state.next_agent_id
        state.next_agent_id += 1
        metadata = {k: bytes.fromhex(v) for k, v in args.get("metadata", [])}
        state.agents[agent_id] = {
            "owner": sender,
            "token_uri": args["token_uri"],
            "metadata": dict(metadata),
        }
        events = [(EventKind.REGISTERED, {
            "agent_id": agent_id, "owner": sender, "token_uri": args["token_uri"],
        })]
        for key, value in args.get("metadata", []):
            events.append((EventKind.METADATA_SET, {"agent_id": agent_id, "key": key, "value": "0x" + value}))
        return agent_id, events

    def _require_agent(self, state, agent_id: int) -> Dict[str, Any]:
        agent = state.agents.get(agent_id)
        if agent is None:
            raise RejectedWriteError(f"agent {agent_id} does not exist", reason="unknown_agent")
        return agent

    def _tx_set_metadata(self, state, sender, args, header):
        agent = self._require_agent(state, args["agent_id"])
        if agent["owner"] != sender:
            raise RejectedWriteError("only the owner may set metadata", reason="not_owner")
        agent["metadata"][args["key"]] = bytes.fromhex(args["value"])
        return None, [(EventKind.METADATA_SET, {
            "agent_id": args["agent_id"], "key": args["key"], "value": "0x" + args["value"],
        })]

    # Validation registry

    def _tx_validation_request(self, state, sender, args, header):
        agent = self._require_agent(state, args["agent_id"])
        if agent["owner"] != sender:
            raise RejectedWriteError("only the agent owner may request validation", reason="not_owner")
        validator = args["validator"].lower()
        request_hash = derive_request_hash(validator, args["agent_id"], args["content_hash"])
        existing = state.requests.get(request_hash)
        state.requests[request_hash] = {
            "validator": validator,
            "agent_id": args["agent_id"],
            "request_uri": args["request_uri"],
            "content_hash": args["content_hash"],
            "response": existing["response"] if existing else None,
        }
        return request_hash, [(EventKind.VALIDATION_REQUEST, {
            "validator": validator,
            "agent_id": args["agent_id"],
            "request_uri": args["request_uri"],
            "content_hash": args["content_hash"],
            "request_hash": request_hash,
        })]

    def _tx_validation_response(self, state, sender, args, header):
        request = state.requests.get(args["request_hash"])
        if request is None:
            raise RejectedWriteError("unknown validation request", reason="unknown_request")
        if request["validator"] != sender:
            raise RejectedWriteError("sender is not the requested validator", reason="not_validator")
        score = args["score"]
        if not SCORE_MIN <= score <= SCORE_MAX:
            raise RejectedWriteError(f"score {score} out of range", reason="bad_score")
        request["response"] = {
            "score": score,
            "response_uri": args["response_uri"],
            "response_hash": args["response_hash"],
            "tag": args["tag"],
            "block_number": header.number,
        }
        return None, [(EventKind.VALIDATION_RESPONSE, {
            "validator": sender,
            "agent_id": request["agent_id"],
            "request_hash": args["request_hash"],
            "score": score,
            "response_uri": args["response_uri"],
            "response_hash": args["response_hash"],
            "tag": args["tag"],
        })]

    # Reputation registry

    def _tx_give_feedback(self, state, sender, args, header):
        agent_id = args["agent_id"]
        agent = self._require_agent(state, agent_id)
        if agent["owner"] == sender:
            raise RejectedWriteError("agent owner cannot rate itself", reason="self_feedback")
        score = args["score"]
        if not SCORE_MIN <= score <= SCORE_MAX:
            raise RejectedWriteError(f"score {score} out of range", reason="bad_score")
        entries = state.feedback.get((agent_id, sender), [])
        next_index = len(entries)
        try:
            credential = FeedbackAuthorization.from_dict(args["credential"])
            credential.check(
                agent_id=agent_id,
                client=sender,
                owner=agent["owner"],
                chain_id=self.chain_id,
                next_index=next_index,
                now=header.timestamp,
            )
        except StaleAuthorization as exc:
            raise RejectedWriteError(str(exc.message), reason="stale_authorization") from exc
        except InvalidCredentialError as exc:
            raise RejectedWriteError(str(exc.message), reason="invalid_signature") from exc
        entries.append({
            "score": score,
            "tag1": args["tag1"],
            "tag2": args["tag2"],
            "file_uri": args["file_uri"],
            "file_hash": args["file_hash"],
            "revoked": False,
        })
        state.feedback[(agent_id, sender)] = entries
        return next_index, [(EventKind.NEW_FEEDBACK, {
            "agent_id": agent_id,
            "client": sender,
            "feedback_index": next_index,
            "score": score,
            "tag1": args["tag1"],
            "tag2": args["tag2"],
            "file_uri": args["file_uri"],
            "file_hash": args["file_hash"],
            "auth_ref": credential.reference,
        })]

    def _feedback_entry(self, state, agent_id: int, client: str, index: int) -> Dict[str, Any]:
        entries = state.feedback.get((agent_id, client), [])
        if not 0 <= index < len(entries):
            raise RejectedWriteError(f"no feedback {index} for ({agent_id}, {client})", reason="unknown_feedback")
        return entries[index]

    def _tx_revoke_feedback(self, state, sender, args, header):
        entry = self._feedback_entry(state, args["agent_id"], sender, args["feedback_index"])
        if entry["revoked"]:
            raise RejectedWriteError("feedback already revoked", reason="already_revoked")
        entry["revoked"] = True
        return None, [(EventKind.FEEDBACK_REVOKED, {
            "agent_id": args["agent_id"], "client": sender, "feedback_index": args["feedback_index"],
        })]

    def _tx_append_response(self, state, sender, args, header):
        client = args["client"].lower()
        self._feedback_entry(state, args["agent_id"], client, args["feedback_index"])
        return None, [(EventKind.RESPONSE_APPENDED, {
            "agent_id": args["agent_id"],
            "client": client,
            "feedback_index": args["feedback_index"],
            "responder": sender,
            "response_uri": args["response_uri"],
            "response_hash": args["response_hash"],
        })]

    # ── Reads ────────────────────────────────────────────────────────

    def _read(self, method: str) -> None:
        self._maybe_fail(method)

    def get_block(self, number: int) -> Optional[BlockHeader]:
        self._read("get_block")
        if 0 <= number < len(self._blocks):
            return self._blocks[number].header
        return None

    def get_logs(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        self._read("get_logs")
        logs: List[Dict[str, Any]] = []
        for block in self._blocks[max(from_block, 0):to_block + 1]:
            logs.extend(copy.deepcopy(block.logs))
        return logs

    def inject_log(self, block_number: int, raw: Dict[str, Any]) -> None:
        """Append a raw (possibly malformed) log to an existing block."""
        block = self._blocks[block_number]
        raw = dict(raw)
        raw.setdefault("block_number", block.header.number)
        raw.setdefault("block_hash", block.header.hash)
        raw.setdefault("log_index", len(block.logs))
        block.logs.append(raw)

    async def wait_for_head(self, after: int, timeout: float) -> Optional[BlockHeader]:
        if self.head.number > after:
            return self.head
        waiter = self._head_changed
        try:
            await asyncio.wait_for(waiter.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return self.head

    def agent_state(self, agent_id: int) -> Optional[Dict[str, Any]]:
        agent = self._state.agents.get(agent_id)
        return copy.deepcopy(agent) if agent else None

    def validation_status(self, request_hash: str) -> Dict[str, Any]:
        request = self._state.requests.get(request_hash)
        if request is None:
            raise RejectedWriteError("unknown validation request", reason="unknown_request")
        response = request["response"] or {}
        return {
            "request_hash": request_hash,
            "validator": request["validator"],
            "agent_id": request["agent_id"],
            "status": "responded" if request["response"] else "pending",
            "score": response.get("score"),
            "response_hash": response.get("response_hash", ""),
            "tag": response.get("tag", ""),
        }

    def feedback_count(self, agent_id: int, client: str) -> int:
        return len(self._state.feedback.get((agent_id, client.lower()), []))


class LocalLedgerClient:
    """IChainClient bound to one sender on a LocalLedger."""

    def __init__(self, ledger: LocalLedger, address: str) -> None:
        self._ledger = ledger
        self._address = address

    @property
    def account(self) -> str:
        return self._address

    @property
    def ledger(self) -> LocalLedger:
        return self._ledger

    async def get_block_number(self) -> int:
        self._ledger._read("get_block_number")
        return self._ledger.head.number

    async def get_block(self, number: int) -> Optional[BlockHeader]:
        return self._ledger.get_block(number)

    async def get_logs(self, from_block: int, to_block: int) -> List[Dict[str, Any]]:
        return self._ledger.get_logs(from_block, to_block)

    async def subscribe(self, poll_interval: float = 2.0) -> AsyncIterator[BlockHeader]:
        last = self._ledger.head.number
        while True:
            head = await self._ledger.wait_for_head(last, poll_interval)
            if head is not None and head.number != last:
                last = head.number
                yield head

    async def register(self, token_uri: str, metadata: Sequence[Tuple[str, bytes]] = ()) -> WriteReceipt:
        return self._ledger._submit(self._address, "register", {
            "token_uri": token_uri,
            "metadata": [[k, bytes(v).hex()] for k, v in metadata],
        })

    async def set_metadata(self, agent_id: int, key: str, value: bytes) -> WriteReceipt:
        return self._ledger._submit(self._address, "set_metadata", {
            "agent_id": agent_id, "key": key, "value": bytes(value).hex(),
        })

    async def token_uri(self, agent_id: int) -> str:
        self._ledger._read("token_uri")
        agent = self._ledger.agent_state(agent_id)
        if agent is None:
            raise RejectedWriteError(f"agent {agent_id} does not exist", reason="unknown_agent")
        return agent["token_uri"]

    async def get_metadata(self, agent_id: int, key: str) -> bytes:
        self._ledger._read("get_metadata")
        agent = self._ledger.agent_state(agent_id)
        if agent is None:
            raise RejectedWriteError(f"agent {agent_id} does not exist", reason="unknown_agent")
        return agent["metadata"].get(key, b"")

    async def validation_request(
        self, validator: str, agent_id: int, request_uri: str, content_hash: str
    ) -> WriteReceipt:
        return self._ledger._submit(self._address, "validation_request", {
            "validator": validator.lower(),
            "agent_id": agent_id,
            "request_uri": request_uri,
            "content_hash": content_hash,
        })

    async def validation_response(
        self, request_hash: str, score: int, response_uri: str, response_hash: str, tag: str
    ) -> WriteReceipt:
        return self._ledger._submit(self._address, "validation_response", {
            "request_hash": request_hash,
            "score": score,
            "response_uri": response_uri,
            "response_hash": response_hash,
            "tag": tag,
        })

    async def get_validation_status(self, request_hash: str) -> Dict[str, Any]:
        self._ledger._read("get_validation_status")
        return self._ledger.validation_status(request_hash)

    async def give_feedback(
        self,
        agent_id: int,
        score: int,
        tag1: str,
        tag2: str,
        file_uri: str,
        file_hash: str,
        credential: Dict[str, Any],
    ) -> WriteReceipt:
        return self._ledger._submit(self._address, "give_feedback", {
            "agent_id": agent_id,
            "score": score,
            "tag1": tag1,
            "tag2": tag2,
            "file_uri": file_uri,
            "file_hash": file_hash,
            "credential": dict(credential),
        })

    async def revoke_feedback(self, agent_id: int, feedback_index: int) -> WriteReceipt:
        return self._ledger._submit(self._address, "revoke_feedback", {
            "agent_id": agent_id, "feedback_index": feedback_index,
        })

    async def append_response(
        self, agent_id: int, client: str, feedback_index: int, response_uri: str, response_hash: str
    ) -> WriteReceipt:
        return self._ledger._submit(self._address, "append_response", {
            "agent_id": agent_id,
            "client": client.lower(),
            "feedback_index": feedback_index,
            "response_uri": response_uri,
            "response_hash": response_hash,
        })
