"""
Task Orchestrator.

Drives each task through:

    created -> validation_requested -> validation_collecting
            -> validation_decided{pass|fail} -> feedback_submitted -> closed

plus the absorbing ``failed`` state. Every step reads the read model and the
task's persisted effects before writing, so ``advance()`` can be re-run from
any persisted state after a restart without duplicating chain writes. Writes
are never applied optimistically: the next state that depends on a write
waits until the indexer has projected it.

Error policy:
- RejectedWriteError, StaleAuthorization, InvalidCredentialError -> failed
- TransientChainError (retry budget exhausted), EvidenceError -> stay, retry
  on the next advance
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from agentledger.audit.trail import AuditStatus
from agentledger.chain.identifiers import canonical_json, derive_request_hash
from agentledger.exceptions import (
    EvidenceError,
    InvalidCredentialError,
    LedgerException,
    RejectedWriteError,
    StaleAuthorization,
    TransientChainError,
)
from agentledger.indexer.models import ValidationResponseView
from agentledger.interfaces.chain import IChainClient
from agentledger.interfaces.evidence import IEvidenceGateway, StoredEvidence
from agentledger.interfaces.read_model import IReadModel
from agentledger.orchestration.notifications import Outcome, OutcomeRouter
from agentledger.orchestration.task_store import TaskRecord, TaskState, TaskStore
from agentledger.orchestration.writer import ChainWriter
from agentledger.reputation.rubric import TaskOutcome
from agentledger.reputation.scorer import ReputationScorer
from agentledger.validation.aggregator import AggregationDecision, AggregationPolicy, aggregate

logger = logging.getLogger(__name__)

# Errors that end a task.
TERMINAL_ERRORS = (RejectedWriteError, StaleAuthorization, InvalidCredentialError)
# Errors that leave a task where it is until the next advance.
DEFERRABLE_ERRORS = (TransientChainError, EvidenceError)


# Response documents come from validators; a bad field is ignored, never fatal.

def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    raise ValueError(f"expected a boolean, got {value!r}")


def _as_percent(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected a number, got {value!r}")
    if not 0.0 <= value <= 100.0:
        raise ValueError(f"percentage out of range: {value!r}")
    return float(value)


def _as_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"expected a non-negative integer, got {value!r}")
    return value


def _as_text(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected a string, got {value!r}")
    return value


def _field(document: Dict[str, Any], name: str, parse: Callable[[Any], Any], default: Any) -> Any:
    value = document.get(name)
    if value is None:
        return default
    try:
        return parse(value)
    except ValueError as exc:
        logger.warning("Ignoring response field %s: %s", name, exc)
        return default


class TaskOrchestrator:
    """Per-task state machine over the read model and the chain writer."""

    def __init__(
        self,
        requester: IChainClient,
        read_model: IReadModel,
        evidence: IEvidenceGateway,
        store: TaskStore,
        writer: ChainWriter,
        scorer: ReputationScorer,
        policy: AggregationPolicy,
        validators: Sequence[str] = (),
        router: Optional[OutcomeRouter] = None,
        poll_interval: float = 1.0,
        max_concurrent_tasks: int = 32,
        clock: Callable[[], float] = time.time,
        confirmations: int = 0,
    ):
        self._requester = requester
        self._read_model = read_model
        self._evidence = evidence
        self._store = store
        self._writer = writer
        self._scorer = scorer
        self.policy = policy
        self.validators = [v.lower() for v in validators]
        self.router = router or OutcomeRouter()
        self.poll_interval = poll_interval
        self.max_concurrent_tasks = max_concurrent_tasks
        self._clock = clock
        self.confirmations = confirmations

        self._issued_requests: set = set()
        # (agent_id, client) -> [lock, holders]; dropped once nobody waits on it.
        self._pair_locks: Dict[Tuple[int, str], List[Any]] = {}

    @property
    def store(self) -> TaskStore:
        return self._store

    # ── Submission ───────────────────────────────────────────────────

    def submit_task(
        self,
        task_id: str,
        agent_id: int,
        artifact_uri: str,
        validators: Optional[Sequence[str]] = None,
    ) -> TaskRecord:
        """Create a task row (idempotent on task_id)."""
        chosen = [v.lower() for v in (validators or self.validators)]
        if not chosen:
            raise ValueError("at least one validator is required")
        record = TaskRecord(
            task_id=task_id,
            agent_id=agent_id,
            artifact_uri=artifact_uri,
            validators=list(dict.fromkeys(chosen)),
        )
        created = self._store.create(record)
        logger.info("Task %s submitted for agent %s (%d validators)", task_id, agent_id, len(chosen))
        return created

    # ── Driving ──────────────────────────────────────────────────────

    async def advance(self, task_id: str) -> TaskRecord:
        """Make as much progress as the read model currently allows."""
        record = self._store.get(task_id)
        while not record.state.terminal:
            before = record.state
            try:
                record = await self._step(record)
            except TERMINAL_ERRORS as exc:
                return await self._fail(record, exc)
            except DEFERRABLE_ERRORS as exc:
                logger.warning(
                    "Task %s deferred in %s: %s", task_id, record.state.value, exc.message
                )
                return self._store.get(task_id)
            if record.state == before:
                break
        return record

    async def drive(self, task_id: str, stop_event: Optional[asyncio.Event] = None) -> TaskRecord:
        """Advance until terminal (or until ``stop_event`` is set)."""
        while True:
            record = await self.advance(task_id)
            if record.state.terminal or (stop_event is not None and stop_event.is_set()):
                return record
            await asyncio.sleep(self.poll_interval)

    async def resume(self, stop_event: Optional[asyncio.Event] = None) -> List[TaskRecord]:
        """
        Reload every non-terminal task and drive them concurrently.

        Without ``stop_event`` this drives the tasks active right now to a
        terminal state. With it, the store is rescanned every poll interval so
        tasks submitted later are picked up too, until the event is set.
        """
        semaphore = asyncio.Semaphore(self.max_concurrent_tasks)
        running: Dict[str, asyncio.Task] = {}
        finished: List[TaskRecord] = []

        async def limited(task_id: str) -> TaskRecord:
            async with semaphore:
                return await self.drive(task_id, stop_event)

        def start_new() -> None:
            for record in self._store.list_active():
                if record.task_id not in running:
                    running[record.task_id] = asyncio.create_task(limited(record.task_id))

        start_new()
        logger.info("Resuming %d active tasks", len(running))
        try:
            while stop_event is not None and not stop_event.is_set():
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
                for task_id, task in list(running.items()):
                    if task.done():
                        finished.append(task.result())
                        del running[task_id]
                if not stop_event.is_set():
                    start_new()
            finished.extend(await asyncio.gather(*running.values()))
        finally:
            for task in running.values():
                task.cancel()
        return finished

    async def _step(self, record: TaskRecord) -> TaskRecord:
        if record.state == TaskState.CREATED:
            return await self._request_validation(record)
        if record.state == TaskState.VALIDATION_REQUESTED:
            return self._store.transition(
                record.task_id,
                TaskState.VALIDATION_COLLECTING,
                collecting_since=record.collecting_since or self._clock(),
            )
        if record.state == TaskState.VALIDATION_COLLECTING:
            return await self._collect(record)
        if record.state == TaskState.VALIDATION_DECIDED:
            return await self._submit_feedback(record)
        if record.state == TaskState.FEEDBACK_SUBMITTED:
            return await self._close(record)
        return record

    # ── created -> validation_requested ──────────────────────────────

    def _request_document(self, record: TaskRecord) -> bytes:
        return canonical_json({
            "type": "validation-request",
            "task_id": record.task_id,
            "agent_id": record.agent_id,
            "artifact_uri": record.artifact_uri,
        })

    async def _request_exists(self, request_hash: str) -> bool:
        if request_hash in self._issued_requests:
            return True
        if self._read_model.get_validation_request(request_hash) is not None:
            return True
        try:
            await self._requester.get_validation_status(request_hash)
        except RejectedWriteError:
            return False
        return True

    async def _request_validation(self, record: TaskRecord) -> TaskRecord:
        stored = await self._evidence.store(self._request_document(record))
        # Identifiers are deterministic, persist them before any write.
        request_hashes = {
            validator: derive_request_hash(validator, record.agent_id, stored.content_hash)
            for validator in record.validators
        }
        record = self._store.update(
            record.task_id,
            request_uri=stored.uri,
            request_content_hash=stored.content_hash,
            request_hashes=request_hashes,
        )

        for validator, request_hash in request_hashes.items():
            if await self._request_exists(request_hash):
                logger.debug("Task %s: request %s already on chain", record.task_id, request_hash[:10])
                continue
            receipt = await self._writer.write(
                "validation_request",
                lambda v=validator: self._requester.validation_request(
                    v, record.agent_id, stored.uri, stored.content_hash
                ),
                task_id=record.task_id,
                details={"validator": validator, "agent_id": record.agent_id, "request_hash": request_hash},
            )
            if receipt.value and receipt.value != request_hash:
                logger.warning(
                    "Task %s: chain request id %s differs from derived %s",
                    record.task_id, receipt.value, request_hash,
                )
                request_hashes[validator] = receipt.value
                self._store.update(record.task_id, request_hashes=request_hashes)
            self._issued_requests.add(request_hashes[validator])

        record = self._store.transition(record.task_id, TaskState.VALIDATION_REQUESTED)
        # Past CREATED a task never issues requests again.
        self._issued_requests.difference_update(request_hashes.values())
        return record

    # ── validation_collecting -> validation_decided ─────────────────

    def evaluate(self, record: TaskRecord) -> AggregationDecision:
        responses = self._read_model.get_responses(record.request_hashes.values())
        return aggregate(
            record.validators,
            responses.values(),
            self.policy,
            started_at=record.collecting_since or self._clock(),
            now=self._clock(),
        )

    async def _collect(self, record: TaskRecord) -> TaskRecord:
        decision = self.evaluate(record)
        if not decision.ready:
            return record

        decision_data = {
            "passed": decision.passed,
            "score": decision.score,
            "responded": list(decision.responded),
            "missing": list(decision.missing),
            "forced": decision.forced,
            "reason": decision.reason,
        }
        if not self._store.set_verdict(record.task_id, decision.verdict, decision_data):
            logger.info("Task %s: verdict already recorded, keeping it", record.task_id)
        record = self._store.transition(record.task_id, TaskState.VALIDATION_DECIDED)
        logger.info(
            "Task %s decided %s (score %.1f, %s%s)",
            record.task_id, record.verdict, decision.score, decision.reason,
            ", forced" if decision.forced else "",
        )
        await self.router.notify(Outcome.VALIDATION_DECIDED, {
            "task_id": record.task_id,
            "agent_id": record.agent_id,
            "verdict": record.verdict,
            "decision": record.decision,
        })
        return record

    # ── validation_decided -> feedback_submitted ─────────────────────

    async def _response_evidence(self, response: ValidationResponseView) -> Dict[str, Any]:
        """Best-effort rubric inputs from a validator's response document."""
        if not response.response_uri:
            return {}
        try:
            data = await self._evidence.fetch_verified(response.response_uri, response.response_hash)
            document = json.loads(data)
        except (EvidenceError, ValueError) as exc:
            logger.info("Response evidence %s unusable: %s", response.response_uri, exc)
            return {}
        return document if isinstance(document, dict) else {}

    async def build_outcome(self, record: TaskRecord) -> TaskOutcome:
        responses = self._read_model.get_responses(record.request_hashes.values())
        documents = [await self._response_evidence(r) for r in responses.values()]

        tests_passed = all(_field(d, "tests_passed", _as_bool, True) for d in documents)
        coverages = [_field(d, "coverage_pct", _as_percent, None) for d in documents]
        coverages = [c for c in coverages if c is not None]
        comments = sum(_field(d, "review_comment_count", _as_count, 0) for d in documents)
        changes_requested = any(_field(d, "changes_requested", _as_bool, False) for d in documents)
        causes = [c for c in (_field(d, "rejection_cause", _as_text, None) for d in documents) if c]

        passed = record.verdict == "pass"
        cause = None
        if not passed:
            cause = causes[0] if causes else ("tests_failed" if not tests_passed else "validation_failed")
        return TaskOutcome(
            passed=passed,
            tests_passed=tests_passed,
            coverage_pct=min(coverages) if coverages else None,
            review_comment_count=comments,
            changes_requested=changes_requested,
            rejection_cause=cause,
        )

    def _confirmed_feedback(self, task_id: str) -> Tuple[Optional[int], bool]:
        """(index confirmed by a prior run, whether an earlier attempt may have landed)."""
        entries = self._writer.audit.list_entries(task_id=task_id, operation="give_feedback")
        attempts = 0
        outcomes = 0
        uncertain = False
        for entry in entries:
            status = entry["status"]
            if status == AuditStatus.CONFIRMED.value:
                return entry["details"].get("value"), False
            if status == AuditStatus.ATTEMPTED.value:
                attempts += 1
            elif status in (AuditStatus.REJECTED.value, AuditStatus.EXHAUSTED.value):
                outcomes += 1
            # A timed-out send can still be mined.
            if status in (AuditStatus.TRANSIENT_FAILURE.value, AuditStatus.EXHAUSTED.value):
                uncertain = True
        return None, uncertain or attempts > outcomes

    async def _feedback_submitted(self, record: TaskRecord, feedback_index: int) -> TaskRecord:
        merge_unblocked = record.verdict == "pass"
        record = self._store.transition(
            record.task_id,
            TaskState.FEEDBACK_SUBMITTED,
            feedback_index=feedback_index,
            merge_unblocked=merge_unblocked,
        )
        await self.router.notify(Outcome.FEEDBACK_SUBMITTED, {
            "task_id": record.task_id,
            "agent_id": record.agent_id,
            "verdict": record.verdict,
            "score": record.feedback_score,
            "feedback_index": feedback_index,
            "merge_unblocked": merge_unblocked,
        })
        return record

    @asynccontextmanager
    async def _pair_lock(self, pair: Tuple[int, str]):
        """Serialize feedback index allocation per (agent, client)."""
        entry = self._pair_locks.setdefault(pair, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._pair_locks[pair]

    async def _submit_feedback(self, record: TaskRecord) -> TaskRecord:
        client = self._scorer.client_address
        if record.feedback_hash is None:
            outcome = await self.build_outcome(record)
            score = self._scorer.compute_score(outcome)
            stored = await self._scorer.store_evidence(
                record.task_id, record.agent_id, record.verdict, outcome, score
            )
            record = self._store.update(
                record.task_id,
                feedback_client=client,
                feedback_score=score,
                feedback_uri=stored.uri,
                feedback_hash=stored.content_hash,
            )

        pair = (record.agent_id, client)
        async with self._pair_lock(pair):
            indexed = self._read_model.find_feedback_by_hash(record.agent_id, client, record.feedback_hash)
            if indexed is not None:
                return await self._feedback_submitted(record, indexed.feedback_index)

            confirmed, unresolved = self._confirmed_feedback(record.task_id)
            if confirmed is not None:
                logger.info("Task %s: feedback already confirmed at index %s", record.task_id, confirmed)
                return await self._feedback_submitted(record, int(confirmed))
            if unresolved and not await self._read_model_caught_up():
                # A prior run may have landed the write; wait until the
                # projection can tell.
                logger.info("Task %s: unresolved feedback attempt, waiting for indexer", record.task_id)
                return record

            next_index = self._read_model.next_feedback_index(record.agent_id, client)
            allocated = self._store.max_allocated_index(record.agent_id, client)
            if allocated is not None:
                next_index = max(next_index, allocated + 1)

            receipt = await self._scorer.submit(
                record.agent_id,
                record.feedback_score,
                record.verdict,
                StoredEvidence(uri=record.feedback_uri, content_hash=record.feedback_hash),
                next_index,
                task_id=record.task_id,
                prior_unresolved=unresolved,
            )
            feedback_index = int(receipt.value) if receipt.value is not None else next_index
            return await self._feedback_submitted(record, feedback_index)

    async def _read_model_caught_up(self) -> bool:
        checkpoint = self._read_model.get_checkpoint()
        head = await self._requester.get_block_number()
        return checkpoint is not None and checkpoint.block_number >= head - self.confirmations

    # ── feedback_submitted -> closed ─────────────────────────────────

    async def _close(self, record: TaskRecord) -> TaskRecord:
        indexed = self._read_model.find_feedback_by_hash(
            record.agent_id, record.feedback_client, record.feedback_hash
        )
        if indexed is None:
            return record
        record = self._store.transition(record.task_id, TaskState.CLOSED, feedback_index=indexed.feedback_index)
        await self.router.notify(Outcome.TASK_CLOSED, {
            "task_id": record.task_id,
            "agent_id": record.agent_id,
            "verdict": record.verdict,
            "feedback_index": indexed.feedback_index,
            "score": indexed.score,
        })
        return record

    # ── failure ──────────────────────────────────────────────────────

    async def _fail(self, record: TaskRecord, exc: LedgerException) -> TaskRecord:
        logger.error("Task %s failed in %s: %s", record.task_id, record.state.value, exc.message)
        record = self._store.transition(
            record.task_id,
            TaskState.FAILED,
            error_kind=exc.kind,
            error_message=exc.message,
        )
        await self.router.notify(Outcome.TASK_FAILED, {
            "task_id": record.task_id,
            "agent_id": record.agent_id,
            "error_kind": exc.kind,
            "error": exc.message,
        })
        return record
