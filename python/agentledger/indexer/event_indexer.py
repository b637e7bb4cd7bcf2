"""
Event Indexer - the only writer of the read model.

Pulls confirmed block ranges from the chain client, normalizes their events
and applies each block atomically to the SqliteReadModel. Reorgs are detected
by parent-hash mismatch against the stored block window and resolved by
rewinding to the common ancestor and replaying forward.

Features:
- Resume strictly from the durable checkpoint
- Confirmation depth, batching and prefetch of the next range
- Malformed events quarantined, never fatal
- Chain client failures retried with exponential backoff (degraded state)
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from agentledger.chain.events import BlockBatch, BlockHeader, normalize_event
from agentledger.exceptions import (
    MalformedEvent,
    ReorgDetected,
    RetryConfig,
    TransientChainError,
    is_transient,
    retry_with_backoff,
)
from agentledger.indexer.store import SqliteReadModel
from agentledger.interfaces.chain import IChainClient
from agentledger.logging_utils import track_performance

logger = logging.getLogger(__name__)


class EventIndexer:
    """Single sequential consumer of the registry event stream."""

    def __init__(
        self,
        client: IChainClient,
        store: SqliteReadModel,
        start_block: int = 0,
        confirmations: int = 0,
        batch_size: int = 100,
        max_reorg_depth: int = 128,
        poll_interval: float = 2.0,
        retry_config: Optional[RetryConfig] = None,
    ):
        self._client = client
        self._store = store
        self.start_block = start_block
        self.confirmations = confirmations
        self.batch_size = batch_size
        self.max_reorg_depth = max_reorg_depth
        self.poll_interval = poll_interval
        self.retry_config = retry_config or RetryConfig(max_retries=5, initial_delay_ms=200, max_delay_ms=15000)

        self.degraded = False
        self.last_error: Optional[str] = None
        self.head_seen: Optional[int] = None
        self.reorgs = 0
        self.rebuilds = 0

    @property
    def store(self) -> SqliteReadModel:
        return self._store

    # ------------------------------------------------------------------
    # Chain access
    # ------------------------------------------------------------------

    def _on_retry(self, attempt: int, error: Exception, delay: float) -> None:
        self.degraded = True
        self.last_error = str(error)

    async def _call(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await retry_with_backoff(
            fn, self.retry_config, should_retry=is_transient, on_retry=self._on_retry
        )

    async def _fetch_range_once(self, start: int, end: int) -> List[BlockBatch]:
        headers: List[Optional[BlockHeader]] = await asyncio.gather(
            *(self._client.get_block(n) for n in range(start, end + 1))
        )
        for number, header in zip(range(start, end + 1), headers):
            if header is None:
                raise TransientChainError(f"Block {number} not available yet")
        for prev, header in zip(headers, headers[1:]):
            if header.parent_hash != prev.hash:
                raise TransientChainError(f"Chain changed while fetching block {header.number}")

        raw_logs = await self._client.get_logs(start, end)
        by_number: Dict[int, BlockHeader] = {h.number: h for h in headers}
        batches: Dict[int, BlockBatch] = {h.number: BlockBatch(header=h) for h in headers}
        grouped: Dict[int, List[Any]] = defaultdict(list)

        for raw in raw_logs:
            try:
                event = normalize_event(raw)
            except MalformedEvent as exc:
                number = self._raw_block_number(raw, start)
                if number not in batches:
                    # Unusable block number; keep it with the first block of the range.
                    number = start
                batches[number].malformed.append(exc)
                logger.warning("Malformed event in block %d: %s", number, exc.message)
                continue
            header = by_number.get(event.block_number)
            if header is None:
                raise TransientChainError(
                    f"Log for block {event.block_number} outside requested range {start}-{end}"
                )
            if event.block_hash != header.hash:
                raise TransientChainError(
                    f"Log block hash {event.block_hash[:10]} disagrees with header "
                    f"{header.hash[:10]} at block {header.number}"
                )
            grouped[event.block_number].append(event)

        for number, events in grouped.items():
            batches[number].events = sorted(events, key=lambda e: e.log_index)
        return [batches[n] for n in range(start, end + 1)]

    @staticmethod
    def _raw_block_number(raw: Any, default: int) -> int:
        if isinstance(raw, dict):
            try:
                value = raw.get("block_number")
                return int(value, 0) if isinstance(value, str) else int(value)
            except (TypeError, ValueError):
                pass
        return default

    async def _fetch_range(self, start: int, end: int) -> List[BlockBatch]:
        batches = await self._call(lambda: self._fetch_range_once(start, end))
        for batch in batches:
            if batch.header.number < start or batch.header.number > end:
                raise TransientChainError(f"Unexpected block {batch.header.number} in range")
        return batches

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def _next_block(self) -> int:
        checkpoint = self._store.get_checkpoint()
        if checkpoint is None:
            return self.start_block
        return max(checkpoint.block_number + 1, self.start_block)

    async def _verify_checkpoint(self, head: int) -> None:
        """Detect a reorg that replaced the checkpoint block itself."""
        checkpoint = self._store.get_checkpoint()
        if checkpoint is None or not checkpoint.block_hash:
            return
        if checkpoint.block_number > head:
            logger.warning(
                "Chain head %d is below checkpoint %d; treating as reorg", head, checkpoint.block_number
            )
            await self._handle_reorg(head)
            return
        header = await self._call(lambda: self._client.get_block(checkpoint.block_number))
        if header is not None and header.hash != checkpoint.block_hash:
            logger.warning(
                "Checkpoint block %d replaced (%s -> %s)",
                checkpoint.block_number, checkpoint.block_hash[:10], header.hash[:10],
            )
            await self._handle_reorg(checkpoint.block_number)

    @track_performance
    async def sync_once(self) -> int:
        """Apply every confirmed block since the checkpoint. Returns blocks applied."""
        head = await self._call(self._client.get_block_number)
        self.head_seen = head
        target = head - self.confirmations
        await self._verify_checkpoint(head)

        applied = 0
        next_block = self._next_block()
        prefetch: Optional[asyncio.Task] = None
        prefetch_range: Optional[Tuple[int, int]] = None
        try:
            while next_block <= target:
                end = min(next_block + self.batch_size - 1, target)
                if prefetch is not None and prefetch_range == (next_block, end):
                    batches = await prefetch
                else:
                    self._discard(prefetch)
                    batches = await self._fetch_range(next_block, end)
                prefetch, prefetch_range = None, None

                if end < target:
                    following = (end + 1, min(end + self.batch_size, target))
                    prefetch = asyncio.ensure_future(self._fetch_range(*following))
                    prefetch_range = following

                try:
                    self._apply_range(batches)
                except ReorgDetected as exc:
                    logger.warning("%s", exc.message)
                    self._discard(prefetch)
                    prefetch, prefetch_range = None, None
                    await self._handle_reorg(exc.block_number - 1)
                    next_block = self._next_block()
                    continue

                applied += len(batches)
                next_block = end + 1
        finally:
            self._discard(prefetch)

        if applied:
            logger.info("Indexed %d blocks (head %d, target %d)", applied, head, target)
        self.degraded = False
        self.last_error = None
        return applied

    @staticmethod
    def _discard(task: Optional[asyncio.Task]) -> None:
        if task is None:
            return
        if task.done():
            if not task.cancelled():
                task.exception()
        else:
            task.cancel()

    def _apply_range(self, batches: List[BlockBatch]) -> None:
        if not batches:
            return
        expected_parent = self._store.get_block_hash(batches[0].header.number - 1)
        for batch in batches:
            header = batch.header
            if expected_parent and header.parent_hash != expected_parent:
                raise ReorgDetected(header.number, expected_parent, header.parent_hash)
            self._store.apply_block(batch)
            expected_parent = header.hash

    # ------------------------------------------------------------------
    # Reorg handling
    # ------------------------------------------------------------------

    async def _handle_reorg(self, from_block: int) -> None:
        """Walk back from ``from_block`` to the common ancestor and rewind."""
        self.reorgs += 1
        ancestor: Optional[int] = None
        lowest = max(from_block - self.max_reorg_depth + 1, 0)
        for number in range(from_block, lowest - 1, -1):
            stored = self._store.get_block_hash(number)
            if stored is None:
                break
            canonical = await self._call(lambda n=number: self._client.get_block(n))
            if canonical is not None and canonical.hash == stored:
                ancestor = number
                break

        if ancestor is None:
            logger.error(
                "No common ancestor within %d blocks of %d; rebuilding from block %d",
                self.max_reorg_depth, from_block, self.start_block,
            )
            self.rebuilds += 1
            self._store.reset()
            return

        logger.warning("Reorg: common ancestor at block %d, rewinding", ancestor)
        self._store.rewind_to(ancestor)

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    async def _sync_guarded(self) -> None:
        try:
            await self.sync_once()
        except TransientChainError as exc:
            self.degraded = True
            self.last_error = exc.message
            logger.error("Indexer degraded, chain unreachable: %s", exc.message)

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Sync on every new head until ``stop_event`` is set.

        The head subscription wakes the loop early; ``poll_interval`` is the
        fallback when the subscription is quiet or broken.
        """
        stop = stop_event or asyncio.Event()
        heads = self._client.subscribe(self.poll_interval)
        head_task: Optional[asyncio.Future] = None
        stop_task = asyncio.ensure_future(stop.wait())
        logger.info("Indexer started at block %d", self._next_block())
        try:
            while not stop.is_set():
                await self._sync_guarded()
                if head_task is None or head_task.done():
                    head_task = asyncio.ensure_future(heads.__anext__())
                done, _ = await asyncio.wait(
                    {head_task, stop_task},
                    timeout=self.poll_interval,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if head_task in done and head_task.exception() is not None:
                    logger.warning("Head subscription ended: %r; resubscribing", head_task.exception())
                    head_task = None
                    heads = self._client.subscribe(self.poll_interval)
        finally:
            for task in (head_task, stop_task):
                if task is not None and not task.done():
                    task.cancel()
                    try:
                        await task
                    except (asyncio.CancelledError, StopAsyncIteration):
                        pass
            await heads.aclose()
            logger.info("Indexer stopped at %s", self._store.get_checkpoint())

    def status(self) -> Dict[str, Any]:
        checkpoint = self._store.get_checkpoint()
        return {
            "checkpoint": checkpoint.block_number if checkpoint else None,
            "checkpoint_hash": checkpoint.block_hash if checkpoint else None,
            "head": self.head_seen,
            "degraded": self.degraded,
            "last_error": self.last_error,
            "reorgs": self.reorgs,
        }
