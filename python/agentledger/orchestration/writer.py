"""Audited, retrying chain writes."""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from agentledger.audit.trail import AuditStatus, AuditTrail
from agentledger.exceptions import (
    LedgerException,
    RejectedWriteError,
    RetryConfig,
    TransientChainError,
    is_transient,
    retry_with_backoff,
)
from agentledger.interfaces.chain import WriteReceipt

logger = logging.getLogger(__name__)


class ChainWriter:
    """Issues one logical chain write with audit entries around it.

    Transient failures are retried with backoff up to the budget; a
    deterministic rejection is never retried.
    """

    def __init__(self, audit: AuditTrail, retry_config: Optional[RetryConfig] = None):
        self.audit = audit
        self.retry_config = retry_config or RetryConfig(max_retries=4, initial_delay_ms=200, max_delay_ms=15000)

    async def write(
        self,
        operation: str,
        fn: Callable[[], Awaitable[WriteReceipt]],
        task_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> WriteReceipt:
        details = details or {}
        self.audit.record(operation, AuditStatus.ATTEMPTED, task_id, details)

        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            self.audit.record(
                operation, AuditStatus.TRANSIENT_FAILURE, task_id,
                {**details, "attempt": attempt, "error": str(error), "retry_in": round(delay, 3)},
            )

        try:
            receipt = await retry_with_backoff(fn, self.retry_config, should_retry=is_transient, on_retry=on_retry)
        except RejectedWriteError as exc:
            self.audit.record(operation, AuditStatus.REJECTED, task_id, {**details, "reason": exc.reason, "error": exc.message})
            logger.error("%s rejected for task %s: %s", operation, task_id, exc.message)
            raise
        except TransientChainError as exc:
            self.audit.record(operation, AuditStatus.EXHAUSTED, task_id, {**details, "error": exc.message})
            logger.warning("%s retry budget exhausted for task %s: %s", operation, task_id, exc.message)
            raise
        except LedgerException as exc:
            self.audit.record(operation, AuditStatus.REJECTED, task_id, {**details, "reason": exc.kind, "error": exc.message})
            raise

        self.audit.record(operation, AuditStatus.CONFIRMED, task_id, {
            **details,
            "tx_hash": receipt.tx_hash,
            "block_number": receipt.block_number,
            "value": receipt.value,
        })
        return receipt
