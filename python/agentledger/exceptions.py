"""
Unified error system for agentledger.

One hierarchy rooted at LedgerException with:
- Consistent error context and metadata
- Transient vs. deterministic classification for chain writes
- Retry strategy with exponential backoff

Propagation policy:
- The indexer never surfaces per-event errors; MalformedEvent is quarantined
  and ReorgDetected is handled internally.
- The orchestrator surfaces only RejectedWriteError and StaleAuthorization as
  task failures. TransientChainError is retried.
"""

import asyncio
import logging
import random
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums & Constants
# ============================================================================

class ErrorSeverity(Enum):
    """How badly an error affects progress."""
    CRITICAL = "critical"      # Projection cannot make progress
    ERROR = "error"            # Operation failure, task impacted
    WARNING = "warning"        # Degraded operation
    INFO = "info"              # Informational, handled internally


class ErrorCategory(Enum):
    """Which collaborator or layer an error came from."""
    VALIDATION = "validation"           # Input or event validation failure
    AUTHORIZATION = "authorization"     # Credential refused or stale
    CHAIN = "chain"                     # Ledger collaborator error
    EVIDENCE = "evidence"               # Evidence storage error
    DATABASE = "database"               # Read model / task store failure
    NETWORK = "network"                 # Network connectivity error
    TIMEOUT = "timeout"                 # Operation timeout
    STATE = "state"                     # Illegal state transition
    INTERNAL = "internal"               # Internal system error


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Context attached to every LedgerException."""
    error_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.INTERNAL
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    is_recoverable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary (excludes stack trace)."""
        return {
            "error_id": self.error_id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "category": self.category.value,
            "message": self.message,
            "details": self.details,
            "is_recoverable": self.is_recoverable,
        }


@dataclass
class RetryConfig:
    """Backoff schedule for chain reads and writes."""
    max_retries: int = 3
    initial_delay_ms: int = 100
    max_delay_ms: int = 10000
    exponential_base: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """Seconds to wait before retry ``attempt + 1``."""
        delay = min(
            self.initial_delay_ms * (self.exponential_base ** attempt),
            self.max_delay_ms
        )

        if self.jitter:
            # up to 25% extra
            delay += delay * random.uniform(0, 0.25)

        return delay / 1000.0


# ============================================================================
# Exception Hierarchy
# ============================================================================

class LedgerException(Exception):
    """Base exception for all agentledger errors with rich context."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.INTERNAL,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        details: Optional[Dict[str, Any]] = None,
        is_recoverable: bool = True,
    ):
        self.message = message
        self.category = category
        self.severity = severity
        self.details = details or {}
        self.is_recoverable = is_recoverable
        self.context = ErrorContext(
            severity=severity,
            category=category,
            message=message,
            details=self.details,
            stack_trace=traceback.format_exc(),
            is_recoverable=is_recoverable,
        )
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"[{self.context.error_id}] {self.category.value}: {self.message}"

    @property
    def kind(self) -> str:
        """Stable snake_case name used in task rows and audit entries."""
        name = type(self).__name__
        out = []
        for i, ch in enumerate(name):
            if ch.isupper() and i:
                out.append("_")
            out.append(ch.lower())
        return "".join(out)

    def to_dict(self) -> Dict[str, Any]:
        data = self.context.to_dict()
        data["kind"] = self.kind
        return data


# ============================================================================
# Chain Errors
# ============================================================================

class ChainError(LedgerException):
    """Base ledger collaborator error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.CHAIN)
        super().__init__(message, **kwargs)


class TransientChainError(ChainError):
    """Network/timeout failure talking to the ledger. Retry with backoff."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.NETWORK)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("is_recoverable", True)
        super().__init__(message, **kwargs)


class RejectedWriteError(ChainError):
    """Deterministic on-chain rejection (bad signature, not authorized, ...).

    Never retried.
    """
    def __init__(self, message: str, reason: str = "rejected", **kwargs):
        kwargs.setdefault("is_recoverable", False)
        details = kwargs.setdefault("details", {})
        details.setdefault("reason", reason)
        self.reason = reason
        super().__init__(message, **kwargs)


class ReorgDetected(ChainError):
    """Parent hash mismatch between the new range and the checkpoint."""
    def __init__(self, block_number: int, expected_parent: str, actual_parent: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.INFO)
        kwargs.setdefault("details", {
            "block_number": block_number,
            "expected_parent": expected_parent,
            "actual_parent": actual_parent,
        })
        self.block_number = block_number
        self.expected_parent = expected_parent
        self.actual_parent = actual_parent
        super().__init__(
            f"Reorg detected at block {block_number}: "
            f"parent {actual_parent} != checkpoint {expected_parent}",
            **kwargs,
        )


class MalformedEvent(LedgerException):
    """Raw event could not be parsed. Quarantined, indexing continues."""
    def __init__(self, message: str, raw: Optional[Dict[str, Any]] = None, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        self.raw = raw or {}
        super().__init__(message, **kwargs)


# ============================================================================
# Authorization Errors
# ============================================================================

class StaleAuthorization(LedgerException):
    """Feedback credential expired or its index limit is already reached."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.AUTHORIZATION)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class InvalidCredentialError(LedgerException):
    """Credential is malformed or its signature does not verify."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.AUTHORIZATION)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Evidence Errors
# ============================================================================

class EvidenceError(LedgerException):
    """Base evidence gateway error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.EVIDENCE)
        super().__init__(message, **kwargs)


class EvidenceNotFoundError(EvidenceError):
    """No blob stored under the locator."""
    pass


class EvidenceIntegrityError(EvidenceError):
    """Fetched blob does not match the expected content hash."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Orchestration & Configuration Errors
# ============================================================================

class InvalidTransitionError(LedgerException):
    """Task state machine refused a transition."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.STATE)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class TaskNotFoundError(LedgerException):
    """No task with the given id."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.STATE)
        super().__init__(message, **kwargs)


class ConfigurationError(LedgerException):
    """Configuration value is invalid."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Retry
# ============================================================================

def is_transient(error: BaseException) -> bool:
    """True for errors worth retrying."""
    return isinstance(error, TransientChainError)


async def retry_with_backoff(
    fn: Callable,
    config: Optional[RetryConfig] = None,
    should_retry: Optional[Callable[[Exception], bool]] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
) -> Any:
    """
    Execute function with retry and exponential backoff.

    Args:
        fn: Async function to execute
        config: Retry configuration
        should_retry: Optional function to determine if error is retryable
        on_retry: Optional callback(attempt, error, delay) before sleeping

    Returns:
        Function result
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            if should_retry and not should_retry(e):
                raise

            if attempt >= config.max_retries:
                raise

            delay = config.get_delay(attempt)
            logger.warning(
                "Attempt %d failed, retrying in %.2fs: %s", attempt + 1, delay, e
            )
            if on_retry is not None:
                on_retry(attempt + 1, e, delay)
            await asyncio.sleep(delay)

    raise RuntimeError("retry loop exited without result")  # pragma: no cover


__all__ = [
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorContext",
    "RetryConfig",
    "LedgerException",
    "ChainError",
    "TransientChainError",
    "RejectedWriteError",
    "ReorgDetected",
    "MalformedEvent",
    "StaleAuthorization",
    "InvalidCredentialError",
    "EvidenceError",
    "EvidenceNotFoundError",
    "EvidenceIntegrityError",
    "InvalidTransitionError",
    "TaskNotFoundError",
    "ConfigurationError",
    "is_transient",
    "retry_with_backoff",
]
