"""OutcomeRouter: routes task outcome notifications to registered handlers.

The downstream merge/payment collaborator subscribes here. Handlers may be
sync or async; a failing handler is logged and never blocks the task.
"""

import inspect
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    VALIDATION_DECIDED = "validation_decided"
    FEEDBACK_SUBMITTED = "feedback_submitted"
    TASK_CLOSED = "task_closed"
    TASK_FAILED = "task_failed"


class OutcomeRouter:
    """Routes outcome notifications to registered handlers."""

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}
        self.history: List[Dict[str, Any]] = []

    def register_handler(self, outcome: str, handler: Callable) -> None:
        """Register a handler for an outcome type ("*" = every outcome)."""
        key = Outcome(outcome).value if outcome != "*" else "*"
        self._handlers.setdefault(key, []).append(handler)

    async def notify(self, outcome: Outcome, data: Dict[str, Any]) -> Dict[str, Any]:
        """Deliver one notification to its handlers."""
        notification_id = uuid.uuid4().hex[:12]
        outcome = Outcome(outcome)
        logger.info("Notify %s %s task=%s", notification_id, outcome.value, data.get("task_id"))

        payload = {"outcome": outcome.value, **data}
        handled_by = []
        for handler in self._handlers.get(outcome.value, []) + self._handlers.get("*", []):
            try:
                if inspect.iscoroutinefunction(handler):
                    await handler(payload)
                else:
                    handler(payload)
                handled_by.append(getattr(handler, "__name__", str(handler)))
            except Exception:
                logger.exception("Outcome handler failed for %s", outcome.value)

        record = {
            "notification_id": notification_id,
            "outcome": outcome.value,
            "task_id": data.get("task_id"),
            "handled_by": handled_by,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.history.append(record)
        return record
