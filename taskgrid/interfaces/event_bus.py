"""Interface for the lifecycle event stream.

Decouples observers (loggers, dashboards, tests) from the scheduler by
letting them consume published events instead of polling task state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Optional, Protocol


class EventType(Enum):
    """Lifecycle events emitted by the orchestrator."""
    # Task lifecycle
    TASK_READY = "task_ready"
    TASK_DISPATCHED = "task_dispatched"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_CANCELLED = "task_cancelled"
    TASK_RETRY_SCHEDULED = "task_retry_scheduled"
    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_CANCELLED = "run_cancelled"


@dataclass(frozen=True)
class LifecycleEvent:
    """A single published event."""

    event_type: EventType
    run_id: str
    task_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "task_id": self.task_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": dict(self.payload),
        }


EventHandler = Callable[[LifecycleEvent], None]


class IEventChannel(Protocol):
    """Single-writer, many-reader event channel."""

    def publish(self, event: LifecycleEvent) -> None:
        """Publish an event without blocking the writer."""
        ...

    def add_handler(
        self,
        handler: EventHandler,
        event_types: Optional[Iterable[EventType]] = None,
    ) -> str:
        """Register a synchronous handler.

        Returns:
            Handler ID for later removal
        """
        ...

    def remove_handler(self, handler_id: str) -> None:
        ...
