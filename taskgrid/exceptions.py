"""
Unified error system for TaskGrid.

One hierarchy for every failure the engine can raise or record:
- Consistent error context and metadata (``ErrorContext``)
- ``ErrorKind`` attribution recorded on failed/cancelled tasks
- Retry configuration with exponential backoff
- Circuit breaker used to gate unhealthy workers
"""

import logging
import random
import traceback
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# Enums & Constants
# ============================================================================

class ErrorSeverity(Enum):
    """Error severity levels."""
    CRITICAL = "critical"      # Run cannot continue
    ERROR = "error"            # Task or operation failure
    WARNING = "warning"        # Degraded operation
    INFO = "info"              # Informational, no action needed


class ErrorCategory(Enum):
    """Error categories for classification."""
    VALIDATION = "validation"           # Graph / input validation failure
    BUDGET = "budget"                   # Cost ceiling reached
    TIMEOUT = "timeout"                 # Dispatch exceeded its timeout
    RESOURCE = "resource"               # Worker capacity / availability
    SCHEDULING = "scheduling"           # Control loop cannot progress
    EXECUTION = "execution"             # Worker reported a failure
    INTERNAL = "internal"               # Invariant violation


class ErrorKind(str, Enum):
    """Task-level attribution recorded in graph snapshots."""
    EXECUTION = "execution"
    TIMEOUT = "timeout"
    BUDGET_EXCEEDED = "budget_exceeded"
    STARVATION_TIMEOUT = "starvation_timeout"
    DEPENDENCY_FAILED = "dependency_failed"
    CANCELLED = "cancelled"
    DEADLOCK = "deadlock"
    ILLEGAL_TRANSITION = "illegal_transition"


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"          # Normal operation
    OPEN = "open"              # Failing, rejecting dispatches
    HALF_OPEN = "half_open"    # Testing recovery


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class ErrorContext:
    """Rich error context with metadata."""
    error_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))
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
    """Retry strategy configuration."""
    max_retries: int = 3
    initial_delay_ms: int = 100
    max_delay_ms: int = 10000
    exponential_base: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """Calculate backoff delay in seconds for a zero-based attempt number."""
        delay = min(
            self.initial_delay_ms * (self.exponential_base ** attempt),
            self.max_delay_ms
        )

        if self.jitter:
            # Add random jitter (0-25% of delay)
            jitter_amount = delay * random.uniform(0, 0.25)
            delay += jitter_amount

        return delay / 1000.0  # Convert to seconds


@dataclass
class CircuitBreakerConfig:
    """When a worker's breaker trips and how it recovers."""
    failure_threshold: int = 5        # consecutive failures that open it
    recovery_timeout_sec: float = 60  # open -> half-open after this long
    success_threshold: int = 2        # half-open trial successes to close


@dataclass
class CircuitBreakerMetrics:
    """Per-worker outcome counters."""
    dispatches: int = 0
    succeeded: int = 0
    failed: int = 0
    consecutive_failures: int = 0
    trial_successes: int = 0
    last_failure_time: Optional[datetime] = None


# ============================================================================
# Exception Hierarchy
# ============================================================================

class TaskGridException(Exception):
    """Base exception for all TaskGrid errors with rich context."""

    kind: Optional[ErrorKind] = None

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
        return f"{self.category.value}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = self.context.to_dict()
        data["type"] = type(self).__name__
        if self.kind is not None:
            data["kind"] = self.kind.value
        return data


# ============================================================================
# Validation Errors
# ============================================================================

class ValidationError(TaskGridException):
    """Validation error (input/schema validation failed)."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        kwargs.setdefault("severity", ErrorSeverity.WARNING)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class TaskValidationError(ValidationError):
    """Task or graph definition is malformed."""
    pass


class ConfigurationError(ValidationError):
    """Configuration validation error."""
    pass


class CyclicDependencyError(TaskValidationError):
    """Raised when the dependency edges would form a cycle."""

    def __init__(self, cycle: List[str], **kwargs):
        self.cycle = cycle
        path = " -> ".join(cycle)
        kwargs.setdefault("details", {"cycle": list(cycle)})
        super().__init__(f"Dependency cycle detected: {path}", **kwargs)


class DanglingDependencyError(TaskValidationError):
    """Raised when a task depends on an id that is not in the graph."""

    def __init__(self, task_id: str, missing: List[str], **kwargs):
        self.task_id = task_id
        self.missing = sorted(missing)
        kwargs.setdefault("details", {"task_id": task_id, "missing": self.missing})
        super().__init__(
            f"Task {task_id!r} depends on unknown task(s): {', '.join(self.missing)}",
            **kwargs,
        )


# ============================================================================
# Budget Errors
# ============================================================================

class BudgetError(TaskGridException):
    """Base budget error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.BUDGET)
        super().__init__(message, **kwargs)


class BudgetExceeded(BudgetError):
    """No tier fits the remaining budget.  Terminal for the task."""

    kind = ErrorKind.BUDGET_EXCEEDED

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class ReservationError(BudgetError):
    """Reservation was already settled or never issued."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.INTERNAL)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Timeout & Resource Errors
# ============================================================================

class TaskTimeoutError(TaskGridException):
    """Dispatch exceeded its timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.TIMEOUT)
        kwargs.setdefault("is_recoverable", True)
        super().__init__(message, **kwargs)


class ResourceError(TaskGridException):
    """Worker resource error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.RESOURCE)
        super().__init__(message, **kwargs)


class WorkerCapacityError(ResourceError):
    """Dispatch attempted on a worker with no free slot."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class WorkerRegistrationError(ResourceError):
    """Worker registration conflict."""
    pass


class StarvationTimeout(ResourceError):
    """Task waited too many cycles without an available worker."""

    kind = ErrorKind.STARVATION_TIMEOUT

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


# ============================================================================
# Orchestration Errors
# ============================================================================

class OrchestratorError(TaskGridException):
    """Base orchestrator error."""
    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.SCHEDULING)
        super().__init__(message, **kwargs)


class DeadlockError(OrchestratorError):
    """No progress is possible and nothing is in flight."""

    kind = ErrorKind.DEADLOCK

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class IllegalTransitionError(OrchestratorError):
    """Task state transition from an illegal source state."""

    kind = ErrorKind.ILLEGAL_TRANSITION

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("category", ErrorCategory.INTERNAL)
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("is_recoverable", False)
        super().__init__(message, **kwargs)


class OrchestrationFailedError(OrchestratorError):
    """Run ended without completing.  Carries the terminal graph snapshot."""

    def __init__(self, message: str, snapshot: Any = None, **kwargs):
        self.snapshot = snapshot
        super().__init__(message, **kwargs)


# ============================================================================
# Circuit Breaker
# ============================================================================

class CircuitBreaker:
    """Gates dispatches to one worker after repeated failures.

    CLOSED counts consecutive failures; reaching ``failure_threshold`` opens
    the breaker.  OPEN rejects until ``recovery_timeout_sec`` has passed,
    then HALF_OPEN lets trial dispatches through: any failure reopens it,
    ``success_threshold`` successes close it.
    """

    def __init__(self, name: str, config: Optional[CircuitBreakerConfig] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.state = CircuitBreakerState.CLOSED
        self.metrics = CircuitBreakerMetrics()
        self.last_state_change = datetime.now(tz=timezone.utc)

    def record_success(self) -> None:
        m = self.metrics
        m.dispatches += 1
        m.succeeded += 1
        m.consecutive_failures = 0
        if self.state == CircuitBreakerState.HALF_OPEN:
            m.trial_successes += 1
            if m.trial_successes >= self.config.success_threshold:
                self._transition(CircuitBreakerState.CLOSED)

    def record_failure(self) -> None:
        m = self.metrics
        m.dispatches += 1
        m.failed += 1
        m.consecutive_failures += 1
        m.last_failure_time = datetime.now(tz=timezone.utc)
        if self.state == CircuitBreakerState.HALF_OPEN or (
            self.state == CircuitBreakerState.CLOSED
            and m.consecutive_failures >= self.config.failure_threshold
        ):
            self._transition(CircuitBreakerState.OPEN)

    def can_execute(self) -> bool:
        """True if the worker may take a dispatch now."""
        if self.state != CircuitBreakerState.OPEN:
            return True
        open_for = (datetime.now(tz=timezone.utc) - self.last_state_change).total_seconds()
        if open_for > self.config.recovery_timeout_sec:
            self._transition(CircuitBreakerState.HALF_OPEN)
            return True
        return False

    def _transition(self, state: CircuitBreakerState) -> None:
        previous, self.state = self.state, state
        self.last_state_change = datetime.now(tz=timezone.utc)
        self.metrics.consecutive_failures = 0
        self.metrics.trial_successes = 0
        log = logger.warning if state == CircuitBreakerState.OPEN else logger.info
        log("Worker breaker '%s': %s -> %s", self.name, previous.value, state.value)

    def get_status(self) -> Dict[str, Any]:
        m = self.metrics
        return {
            "name": self.name,
            "state": self.state.value,
            "dispatches": m.dispatches,
            "succeeded": m.succeeded,
            "failed": m.failed,
            "consecutive_failures": m.consecutive_failures,
        }


# ============================================================================
# Utility Functions
# ============================================================================

def error_kind_for(error: BaseException) -> ErrorKind:
    """Map an exception to the task-level kind recorded in snapshots."""
    kind = getattr(error, "kind", None)
    if isinstance(kind, ErrorKind):
        return kind
    if isinstance(error, TimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.EXECUTION

