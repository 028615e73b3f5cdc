"""TaskGrid: capability-routed, budget-aware task graph orchestration."""

from taskgrid.event_bus import EventChannel, LoggingEventSink
from taskgrid.exceptions import ErrorKind, RetryConfig, TaskGridException
from taskgrid.interfaces import CostTier, EventType, IWorker, LifecycleEvent, Outcome
from taskgrid.middleware import BudgetTracker, TierCostTable
from taskgrid.scheduling import (
    CapabilityRegistry,
    Orchestrator,
    RunResult,
    RunState,
    Task,
    TaskGraph,
    TaskStatus,
    WorkerPool,
    load_graph,
)
from taskgrid.workers import CallableWorker, SubprocessWorker

__version__ = "0.1.0"

__all__ = [
    "BudgetTracker",
    "CallableWorker",
    "CapabilityRegistry",
    "CostTier",
    "ErrorKind",
    "EventChannel",
    "EventType",
    "IWorker",
    "LifecycleEvent",
    "LoggingEventSink",
    "Orchestrator",
    "Outcome",
    "RetryConfig",
    "RunResult",
    "RunState",
    "SubprocessWorker",
    "Task",
    "TaskGraph",
    "TaskGridException",
    "TaskStatus",
    "TierCostTable",
    "WorkerPool",
    "load_graph",
]
