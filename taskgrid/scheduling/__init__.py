"""TaskGrid scheduling: task graph, capability routing, dispatch and the control loop."""

from taskgrid.scheduling.capability_registry import CapabilityRegistry, WorkerState
from taskgrid.scheduling.graph_loader import GraphDefinition, TaskRecord, load_graph
from taskgrid.scheduling.orchestrator import Orchestrator, RunResult, RunState
from taskgrid.scheduling.task_graph import (
    GraphSnapshot,
    Task,
    TaskFailure,
    TaskGraph,
    TaskSnapshot,
    TaskStatus,
)
from taskgrid.scheduling.worker_pool import LoadSlot, WorkerPool

__all__ = [
    "CapabilityRegistry",
    "GraphDefinition",
    "GraphSnapshot",
    "LoadSlot",
    "Orchestrator",
    "RunResult",
    "RunState",
    "Task",
    "TaskFailure",
    "TaskGraph",
    "TaskRecord",
    "TaskSnapshot",
    "TaskStatus",
    "WorkerPool",
    "WorkerState",
    "load_graph",
]
