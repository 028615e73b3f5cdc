"""DAG of tasks for TaskGrid scheduling.

Standalone module: owns every task's state, and nothing outside it writes
task fields.  Pure Python.

Provides:
- Cycle detection (one DFS per inserted batch, Kahn in ``validate_graph``)
- Ready-task queries ordered by priority then insertion order
- Guarded state transitions (``IllegalTransitionError`` on misuse)
- Failure propagation (BFS cancel of downstream)
- Snapshots and serialisation for persistence (to_dict / from_dict)
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set

from taskgrid.exceptions import (
    CyclicDependencyError,
    DanglingDependencyError,
    ErrorKind,
    IllegalTransitionError,
    TaskValidationError,
)
from taskgrid.interfaces.worker import CostTier

logger = logging.getLogger(__name__)


# ── Enums / value objects ────────────────────────────────────────────


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"  # waiting on deps or backoff
    READY = "ready"  # all deps met, eligible for dispatch
    RUNNING = "running"  # dispatched to a worker
    COMPLETED = "completed"  # terminal, has result
    FAILED = "failed"  # terminal, has error
    CANCELLED = "cancelled"  # terminal, upstream failure or run cancel

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})


@dataclass(frozen=True)
class TaskFailure:
    """Why a task ended FAILED or CANCELLED."""

    kind: ErrorKind
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


@dataclass
class Task:
    """A unit of work in the graph."""

    task_id: str
    description: str
    required_capability: str
    dependencies: FrozenSet[str] = frozenset()
    priority: int = 0
    max_retries: Optional[int] = None  # None = orchestrator default
    timeout: Optional[float] = None  # None = orchestrator default
    tier: Optional[CostTier] = None  # None = worker's own tier
    metadata: Dict[str, Any] = field(default_factory=dict)

    status: TaskStatus = TaskStatus.PENDING
    result: Any = None
    error: Optional[TaskFailure] = None
    attempt: int = 0
    dispatches: int = 0
    actual_cost: float = 0.0
    not_before: Optional[float] = None  # monotonic backoff deadline
    last_worker_id: Optional[str] = None
    last_error: Optional[TaskFailure] = None  # most recent retried failure

    def __post_init__(self) -> None:
        self.dependencies = frozenset(self.dependencies)
        if isinstance(self.tier, str) and not isinstance(self.tier, CostTier):
            self.tier = CostTier(self.tier)


@dataclass(frozen=True)
class TaskSnapshot:
    """Immutable view of one task."""

    task_id: str
    status: TaskStatus
    required_capability: str
    priority: int
    dependencies: FrozenSet[str]
    attempt: int
    dispatches: int = 0
    result: Any = None
    error: Optional[TaskFailure] = None
    actual_cost: float = 0.0
    worker_id: Optional[str] = None
    last_error: Optional[TaskFailure] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "required_capability": self.required_capability,
            "priority": self.priority,
            "dependencies": sorted(self.dependencies),
            "attempt": self.attempt,
            "dispatches": self.dispatches,
            "result": self.result,
            "error": self.error.to_dict() if self.error else None,
            "actual_cost": self.actual_cost,
            "worker_id": self.worker_id,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }


@dataclass(frozen=True)
class GraphSnapshot:
    """Immutable view of the whole graph, in insertion order."""

    tasks: Dict[str, TaskSnapshot]

    def __getitem__(self, task_id: str) -> TaskSnapshot:
        return self.tasks[task_id]

    def __iter__(self):
        return iter(self.tasks.values())

    def __len__(self) -> int:
        return len(self.tasks)

    def with_status(self, status: TaskStatus) -> List[str]:
        return [tid for tid, t in self.tasks.items() if t.status == status]

    @property
    def counts(self) -> Dict[str, int]:
        counts = {s.value: 0 for s in TaskStatus}
        for t in self.tasks.values():
            counts[t.status.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "counts": self.counts,
            "tasks": [t.to_dict() for t in self.tasks.values()],
        }


# ── Graph ────────────────────────────────────────────────────────────


class TaskGraph:
    """DAG of tasks with dependency edges, status and results.

    Tracks forward edges (task → deps it needs) on each ``Task`` and reverse
    edges (task → tasks that need it) here.

    Not thread-safe: designed for a single asyncio control loop that is the
    only writer.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        # Reverse edges: task_id → set of task_ids that depend on IT
        self._dependents: Dict[str, Set[str]] = {}
        # Insertion order for same-priority FIFO tie-breaking
        self._order: Dict[str, int] = {}
        self._next_order: int = 0

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    # ── Graph mutation ───────────────────────────────────────────────

    def add_task(self, task: Task) -> TaskStatus:
        """Add a task whose dependencies already exist in the graph.

        Returns the initial status (always PENDING; promotion happens in
        ``promote_ready``).

        Raises:
            TaskValidationError: if *task_id* is already in the graph.
            DanglingDependencyError: if a dependency is unknown.
            CyclicDependencyError: if the new edges would create a cycle.
        """
        self.add_tasks([task])
        return task.status

    def add_tasks(self, tasks: Iterable[Task]) -> List[str]:
        """Atomically add a batch of tasks.

        Dependencies may reference tasks in the graph or in the batch.  The
        whole batch is validated before any task is inserted.

        Returns the inserted ids in order.
        """
        batch = list(tasks)
        batch_ids: Dict[str, Task] = {}
        for task in batch:
            if task.task_id in self._tasks or task.task_id in batch_ids:
                raise TaskValidationError(f"Task {task.task_id!r} already exists in the graph")
            if task.status != TaskStatus.PENDING:
                raise TaskValidationError(
                    f"Task {task.task_id!r} must be added as pending, not {task.status.value}"
                )
            batch_ids[task.task_id] = task

        for task in batch:
            if task.task_id in task.dependencies:
                raise CyclicDependencyError([task.task_id, task.task_id])
            missing = [d for d in task.dependencies if d not in self._tasks and d not in batch_ids]
            if missing:
                raise DanglingDependencyError(task.task_id, missing)

        self._check_batch_cycles(batch)

        # Commit to graph
        for task in batch:
            self._tasks[task.task_id] = task
            self._dependents.setdefault(task.task_id, set())
            self._order[task.task_id] = self._next_order
            self._next_order += 1
            for dep in task.dependencies:
                self._dependents.setdefault(dep, set()).add(task.task_id)
            logger.debug(
                "Added task %s (capability=%s, deps=%d)",
                task.task_id, task.required_capability, len(task.dependencies),
            )
        return [t.task_id for t in batch]

    @classmethod
    def from_records(cls, records: Iterable[Mapping[str, Any]]) -> "TaskGraph":
        """Build a graph from plain records (see ``graph_loader``)."""
        from taskgrid.scheduling.graph_loader import load_graph

        return load_graph(list(records))

    # ── Readiness ────────────────────────────────────────────────────

    def promote_ready(self, now: Optional[float] = None) -> List[str]:
        """PENDING → READY for tasks whose deps are all COMPLETED and whose
        backoff has elapsed.  Returns promoted ids in dispatch order."""
        now = time.monotonic() if now is None else now
        promoted: List[str] = []
        for task in self._tasks.values():
            if task.status != TaskStatus.PENDING:
                continue
            if task.not_before is not None and task.not_before > now:
                continue
            if all(self._tasks[d].status == TaskStatus.COMPLETED for d in task.dependencies):
                task.status = TaskStatus.READY
                task.not_before = None
                promoted.append(task.task_id)
        promoted.sort(key=self._sort_key)
        return promoted

    def ready_tasks(self, now: Optional[float] = None) -> List[Task]:
        """Promote eligible tasks, then return all READY tasks sorted by
        priority (desc) then insertion order."""
        self.promote_ready(now)
        ready = [t for t in self._tasks.values() if t.status == TaskStatus.READY]
        ready.sort(key=lambda t: self._sort_key(t.task_id))
        return ready

    def next_eligible_at(self) -> Optional[float]:
        """Earliest backoff deadline among PENDING tasks, if any."""
        deadlines = [
            t.not_before for t in self._tasks.values()
            if t.status == TaskStatus.PENDING and t.not_before is not None
        ]
        return min(deadlines) if deadlines else None

    # ── State transitions ────────────────────────────────────────────

    def mark_running(self, task_id: str, worker_id: Optional[str] = None) -> Task:
        """Transition READY → RUNNING."""
        task = self._require(task_id, "running", {TaskStatus.READY})
        task.status = TaskStatus.RUNNING
        task.last_worker_id = worker_id
        task.dispatches += 1
        return task

    def mark_completed(self, task_id: str, result: Any = None, actual_cost: float = 0.0) -> List[str]:
        """Transition RUNNING → COMPLETED.

        Returns dependents that now have every dependency completed (they
        are promoted on the next ``promote_ready``).
        """
        task = self._require(task_id, "completed", {TaskStatus.RUNNING})
        task.status = TaskStatus.COMPLETED
        task.result = result
        task.actual_cost = actual_cost

        unblocked = [
            dep_id for dep_id in self._dependents.get(task_id, set())
            if self._tasks[dep_id].status == TaskStatus.PENDING
            and all(self._tasks[d].status == TaskStatus.COMPLETED for d in self._tasks[dep_id].dependencies)
        ]
        unblocked.sort(key=self._sort_key)
        return unblocked

    def mark_failed(self, task_id: str, failure: TaskFailure) -> Task:
        """Transition RUNNING/READY → FAILED.  Dependents are left for
        ``cancel_dependents``."""
        task = self._require(task_id, "failed", {TaskStatus.RUNNING, TaskStatus.READY})
        task.status = TaskStatus.FAILED
        task.error = failure
        return task

    def mark_cancelled(self, task_id: str, failure: Optional[TaskFailure] = None) -> Task:
        """Transition any non-terminal state → CANCELLED."""
        task = self._require(
            task_id, "cancelled",
            {TaskStatus.PENDING, TaskStatus.READY, TaskStatus.RUNNING},
        )
        task.status = TaskStatus.CANCELLED
        task.error = failure or TaskFailure(ErrorKind.CANCELLED, "cancelled")
        return task

    def mark_retry(self, task_id: str, not_before: float, failure: TaskFailure) -> Task:
        """Transition RUNNING → PENDING for another attempt after backoff."""
        task = self._require(task_id, "retried", {TaskStatus.RUNNING})
        task.status = TaskStatus.PENDING
        task.attempt += 1
        task.not_before = not_before
        task.last_error = failure
        return task

    def cancel_dependents(self, task_id: str, reason: Optional[str] = None) -> List[str]:
        """BFS-cancel all non-terminal transitive dependents of *task_id*.

        Returns cancelled ids in BFS order.
        """
        message = reason or f"dependency {task_id} did not complete"
        cancelled: List[str] = []
        queue: deque[str] = deque(sorted(self._dependents.get(task_id, set()), key=self._sort_key))
        visited: Set[str] = set()

        while queue:
            dep_id = queue.popleft()
            if dep_id in visited:
                continue
            visited.add(dep_id)
            dep = self._tasks[dep_id]
            if dep.status in (TaskStatus.PENDING, TaskStatus.READY):
                dep.status = TaskStatus.CANCELLED
                dep.error = TaskFailure(ErrorKind.DEPENDENCY_FAILED, message)
                cancelled.append(dep_id)
            # Continue propagating through this node's dependents
            queue.extend(sorted(self._dependents.get(dep_id, set()), key=self._sort_key))

        if cancelled:
            logger.info("Cascade-cancelled %d task(s) downstream of %s", len(cancelled), task_id)
        return cancelled

    def cancel_all(self, failure: Optional[TaskFailure] = None) -> List[str]:
        """Cancel every non-terminal task.  Returns cancelled ids."""
        cancelled: List[str] = []
        for task in self._tasks.values():
            if not task.status.is_terminal:
                self.mark_cancelled(task.task_id, failure)
                cancelled.append(task.task_id)
        return cancelled

    # ── Queries ──────────────────────────────────────────────────────

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise KeyError(f"Unknown task {task_id!r}") from None

    def get_status(self, task_id: str) -> Optional[TaskStatus]:
        task = self._tasks.get(task_id)
        return task.status if task else None

    def tasks(self) -> List[Task]:
        """All tasks in insertion order."""
        return list(self._tasks.values())

    def is_fully_resolved(self) -> bool:
        return all(t.status.is_terminal for t in self._tasks.values())

    def has_starved_tasks(self) -> bool:
        """True if a non-terminal task has a FAILED/CANCELLED dependency."""
        return bool(self._starved_roots())

    def cancel_starved_tasks(self) -> List[str]:
        """Cancel starved tasks and everything downstream of them."""
        cancelled: List[str] = []
        for task_id in self._starved_roots():
            task = self._tasks[task_id]
            if task.status.is_terminal:
                continue
            blocker = next(
                d for d in sorted(task.dependencies, key=self._sort_key)
                if self._tasks[d].status in (TaskStatus.FAILED, TaskStatus.CANCELLED)
            )
            task.status = TaskStatus.CANCELLED
            task.error = TaskFailure(
                ErrorKind.DEPENDENCY_FAILED, f"dependency {blocker} did not complete"
            )
            cancelled.append(task_id)
            cancelled.extend(self.cancel_dependents(task_id))
        return cancelled

    def get_downstream(self, task_id: str) -> Set[str]:
        """BFS to find all transitive dependents of *task_id*."""
        result: Set[str] = set()
        queue: deque[str] = deque(self._dependents.get(task_id, set()))
        while queue:
            nid = queue.popleft()
            if nid in result:
                continue
            result.add(nid)
            queue.extend(self._dependents.get(nid, set()))
        return result

    def execution_waves(self) -> List[List[str]]:
        """Kahn's algorithm producing parallel execution waves.

        Only non-terminal tasks are layered; completed dependencies count as
        satisfied.  Within a wave, tasks are in dispatch order.
        """
        active = {tid for tid, t in self._tasks.items() if not t.status.is_terminal}
        in_degree = {
            tid: sum(1 for d in self._tasks[tid].dependencies if d in active)
            for tid in active
        }
        current_wave = [tid for tid, deg in in_degree.items() if deg == 0]
        waves: List[List[str]] = []

        while current_wave:
            current_wave.sort(key=self._sort_key)
            waves.append(current_wave)
            next_wave: List[str] = []
            for tid in current_wave:
                for dep_id in self._dependents.get(tid, set()):
                    if dep_id not in active:
                        continue
                    in_degree[dep_id] -= 1
                    if in_degree[dep_id] == 0:
                        next_wave.append(dep_id)
            current_wave = next_wave

        return waves

    def validate_graph(self) -> Optional[List[str]]:
        """Full Kahn's validation.  Returns the tasks left on a cycle, else
        ``None``."""
        in_degree = {tid: len(t.dependencies) for tid, t in self._tasks.items()}
        queue: deque[str] = deque(tid for tid, deg in in_degree.items() if deg == 0)
        visited = 0

        while queue:
            tid = queue.popleft()
            visited += 1
            for dep_id in self._dependents.get(tid, set()):
                in_degree[dep_id] -= 1
                if in_degree[dep_id] == 0:
                    queue.append(dep_id)

        if visited < len(in_degree):
            return [tid for tid, deg in in_degree.items() if deg > 0]
        return None

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(tasks={
            tid: TaskSnapshot(
                task_id=tid,
                status=t.status,
                required_capability=t.required_capability,
                priority=t.priority,
                dependencies=t.dependencies,
                attempt=t.attempt,
                dispatches=t.dispatches,
                result=t.result,
                error=t.error,
                actual_cost=t.actual_cost,
                worker_id=t.last_worker_id,
                last_error=t.last_error,
            )
            for tid, t in self._tasks.items()
        })

    @property
    def stats(self) -> Dict[str, int]:
        """Counts by status."""
        counts: Dict[str, int] = {s.value: 0 for s in TaskStatus}
        for t in self._tasks.values():
            counts[t.status.value] += 1
        return counts

    # ── Serialisation ────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        """Serialise the graph (definitions and state) for persistence."""
        return {
            "tasks": [
                {
                    "id": t.task_id,
                    "description": t.description,
                    "required_capability": t.required_capability,
                    "dependencies": sorted(t.dependencies),
                    "priority": t.priority,
                    "max_retries": t.max_retries,
                    "timeout": t.timeout,
                    "tier": t.tier.value if t.tier else None,
                    "metadata": dict(t.metadata),
                    "status": t.status.value,
                    "result": t.result,
                    "error": t.error.to_dict() if t.error else None,
                    "last_error": t.last_error.to_dict() if t.last_error else None,
                    "attempt": t.attempt,
                    "dispatches": t.dispatches,
                    "actual_cost": t.actual_cost,
                }
                for t in self._tasks.values()
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskGraph":
        """Reconstruct a graph from persisted state.

        Definitions go through the same validation as ``add_tasks``.
        RUNNING tasks cannot be resumed and come back as PENDING.
        """
        graph = cls()
        tasks: List[Task] = []
        states: Dict[str, Dict[str, Any]] = {}
        for entry in data.get("tasks", []):
            tasks.append(Task(
                task_id=entry["id"],
                description=entry.get("description", ""),
                required_capability=entry["required_capability"],
                dependencies=frozenset(entry.get("dependencies", [])),
                priority=entry.get("priority", 0),
                max_retries=entry.get("max_retries"),
                timeout=entry.get("timeout"),
                tier=entry.get("tier"),
                metadata=dict(entry.get("metadata") or {}),
            ))
            states[entry["id"]] = entry
        graph.add_tasks(tasks)

        for task in tasks:
            entry = states[task.task_id]
            status = TaskStatus(entry.get("status", TaskStatus.PENDING.value))
            if status in (TaskStatus.RUNNING, TaskStatus.READY):
                status = TaskStatus.PENDING
            task.status = status
            task.result = entry.get("result")
            task.attempt = entry.get("attempt", 0)
            task.dispatches = entry.get("dispatches", 0)
            task.actual_cost = entry.get("actual_cost", 0.0)
            error = entry.get("error")
            if error:
                task.error = TaskFailure(ErrorKind(error["kind"]), error["message"])
            last_error = entry.get("last_error")
            if last_error:
                task.last_error = TaskFailure(ErrorKind(last_error["kind"]), last_error["message"])
        return graph

    # ── Internal helpers ─────────────────────────────────────────────

    def _sort_key(self, task_id: str) -> tuple:
        return (-self._tasks[task_id].priority, self._order[task_id])

    def _require(self, task_id: str, target: str, allowed: Set[TaskStatus]) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise IllegalTransitionError(f"Cannot mark unknown task {task_id!r} as {target}")
        if task.status not in allowed:
            expected = "/".join(sorted(s.name for s in allowed))
            raise IllegalTransitionError(
                f"Cannot mark {task_id!r} as {target}: current state is "
                f"{task.status.name} (expected {expected})",
                details={"task_id": task_id, "status": task.status.value, "target": target},
            )
        return task

    def _starved_roots(self) -> List[str]:
        dead = (TaskStatus.FAILED, TaskStatus.CANCELLED)
        starved = [
            tid for tid, t in self._tasks.items()
            if not t.status.is_terminal
            and t.status != TaskStatus.RUNNING
            and any(self._tasks[d].status in dead for d in t.dependencies)
        ]
        starved.sort(key=self._sort_key)
        return starved

    def _check_batch_cycles(self, batch: List[Task]) -> None:
        """Single DFS over the batch's own edges.

        Tasks already in the graph only depend on tasks already in the
        graph, so a new cycle runs entirely through the batch.  Parents are
        recorded instead of paths; the cycle is rebuilt only when found.
        """
        edges = {
            t.task_id: sorted(d for d in t.dependencies if d not in self._tasks)
            for t in batch
        }
        state: Dict[str, int] = {}  # 1 = on the DFS stack, 2 = done
        parent: Dict[str, str] = {}

        for root in edges:
            if root in state:
                continue
            state[root] = 1
            stack = [(root, iter(edges[root]))]
            while stack:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    state[node] = 2
                    stack.pop()
                elif child not in state:
                    state[child] = 1
                    parent[child] = node
                    stack.append((child, iter(edges[child])))
                elif state[child] == 1:
                    # back edge node -> child closes the cycle
                    cycle = [node]
                    while cycle[-1] != child:
                        cycle.append(parent[cycle[-1]])
                    cycle.reverse()
                    raise CyclicDependencyError(cycle + [child])
