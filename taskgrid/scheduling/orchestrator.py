"""Orchestrator: runs a task graph to completion across registered workers.

One control coroutine per run is the only writer of the graph and the
budget.  Each cycle it:

1. honours a pending cancellation,
2. promotes ready tasks,
3. detects completion, starvation, backoff waits and deadlock,
4. dispatches ready tasks to the best available worker (budget permitting),
5. waits for the first completion, a cancel request or the poll interval,
6. settles finished dispatches: commit or release, retry or fail.

Worker coroutines run concurrently in the ``WorkerPool`` and only hand back
``Outcome`` values; they never touch task state.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from taskgrid.config.settings import Settings, get_settings
from taskgrid.enhanced_logging import track_performance
from taskgrid.event_bus import EventChannel
from taskgrid.exceptions import (
    BudgetExceeded,
    DeadlockError,
    ErrorKind,
    OrchestrationFailedError,
    OrchestratorError,
    RetryConfig,
    StarvationTimeout,
    TaskGridException,
)
from taskgrid.interfaces.event_bus import EventType, IEventChannel, LifecycleEvent
from taskgrid.interfaces.worker import CostTier, Outcome
from taskgrid.middleware.budget_tracker import BudgetTracker, Reservation
from taskgrid.scheduling.capability_registry import CapabilityRegistry, WorkerState
from taskgrid.scheduling.task_graph import GraphSnapshot, Task, TaskFailure, TaskGraph, TaskStatus
from taskgrid.scheduling.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    """Run lifecycle: IDLE -> RUNNING -> {COMPLETED, FAILED, CANCELLED}."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class InFlight:
    """An accepted dispatch awaiting its outcome."""

    task_id: str
    worker_id: str
    tier: CostTier
    reservation: Reservation


@dataclass
class OrchestratorState:
    """Per-run bookkeeping, owned by the control coroutine."""

    run_id: str
    state: RunState = RunState.RUNNING
    cycle: int = 0
    in_flight: Dict["asyncio.Task[Outcome]", InFlight] = field(default_factory=dict)
    starvation: Dict[str, int] = field(default_factory=dict)
    dispatched: int = 0
    retries: int = 0
    started_at: float = field(default_factory=time.monotonic)
    finished_at: Optional[float] = None
    error: Optional[TaskGridException] = None
    error_kind: Optional[ErrorKind] = None
    fatal: Optional[OrchestratorError] = None

    @property
    def elapsed(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return end - self.started_at


@dataclass
class RunResult:
    """Terminal report of one run."""

    run_id: str
    state: RunState
    snapshot: GraphSnapshot
    budget: Dict[str, Any]
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    cycles: int = 0
    duration: float = 0.0

    @property
    def succeeded(self) -> bool:
        """True if the run completed and every task completed."""
        return self.state == RunState.COMPLETED and all(
            t.status == TaskStatus.COMPLETED for t in self.snapshot
        )

    def raise_for_status(self) -> "RunResult":
        """Raise ``OrchestrationFailedError`` unless every task completed."""
        if self.succeeded:
            return self
        if self.state != RunState.COMPLETED:
            message = f"Run {self.run_id} ended {self.state.value}"
            if self.error_message:
                message += f": {self.error_message}"
        else:
            unfinished = [t.task_id for t in self.snapshot if t.status != TaskStatus.COMPLETED]
            message = f"Run {self.run_id} left {len(unfinished)} task(s) incomplete: {', '.join(unfinished)}"
        raise OrchestrationFailedError(
            message,
            snapshot=self.snapshot,
            details={"run_id": self.run_id, "state": self.state.value,
                     "error_kind": self.error_kind.value if self.error_kind else None},
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "cycles": self.cycles,
            "duration": round(self.duration, 6),
            "budget": self.budget,
            "graph": self.snapshot.to_dict(),
        }


class Orchestrator:
    """Drives a ``TaskGraph`` through the registry, budget and worker pool.

    One graph runs at a time; a concurrent second ``run`` raises
    ``OrchestratorError``.
    """

    def __init__(
        self,
        registry: CapabilityRegistry,
        budget: BudgetTracker,
        pool: Optional[WorkerPool] = None,
        events: Optional[IEventChannel] = None,
        settings: Optional[Settings] = None,
        retry_config: Optional[RetryConfig] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.registry = registry
        self.budget = budget
        self.pool = pool or WorkerPool(grace_period=self.settings.grace_period)
        self.events: IEventChannel = events or EventChannel(
            buffer_size=self.settings.event_buffer_size,
            queue_size=self.settings.event_queue_size,
        )
        self.retry_config = retry_config or self.settings.retry_config()
        self._run: Optional[OrchestratorState] = None
        self._cancel_signal: Optional[asyncio.Future] = None
        self._last_state = RunState.IDLE

    @property
    def state(self) -> RunState:
        return self._run.state if self._run is not None else self._last_state

    @property
    def is_running(self) -> bool:
        return self._run is not None

    def cancel(self) -> bool:
        """Request cancellation of the active run.

        Returns False if no run is active.
        """
        signal = self._cancel_signal
        if self._run is None or signal is None:
            logger.debug("cancel() called with no active run")
            return False
        if not signal.done():
            logger.info("Cancellation requested for run %s", self._run.run_id)
            signal.set_result(None)
        return True

    # ── Run ──────────────────────────────────────────────────────────

    @track_performance(operation="orchestrator.run")
    async def run(self, graph: TaskGraph) -> RunResult:
        """Execute *graph* until every task is terminal or the run stops.

        Run-level failures are reported in the returned ``RunResult``;
        call ``raise_for_status()`` to turn them into an exception.

        Raises:
            OrchestratorError: if a run is already active.
        """
        if self._run is not None:
            raise OrchestratorError(
                f"Orchestrator is already running {self._run.run_id}",
                details={"run_id": self._run.run_id},
            )
        run = OrchestratorState(run_id=uuid.uuid4().hex[:12])
        self._run = run
        self._cancel_signal = asyncio.get_running_loop().create_future()
        logger.info("Run %s started with %d task(s)", run.run_id, len(graph))
        self._emit(EventType.RUN_STARTED, payload={"tasks": len(graph)})

        try:
            await self._drive(graph, run)
        except OrchestratorError as e:
            logger.error("Run %s failed: %s", run.run_id, e.message)
            run.error = e
            run.error_kind = run.error_kind or e.kind
            run.state = RunState.FAILED
            await self._abort(graph, run, TaskFailure(ErrorKind.CANCELLED, f"run failed: {e.message}"))
        except asyncio.CancelledError:
            logger.warning("Run %s interrupted; cancelling in-flight work", run.run_id)
            run.state = RunState.CANCELLED
            run.error_kind = ErrorKind.CANCELLED
            await self._abort(graph, run, TaskFailure(ErrorKind.CANCELLED, "run interrupted"))
            self._finish(graph, run)
            raise
        except Exception:
            logger.exception("Run %s aborted by an unexpected error", run.run_id)
            run.state = RunState.FAILED
            await self._abort(graph, run, TaskFailure(ErrorKind.CANCELLED, "run aborted"))
            self._finish(graph, run)
            raise
        return self._finish(graph, run)

    def _finish(self, graph: TaskGraph, run: OrchestratorState) -> RunResult:
        run.finished_at = time.monotonic()
        result = RunResult(
            run_id=run.run_id,
            state=run.state,
            snapshot=graph.snapshot(),
            budget=self.budget.get_dashboard(),
            error_kind=run.error_kind,
            error_message=run.error.message if run.error else None,
            cycles=run.cycle,
            duration=run.elapsed,
        )
        event_type = {
            RunState.COMPLETED: EventType.RUN_COMPLETED,
            RunState.CANCELLED: EventType.RUN_CANCELLED,
        }.get(run.state, EventType.RUN_FAILED)
        self._emit(event_type, payload={
            "counts": result.snapshot.counts,
            "error_kind": result.error_kind.value if result.error_kind else None,
            "error": result.error_message,
            "consumed": self.budget.consumed,
        })
        logger.info(
            "Run %s %s after %d cycle(s) in %.3fs: %s",
            run.run_id, run.state.value, run.cycle, result.duration, result.snapshot.counts,
        )
        self._last_state = run.state
        self._run = None
        self._cancel_signal = None
        return result

    async def _drive(self, graph: TaskGraph, run: OrchestratorState) -> None:
        while True:
            run.cycle += 1

            if self._cancel_signal.done():
                run.state = RunState.CANCELLED
                run.error_kind = ErrorKind.CANCELLED
                await self._abort(graph, run, TaskFailure(ErrorKind.CANCELLED, "run cancelled"))
                return
            if run.fatal is not None:
                raise run.fatal

            now = time.monotonic()
            for task_id in graph.promote_ready(now):
                self._emit(EventType.TASK_READY, task_id)
            ready = graph.ready_tasks(now)

            if not ready and not run.in_flight:
                if graph.is_fully_resolved():
                    run.state = RunState.COMPLETED
                    return
                if graph.has_starved_tasks():
                    for task_id in graph.cancel_starved_tasks():
                        self._emit_cancelled(graph, task_id)
                    continue
                next_at = graph.next_eligible_at()
                if next_at is None:
                    blocked = [t.task_id for t in graph.tasks() if not t.status.is_terminal]
                    raise DeadlockError(
                        f"No task can make progress: {', '.join(blocked)}",
                        details={"blocked": blocked},
                    )
                await self._wait(graph, run, max(0.0, next_at - time.monotonic()))
                continue

            dispatched = self._dispatch_ready(graph, run, ready)
            if run.fatal is not None:
                continue
            if not run.in_flight and not dispatched:
                self._check_deadlock(graph, run)

            await self._wait(graph, run, self.settings.idle_poll_interval)

    # ── Dispatch ─────────────────────────────────────────────────────

    def _dispatch_ready(self, graph: TaskGraph, run: OrchestratorState, ready: List[Task]) -> int:
        limit = self.settings.max_global_concurrency
        dispatched = 0
        for task in ready:
            if limit is not None and len(run.in_flight) >= limit:
                break
            if self._try_dispatch(graph, run, task):
                dispatched += 1
            if run.fatal is not None:
                break
        return dispatched

    def _try_dispatch(self, graph: TaskGraph, run: OrchestratorState, task: Task) -> bool:
        exclude = [task.last_worker_id] if task.attempt and task.last_worker_id else []
        candidates = self.registry.find_candidates(task.required_capability, exclude=exclude)
        if not candidates:
            self._starve(graph, run, task)
            return False

        worker_state = candidates[0]
        tier = self._requested_tier(task, worker_state)
        try:
            reservation, tier = self.budget.reserve_with_downgrade(task.required_capability, tier)
        except BudgetExceeded as e:
            logger.warning("Task %s cannot be afforded: %s", task.task_id, e.message)
            self._fail(graph, run, task.task_id, TaskFailure(ErrorKind.BUDGET_EXCEEDED, e.message))
            return False
        except ValueError as e:
            logger.error("Task %s has no usable cost estimate: %s", task.task_id, e)
            self._fail(graph, run, task.task_id, TaskFailure(ErrorKind.EXECUTION, str(e)))
            return False

        timeout = task.timeout or self.settings.default_timeout
        try:
            future = self.pool.dispatch(worker_state, task, timeout, tier)
        except Exception:
            self.budget.release(reservation)
            raise
        graph.mark_running(task.task_id, worker_state.worker_id)
        run.in_flight[future] = InFlight(
            task_id=task.task_id,
            worker_id=worker_state.worker_id,
            tier=tier,
            reservation=reservation,
        )
        run.starvation.pop(task.task_id, None)
        run.dispatched += 1
        self._emit(EventType.TASK_DISPATCHED, task.task_id, {
            "worker_id": worker_state.worker_id,
            "tier": tier.value,
            "estimated_cost": reservation.amount,
            "attempt": task.attempt,
            "timeout": timeout,
        })
        return True

    @staticmethod
    def _requested_tier(task: Task, worker_state: WorkerState) -> CostTier:
        """The task's tier, capped at what the worker offers."""
        ceiling = worker_state.worker.cost_tier
        requested = task.tier or ceiling
        return requested if requested.rank <= ceiling.rank else ceiling

    def _starve(self, graph: TaskGraph, run: OrchestratorState, task: Task) -> None:
        count = run.starvation.get(task.task_id, 0) + 1
        run.starvation[task.task_id] = count
        limit = self.settings.starvation_timeout_cycles
        logger.debug("No worker for %s (%s), starved %d cycle(s)",
                     task.task_id, task.required_capability, count)
        if limit is not None and count >= limit:
            error = StarvationTimeout(
                f"Task {task.task_id} found no worker for {task.required_capability!r} "
                f"in {count} cycle(s)",
                details={"task_id": task.task_id, "capability": task.required_capability},
            )
            run.starvation.pop(task.task_id, None)
            self._fail(graph, run, task.task_id, TaskFailure(ErrorKind.STARVATION_TIMEOUT, error.message))

    def _check_deadlock(self, graph: TaskGraph, run: OrchestratorState) -> None:
        """Raise if the ready tasks can never be served and nothing else will change."""
        if self.settings.starvation_timeout_cycles is not None:
            return
        if graph.next_eligible_at() is not None:
            return
        ready = [t for t in graph.tasks() if t.status == TaskStatus.READY]
        if not ready:
            return
        if any(self.registry.has_capability(t.required_capability) for t in ready):
            return
        missing = sorted({t.required_capability for t in ready})
        raise DeadlockError(
            f"No worker registered for capabilities: {', '.join(missing)}",
            details={"capabilities": missing, "tasks": [t.task_id for t in ready]},
        )

    # ── Completion ───────────────────────────────────────────────────

    async def _wait(self, graph: TaskGraph, run: OrchestratorState, timeout: float) -> None:
        next_at = graph.next_eligible_at()
        if next_at is not None:
            timeout = min(timeout, max(0.0, next_at - time.monotonic()))
        waiters = set(run.in_flight)
        waiters.add(self._cancel_signal)
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        for future in done:
            if future in run.in_flight:
                self._settle(graph, run, future)

    def _settle(self, graph: TaskGraph, run: OrchestratorState, future: "asyncio.Task[Outcome]") -> None:
        flight = run.in_flight.pop(future)
        outcome = self._outcome_of(future, flight)

        if outcome.success:
            self.budget.commit(flight.reservation, outcome.actual_cost)
            unblocked = graph.mark_completed(flight.task_id, outcome.result, outcome.actual_cost)
            self.registry.record_success(flight.worker_id)
            logger.info("Task %s completed on %s (cost=%.4f)",
                        flight.task_id, flight.worker_id, outcome.actual_cost)
            self._emit(EventType.TASK_COMPLETED, flight.task_id, {
                "worker_id": flight.worker_id,
                "tier": flight.tier.value,
                "actual_cost": outcome.actual_cost,
                "unblocked": unblocked,
            })
            return

        self.budget.release(flight.reservation)
        self.registry.record_failure(flight.worker_id)
        failure = TaskFailure(_kind_of(outcome), outcome.error or "worker reported failure")
        task = graph.get(flight.task_id)
        max_retries = task.max_retries if task.max_retries is not None else self.retry_config.max_retries

        if task.attempt < max_retries:
            delay = self.retry_config.get_delay(task.attempt)
            graph.mark_retry(flight.task_id, time.monotonic() + delay, failure)
            run.retries += 1
            logger.info(
                "Task %s failed on %s (%s), retry %d/%d in %.3fs",
                flight.task_id, flight.worker_id, failure.kind.value,
                task.attempt, max_retries, delay,
            )
            self._emit(EventType.TASK_RETRY_SCHEDULED, flight.task_id, {
                "worker_id": flight.worker_id,
                "attempt": task.attempt,
                "delay": delay,
                "kind": failure.kind.value,
                "error": failure.message,
            })
            return

        self._fail(graph, run, flight.task_id, failure, worker_id=flight.worker_id)

    @staticmethod
    def _outcome_of(future: "asyncio.Task[Outcome]", flight: InFlight) -> Outcome:
        if future.cancelled():
            return Outcome.failed(f"Dispatch of {flight.task_id} was cancelled")
        exc = future.exception()
        if exc is not None:
            logger.error("Dispatch of %s on %s raised", flight.task_id, flight.worker_id, exc_info=exc)
            return Outcome.failed(f"{type(exc).__name__}: {exc}")
        return future.result()

    def _fail(
        self,
        graph: TaskGraph,
        run: OrchestratorState,
        task_id: str,
        failure: TaskFailure,
        worker_id: Optional[str] = None,
    ) -> None:
        """Mark *task_id* FAILED and cascade-cancel its dependents."""
        graph.mark_failed(task_id, failure)
        logger.warning("Task %s failed permanently (%s): %s", task_id, failure.kind.value, failure.message)
        self._emit(EventType.TASK_FAILED, task_id, {
            "worker_id": worker_id,
            "kind": failure.kind.value,
            "error": failure.message,
        })
        for dep_id in graph.cancel_dependents(task_id):
            self._emit_cancelled(graph, dep_id)

        if self.settings.fail_fast and run.fatal is None:
            run.error_kind = failure.kind
            run.fatal = OrchestrationFailedError(
                f"Task {task_id} failed ({failure.kind.value}): {failure.message}",
                details={"task_id": task_id, "kind": failure.kind.value},
            )

    # ── Teardown ─────────────────────────────────────────────────────

    async def _abort(self, graph: TaskGraph, run: OrchestratorState, failure: TaskFailure) -> None:
        """Cancel in-flight dispatches, release their budget and cancel the rest of the graph."""
        for future in [f for f in run.in_flight if f.done()]:
            self._settle(graph, run, future)

        flights = dict(run.in_flight)
        run.in_flight.clear()
        for future in flights:
            future.cancel()
        if flights:
            await asyncio.gather(*flights, return_exceptions=True)
        for flight in flights.values():
            self.budget.release(flight.reservation)

        for task_id in graph.cancel_all(failure):
            self._emit_cancelled(graph, task_id)
        if flights:
            logger.info("Run %s cancelled %d in-flight dispatch(es)", run.run_id, len(flights))

    # ── Events ───────────────────────────────────────────────────────

    def _emit(self, event_type: EventType, task_id: Optional[str] = None,
              payload: Optional[Dict[str, Any]] = None) -> None:
        run_id = self._run.run_id if self._run is not None else ""
        self.events.publish(LifecycleEvent(
            event_type=event_type,
            run_id=run_id,
            task_id=task_id,
            payload=payload or {},
        ))

    def _emit_cancelled(self, graph: TaskGraph, task_id: str) -> None:
        error = graph.get(task_id).error
        self._emit(EventType.TASK_CANCELLED, task_id, {
            "kind": error.kind.value if error else ErrorKind.CANCELLED.value,
            "reason": error.message if error else None,
        })

    def get_status(self) -> Dict[str, Any]:
        run = self._run
        return {
            "state": self.state.value,
            "run_id": run.run_id if run else None,
            "cycle": run.cycle if run else 0,
            "in_flight": len(run.in_flight) if run else 0,
            "dispatched": run.dispatched if run else 0,
            "retries": run.retries if run else 0,
            "starving": dict(run.starvation) if run else {},
            "pool": self.pool.stats,
            "budget": self.budget.get_dashboard(),
        }


def _kind_of(outcome: Outcome) -> ErrorKind:
    if outcome.error_kind:
        try:
            return ErrorKind(outcome.error_kind)
        except ValueError:
            logger.debug("Unknown error kind %r, treating as execution", outcome.error_kind)
    return ErrorKind.EXECUTION
