"""Worker pool: dispatches tasks to workers with bounded, exactly-once slots.

Every dispatch runs under a ``LoadSlot`` that is taken synchronously when
the dispatch is accepted and released on every exit path: success,
failure, worker exception, timeout, and cancellation.

Timeouts and cancellation are cooperative first: the worker coroutine is
cancelled and given ``grace_period`` seconds to unwind.  If it has not
stopped by then, the slot is reclaimed anyway and the stray coroutine is
tracked until it finishes.
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from taskgrid.exceptions import ErrorKind, TaskTimeoutError, WorkerCapacityError, error_kind_for
from taskgrid.interfaces.worker import CostTier, Outcome
from taskgrid.scheduling.capability_registry import WorkerState
from taskgrid.scheduling.task_graph import Task

logger = logging.getLogger(__name__)


def _is_valid_cost(cost: Any) -> bool:
    if isinstance(cost, bool) or not isinstance(cost, (int, float)):
        return False
    return math.isfinite(cost) and cost >= 0


class LoadSlot:
    """One unit of a worker's concurrency, released exactly once."""

    def __init__(self, state: WorkerState, task_id: str) -> None:
        if state.current_load >= state.concurrency_limit:
            raise WorkerCapacityError(
                f"Worker {state.worker_id} is at capacity "
                f"({state.current_load}/{state.concurrency_limit})",
                details={"worker_id": state.worker_id, "task_id": task_id},
            )
        self._state = state
        self._task_id = task_id
        self._released = False
        state.current_load += 1
        state.active_tasks.add(task_id)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Give the slot back.  Returns False if it was already released."""
        if self._released:
            return False
        self._released = True
        self._state.current_load -= 1
        self._state.active_tasks.discard(self._task_id)
        return True

    def __enter__(self) -> "LoadSlot":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class _PoolStats:
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    timed_out: int = 0
    cancelled: int = 0
    force_reclaimed: int = 0


@dataclass
class DispatchHandle:
    """Bookkeeping for one accepted dispatch."""

    task_id: str
    worker_id: str
    tier: CostTier
    timeout: float
    slot: LoadSlot
    future: Optional["asyncio.Task[Outcome]"] = field(default=None, repr=False)


class WorkerPool:
    """Runs worker executions concurrently, one asyncio task per dispatch."""

    def __init__(self, grace_period: float = 5.0) -> None:
        self.grace_period = grace_period
        self._in_flight: Dict["asyncio.Task[Outcome]", DispatchHandle] = {}
        # Worker coroutines that ignored cancellation past the grace period
        self._stray: Set[asyncio.Task] = set()
        self._stats = _PoolStats()

    def dispatch(
        self,
        state: WorkerState,
        task: Task,
        timeout: float,
        tier: CostTier,
    ) -> "asyncio.Task[Outcome]":
        """Start executing *task* on *state*'s worker.

        Only the task's id and description are read; outcomes go back to
        the caller, which owns every state change.

        The load slot is acquired before this returns.

        Raises:
            WorkerCapacityError: if the worker has no free slot.
            ValueError: if *timeout* is not positive.
        """
        if timeout is None or timeout <= 0:
            raise ValueError(f"Dispatch of {task.task_id} needs a positive timeout")
        slot = LoadSlot(state, task.task_id)
        handle = DispatchHandle(
            task_id=task.task_id,
            worker_id=state.worker_id,
            tier=tier,
            timeout=timeout,
            slot=slot,
        )
        future = asyncio.create_task(
            self._run(state, handle, task.description),
            name=f"dispatch:{task.task_id}@{state.worker_id}",
        )
        handle.future = future
        self._in_flight[future] = handle
        future.add_done_callback(self._forget)
        self._stats.dispatched += 1
        logger.debug(
            "Dispatched %s to %s (tier=%s, timeout=%.2fs, load=%d/%d)",
            task.task_id, state.worker_id, tier.value, timeout,
            state.current_load, state.concurrency_limit,
        )
        return future

    async def _run(self, state: WorkerState, handle: DispatchHandle, description: str) -> Outcome:
        with handle.slot:
            execution = asyncio.create_task(
                state.worker.execute(description, handle.timeout, tier=handle.tier),
                name=f"execute:{handle.task_id}@{handle.worker_id}",
            )
            try:
                done, _ = await asyncio.wait({execution}, timeout=handle.timeout)
            except asyncio.CancelledError:
                self._stats.cancelled += 1
                await self._stop(execution, handle, reason="cancelled")
                raise

            if not done:
                self._stats.timed_out += 1
                await self._stop(execution, handle, reason="timeout")
                error = TaskTimeoutError(
                    f"Task {handle.task_id} timed out after {handle.timeout:.2f}s on {handle.worker_id}",
                    details={"task_id": handle.task_id, "worker_id": handle.worker_id},
                )
                return Outcome.failed(error.message, error_kind=error_kind_for(error).value)

            return self._collect(execution, handle)

    def _collect(self, execution: asyncio.Task, handle: DispatchHandle) -> Outcome:
        if execution.cancelled():
            self._stats.failed += 1
            return Outcome.failed(f"Worker {handle.worker_id} cancelled task {handle.task_id}")
        exc = execution.exception()
        if exc is not None:
            self._stats.failed += 1
            logger.warning(
                "Worker %s raised on %s: %s", handle.worker_id, handle.task_id, exc,
                exc_info=exc,
            )
            return Outcome.failed(f"{type(exc).__name__}: {exc}", error_kind=error_kind_for(exc).value)
        outcome = execution.result()
        if not isinstance(outcome, Outcome):
            self._stats.failed += 1
            return Outcome.failed(
                f"Worker {handle.worker_id} returned {type(outcome).__name__}, expected Outcome"
            )
        cost = outcome.actual_cost
        if not _is_valid_cost(cost):
            self._stats.failed += 1
            logger.warning("Worker %s reported invalid cost %r for %s", handle.worker_id, cost, handle.task_id)
            return Outcome.failed(
                f"Worker {handle.worker_id} reported invalid cost {cost!r} for {handle.task_id}",
                error_kind=ErrorKind.EXECUTION.value,
            )
        if outcome.success:
            self._stats.succeeded += 1
        else:
            self._stats.failed += 1
        return outcome

    async def _stop(self, execution: asyncio.Task, handle: DispatchHandle, reason: str) -> None:
        """Cancel *execution* cooperatively; reclaim the slot after the grace period."""
        execution.cancel()
        try:
            done, _ = await asyncio.shield(asyncio.wait({execution}, timeout=self.grace_period))
        except asyncio.CancelledError:
            self._abandon(execution, handle, reason)
            raise
        if not done:
            self._abandon(execution, handle, reason)
        elif not execution.cancelled() and execution.exception() is not None:
            logger.debug("Worker %s raised while stopping %s", handle.worker_id, handle.task_id)

    def _abandon(self, execution: asyncio.Task, handle: DispatchHandle, reason: str) -> None:
        if execution.done():
            return
        self._stats.force_reclaimed += 1
        self._stray.add(execution)
        execution.add_done_callback(self._reap)
        logger.warning(
            "Worker %s did not stop %s within %.2fs (%s); reclaiming slot",
            handle.worker_id, handle.task_id, self.grace_period, reason,
        )

    def _reap(self, execution: asyncio.Task) -> None:
        self._stray.discard(execution)
        if not execution.cancelled() and execution.exception() is not None:
            logger.debug("Stray execution %s ended with %r", execution.get_name(), execution.exception())

    def _forget(self, future: asyncio.Task) -> None:
        handle = self._in_flight.pop(future, None)
        # Covers dispatches cancelled before their coroutine ever started
        if handle is not None and handle.slot.release():
            self._stats.cancelled += 1
            logger.debug("Dispatch of %s cancelled before start", handle.task_id)

    async def cancel_all(self) -> None:
        """Cancel every in-flight dispatch and wait for their slots to free."""
        futures = list(self._in_flight)
        for future in futures:
            future.cancel()
        if futures:
            await asyncio.gather(*futures, return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "in_flight": len(self._in_flight),
            "stray": len(self._stray),
            "dispatched": self._stats.dispatched,
            "succeeded": self._stats.succeeded,
            "failed": self._stats.failed,
            "timed_out": self._stats.timed_out,
            "cancelled": self._stats.cancelled,
            "force_reclaimed": self._stats.force_reclaimed,
        }
