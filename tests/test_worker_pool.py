"""Tests for taskgrid.scheduling.worker_pool: load slots, timeouts and cancellation."""

import asyncio
import logging

import pytest

from conftest import make_task, make_worker
from taskgrid.exceptions import ErrorKind, WorkerCapacityError
from taskgrid.interfaces.worker import CostTier, Outcome
from taskgrid.scheduling.worker_pool import LoadSlot, WorkerPool


@pytest.fixture
def pool():
    return WorkerPool(grace_period=0.05)


class _RawWorker:
    """Satisfies IWorker without the BaseWorker helpers."""

    worker_id = "raw"
    capabilities = frozenset({"general"})
    concurrency_limit = 1
    cost_tier = CostTier.LOW

    def __init__(self, value):
        self._value = value

    async def execute(self, description, timeout, *, tier):
        return self._value


# ========================================================================
# LOAD SLOT
# ========================================================================


class TestLoadSlot:

    def test_release_exactly_once(self, registry):
        state = registry.register(make_worker("w1", limit=2))
        slot = LoadSlot(state, "t1")
        assert state.current_load == 1
        assert state.active_tasks == {"t1"}
        assert slot.release() is True
        assert slot.release() is False
        assert state.current_load == 0
        assert state.active_tasks == set()

    def test_capacity_enforced(self, registry):
        state = registry.register(make_worker("w1", limit=1))
        with LoadSlot(state, "t1"):
            with pytest.raises(WorkerCapacityError):
                LoadSlot(state, "t2")
        assert state.current_load == 0


# ========================================================================
# DISPATCH
# ========================================================================


class TestDispatch:

    async def test_success(self, pool, registry):
        state = registry.register(make_worker("w1", cost={CostTier.LOW: 1.5}))
        future = pool.dispatch(state, make_task("t1", description="hello"), 1.0, CostTier.LOW)
        assert state.current_load == 1
        outcome = await future
        assert outcome == Outcome.ok("hello", actual_cost=1.5)
        assert state.current_load == 0
        assert pool.in_flight == 0
        assert pool.stats["succeeded"] == 1

    async def test_worker_exception_becomes_failure(self, pool, registry, caplog):
        async def explode(description, tier):
            raise RuntimeError("kaput")

        state = registry.register(make_worker("w1", handler=explode))
        with caplog.at_level(logging.WARNING):
            outcome = await pool.dispatch(state, make_task("t1"), 1.0, CostTier.MEDIUM)
        assert not outcome.success
        assert outcome.error_kind == ErrorKind.EXECUTION.value
        assert "kaput" in outcome.error
        assert state.current_load == 0
        assert "raised on t1" in caplog.text

    async def test_non_outcome_result_rejected(self, pool, registry):
        state = registry.register(_RawWorker("not an outcome"))
        outcome = await pool.dispatch(state, make_task("t1"), 1.0, CostTier.LOW)
        assert not outcome.success
        assert "expected Outcome" in outcome.error

    @pytest.mark.parametrize("cost", [-1.0, float("nan"), float("inf"), "3", True])
    async def test_invalid_reported_cost_becomes_failure(self, pool, registry, cost):
        state = registry.register(_RawWorker(Outcome.ok("done", actual_cost=cost)))
        outcome = await pool.dispatch(state, make_task("t1"), 1.0, CostTier.LOW)
        assert not outcome.success
        assert outcome.error_kind == ErrorKind.EXECUTION.value
        assert "invalid cost" in outcome.error
        assert outcome.actual_cost == 0.0
        assert state.current_load == 0
        assert pool.stats["failed"] == 1

    async def test_timeout_raised_by_worker_keeps_timeout_kind(self, pool, registry):
        async def upstream_timeout(description, tier):
            raise TimeoutError("upstream took too long")

        state = registry.register(make_worker("w1", handler=upstream_timeout))
        outcome = await pool.dispatch(state, make_task("t1"), 1.0, CostTier.MEDIUM)
        assert outcome.error_kind == ErrorKind.TIMEOUT.value

    async def test_timeout(self, pool, registry):
        async def slow(description, tier):
            await asyncio.sleep(5)

        state = registry.register(make_worker("w1", handler=slow))
        outcome = await pool.dispatch(state, make_task("t1"), 0.05, CostTier.MEDIUM)
        assert not outcome.success
        assert outcome.error_kind == ErrorKind.TIMEOUT.value
        assert state.current_load == 0
        assert pool.stats["timed_out"] == 1
        assert "timed out after 0.05s on w1" in outcome.error
        assert pool.stats["force_reclaimed"] == 0

    async def test_stubborn_worker_is_reclaimed(self, pool, registry, caplog):
        async def stubborn(description, tier):
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                await asyncio.sleep(0.2)
                return "late"

        state = registry.register(make_worker("w1", handler=stubborn))
        with caplog.at_level(logging.WARNING):
            outcome = await pool.dispatch(state, make_task("t1"), 0.05, CostTier.MEDIUM)
        assert outcome.error_kind == ErrorKind.TIMEOUT.value
        assert state.current_load == 0
        assert pool.stats["force_reclaimed"] == 1
        assert pool.stats["stray"] == 1
        assert "reclaiming slot" in caplog.text

        await asyncio.sleep(0.3)
        assert pool.stats["stray"] == 0

    async def test_cancel_releases_slot(self, pool, registry):
        started = asyncio.Event()

        async def long(description, tier):
            started.set()
            await asyncio.sleep(5)

        state = registry.register(make_worker("w1", handler=long))
        future = pool.dispatch(state, make_task("t1"), 10.0, CostTier.MEDIUM)
        await started.wait()
        future.cancel()
        with pytest.raises(asyncio.CancelledError):
            await future
        assert state.current_load == 0
        assert pool.stats["cancelled"] == 1

    async def test_cancel_all(self, pool, registry):
        async def long(description, tier):
            await asyncio.sleep(5)

        state = registry.register(make_worker("w1", handler=long, limit=3))
        futures = [pool.dispatch(state, make_task(f"t{i}"), 10.0, CostTier.MEDIUM) for i in range(3)]
        assert state.current_load == 3
        await pool.cancel_all()
        assert all(f.cancelled() for f in futures)
        assert state.current_load == 0
        assert pool.in_flight == 0

    async def test_capacity_checked_at_dispatch(self, pool, registry):
        state = registry.register(make_worker("w1", limit=1))
        first = pool.dispatch(state, make_task("t1"), 1.0, CostTier.MEDIUM)
        with pytest.raises(WorkerCapacityError):
            pool.dispatch(state, make_task("t2"), 1.0, CostTier.MEDIUM)
        await first
        assert state.current_load == 0

    async def test_timeout_required(self, pool, registry):
        state = registry.register(make_worker("w1"))
        with pytest.raises(ValueError, match="positive timeout"):
            pool.dispatch(state, make_task("t1"), 0, CostTier.MEDIUM)
        assert state.current_load == 0

    async def test_tier_passed_to_worker(self, pool, registry):
        seen = []

        async def record(description, tier):
            seen.append(tier)
            return "ok"

        state = registry.register(make_worker("w1", handler=record))
        await pool.dispatch(state, make_task("t1"), 1.0, CostTier.LOW)
        assert seen == [CostTier.LOW]
