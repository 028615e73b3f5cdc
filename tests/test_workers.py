"""Tests for the bundled workers (taskgrid/workers)."""

import asyncio
import sys
import threading
import time

import pytest

from taskgrid.interfaces.worker import CostTier, IWorker, Outcome
from taskgrid.workers import BaseWorker, CallableWorker, SubprocessWorker
from taskgrid.workers.callable_worker import price_for

PY = sys.executable


# --- CallableWorker ---

def test_callable_worker_is_an_iworker():
    worker = CallableWorker("w1", ["coding"], lambda d, t: d)
    assert isinstance(worker, IWorker)
    assert isinstance(worker, BaseWorker)
    assert worker.capabilities == frozenset({"coding"})
    assert "w1" in repr(worker)


def test_price_for():
    assert price_for(None, CostTier.HIGH) == 0.0
    assert price_for(2, CostTier.HIGH) == 2.0
    assert price_for({CostTier.HIGH: 7.5}, CostTier.HIGH) == 7.5
    assert price_for({CostTier.HIGH: 7.5}, CostTier.LOW) == 0.0


async def test_async_handler():
    async def handler(description, tier):
        await asyncio.sleep(0)
        return f"{description}@{tier.value}"

    worker = CallableWorker("w1", ["x"], handler, cost_per_call={CostTier.LOW: 0.5})
    outcome = await worker.execute("job", 1.0, tier=CostTier.LOW)
    assert outcome == Outcome.ok("job@low", actual_cost=0.5)


async def test_sync_handler_runs_off_loop():
    loop_thread = threading.get_ident()
    seen = []

    def handler(description, tier):
        seen.append(threading.get_ident())
        time.sleep(0.01)
        return description.upper()

    worker = CallableWorker("w1", ["x"], handler)
    outcome = await worker.execute("job", 1.0, tier=CostTier.MEDIUM)
    assert outcome.result == "JOB"
    assert seen and seen[0] != loop_thread


async def test_handler_may_return_outcome():
    worker = CallableWorker("w1", ["x"], lambda d, t: Outcome.failed("nope", error_kind="timeout"))
    outcome = await worker.execute("job", 1.0, tier=CostTier.MEDIUM)
    assert not outcome.success
    assert outcome.error_kind == "timeout"


async def test_handler_exception_propagates():
    async def handler(description, tier):
        raise ValueError("bad input")

    worker = CallableWorker("w1", ["x"], handler)
    with pytest.raises(ValueError, match="bad input"):
        await worker.execute("job", 1.0, tier=CostTier.MEDIUM)


# --- SubprocessWorker ---

def test_empty_command_rejected():
    with pytest.raises(ValueError):
        SubprocessWorker("w1", ["shell"], command="")


async def test_subprocess_reads_stdin():
    worker = SubprocessWorker(
        "w1", ["shell"],
        command=[PY, "-c", "import sys; print(sys.stdin.read().upper())"],
        cost_per_call=1.25,
    )
    outcome = await worker.execute("hello", 5.0, tier=CostTier.MEDIUM)
    assert outcome.success
    assert outcome.result == "HELLO"
    assert outcome.actual_cost == 1.25


async def test_subprocess_receives_tier():
    script = "import os, sys; print(sys.argv[1], os.environ['TASKGRID_TIER'])"
    worker = SubprocessWorker("w1", ["shell"], command=[PY, "-c", script, "--tier={tier}"])
    outcome = await worker.execute("", 5.0, tier=CostTier.LOW)
    assert outcome.result == "--tier=low low"


async def test_subprocess_nonzero_exit():
    script = "import sys; sys.stderr.write('broken pipe dream'); sys.exit(3)"
    worker = SubprocessWorker("w1", ["shell"], command=[PY, "-c", script])
    outcome = await worker.execute("", 5.0, tier=CostTier.MEDIUM)
    assert not outcome.success
    assert "code 3" in outcome.error
    assert "broken pipe dream" in outcome.error


async def test_subprocess_missing_command():
    worker = SubprocessWorker("w1", ["shell"], command=["definitely-not-a-real-binary-xyz"])
    outcome = await worker.execute("", 5.0, tier=CostTier.MEDIUM)
    assert not outcome.success
    assert "Command not found" in outcome.error


async def test_subprocess_cancel_terminates_process():
    worker = SubprocessWorker(
        "w1", ["shell"],
        command=[PY, "-c", "import time; time.sleep(30)"],
        terminate_grace=1.0,
    )
    task = asyncio.create_task(worker.execute("", 60.0, tier=CostTier.MEDIUM))
    await asyncio.sleep(0.3)
    started = time.monotonic()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert time.monotonic() - started < 5.0
