"""Tests for taskgrid.scheduling.task_graph."""

import time

import pytest

from conftest import make_task
from taskgrid.exceptions import (
    CyclicDependencyError,
    DanglingDependencyError,
    ErrorKind,
    IllegalTransitionError,
    TaskValidationError,
)
from taskgrid.interfaces.worker import CostTier
from taskgrid.scheduling.task_graph import TaskFailure, TaskGraph, TaskStatus


@pytest.fixture
def graph():
    return TaskGraph()


@pytest.fixture
def diamond(graph):
    """A -> {B, C} -> D"""
    graph.add_tasks([
        make_task("A"),
        make_task("B", deps=["A"]),
        make_task("C", deps=["A"]),
        make_task("D", deps=["B", "C"]),
    ])
    return graph


def _complete(graph, task_id):
    graph.promote_ready()
    graph.mark_running(task_id, "w1")
    return graph.mark_completed(task_id, result=task_id.lower())


# ========================================================================
# CONSTRUCTION
# ========================================================================


class TestGraphConstruction:

    def test_add_task_starts_pending(self, graph):
        assert graph.add_task(make_task("A")) == TaskStatus.PENDING
        assert graph.get_status("A") == TaskStatus.PENDING
        assert "A" in graph
        assert len(graph) == 1

    def test_duplicate_task_raises(self, graph):
        graph.add_task(make_task("A"))
        with pytest.raises(TaskValidationError, match="already exists"):
            graph.add_task(make_task("A"))

    def test_dangling_dependency_rejected(self, graph):
        with pytest.raises(DanglingDependencyError) as exc_info:
            graph.add_task(make_task("B", deps=["ghost"]))
        assert exc_info.value.details["missing"] == ["ghost"]
        assert "B" not in graph

    def test_self_dependency_is_a_cycle(self, graph):
        with pytest.raises(CyclicDependencyError):
            graph.add_task(make_task("A", deps=["A"]))

    def test_batch_cycle_rejected_atomically(self, graph):
        graph.add_task(make_task("root"))
        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.add_tasks([
                make_task("X", deps=["root", "Z"]),
                make_task("Y", deps=["X"]),
                make_task("Z", deps=["Y"]),
            ])
        cycle = exc_info.value.details["cycle"]
        assert cycle[0] == cycle[-1]
        assert {"X", "Y", "Z"} <= set(cycle)
        # nothing from the rejected batch was inserted
        assert len(graph) == 1

    def test_batch_may_reference_later_members(self, graph):
        inserted = graph.add_tasks([make_task("B", deps=["A"]), make_task("A")])
        assert inserted == ["B", "A"]
        assert graph.validate_graph() is None

    def test_cycle_lists_members_in_dependency_order(self, graph):
        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.add_tasks([
                make_task("P"),
                make_task("Q", deps=["P", "S"]),
                make_task("R", deps=["Q"]),
                make_task("S", deps=["R"]),
            ])
        cycle = exc_info.value.details["cycle"]
        assert cycle[0] == cycle[-1]
        assert sorted(cycle[:-1]) == ["Q", "R", "S"]
        # each member depends on the next one
        deps = {"Q": {"P", "S"}, "R": {"Q"}, "S": {"R"}}
        for task_id, dep in zip(cycle, cycle[1:]):
            assert dep in deps[task_id]

    @pytest.mark.parametrize("reverse", [False, True])
    def test_long_chain_loads_in_one_batch(self, graph, reverse):
        n = 5000
        tasks = [make_task("c0")] + [make_task(f"c{i}", deps=[f"c{i - 1}"]) for i in range(1, n)]
        if reverse:
            tasks.reverse()
        started = time.monotonic()
        graph.add_tasks(tasks)
        assert time.monotonic() - started < 3.0
        assert len(graph) == n
        assert graph.validate_graph() is None
        assert graph.get_downstream(f"c{n - 2}") == {f"c{n - 1}"}

    def test_long_cycle_detected(self, graph):
        n = 3000
        tasks = [make_task(f"c{i}", deps=[f"c{(i - 1) % n}"]) for i in range(n)]
        with pytest.raises(CyclicDependencyError) as exc_info:
            graph.add_tasks(tasks)
        cycle = exc_info.value.details["cycle"]
        assert len(cycle) == n + 1
        assert len(graph) == 0

    def test_non_pending_task_rejected(self, graph):
        task = make_task("A")
        task.status = TaskStatus.RUNNING
        with pytest.raises(TaskValidationError, match="pending"):
            graph.add_task(task)

    def test_string_tier_coerced(self):
        task = make_task("A", tier="high")
        assert task.tier is CostTier.HIGH


# ========================================================================
# READINESS
# ========================================================================


class TestReadiness:

    def test_roots_promoted(self, diamond):
        assert diamond.promote_ready() == ["A"]
        assert [t.task_id for t in diamond.ready_tasks()] == ["A"]

    def test_dependents_wait_for_completion(self, diamond):
        diamond.promote_ready()
        diamond.mark_running("A")
        assert diamond.promote_ready() == []
        unblocked = diamond.mark_completed("A")
        assert unblocked == ["B", "C"]
        assert diamond.promote_ready() == ["B", "C"]

    def test_join_needs_every_dependency(self, diamond):
        _complete(diamond, "A")
        _complete(diamond, "B")
        assert diamond.get_status("D") == TaskStatus.PENDING
        _complete(diamond, "C")
        diamond.promote_ready()
        assert diamond.get_status("D") == TaskStatus.READY

    def test_priority_then_insertion_order(self, graph):
        graph.add_tasks([
            make_task("low", priority=0),
            make_task("high", priority=9),
            make_task("also_low", priority=0),
        ])
        assert [t.task_id for t in graph.ready_tasks()] == ["high", "low", "also_low"]

    def test_backoff_delays_promotion(self, graph):
        graph.add_task(make_task("A"))
        graph.promote_ready()
        graph.mark_running("A")
        now = time.monotonic()
        graph.mark_retry("A", now + 10, TaskFailure(ErrorKind.TIMEOUT, "slow"))
        assert graph.next_eligible_at() == pytest.approx(now + 10)
        assert graph.promote_ready(now) == []
        assert graph.promote_ready(now + 11) == ["A"]
        assert graph.next_eligible_at() is None


# ========================================================================
# TRANSITIONS
# ========================================================================


class TestTransitions:

    def test_happy_path(self, graph):
        graph.add_task(make_task("A"))
        graph.promote_ready()
        task = graph.mark_running("A", "w1")
        assert task.dispatches == 1
        assert task.last_worker_id == "w1"
        graph.mark_completed("A", result={"ok": True}, actual_cost=2.5)
        snap = graph.snapshot()["A"]
        assert snap.status == TaskStatus.COMPLETED
        assert snap.result == {"ok": True}
        assert snap.actual_cost == 2.5
        assert snap.worker_id == "w1"

    def test_running_requires_ready(self, graph):
        graph.add_task(make_task("A"))
        with pytest.raises(IllegalTransitionError, match="PENDING"):
            graph.mark_running("A")

    def test_terminal_is_final(self, graph):
        graph.add_task(make_task("A"))
        _complete(graph, "A")
        with pytest.raises(IllegalTransitionError):
            graph.mark_failed("A", TaskFailure(ErrorKind.EXECUTION, "late"))
        with pytest.raises(IllegalTransitionError):
            graph.mark_cancelled("A")
        with pytest.raises(IllegalTransitionError):
            graph.mark_completed("A")

    def test_unknown_task_is_illegal(self, graph):
        with pytest.raises(IllegalTransitionError, match="unknown"):
            graph.mark_running("nope")

    def test_retry_returns_to_pending(self, graph):
        graph.add_task(make_task("A"))
        graph.promote_ready()
        graph.mark_running("A", "w1")
        failure = TaskFailure(ErrorKind.EXECUTION, "boom")
        task = graph.mark_retry("A", time.monotonic(), failure)
        assert task.status == TaskStatus.PENDING
        assert task.attempt == 1
        assert task.last_error == failure
        assert task.last_worker_id == "w1"

    def test_failed_from_ready(self, graph):
        graph.add_task(make_task("A"))
        graph.promote_ready()
        graph.mark_failed("A", TaskFailure(ErrorKind.STARVATION_TIMEOUT, "no worker"))
        assert graph.get("A").error.kind == ErrorKind.STARVATION_TIMEOUT


# ========================================================================
# CASCADES
# ========================================================================


class TestCascade:

    def test_cancel_dependents_is_transitive(self, diamond):
        diamond.promote_ready()
        diamond.mark_running("A")
        diamond.mark_failed("A", TaskFailure(ErrorKind.EXECUTION, "boom"))
        cancelled = diamond.cancel_dependents("A")
        assert cancelled == ["B", "C", "D"]
        for tid in cancelled:
            err = diamond.get(tid).error
            assert diamond.get_status(tid) == TaskStatus.CANCELLED
            assert err.kind == ErrorKind.DEPENDENCY_FAILED
        assert diamond.is_fully_resolved()

    def test_cascade_skips_terminal_tasks(self, diamond):
        _complete(diamond, "A")
        _complete(diamond, "B")
        diamond.promote_ready()
        diamond.mark_running("C")
        diamond.mark_failed("C", TaskFailure(ErrorKind.TIMEOUT, "slow"))
        assert diamond.cancel_dependents("C") == ["D"]
        assert diamond.get_status("B") == TaskStatus.COMPLETED

    def test_cancel_all(self, diamond):
        _complete(diamond, "A")
        cancelled = diamond.cancel_all()
        assert cancelled == ["B", "C", "D"]
        assert diamond.get("B").error.kind == ErrorKind.CANCELLED

    def test_starved_tasks_detected_and_cancelled(self, graph):
        graph.add_tasks([make_task("A"), make_task("B", deps=["A"]), make_task("C", deps=["B"])])
        graph.promote_ready()
        graph.mark_running("A")
        graph.mark_failed("A", TaskFailure(ErrorKind.EXECUTION, "boom"))
        assert graph.has_starved_tasks()
        assert graph.cancel_starved_tasks() == ["B", "C"]
        assert not graph.has_starved_tasks()
        assert graph.get("B").error.message == "dependency A did not complete"


# ========================================================================
# QUERIES AND PERSISTENCE
# ========================================================================


class TestQueries:

    def test_execution_waves(self, diamond):
        assert diamond.execution_waves() == [["A"], ["B", "C"], ["D"]]
        _complete(diamond, "A")
        assert diamond.execution_waves() == [["B", "C"], ["D"]]

    def test_downstream(self, diamond):
        assert diamond.get_downstream("A") == {"B", "C", "D"}
        assert diamond.get_downstream("D") == set()

    def test_snapshot_is_detached(self, diamond):
        snap = diamond.snapshot()
        _complete(diamond, "A")
        assert snap["A"].status == TaskStatus.PENDING
        assert snap.counts["pending"] == 4
        assert diamond.stats["completed"] == 1

    def test_persistence_resets_in_flight_work(self, diamond):
        _complete(diamond, "A")
        diamond.promote_ready()
        diamond.mark_running("B", "w1")

        restored = TaskGraph.from_dict(diamond.to_dict())

        assert restored.get_status("A") == TaskStatus.COMPLETED
        assert restored.get("A").result == "a"
        assert restored.get_status("B") == TaskStatus.PENDING
        assert restored.get_status("C") == TaskStatus.PENDING
        assert restored.get("B").dispatches == 1
        assert restored.get("D").dependencies == frozenset({"B", "C"})
        assert [t.task_id for t in restored.ready_tasks()] == ["B", "C"]

    def test_last_error_survives_snapshot_and_persistence(self, graph):
        graph.add_task(make_task("A"))
        graph.promote_ready()
        graph.mark_running("A", "w1")
        failure = TaskFailure(ErrorKind.TIMEOUT, "slow")
        graph.mark_retry("A", time.monotonic(), failure)

        snap = graph.snapshot()
        assert snap["A"].last_error == failure
        assert snap["A"].to_dict()["last_error"] == failure.to_dict()

        restored = TaskGraph.from_dict(graph.to_dict())
        assert restored.get("A").last_error == failure
        assert restored.get("A").attempt == 1
