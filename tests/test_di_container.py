"""Tests for the DI container (taskgrid/di_container.py)."""

from conftest import make_worker
from taskgrid.config.settings import Settings
from taskgrid.di_container import TaskGridContainer, get_container, shutdown_container
from taskgrid.event_bus import EventChannel
from taskgrid.interfaces.event_bus import EventType, LifecycleEvent
from taskgrid.interfaces.worker import CostTier
from taskgrid.middleware.budget_tracker import BudgetTracker
from taskgrid.scheduling.orchestrator import Orchestrator, RunState


def test_container_singleton():
    c1 = get_container()
    c2 = get_container()
    assert c1 is c2


def test_container_status_all_uninitialized():
    assert get_container().status() == {
        "settings": False,
        "budget_tracker": False,
        "registry": False,
        "worker_pool": False,
        "event_channel": False,
        "orchestrator": False,
    }


def test_budget_tracker_uses_settings():
    settings = Settings(_env_file=None, budget_ceiling=12.0, tier_costs={"high": 3.0})
    container = TaskGridContainer(settings=settings)
    tracker = container.budget_tracker
    assert isinstance(tracker, BudgetTracker)
    assert tracker.ceiling == 12.0
    assert tracker.estimate("any", CostTier.HIGH) == 3.0
    assert container.status()["budget_tracker"] is True


def test_registry_breakers_follow_settings():
    container = TaskGridContainer(settings=Settings(_env_file=None, circuit_breaker_enabled=False))
    state = container.registry.register(make_worker("w1"))
    assert state.breaker is None


def test_event_channel_has_logging_sink():
    container = TaskGridContainer(settings=Settings(_env_file=None))
    channel = container.event_channel
    assert isinstance(channel, EventChannel)
    assert channel.stats["handlers"] == 1


def test_orchestrator_shares_services():
    container = TaskGridContainer(settings=Settings(_env_file=None))
    orch = container.orchestrator
    assert isinstance(orch, Orchestrator)
    assert orch.registry is container.registry
    assert orch.budget is container.budget_tracker
    assert orch.pool is container.worker_pool
    assert orch.events is container.event_channel
    assert orch.state == RunState.IDLE
    assert all(container.status().values())


def test_shutdown_clears_container():
    container = get_container()
    channel = container.event_channel
    shutdown_container()
    from taskgrid import di_container
    assert di_container._container is None
    channel.publish(LifecycleEvent(event_type=EventType.RUN_STARTED, run_id="r1"))
    assert channel.recent() == []
    assert get_container() is not container
