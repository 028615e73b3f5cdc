"""Shared fixtures and builders for TaskGrid tests."""

import asyncio
from typing import Any, Callable, Iterable, List, Optional

import pytest

from taskgrid.config.settings import Settings, get_settings
from taskgrid.event_bus import EventChannel
from taskgrid.interfaces.event_bus import LifecycleEvent
from taskgrid.interfaces.worker import CostTier
from taskgrid.middleware.budget_tracker import BudgetTracker
from taskgrid.scheduling.capability_registry import CapabilityRegistry
from taskgrid.scheduling.orchestrator import Orchestrator
from taskgrid.scheduling.task_graph import Task
from taskgrid.scheduling.worker_pool import WorkerPool
from taskgrid.workers.callable_worker import CallableWorker


def make_settings(**overrides: Any) -> Settings:
    """Settings tuned for fast tests: short polls, tiny backoff, no jitter."""
    values = dict(
        idle_poll_interval=0.01,
        grace_period=0.05,
        default_timeout=5.0,
        max_retries=0,
        retry_initial_delay_ms=1,
        retry_max_delay_ms=5,
        retry_jitter=False,
    )
    values.update(overrides)
    return Settings(**values)


async def echo(description: str, tier: CostTier) -> str:
    await asyncio.sleep(0.005)
    return description


def make_worker(
    worker_id: str,
    capabilities: Iterable[str] = ("general",),
    handler: Optional[Callable] = None,
    limit: int = 1,
    tier: CostTier = CostTier.MEDIUM,
    cost: Any = None,
) -> CallableWorker:
    return CallableWorker(
        worker_id,
        capabilities,
        handler or echo,
        concurrency_limit=limit,
        cost_tier=tier,
        cost_per_call=cost,
    )


def make_task(task_id: str, capability: str = "general", deps: Iterable[str] = (), **kwargs: Any) -> Task:
    return Task(
        task_id=task_id,
        description=kwargs.pop("description", task_id),
        required_capability=capability,
        dependencies=frozenset(deps),
        **kwargs,
    )


@pytest.fixture(autouse=True)
def _reset_container():
    from taskgrid import di_container
    di_container._container = None
    get_settings.cache_clear()
    yield
    di_container._container = None
    get_settings.cache_clear()


@pytest.fixture
def registry():
    return CapabilityRegistry()


@pytest.fixture
def budget():
    return BudgetTracker(ceiling=1000.0)


@pytest.fixture
def events():
    return EventChannel()


@pytest.fixture
def recorded(events) -> List[LifecycleEvent]:
    seen: List[LifecycleEvent] = []
    events.add_handler(seen.append)
    return seen


@pytest.fixture
def make_orchestrator(registry, budget, events):
    def factory(**overrides: Any) -> Orchestrator:
        settings = make_settings(**overrides)
        return Orchestrator(
            registry=registry,
            budget=budget,
            pool=WorkerPool(grace_period=settings.grace_period),
            events=events,
            settings=settings,
        )
    return factory
