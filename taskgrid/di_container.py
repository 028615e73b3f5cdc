"""Dependency injection container for TaskGrid.

Lightweight wiring of core services at application startup.
Uses lazy initialization: services are created on first access.
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class TaskGridContainer:
    """Central service container wiring settings, budget, registry, pool, events and orchestrator."""

    def __init__(self, settings=None) -> None:
        self._settings = settings
        self._budget_tracker = None
        self._registry = None
        self._worker_pool = None
        self._event_channel = None
        self._event_sink_id: Optional[str] = None
        self._orchestrator = None

    @property
    def settings(self):
        if self._settings is None:
            from taskgrid.config.settings import get_settings
            self._settings = get_settings()
        return self._settings

    @property
    def budget_tracker(self):
        if self._budget_tracker is None:
            from taskgrid.middleware.budget_tracker import BudgetTracker, TierCostTable
            self._budget_tracker = BudgetTracker(
                ceiling=self.settings.budget_ceiling,
                cost_function=TierCostTable(self.settings.tier_costs),
                allow_overage=self.settings.allow_budget_overage,
            )
            logger.info("BudgetTracker initialized (ceiling=%.2f)", self.settings.budget_ceiling)
        return self._budget_tracker

    @property
    def registry(self):
        if self._registry is None:
            from taskgrid.scheduling.capability_registry import CapabilityRegistry
            self._registry = CapabilityRegistry(breaker_config=self.settings.circuit_breaker_config())
            logger.info("CapabilityRegistry initialized")
        return self._registry

    @property
    def worker_pool(self):
        if self._worker_pool is None:
            from taskgrid.scheduling.worker_pool import WorkerPool
            self._worker_pool = WorkerPool(grace_period=self.settings.grace_period)
        return self._worker_pool

    @property
    def event_channel(self):
        if self._event_channel is None:
            from taskgrid.event_bus import EventChannel, LoggingEventSink
            self._event_channel = EventChannel(
                buffer_size=self.settings.event_buffer_size,
                queue_size=self.settings.event_queue_size,
            )
            self._event_sink_id = self._event_channel.add_handler(LoggingEventSink())
        return self._event_channel

    @property
    def orchestrator(self):
        if self._orchestrator is None:
            from taskgrid.scheduling.orchestrator import Orchestrator
            self._orchestrator = Orchestrator(
                registry=self.registry,
                budget=self.budget_tracker,
                pool=self.worker_pool,
                events=self.event_channel,
                settings=self.settings,
            )
            logger.info("Orchestrator initialized")
        return self._orchestrator

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {
            "settings": self._settings is not None,
            "budget_tracker": self._budget_tracker is not None,
            "registry": self._registry is not None,
            "worker_pool": self._worker_pool is not None,
            "event_channel": self._event_channel is not None,
            "orchestrator": self._orchestrator is not None,
        }

    def close(self) -> None:
        if self._event_channel is not None:
            self._event_channel.close()


# Global container
_container: Optional[TaskGridContainer] = None


def get_container() -> TaskGridContainer:
    global _container
    if _container is None:
        _container = TaskGridContainer()
    return _container


def shutdown_container() -> None:
    global _container
    if _container is not None:
        _container.close()
    _container = None
