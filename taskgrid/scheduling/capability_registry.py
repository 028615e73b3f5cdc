"""Capability registry: which workers can serve which capability tags."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from taskgrid.exceptions import (
    CircuitBreaker,
    CircuitBreakerConfig,
    WorkerRegistrationError,
)
from taskgrid.interfaces.worker import IWorker

logger = logging.getLogger(__name__)


@dataclass
class WorkerState:
    """Runtime state of a registered worker."""

    worker: IWorker
    order: int
    breaker: Optional[CircuitBreaker] = None
    current_load: int = 0
    completed: int = 0
    failed: int = 0
    active_tasks: set = field(default_factory=set)

    @property
    def worker_id(self) -> str:
        return self.worker.worker_id

    @property
    def concurrency_limit(self) -> int:
        return self.worker.concurrency_limit

    @property
    def has_capacity(self) -> bool:
        return self.current_load < self.worker.concurrency_limit

    @property
    def is_healthy(self) -> bool:
        return self.breaker is None or self.breaker.can_execute()

    @property
    def is_available(self) -> bool:
        """Check if worker can accept a dispatch right now."""
        return self.has_capacity and self.is_healthy

    def to_dict(self) -> Dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "capabilities": sorted(self.worker.capabilities),
            "cost_tier": self.worker.cost_tier.value,
            "concurrency_limit": self.concurrency_limit,
            "current_load": self.current_load,
            "completed": self.completed,
            "failed": self.failed,
            "breaker": self.breaker.get_status() if self.breaker else None,
        }


class CapabilityRegistry:
    """Maps capability tags to registered workers.

    Lookups are read-only and may run anywhere; ``current_load`` is only
    changed by the worker pool's load slots.
    """

    def __init__(self, breaker_config: Optional[CircuitBreakerConfig] = None) -> None:
        self._workers: Dict[str, WorkerState] = {}
        self._by_capability: Dict[str, List[str]] = {}
        self._breaker_config = breaker_config
        self._registrations: int = 0

    def register(self, worker: IWorker) -> WorkerState:
        """Register a worker.

        Raises:
            WorkerRegistrationError: if the id is taken or the worker is malformed.
        """
        if worker.worker_id in self._workers:
            raise WorkerRegistrationError(f"Worker {worker.worker_id} already registered")
        if worker.concurrency_limit < 1:
            raise WorkerRegistrationError(
                f"Worker {worker.worker_id} needs a concurrency limit of at least 1"
            )
        if not worker.capabilities:
            raise WorkerRegistrationError(f"Worker {worker.worker_id} declares no capabilities")

        breaker = None
        if self._breaker_config is not None:
            breaker = CircuitBreaker(name=f"worker:{worker.worker_id}", config=self._breaker_config)

        state = WorkerState(worker=worker, order=self._registrations, breaker=breaker)
        self._registrations += 1
        self._workers[worker.worker_id] = state
        for capability in worker.capabilities:
            self._by_capability.setdefault(capability, []).append(worker.worker_id)

        logger.info(
            "Registered worker %s (capabilities=%s, limit=%d, tier=%s)",
            worker.worker_id, sorted(worker.capabilities),
            worker.concurrency_limit, worker.cost_tier.value,
        )
        return state

    def deregister(self, worker_id: str) -> None:
        """Remove a worker.  In-flight dispatches finish on their own."""
        state = self._workers.pop(worker_id, None)
        if state is None:
            logger.warning("Worker %s not found", worker_id)
            return
        for capability in state.worker.capabilities:
            ids = self._by_capability.get(capability, [])
            if worker_id in ids:
                ids.remove(worker_id)
            if not ids:
                self._by_capability.pop(capability, None)
        if state.current_load:
            logger.warning("Worker %s deregistered with %d task(s) in flight", worker_id, state.current_load)
        logger.info("Deregistered worker %s", worker_id)

    def find_candidates(self, capability: str, exclude: Iterable[str] = ()) -> List[WorkerState]:
        """Available workers for *capability*, best first.

        Ordered by current load, then cost tier, then registration order.
        Workers in *exclude* go last.  Unknown capability → ``[]``.
        """
        excluded = set(exclude)
        available = [
            self._workers[wid] for wid in self._by_capability.get(capability, [])
            if self._workers[wid].is_available
        ]
        available.sort(key=lambda s: (
            s.worker_id in excluded,
            s.current_load,
            s.worker.cost_tier.rank,
            s.order,
        ))
        return available

    def has_capability(self, capability: str) -> bool:
        """True if any registered worker declares *capability*."""
        return bool(self._by_capability.get(capability))

    def get(self, worker_id: str) -> Optional[WorkerState]:
        return self._workers.get(worker_id)

    def workers(self) -> List[WorkerState]:
        return sorted(self._workers.values(), key=lambda s: s.order)

    def capabilities(self) -> List[str]:
        return sorted(self._by_capability)

    def record_success(self, worker_id: str) -> None:
        state = self._workers.get(worker_id)
        if state is None:
            return
        state.completed += 1
        if state.breaker:
            state.breaker.record_success()

    def record_failure(self, worker_id: str) -> None:
        state = self._workers.get(worker_id)
        if state is None:
            return
        state.failed += 1
        if state.breaker:
            state.breaker.record_failure()

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "workers": {s.worker_id: s.to_dict() for s in self.workers()},
            "capabilities": {cap: list(ids) for cap, ids in self._by_capability.items()},
        }
