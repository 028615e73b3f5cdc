"""Worker backed by a plain Python callable."""

import asyncio
import inspect
import logging
from typing import Any, Callable, Iterable, Mapping, Optional, Union

from taskgrid.interfaces.worker import CostTier, Outcome
from taskgrid.workers.base import BaseWorker

logger = logging.getLogger(__name__)

CostSpec = Union[float, Mapping[CostTier, float]]


def price_for(costs: Optional[CostSpec], tier: CostTier) -> float:
    """Resolve a flat or per-tier cost specification."""
    if costs is None:
        return 0.0
    if isinstance(costs, Mapping):
        return float(costs.get(tier, 0.0))
    return float(costs)


class CallableWorker(BaseWorker):
    """Runs ``handler(description, tier)``.

    Coroutine functions are awaited on the loop; plain functions run in a
    worker thread so they cannot stall the scheduler.  A handler may return
    an ``Outcome`` directly; any other return value is wrapped as a success
    priced by *cost_per_call*.  Exceptions propagate to the worker pool,
    which turns them into failed outcomes.
    """

    def __init__(
        self,
        worker_id: str,
        capabilities: Iterable[str],
        handler: Callable[[str, CostTier], Any],
        concurrency_limit: int = 1,
        cost_tier: CostTier = CostTier.MEDIUM,
        cost_per_call: Optional[CostSpec] = None,
    ) -> None:
        super().__init__(worker_id, capabilities, concurrency_limit, cost_tier)
        self._handler = handler
        self._cost_per_call = cost_per_call

    async def execute(self, description: str, timeout: float, *, tier: CostTier) -> Outcome:
        if inspect.iscoroutinefunction(self._handler):
            value = await self._handler(description, tier)
        else:
            value = await asyncio.to_thread(self._handler, description, tier)
            if inspect.isawaitable(value):
                value = await value
        if isinstance(value, Outcome):
            return value
        return Outcome.ok(value, actual_cost=price_for(self._cost_per_call, tier))
