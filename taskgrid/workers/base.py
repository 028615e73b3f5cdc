"""Base worker definition shared by all concrete workers."""

from abc import ABC, abstractmethod
from typing import FrozenSet, Iterable

from taskgrid.interfaces.worker import CostTier, Outcome


class BaseWorker(ABC):
    """Common identity and limits; subclasses implement ``execute``."""

    def __init__(
        self,
        worker_id: str,
        capabilities: Iterable[str],
        concurrency_limit: int = 1,
        cost_tier: CostTier = CostTier.MEDIUM,
    ) -> None:
        self.worker_id = worker_id
        self.capabilities: FrozenSet[str] = frozenset(capabilities)
        self.concurrency_limit = concurrency_limit
        self.cost_tier = CostTier(cost_tier)

    @abstractmethod
    async def execute(self, description: str, timeout: float, *, tier: CostTier) -> Outcome:
        ...

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(worker_id={self.worker_id!r}, "
            f"capabilities={sorted(self.capabilities)}, "
            f"limit={self.concurrency_limit}, tier={self.cost_tier.value})"
        )
