"""Interface for task workers.

Any collaborator that can turn a task description into an ``Outcome``
within a timeout can be registered as a worker: an LLM-calling routine,
a test runner, a shell command.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, FrozenSet, Optional, Protocol, runtime_checkable


class CostTier(str, Enum):
    """Execution tiers, cheapest first."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def cheaper(self) -> Optional["CostTier"]:
        """Return the next cheaper tier, or None at the bottom."""
        if self.rank == 0:
            return None
        return _TIER_ORDER[self.rank - 1]


_TIER_ORDER = (CostTier.LOW, CostTier.MEDIUM, CostTier.HIGH)


@dataclass(frozen=True)
class Outcome:
    """What a worker reports back for one execution."""

    success: bool
    result: Any = None
    error: Optional[str] = None
    actual_cost: float = 0.0
    error_kind: Optional[str] = None  # ErrorKind value; None = execution

    @classmethod
    def ok(cls, result: Any = None, actual_cost: float = 0.0) -> "Outcome":
        return cls(success=True, result=result, actual_cost=actual_cost)

    @classmethod
    def failed(
        cls, error: str, actual_cost: float = 0.0, error_kind: Optional[str] = None
    ) -> "Outcome":
        return cls(success=False, error=error, actual_cost=actual_cost, error_kind=error_kind)


@runtime_checkable
class IWorker(Protocol):
    """Execution-capability interface every worker satisfies."""

    worker_id: str
    capabilities: FrozenSet[str]
    concurrency_limit: int
    cost_tier: CostTier

    async def execute(self, description: str, timeout: float, *, tier: CostTier) -> Outcome:
        """Run one task.

        Args:
            description: Opaque task payload
            timeout: Seconds the caller will wait before cancelling
            tier: Execution tier the budget approved

        Returns:
            Outcome with result or error and the actual cost incurred
        """
        ...
