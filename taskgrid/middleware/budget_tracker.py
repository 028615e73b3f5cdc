"""Budget tracking for orchestration runs with two-phase reservations."""

import itertools
import logging
import math
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from taskgrid.exceptions import BudgetExceeded, ConfigurationError, ReservationError
from taskgrid.interfaces.worker import CostTier

logger = logging.getLogger(__name__)

CostFunction = Callable[[str, CostTier], float]

DEFAULT_TIER_COSTS: Dict[CostTier, float] = {
    CostTier.LOW: 1.0,
    CostTier.MEDIUM: 5.0,
    CostTier.HIGH: 20.0,
}


def _checked_cost(cost: float, what: str) -> float:
    cost = float(cost)
    if not math.isfinite(cost) or cost < 0:
        raise ValueError(f"{what} must be finite and non-negative, got {cost!r}")
    return cost


@dataclass(frozen=True)
class Reservation:
    reservation_id: str
    capability: str
    tier: CostTier
    amount: float


@dataclass
class UsageRecord:
    capability: str
    tier: CostTier
    estimated: float
    actual: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(tz=timezone.utc))


class TierCostTable:
    """Default cost function: per-capability overrides, then per-tier defaults."""

    def __init__(
        self,
        tier_costs: Optional[Mapping[CostTier, float]] = None,
        overrides: Optional[Mapping[str, Mapping[CostTier, float]]] = None,
    ):
        self.tier_costs: Dict[CostTier, float] = dict(DEFAULT_TIER_COSTS)
        if tier_costs:
            self.tier_costs.update(_table_costs("default", tier_costs))
        self.overrides: Dict[str, Dict[CostTier, float]] = {}
        for capability, costs in (overrides or {}).items():
            self.set_capability_costs(capability, costs)

    def set_capability_costs(self, capability: str, costs: Mapping[CostTier, float]) -> None:
        self.overrides[capability] = _table_costs(capability, costs)

    def __call__(self, capability: str, tier: CostTier) -> float:
        cap_costs = self.overrides.get(capability)
        if cap_costs is not None and tier in cap_costs:
            return cap_costs[tier]
        return self.tier_costs.get(tier, 0.0)


def _table_costs(scope: str, costs: Mapping[CostTier, float]) -> Dict[CostTier, float]:
    try:
        return {CostTier(k): _checked_cost(v, f"Tier cost {CostTier(k).value}") for k, v in costs.items()}
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid {scope} tier costs: {e}",
            details={"scope": scope, "costs": {str(k): v for k, v in costs.items()}},
        ) from e


class BudgetTracker:
    """Tracks consumption against a ceiling.

    Spend goes through ``reserve`` before dispatch and is settled exactly
    once with ``commit`` (actual cost) or ``release`` (nothing consumed).
    Outstanding reservations count against headroom so concurrent
    dispatches cannot over-commit.
    """

    def __init__(
        self,
        ceiling: float = 100.0,
        cost_function: Optional[CostFunction] = None,
        allow_overage: bool = False,
    ):
        if math.isnan(ceiling) or ceiling < 0:
            raise ValueError("Budget ceiling must be non-negative")
        self._lock = threading.Lock()
        self.ceiling = ceiling
        self.allow_overage = allow_overage
        self.cost_function: CostFunction = cost_function or TierCostTable()
        self._consumed: float = 0.0
        self._reserved: float = 0.0
        self._outstanding: Dict[str, Reservation] = {}
        self._spend_by_capability: Dict[str, float] = {}
        self._commits = 0
        self._ids = itertools.count(1)

    @property
    def consumed(self) -> float:
        return self._consumed

    @property
    def reserved(self) -> float:
        return self._reserved

    @property
    def headroom(self) -> float:
        return self.ceiling - self._consumed - self._reserved

    @property
    def overdrawn(self) -> bool:
        return self._consumed > self.ceiling

    def estimate(self, capability: str, tier: CostTier) -> float:
        """Projected cost of running *capability* at *tier*."""
        return _checked_cost(
            self.cost_function(capability, tier), f"Estimated cost for {capability}/{tier.value}"
        )

    def downgrade(self, capability: str, tier: CostTier) -> Optional[CostTier]:
        """Next cheaper tier than *tier*, or None."""
        cheaper = tier.cheaper()
        if cheaper is not None:
            logger.debug("Downgrading %s from %s to %s", capability, tier.value, cheaper.value)
        return cheaper

    def reserve(
        self,
        cost: float,
        capability: str = "",
        tier: CostTier = CostTier.MEDIUM,
    ) -> Reservation:
        """Provisionally deduct *cost* from headroom.

        Raises:
            BudgetExceeded: if *cost* does not fit and overage is not allowed.
            ValueError: if *cost* is negative or not finite.
        """
        cost = _checked_cost(cost, "Reserved cost")
        with self._lock:
            if not self.allow_overage and cost > 0 and cost > self.headroom:
                raise BudgetExceeded(
                    f"Cost {cost:.4f} for {capability or 'task'} at {tier.value} tier exceeds "
                    f"remaining budget {max(self.headroom, 0.0):.4f}",
                    details={
                        "capability": capability,
                        "tier": tier.value,
                        "cost": cost,
                        "headroom": self.headroom,
                        "ceiling": self.ceiling,
                    },
                )
            reservation = Reservation(
                reservation_id=f"rsv-{next(self._ids)}",
                capability=capability,
                tier=tier,
                amount=cost,
            )
            self._outstanding[reservation.reservation_id] = reservation
            self._reserved += cost
        logger.debug(
            "Reserved %.4f for %s (%s), headroom now %.4f",
            cost, capability, tier.value, self.headroom,
        )
        return reservation

    def reserve_with_downgrade(self, capability: str, tier: CostTier) -> Tuple[Reservation, CostTier]:
        """Reserve at *tier*, walking down cheaper tiers until one fits.

        Raises:
            BudgetExceeded: if no tier fits the remaining budget.
        """
        current: Optional[CostTier] = tier
        last_error: Optional[BudgetExceeded] = None
        while current is not None:
            cost = self.estimate(capability, current)
            try:
                return self.reserve(cost, capability=capability, tier=current), current
            except BudgetExceeded as e:
                last_error = e
                current = self.downgrade(capability, current)
        assert last_error is not None
        raise BudgetExceeded(
            f"No tier fits remaining budget for {capability} "
            f"(headroom {max(self.headroom, 0.0):.4f})",
            details={"capability": capability, "requested_tier": tier.value, **last_error.details},
        )

    def commit(self, reservation: Reservation, actual_cost: float) -> UsageRecord:
        """Settle *reservation* and consume *actual_cost*."""
        actual_cost = _checked_cost(actual_cost, "Actual cost")
        with self._lock:
            self._settle(reservation)
            self._consumed += actual_cost
            self._spend_by_capability[reservation.capability] = (
                self._spend_by_capability.get(reservation.capability, 0.0) + actual_cost
            )
            record = UsageRecord(
                capability=reservation.capability,
                tier=reservation.tier,
                estimated=reservation.amount,
                actual=actual_cost,
            )
            self._commits += 1
            overdrawn = self._consumed > self.ceiling
        if overdrawn and not self.allow_overage:
            logger.warning(
                "Actual cost %.4f for %s pushed consumption to %.4f over ceiling %.4f",
                actual_cost, reservation.capability, self._consumed, self.ceiling,
            )
        logger.debug("Committed %s: estimated=%.4f actual=%.4f",
                     reservation.reservation_id, reservation.amount, actual_cost)
        return record

    def release(self, reservation: Reservation) -> None:
        """Settle *reservation* without consuming anything."""
        with self._lock:
            self._settle(reservation)
        logger.debug("Released %s (%.4f)", reservation.reservation_id, reservation.amount)

    def _settle(self, reservation: Reservation) -> None:
        if self._outstanding.pop(reservation.reservation_id, None) is None:
            raise ReservationError(
                f"Reservation {reservation.reservation_id} is not outstanding",
                details={"reservation_id": reservation.reservation_id},
            )
        self._reserved = max(0.0, self._reserved - reservation.amount)

    def get_dashboard(self) -> Dict[str, Any]:
        """Return a summary of current budget state."""
        with self._lock:
            return {
                "ceiling": self.ceiling,
                "consumed": round(self._consumed, 6),
                "reserved": round(self._reserved, 6),
                "headroom": round(self.headroom, 6),
                "allow_overage": self.allow_overage,
                "overdrawn": self._consumed > self.ceiling,
                "outstanding_reservations": len(self._outstanding),
                "capability_spend": {k: round(v, 6) for k, v in self._spend_by_capability.items()},
                "total_commits": self._commits,
            }
