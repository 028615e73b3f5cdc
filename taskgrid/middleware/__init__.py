"""Cross-cutting run services."""

from taskgrid.middleware.budget_tracker import (
    BudgetTracker,
    Reservation,
    TierCostTable,
    UsageRecord,
)

__all__ = ["BudgetTracker", "Reservation", "TierCostTable", "UsageRecord"]
