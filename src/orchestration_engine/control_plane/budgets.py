"""
Budget accounting for a single orchestration run.

The ledger is the single owner of the run's resource envelope:
- units are charged when an executor finishes, never reserved up front
- a charge is clamped to what remains, so the remaining balance never goes negative
- wall-clock consumption is read from an injectable monotonic clock

Every charge is logged through `structlog` as a machine-parseable decision record.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from orchestration_engine.domain.models import Budget, JSONValue

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class BudgetCharge:
    """Outcome of charging one finished work item against the ledger."""

    work_item_id: str
    requested: float
    charged: float
    remaining: float

    @property
    def truncated(self) -> bool:
        return self.charged < self.requested

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "work_item_id": self.work_item_id,
            "requested": self.requested,
            "charged": self.charged,
            "remaining": self.remaining,
        }


class BudgetLedger:
    """Track units consumed and wall-clock time for one run."""

    def __init__(
        self,
        budget: Budget,
        *,
        clock: Clock = time.monotonic,
        logger: Any | None = None,
    ) -> None:
        self._budget = budget
        self._clock = clock
        self._started_at = clock()
        self._used = 0.0
        self._per_item: dict[str, float] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def budget(self) -> Budget:
        return self._budget

    @property
    def total(self) -> float:
        return self._budget.total_units

    @property
    def used(self) -> float:
        return self._used

    @property
    def remaining(self) -> float:
        return max(0.0, self._budget.total_units - self._used)

    @property
    def exhausted(self) -> bool:
        return self.remaining <= 0

    @property
    def consumed_ratio(self) -> float:
        return self._used / self._budget.total_units

    @property
    def elapsed_seconds(self) -> float:
        return max(0.0, self._clock() - self._started_at)

    @property
    def time_ratio(self) -> float | None:
        """Fraction of the wall-clock limit consumed, or ``None`` without a limit."""
        if self._budget.wall_clock_seconds is None:
            return None
        return self.elapsed_seconds / self._budget.wall_clock_seconds

    @property
    def per_item(self) -> dict[str, float]:
        return dict(self._per_item)

    def charged_to(self, work_item_id: str) -> float:
        return self._per_item.get(work_item_id, 0.0)

    def allocation_for(self, requested: float, *, clamp: bool) -> float:
        """Allocated units for a dispatch; clamped to the remaining balance under hard cap."""
        if clamp:
            return min(requested, self.remaining)
        return requested

    def charge(self, work_item_id: str, consumed: float) -> BudgetCharge:
        """Charge ``consumed`` units to ``work_item_id``, truncated to the remaining balance."""

        if consumed < 0:
            raise ValueError("consumed must be >= 0")
        charged = min(consumed, self.remaining)
        self._used += charged
        self._per_item[work_item_id] = self._per_item.get(work_item_id, 0.0) + charged

        decision = BudgetCharge(
            work_item_id=work_item_id,
            requested=consumed,
            charged=charged,
            remaining=self.remaining,
        )
        self._logger.info(
            "control_plane_budget_charge",
            work_item_id=work_item_id,
            requested=consumed,
            charged=charged,
            used=self._used,
            remaining=decision.remaining,
            truncated=decision.truncated,
        )
        return decision


__all__ = ["BudgetCharge", "BudgetLedger", "Clock"]
