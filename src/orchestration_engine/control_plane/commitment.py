"""Monotonic commitment-level state machine driven by an explicit transition table."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum, StrEnum
from typing import Any

import structlog

from orchestration_engine.domain.models import JSONValue


class CommitmentLevel(IntEnum):
    UNRESTRICTED = 0
    SOFT_WARNING = 1
    HARD_CAP = 2
    REDUCED_ITERATIONS = 3
    FIXES_ONLY = 4
    FORCE_COMPLETE = 5


class CommitmentTrigger(StrEnum):
    BUDGET_HALF = "budget_half"
    BUDGET_THREE_QUARTERS = "budget_three_quarters"
    TIME_THREE_QUARTERS = "time_three_quarters"
    CRITICAL_SPIRAL = "critical_spiral"
    FORCE = "force"


TRANSITIONS: dict[CommitmentTrigger, CommitmentLevel] = {
    CommitmentTrigger.BUDGET_HALF: CommitmentLevel.SOFT_WARNING,
    CommitmentTrigger.BUDGET_THREE_QUARTERS: CommitmentLevel.HARD_CAP,
    CommitmentTrigger.TIME_THREE_QUARTERS: CommitmentLevel.REDUCED_ITERATIONS,
    CommitmentTrigger.CRITICAL_SPIRAL: CommitmentLevel.FIXES_ONLY,
    CommitmentTrigger.FORCE: CommitmentLevel.FORCE_COMPLETE,
}


@dataclass(frozen=True, slots=True)
class CommitmentChange:
    previous: CommitmentLevel
    level: CommitmentLevel
    trigger: CommitmentTrigger
    detail: str = ""

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "previous": int(self.previous),
            "level": int(self.level),
            "trigger": self.trigger.value,
            "detail": self.detail,
        }


@dataclass(frozen=True, slots=True)
class CommitmentPolicy:
    """Thresholds that map budget and time consumption onto ladder triggers."""

    budget_warning_ratio: float = 0.5
    budget_hard_cap_ratio: float = 0.75
    time_reduced_ratio: float = 0.75
    reduced_iteration_factor: float = 0.5
    critical_spirals_for_force: int = 2

    def __post_init__(self) -> None:
        for name in (
            "budget_warning_ratio",
            "budget_hard_cap_ratio",
            "time_reduced_ratio",
            "reduced_iteration_factor",
        ):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ValueError(f"{name} must be in (0, 1]")
        if self.budget_warning_ratio > self.budget_hard_cap_ratio:
            raise ValueError("budget_warning_ratio must be <= budget_hard_cap_ratio")
        if self.critical_spirals_for_force < 1:
            raise ValueError("critical_spirals_for_force must be >= 1")

    def budget_triggers(self, consumed_ratio: float) -> tuple[CommitmentTrigger, ...]:
        triggers: list[CommitmentTrigger] = []
        if consumed_ratio >= self.budget_warning_ratio:
            triggers.append(CommitmentTrigger.BUDGET_HALF)
        if consumed_ratio >= self.budget_hard_cap_ratio:
            triggers.append(CommitmentTrigger.BUDGET_THREE_QUARTERS)
        return tuple(triggers)

    def time_triggers(self, time_ratio: float | None) -> tuple[CommitmentTrigger, ...]:
        if time_ratio is not None and time_ratio >= self.time_reduced_ratio:
            return (CommitmentTrigger.TIME_THREE_QUARTERS,)
        return ()

    def iteration_cap(self, base: int, level: CommitmentLevel) -> int:
        """Per-dispatch iteration cap; reduced from ``REDUCED_ITERATIONS`` upward."""
        if level >= CommitmentLevel.REDUCED_ITERATIONS:
            return max(1, int(base * self.reduced_iteration_factor))
        return base


class CommitmentLadder:
    """
    Process-wide commitment level for one run.

    Triggers map to target levels through ``TRANSITIONS``; a trigger whose target is at or
    below the current level is a no-op. Repeated critical spirals promote to
    ``FORCE_COMPLETE`` once ``critical_spirals_for_force`` of them have been seen.
    """

    __slots__ = ("_level", "_history", "_critical_spirals", "_critical_spirals_for_force", "_logger")

    def __init__(self, *, critical_spirals_for_force: int = 2, logger: Any | None = None) -> None:
        if critical_spirals_for_force < 1:
            raise ValueError("critical_spirals_for_force must be >= 1")
        self._level = CommitmentLevel.UNRESTRICTED
        self._history: list[CommitmentChange] = []
        self._critical_spirals = 0
        self._critical_spirals_for_force = critical_spirals_for_force
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def level(self) -> CommitmentLevel:
        return self._level

    @property
    def history(self) -> tuple[CommitmentChange, ...]:
        return tuple(self._history)

    @property
    def levels(self) -> tuple[CommitmentLevel, ...]:
        """Every level held during the run, starting from ``UNRESTRICTED``."""
        return (CommitmentLevel.UNRESTRICTED, *(change.level for change in self._history))

    @property
    def critical_spirals(self) -> int:
        return self._critical_spirals

    @property
    def is_forced(self) -> bool:
        return self._level is CommitmentLevel.FORCE_COMPLETE

    def apply(self, trigger: CommitmentTrigger | str, detail: str = "") -> CommitmentChange | None:
        """Apply ``trigger``; return the change when the level rose."""

        resolved = CommitmentTrigger(trigger)
        target = TRANSITIONS[resolved]
        if resolved is CommitmentTrigger.CRITICAL_SPIRAL:
            self._critical_spirals += 1
            if self._critical_spirals >= self._critical_spirals_for_force:
                target = CommitmentLevel.FORCE_COMPLETE

        if target <= self._level:
            return None

        change = CommitmentChange(
            previous=self._level,
            level=target,
            trigger=resolved,
            detail=detail,
        )
        self._level = target
        self._history.append(change)
        self._logger.info(
            "control_plane_commitment_raised",
            previous=int(change.previous),
            level=int(change.level),
            trigger=resolved.value,
            detail=detail,
        )
        return change


__all__ = [
    "TRANSITIONS",
    "CommitmentChange",
    "CommitmentLadder",
    "CommitmentLevel",
    "CommitmentPolicy",
    "CommitmentTrigger",
]
