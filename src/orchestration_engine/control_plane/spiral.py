"""
Spiral detection over per-item iteration history.

Five heuristics are evaluated independently on every iteration:
- oscillation: the same resources keep reappearing across the recent window
- scope creep: the iteration touches resources outside its declared baseline
- diminishing returns: progress deltas stay below a floor for consecutive iterations
- thrashing: an iteration runs far slower than average without making progress
- gold-plating: work continues after progress already reached completion

Severities aggregate to `none`, `warning`, or `critical`. The detector keeps one piece of
state per work item: a warning counter used to flag repeated warnings for escalation.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from orchestration_engine.domain.models import IterationRecord, JSONValue


class SpiralPattern(StrEnum):
    OSCILLATION = "OSCILLATION"
    SCOPE_CREEP = "SCOPE_CREEP"
    DIMINISHING_RETURNS = "DIMINISHING_RETURNS"
    THRASHING = "THRASHING"
    GOLD_PLATING = "GOLD_PLATING"


class SpiralSeverity(StrEnum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


_SEVERITY_RANK: dict[SpiralSeverity, int] = {
    SpiralSeverity.NONE: 0,
    SpiralSeverity.WARNING: 1,
    SpiralSeverity.CRITICAL: 2,
}

_COMMITMENT_DELTA: dict[SpiralSeverity, int] = {
    SpiralSeverity.NONE: 0,
    SpiralSeverity.WARNING: 1,
    SpiralSeverity.CRITICAL: 2,
}


@dataclass(frozen=True, slots=True)
class SpiralThresholds:
    """Tunable limits for every heuristic."""

    oscillation_min_resources: int = 3
    oscillation_window: int = 3
    scope_creep_tolerance: int = 0
    scope_creep_critical_extra: int = 5
    diminishing_delta: float = 0.1
    diminishing_window: int = 2
    thrashing_time_factor: float = 2.0
    gold_plating_progress: float = 1.0
    warning_escalation_after: int = 3

    def __post_init__(self) -> None:
        if self.oscillation_min_resources < 1:
            raise ValueError("oscillation_min_resources must be >= 1")
        if self.oscillation_window < 2:
            raise ValueError("oscillation_window must be >= 2")
        if self.scope_creep_tolerance < 0:
            raise ValueError("scope_creep_tolerance must be >= 0")
        if self.scope_creep_critical_extra <= self.scope_creep_tolerance:
            raise ValueError("scope_creep_critical_extra must be > scope_creep_tolerance")
        if self.diminishing_delta < 0:
            raise ValueError("diminishing_delta must be >= 0")
        if self.diminishing_window < 1:
            raise ValueError("diminishing_window must be >= 1")
        if self.thrashing_time_factor <= 1.0:
            raise ValueError("thrashing_time_factor must be > 1.0")
        if not 0.0 < self.gold_plating_progress <= 1.0:
            raise ValueError("gold_plating_progress must be in (0, 1]")
        if self.warning_escalation_after < 1:
            raise ValueError("warning_escalation_after must be >= 1")

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> SpiralThresholds:
        known = {name: data[name] for name in cls.__dataclass_fields__ if name in data}
        return cls(**known)  # type: ignore[arg-type]


@dataclass(frozen=True, slots=True)
class SpiralFinding:
    pattern: SpiralPattern
    severity: SpiralSeverity
    detail: str

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "pattern": self.pattern.value,
            "severity": self.severity.value,
            "detail": self.detail,
        }


@dataclass(frozen=True, slots=True)
class SpiralCheck:
    """Aggregated verdict for one iteration."""

    work_item_id: str
    iteration: int
    patterns: tuple[SpiralPattern, ...]
    severity: SpiralSeverity
    commitment_delta: int
    escalate: bool
    findings: tuple[SpiralFinding, ...] = ()

    @property
    def is_critical(self) -> bool:
        return self.severity is SpiralSeverity.CRITICAL

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "work_item_id": self.work_item_id,
            "iteration": self.iteration,
            "patterns": [pattern.value for pattern in self.patterns],
            "severity": self.severity.value,
            "commitment_delta": self.commitment_delta,
            "escalate": self.escalate,
            "findings": [finding.to_dict() for finding in self.findings],
        }


class SpiralDetector:
    """Classify non-convergent iteration behavior for a single work item at a time."""

    def __init__(
        self,
        thresholds: SpiralThresholds | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        self._thresholds = thresholds if thresholds is not None else SpiralThresholds()
        self._warning_counts: dict[str, int] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def thresholds(self) -> SpiralThresholds:
        return self._thresholds

    def warning_count(self, work_item_id: str) -> int:
        return self._warning_counts.get(work_item_id, 0)

    def reset(self, work_item_id: str | None = None) -> None:
        """Clear the warning counter for one item, or for every item when ``None``."""
        if work_item_id is None:
            self._warning_counts.clear()
        else:
            self._warning_counts.pop(work_item_id, None)

    def check(
        self,
        work_item_id: str,
        history: Sequence[IterationRecord],
        current: IterationRecord,
    ) -> SpiralCheck:
        """
        Evaluate ``current`` against the prior ``history`` of the same item.

        ``history`` holds earlier iterations only, oldest first.
        """

        findings = [
            finding
            for finding in (
                self._oscillation(history, current),
                self._scope_creep(current),
                self._diminishing_returns(history, current),
                self._thrashing(history, current),
                self._gold_plating(history, current),
            )
            if finding is not None
        ]

        severity = SpiralSeverity.NONE
        for finding in findings:
            if _SEVERITY_RANK[finding.severity] > _SEVERITY_RANK[severity]:
                severity = finding.severity

        escalate = False
        if severity is SpiralSeverity.WARNING:
            count = self._warning_counts.get(work_item_id, 0) + 1
            self._warning_counts[work_item_id] = count
            escalate = count >= self._thresholds.warning_escalation_after

        result = SpiralCheck(
            work_item_id=work_item_id,
            iteration=current.iteration,
            patterns=tuple(finding.pattern for finding in findings),
            severity=severity,
            commitment_delta=_COMMITMENT_DELTA[severity],
            escalate=escalate,
            findings=tuple(findings),
        )
        if findings:
            self._logger.info(
                "control_plane_spiral_check",
                work_item_id=work_item_id,
                iteration=current.iteration,
                patterns=[pattern.value for pattern in result.patterns],
                severity=severity.value,
                commitment_delta=result.commitment_delta,
                escalate=escalate,
            )
        return result

    def _oscillation(
        self, history: Sequence[IterationRecord], current: IterationRecord
    ) -> SpiralFinding | None:
        window = self._thresholds.oscillation_window
        minimum = self._thresholds.oscillation_min_resources
        records = [*history, current]
        if len(records) < window:
            return None

        overlap = _common_resources(records[-window:])
        if len(overlap) < minimum:
            return None

        severity = SpiralSeverity.WARNING
        if len(records) >= 2 * window and len(_common_resources(records[-2 * window :])) >= minimum:
            severity = SpiralSeverity.CRITICAL
        return SpiralFinding(
            pattern=SpiralPattern.OSCILLATION,
            severity=severity,
            detail=(
                f"{len(overlap)} resource(s) touched in each of the last {window} iterations: "
                f"{', '.join(sorted(overlap))}"
            ),
        )

    def _scope_creep(self, current: IterationRecord) -> SpiralFinding | None:
        if not current.scope_baseline:
            return None
        extra = current.out_of_scope
        if len(extra) <= self._thresholds.scope_creep_tolerance:
            return None

        severity = (
            SpiralSeverity.CRITICAL
            if len(extra) >= self._thresholds.scope_creep_critical_extra
            else SpiralSeverity.WARNING
        )
        return SpiralFinding(
            pattern=SpiralPattern.SCOPE_CREEP,
            severity=severity,
            detail=f"{len(extra)} resource(s) outside scope baseline: {', '.join(sorted(extra))}",
        )

    def _diminishing_returns(
        self, history: Sequence[IterationRecord], current: IterationRecord
    ) -> SpiralFinding | None:
        window = self._thresholds.diminishing_window
        if current.progress >= self._thresholds.gold_plating_progress:
            return None
        records = [*history, current]
        if len(records) < window + 1:
            return None

        recent = records[-(window + 1) :]
        deltas = [later.progress - earlier.progress for earlier, later in zip(recent, recent[1:])]
        if any(delta >= self._thresholds.diminishing_delta for delta in deltas):
            return None
        return SpiralFinding(
            pattern=SpiralPattern.DIMINISHING_RETURNS,
            severity=SpiralSeverity.WARNING,
            detail=(
                f"progress gained less than {self._thresholds.diminishing_delta} "
                f"in each of the last {window} iteration(s)"
            ),
        )

    def _thrashing(
        self, history: Sequence[IterationRecord], current: IterationRecord
    ) -> SpiralFinding | None:
        if not history:
            return None
        average = sum(record.elapsed_seconds for record in history) / len(history)
        if average <= 0:
            return None
        delta = current.progress - history[-1].progress
        limit = self._thresholds.thrashing_time_factor * average
        if current.elapsed_seconds <= limit or delta > 0:
            return None
        return SpiralFinding(
            pattern=SpiralPattern.THRASHING,
            severity=SpiralSeverity.CRITICAL,
            detail=(
                f"iteration took {current.elapsed_seconds:.3f}s against an average of "
                f"{average:.3f}s with no progress"
            ),
        )

    def _gold_plating(
        self, history: Sequence[IterationRecord], current: IterationRecord
    ) -> SpiralFinding | None:
        if not history or not current.touched:
            return None
        if history[-1].progress < self._thresholds.gold_plating_progress:
            return None
        return SpiralFinding(
            pattern=SpiralPattern.GOLD_PLATING,
            severity=SpiralSeverity.WARNING,
            detail=(
                f"progress already complete but iteration {current.iteration} touched "
                f"{len(current.touched)} resource(s)"
            ),
        )


def _common_resources(records: Sequence[IterationRecord]) -> frozenset[str]:
    common = records[0].touched
    for record in records[1:]:
        common = common & record.touched
    return common


__all__ = [
    "SpiralCheck",
    "SpiralDetector",
    "SpiralFinding",
    "SpiralPattern",
    "SpiralSeverity",
    "SpiralThresholds",
]
