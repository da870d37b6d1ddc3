"""
Run report assembly.

The builder accumulates run observations (spiral findings, stranded items, the termination
reason) and produces exactly one immutable `Report` when the run ends.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from enum import StrEnum

from orchestration_engine.control_plane.spiral import SpiralCheck, SpiralPattern
from orchestration_engine.domain.models import TERMINAL_STATUSES, Report, WorkItemStatus


class TerminationReason(StrEnum):
    QUEUE_DRAINED = "queue_drained"
    BUDGET_EXHAUSTED = "budget_exhausted"
    TIME_EXHAUSTED = "time_exhausted"
    FORCE_COMPLETED = "force_completed"
    UNRESOLVED_DEPENDENCIES = "unresolved_dependencies"
    CRITICAL_PATH_BROKEN = "critical_path_broken"


_PATTERN_ADVICE: dict[SpiralPattern, str] = {
    SpiralPattern.OSCILLATION: "split items that keep revisiting the same resources",
    SpiralPattern.SCOPE_CREEP: "widen scope baselines or split items that outgrow them",
    SpiralPattern.DIMINISHING_RETURNS: "lower max_iterations_per_item for slow-converging items",
    SpiralPattern.THRASHING: "investigate slow iterations that make no progress",
    SpiralPattern.GOLD_PLATING: "stop iterating once an item reports full progress",
}


class ReportBuilder:
    """Collect run observations and build the final `Report`."""

    __slots__ = (
        "_critical_path",
        "_critical_spirals",
        "_escalated",
        "_patterns",
        "_stranded",
        "_broken_at",
    )

    def __init__(self, *, critical_path: Sequence[str] = ()) -> None:
        self._critical_path = tuple(critical_path)
        self._critical_spirals: dict[str, set[str]] = {}
        self._escalated: dict[str, set[str]] = {}
        self._patterns: set[SpiralPattern] = set()
        self._stranded: tuple[str, ...] = ()
        self._broken_at: tuple[str, ...] = ()

    def record_spiral(self, check: SpiralCheck) -> None:
        if not check.patterns:
            return
        self._patterns.update(check.patterns)
        names = {pattern.value for pattern in check.patterns}
        if check.is_critical:
            self._critical_spirals.setdefault(check.work_item_id, set()).update(names)
        elif check.escalate:
            self._escalated.setdefault(check.work_item_id, set()).update(names)

    def record_stranded(self, work_item_ids: Iterable[str]) -> None:
        self._stranded = tuple(sorted(work_item_ids))

    def record_critical_path_break(self, work_item_ids: Iterable[str]) -> None:
        self._broken_at = tuple(sorted(work_item_ids))

    def build(
        self,
        *,
        statuses: Mapping[str, WorkItemStatus],
        budget_used: float,
        budget_remaining: float,
        completed_units: float,
        final_commitment_level: int,
        termination: TerminationReason,
    ) -> Report:
        """
        Build the report.

        ``statuses`` maps every original work item id to its terminal status and
        ``completed_units`` is the share of ``budget_used`` charged to completed items.
        """

        counts = {status.value: 0 for status in sorted(TERMINAL_STATUSES)}
        for status in statuses.values():
            counts[status.value] = counts.get(status.value, 0) + 1

        total = len(statuses)
        completed = counts[WorkItemStatus.COMPLETED.value]
        processed = completed + counts[WorkItemStatus.PARTIAL.value] + counts[WorkItemStatus.FAILED.value]

        return Report(
            items_total=total,
            items_processed=processed,
            counts=counts,
            success_rate=completed / total if total else 0.0,
            budget_efficiency=completed_units / budget_used if budget_used > 0 else 1.0,
            budget_used=budget_used,
            budget_remaining=budget_remaining,
            final_commitment_level=final_commitment_level,
            termination=termination.value,
            critical_path=self._critical_path,
            bottlenecks=self._bottlenecks(statuses, termination, counts),
            recommendations=self._recommendations(termination),
        )

    def _bottlenecks(
        self,
        statuses: Mapping[str, WorkItemStatus],
        termination: TerminationReason,
        counts: Mapping[str, int],
    ) -> tuple[str, ...]:
        notes: set[str] = set()
        for work_item_id in self._critical_path:
            status = statuses.get(work_item_id)
            if status is not None and status is not WorkItemStatus.COMPLETED:
                notes.add(f"critical path item {work_item_id} ended {status.value}")
        for work_item_id, patterns in self._critical_spirals.items():
            notes.add(f"critical spiral on {work_item_id}: {', '.join(sorted(patterns))}")
        for work_item_id in self._stranded:
            notes.add(f"stranded item {work_item_id}: dependencies never satisfied")
        for work_item_id in self._broken_at:
            notes.add(f"critical path broken at {work_item_id}: no viable alternate")

        skipped = counts.get(WorkItemStatus.SKIPPED.value, 0)
        if termination is TerminationReason.FORCE_COMPLETED:
            notes.add("force completion at commitment level 5")
        elif termination is TerminationReason.BUDGET_EXHAUSTED:
            notes.add(f"budget exhausted with {skipped} item(s) skipped")
        elif termination is TerminationReason.TIME_EXHAUSTED:
            notes.add(f"wall-clock budget exhausted with {skipped} item(s) skipped")
        return tuple(sorted(notes))

    def _recommendations(self, termination: TerminationReason) -> tuple[str, ...]:
        advice: set[str] = {_PATTERN_ADVICE[pattern] for pattern in self._patterns}
        for work_item_id, patterns in self._escalated.items():
            advice.add(f"review {work_item_id}: repeated spiral warnings ({', '.join(sorted(patterns))})")
        if self._critical_spirals:
            advice.add("tighten scope baselines for items with critical spirals")
        for work_item_id in self._broken_at:
            advice.add(f"declare an alternate for critical path item {work_item_id}")
        if self._stranded:
            advice.add("declare alternates or fix dependencies for stranded items")
        if termination is TerminationReason.BUDGET_EXHAUSTED:
            advice.add("increase total budget units or trim the queue")
        elif termination is TerminationReason.TIME_EXHAUSTED:
            advice.add("raise the wall-clock limit or lower max_iterations_per_item")
        return tuple(sorted(advice))


__all__ = ["ReportBuilder", "TerminationReason"]
