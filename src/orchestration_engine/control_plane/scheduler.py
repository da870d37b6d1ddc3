"""Deterministic ready-set computation and dispatch batch selection."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from orchestration_engine.domain.models import WorkItem, WorkItemStatus

if TYPE_CHECKING:
    from orchestration_engine.planning.task_graph import DependencyGraph

_DISPATCHABLE_STATUSES = frozenset({WorkItemStatus.PENDING, WorkItemStatus.READY})


@dataclass(frozen=True, slots=True)
class SchedulerLimits:
    """Dispatch limits for one scheduling pass."""

    max_in_flight: int = 1

    def __post_init__(self) -> None:
        if isinstance(self.max_in_flight, bool) or not isinstance(self.max_in_flight, int):
            raise ValueError("max_in_flight must be an integer")
        if self.max_in_flight <= 0:
            raise ValueError("max_in_flight must be > 0")


@dataclass(frozen=True, slots=True)
class ScheduleDecision:
    """Deterministic scheduler output for one pass."""

    selected: tuple[str, ...]
    ready: tuple[str, ...]
    group_index: int | None
    deferred: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class _Candidate:
    work_item_id: str
    priority: int
    unblocks: int
    budget: float


class Scheduler:
    """Priority-first scheduler that batches ready items from a single parallel group."""

    __slots__ = ("_graph", "_group_of", "_limits")

    def __init__(
        self,
        graph: DependencyGraph,
        parallel_groups: Sequence[Sequence[str]],
        *,
        limits: SchedulerLimits | None = None,
    ) -> None:
        self._graph = graph
        self._limits = limits if limits is not None else SchedulerLimits()
        self._group_of = {
            node: index for index, group in enumerate(parallel_groups) for node in group
        }

    @property
    def limits(self) -> SchedulerLimits:
        return self._limits

    def group_of(self, work_item_id: str) -> int | None:
        return self._group_of.get(work_item_id)

    def ready(
        self,
        statuses: Mapping[str, WorkItemStatus],
        alternates: Mapping[str, Sequence[str]] | None = None,
    ) -> tuple[str, ...]:
        """Return dispatchable items whose dependencies are all satisfied, in id order."""

        substitutes = alternates if alternates is not None else {}
        ready: list[str] = []
        for node in self._graph.nodes:
            if statuses[node] not in _DISPATCHABLE_STATUSES:
                continue
            if all(
                dependency_satisfied(parent, statuses, substitutes)
                for parent in self._graph.get_dependencies(node)
            ):
                ready.append(node)
        return tuple(ready)

    def rank(self, ready: Sequence[str], items: Mapping[str, WorkItem]) -> tuple[str, ...]:
        """Order by priority desc, items unblocked desc, allocated budget asc, then id."""

        candidates = [
            _Candidate(
                work_item_id=node,
                priority=items[node].priority,
                unblocks=len(self._graph.get_dependents(node)),
                budget=items[node].budget,
            )
            for node in ready
        ]
        return tuple(
            candidate.work_item_id for candidate in sorted(candidates, key=_candidate_sort_key)
        )

    def select(
        self,
        ready: Sequence[str],
        items: Mapping[str, WorkItem],
        *,
        allocations: Mapping[str, float],
        remaining: float,
    ) -> ScheduleDecision:
        """
        Pick the next dispatch batch.

        The top-ranked item is always selected. Further items join only when they share its
        parallel group, fit under ``max_in_flight``, and keep the batch's summed allocations
        within ``remaining``.
        """

        ranked = self.rank(ready, items)
        if not ranked:
            return ScheduleDecision(selected=(), ready=(), group_index=None)

        head = ranked[0]
        group_index = self.group_of(head)
        selected = [head]
        committed = allocations.get(head, 0.0)
        deferred: list[str] = []

        for node in ranked[1:]:
            if len(selected) >= self._limits.max_in_flight:
                deferred.append(node)
                continue
            if self.group_of(node) != group_index:
                deferred.append(node)
                continue
            allocation = allocations.get(node, 0.0)
            if committed + allocation > remaining:
                deferred.append(node)
                continue
            selected.append(node)
            committed += allocation

        return ScheduleDecision(
            selected=tuple(selected),
            ready=ranked,
            group_index=group_index,
            deferred=tuple(deferred),
        )


def dependency_satisfied(
    dependency_id: str,
    statuses: Mapping[str, WorkItemStatus],
    alternates: Mapping[str, Sequence[str]],
) -> bool:
    """A dependency is met when completed, or failed with a completed substitute."""

    status = statuses[dependency_id]
    if status is WorkItemStatus.COMPLETED:
        return True
    if status is WorkItemStatus.FAILED:
        return any(
            statuses.get(alternate) is WorkItemStatus.COMPLETED
            for alternate in alternates.get(dependency_id, ())
        )
    return False


def _candidate_sort_key(candidate: _Candidate) -> tuple[object, ...]:
    return (
        -candidate.priority,
        -candidate.unblocks,
        candidate.budget,
        candidate.work_item_id,
    )


__all__ = ["ScheduleDecision", "Scheduler", "SchedulerLimits", "dependency_satisfied"]
