"""Unit tests for control_plane.scheduler."""

from __future__ import annotations

import pytest

from orchestration_engine.control_plane.scheduler import (
    Scheduler,
    SchedulerLimits,
    dependency_satisfied,
)
from orchestration_engine.domain.models import Edge, WorkItem, WorkItemStatus
from orchestration_engine.planning.task_graph import DependencyGraph

PENDING = WorkItemStatus.PENDING
COMPLETED = WorkItemStatus.COMPLETED
FAILED = WorkItemStatus.FAILED


def _scheduler(
    nodes: tuple[str, ...],
    pairs: tuple[tuple[str, str], ...] = (),
    *,
    max_in_flight: int = 1,
) -> Scheduler:
    graph = DependencyGraph(nodes=nodes, edges=(Edge(a, b) for a, b in pairs))
    return Scheduler(graph, graph.parallel_groups(), limits=SchedulerLimits(max_in_flight))


def _items(**specs: tuple[int, float]) -> dict[str, WorkItem]:
    return {
        node: WorkItem(id=node, name=node, priority=priority, budget=budget)
        for node, (priority, budget) in specs.items()
    }


@pytest.mark.unit
def test_ready_requires_completed_dependencies() -> None:
    scheduler = _scheduler(("a", "b", "c"), (("a", "b"), ("b", "c")))

    assert scheduler.ready({"a": PENDING, "b": PENDING, "c": PENDING}) == ("a",)
    assert scheduler.ready({"a": COMPLETED, "b": PENDING, "c": PENDING}) == ("b",)
    assert scheduler.ready({"a": FAILED, "b": PENDING, "c": PENDING}) == ()


@pytest.mark.unit
def test_failed_dependency_satisfied_by_completed_alternate() -> None:
    statuses = {"a": FAILED, "a-alt": COMPLETED, "b": PENDING}
    scheduler = _scheduler(("a", "a-alt", "b"), (("a", "b"),))

    assert dependency_satisfied("a", statuses, {"a": ("a-alt",)})
    assert not dependency_satisfied("a", statuses, {})
    assert scheduler.ready(statuses, {"a": ("a-alt",)}) == ("b",)


@pytest.mark.unit
def test_rank_orders_by_priority_then_unblocks_then_budget() -> None:
    scheduler = _scheduler(
        ("hub", "cheap", "pricey", "urgent", "leaf1", "leaf2"),
        (("hub", "leaf1"), ("hub", "leaf2")),
    )
    items = _items(
        hub=(0, 9.0),
        cheap=(0, 1.0),
        pricey=(0, 5.0),
        urgent=(4, 50.0),
        leaf1=(0, 0.0),
        leaf2=(0, 0.0),
    )

    ranked = scheduler.rank(("cheap", "hub", "pricey", "urgent"), items)

    assert ranked == ("urgent", "hub", "cheap", "pricey")


@pytest.mark.unit
def test_select_single_item_by_default() -> None:
    scheduler = _scheduler(("a", "b", "c"))
    items = _items(a=(0, 1.0), b=(2, 1.0), c=(1, 1.0))

    decision = scheduler.select(
        ("a", "b", "c"), items, allocations={"a": 1.0, "b": 1.0, "c": 1.0}, remaining=10.0
    )

    assert decision.selected == ("b",)
    assert decision.deferred == ("c", "a")
    assert decision.group_index == 0


@pytest.mark.unit
def test_select_batches_same_group_within_limit_and_budget() -> None:
    scheduler = _scheduler(("a", "b", "c", "d", "z"), (("z", "d"),), max_in_flight=3)
    items = _items(a=(3, 4.0), b=(2, 4.0), c=(1, 4.0), d=(0, 1.0), z=(0, 1.0))
    allocations = {node: item.budget for node, item in items.items()}

    decision = scheduler.select(("a", "b", "c", "z"), items, allocations=allocations, remaining=9.0)

    assert decision.selected == ("a", "b", "z")
    assert decision.deferred == ("c",)


@pytest.mark.unit
def test_select_keeps_batch_inside_one_parallel_group() -> None:
    scheduler = _scheduler(("a", "b", "c"), (("a", "c"),), max_in_flight=4)
    items = _items(a=(0, 1.0), b=(0, 1.0), c=(5, 1.0))
    statuses = {"a": COMPLETED, "b": PENDING, "c": PENDING}

    ready = scheduler.ready(statuses)
    decision = scheduler.select(ready, items, allocations={}, remaining=10.0)

    assert ready == ("b", "c")
    assert decision.selected == ("c",)
    assert decision.deferred == ("b",)
    assert scheduler.group_of("c") == 1


@pytest.mark.unit
def test_select_with_nothing_ready() -> None:
    decision = _scheduler(("a",)).select((), {}, allocations={}, remaining=1.0)
    assert decision.selected == ()
    assert decision.group_index is None


@pytest.mark.unit
@pytest.mark.parametrize("value", [0, -1, True, 1.5])
def test_limits_validation(value: object) -> None:
    with pytest.raises(ValueError):
        SchedulerLimits(max_in_flight=value)  # type: ignore[arg-type]
