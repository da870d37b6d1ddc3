"""Unit tests for core domain models."""

from __future__ import annotations

import json

import pytest

from orchestration_engine.domain.models import (
    Budget,
    Edge,
    EdgeKind,
    ExecutionOutcome,
    InvalidTransitionError,
    IterationRecord,
    OutcomeStatus,
    Report,
    WorkItem,
    WorkItemStatus,
)


@pytest.mark.unit
def test_work_item_lifecycle_is_monotonic() -> None:
    item = WorkItem(id="a", name="A")
    assert item.status is WorkItemStatus.PENDING

    item.transition(WorkItemStatus.READY)
    item.transition("in_progress")
    item.transition(WorkItemStatus.COMPLETED)
    assert item.status.is_terminal

    with pytest.raises(InvalidTransitionError) as exc_info:
        item.transition(WorkItemStatus.READY)
    assert exc_info.value.current is WorkItemStatus.COMPLETED
    assert exc_info.value.target is WorkItemStatus.READY


@pytest.mark.unit
@pytest.mark.parametrize(
    ("start", "target"),
    [
        (WorkItemStatus.PENDING, WorkItemStatus.IN_PROGRESS),
        (WorkItemStatus.PENDING, WorkItemStatus.COMPLETED),
        (WorkItemStatus.READY, WorkItemStatus.PARTIAL),
        (WorkItemStatus.IN_PROGRESS, WorkItemStatus.SKIPPED),
        (WorkItemStatus.SKIPPED, WorkItemStatus.PENDING),
    ],
)
def test_work_item_rejects_skipping_or_backward_transitions(
    start: WorkItemStatus, target: WorkItemStatus
) -> None:
    item = WorkItem(id="a", name="A", status=start)
    with pytest.raises(InvalidTransitionError):
        item.transition(target)


@pytest.mark.unit
def test_pending_and_ready_items_may_be_skipped() -> None:
    pending = WorkItem(id="a", name="A")
    ready = WorkItem(id="b", name="B", status=WorkItemStatus.READY)
    pending.transition(WorkItemStatus.SKIPPED)
    ready.transition(WorkItemStatus.SKIPPED)
    assert pending.status is ready.status is WorkItemStatus.SKIPPED


@pytest.mark.unit
def test_work_item_validation_reports_field_paths() -> None:
    with pytest.raises(ValueError, match="WorkItem.dependencies"):
        WorkItem(id="a", name="A", dependencies=("a",))
    with pytest.raises(ValueError, match="WorkItem.dependencies"):
        WorkItem(id="a", name="A", dependencies=("b", "b"))
    with pytest.raises(ValueError, match="WorkItem.alternates"):
        WorkItem(id="a", name="A", alternates=("a",))
    with pytest.raises(ValueError, match="WorkItem.budget"):
        WorkItem(id="a", name="A", budget=-1)
    with pytest.raises(ValueError, match="WorkItem.metadata"):
        WorkItem(id="a", name="A", metadata={"bad": object()})
    with pytest.raises(ValueError, match="WorkItem.id"):
        WorkItem(id="  ", name="A")


@pytest.mark.unit
def test_work_item_dict_round_trip_is_canonical() -> None:
    item = WorkItem(
        id="build",
        name="Build",
        priority=3,
        dependencies=("fetch",),
        budget=2.5,
        metadata={"kind": "compile", "produces": ["wheel"]},
        alternates=("build-fallback",),
    )
    payload = item.to_dict()
    assert WorkItem.from_dict(payload) == item
    assert json.loads(item.to_json()) == payload
    assert payload["dependencies"] == ["fetch"]


@pytest.mark.unit
def test_edge_defaults_strength_by_kind_and_rejects_self_edges() -> None:
    assert Edge("a", "b").strength == 1.0
    assert Edge("a", "b", kind=EdgeKind.DATA_FLOW).strength == 0.8
    assert Edge("a", "b", kind="temporal").strength == 0.7
    assert Edge("a", "b", kind=EdgeKind.IMPLICIT).strength == 0.5
    assert Edge("a", "b", strength=0.3).strength == 0.3

    with pytest.raises(ValueError, match="self-edge"):
        Edge("a", "a")
    with pytest.raises(ValueError, match="Edge.strength"):
        Edge("a", "b", strength=1.5)


@pytest.mark.unit
def test_edge_outranks_prefers_strength_then_kind_order() -> None:
    explicit = Edge("a", "b", kind=EdgeKind.EXPLICIT, strength=0.5)
    implicit = Edge("a", "b", kind=EdgeKind.IMPLICIT, strength=0.5)
    strong = Edge("a", "b", kind=EdgeKind.IMPLICIT, strength=0.9)

    assert explicit.outranks(implicit)
    assert not implicit.outranks(explicit)
    assert strong.outranks(explicit)
    assert Edge("a", "b").to_dict() == {"from": "a", "to": "b", "kind": "explicit", "strength": 1.0}


@pytest.mark.unit
def test_budget_validation() -> None:
    budget = Budget(total_units=10, wall_clock_seconds=60, max_iterations_per_item=3)
    assert budget.total_units == 10.0
    assert Budget.from_dict(budget.to_dict()) == budget

    with pytest.raises(ValueError, match="Budget.total_units"):
        Budget(total_units=0)
    with pytest.raises(ValueError, match="Budget.wall_clock_seconds"):
        Budget(total_units=1, wall_clock_seconds=0)
    with pytest.raises(ValueError, match="Budget.max_iterations_per_item"):
        Budget(total_units=1, max_iterations_per_item=0)


@pytest.mark.unit
def test_iteration_record_normalizes_and_validates() -> None:
    record = IterationRecord(
        iteration=2,
        touched=["f1", "f2", "extra"],
        progress=0.4,
        elapsed_seconds=1.5,
        scope_baseline={"f1", "f2"},
    )
    assert record.touched == frozenset({"f1", "f2", "extra"})
    assert record.out_of_scope == frozenset({"extra"})
    assert record.to_dict()["touched"] == ["extra", "f1", "f2"]

    with pytest.raises(ValueError, match="IterationRecord.iteration"):
        IterationRecord(iteration=0)
    with pytest.raises(ValueError, match="IterationRecord.progress"):
        IterationRecord(iteration=1, progress=1.2)


@pytest.mark.unit
def test_execution_outcome_constructors() -> None:
    assert ExecutionOutcome.success(2.0).status is OutcomeStatus.SUCCESS
    partial = ExecutionOutcome.partial(1.0, error="cap reached")
    assert partial.to_dict() == {"status": "partial", "budget_consumed": 1.0, "error": "cap reached"}
    failure = ExecutionOutcome.failure("boom")
    assert failure.status is OutcomeStatus.FAILURE
    assert failure.budget_consumed == 0.0

    with pytest.raises(ValueError, match="ExecutionOutcome.budget_consumed"):
        ExecutionOutcome.success(-1.0)


@pytest.mark.unit
def test_report_serializes_deterministically() -> None:
    report = Report(
        items_total=2,
        items_processed=1,
        counts={"skipped": 1, "completed": 1},
        success_rate=0.5,
        budget_efficiency=1.0,
        budget_used=3.0,
        budget_remaining=7.0,
        final_commitment_level=1,
        termination="queue_drained",
        critical_path=("a", "b"),
    )
    payload = json.loads(report.to_json())
    assert list(payload["counts"]) == ["completed", "skipped"]
    assert payload["critical_path"] == ["a", "b"]
