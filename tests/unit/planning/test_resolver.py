"""Unit tests for planning.resolver."""

from __future__ import annotations

import pytest

from orchestration_engine.domain.events import EventType
from orchestration_engine.domain.models import Edge, EdgeKind, WorkItem
from orchestration_engine.observability.events import EventBus
from orchestration_engine.planning.resolver import (
    CycleResolutionError,
    DependencyResolver,
    ResolutionAction,
    ResolutionDecision,
    ResolutionOption,
    ResolutionRequest,
    ResolutionRequiredError,
    ResolutionStrategy,
    UnknownDependencyError,
    resolve,
)
from orchestration_engine.planning.task_graph import CycleError, ResolutionError


def _item(item_id: str, *deps: str, **kwargs: object) -> WorkItem:
    return WorkItem(id=item_id, name=item_id.upper(), dependencies=deps, **kwargs)  # type: ignore[arg-type]


def _two_way_cycle() -> list[WorkItem]:
    # y depends on x explicitly; x runs after y by a weaker temporal constraint.
    return [_item("x", metadata={"after": ["y"]}), _item("y", "x")]


@pytest.mark.unit
def test_linear_dependencies_resolve_in_declared_order() -> None:
    items = [_item("C", "A", "B"), _item("B", "A"), _item("A")]

    result = resolve(items, strategy=ResolutionStrategy.FAIL_ON_CYCLE)

    assert result.order == ("A", "B", "C")
    assert result.cycles == ()
    assert result.resolutions == ()
    assert result.parallel_groups == (("A",), ("B",), ("C",))
    assert result.critical_path == ("A", "B", "C")


@pytest.mark.unit
@pytest.mark.parametrize("strategy", list(ResolutionStrategy))
def test_resolving_acyclic_graph_is_idempotent(strategy: ResolutionStrategy) -> None:
    items = [
        _item("fetch"),
        _item("build", "fetch", metadata={"produces": "wheel"}),
        _item("publish", metadata={"consumes": ["wheel"]}),
        _item("lint", priority=2),
    ]
    resolver = DependencyResolver()

    result = resolver.resolve(items, strategy=strategy)

    assert result.resolutions == ()
    assert result.graph.edges == resolver.build_graph(items).edges
    assert result.order == ("lint", "fetch", "build", "publish")


@pytest.mark.unit
def test_fail_on_cycle_raises_with_every_cycle() -> None:
    items = [_item("a", "b"), _item("b", "a"), _item("c", "d"), _item("d", "c"), _item("e")]

    with pytest.raises(CycleError) as exc_info:
        resolve(items)

    assert [cycle.members for cycle in exc_info.value.cycles] == [("a", "b"), ("c", "d")]


@pytest.mark.unit
def test_break_weakest_removes_lowest_strength_edge() -> None:
    bus = EventBus()
    result = resolve(_two_way_cycle(), strategy="break_weakest", event_bus=bus)

    (resolution,) = result.resolutions
    assert resolution.action is ResolutionAction.BREAK_EDGE
    assert resolution.removed_edge == Edge("y", "x", kind=EdgeKind.TEMPORAL)
    assert result.order == ("x", "y")
    assert result.graph.is_acyclic()
    assert len(bus.replay(event_type=EventType.CYCLE_DETECTED)) == 1
    assert len(bus.replay(event_type=EventType.CYCLE_RESOLVED)) == 1


@pytest.mark.unit
def test_break_weakest_leaves_graph_acyclic_for_dense_cycles() -> None:
    items = [_item("A", "B", "C"), _item("B", "A"), _item("C", "B")]

    result = resolve(items, strategy=ResolutionStrategy.BREAK_WEAKEST)

    assert result.graph.is_acyclic()
    assert [record.removed_edge for record in result.resolutions] == [Edge("A", "B")]
    assert result.order == ("B", "C", "A")


@pytest.mark.unit
def test_merge_cycle_collapses_members_and_redirects_edges() -> None:
    items = [
        _item(
            "A", "B", priority=1, budget=2.0, metadata={"content": "first"}, alternates=("D", "B")
        ),
        _item("B", "A", priority=3, budget=3.0, alternates=("D",)),
        _item("C", "A"),
        _item("D"),
    ]

    result = resolve(items, strategy=ResolutionStrategy.MERGE_CYCLE)

    merged_id = "merged:A+B"
    assert result.order == (merged_id, "C", "D")
    merged = result.items[merged_id]
    assert merged.name == "A + B"
    assert merged.priority == 3
    assert merged.budget == 5.0
    assert merged.metadata == {
        "merged_items": ["A", "B"],
        "items": {"A": {"content": "first"}, "B": {}},
    }
    assert result.graph.get_dependents(merged_id) == ("C",)
    assert result.items["C"].dependencies == (merged_id,)
    assert merged.alternates == ("D",)
    assert items[2].dependencies == ("A",)
    assert result.original_ids(merged_id) == ("A", "B")
    assert result.original_ids("C") == ("C",)
    assert result.resolutions[0].merged_id == merged_id


@pytest.mark.unit
def test_user_resolution_without_handler_emits_request_and_raises() -> None:
    bus = EventBus()
    resolver = DependencyResolver(event_bus=bus)

    with pytest.raises(ResolutionRequiredError) as exc_info:
        resolver.resolve(_two_way_cycle(), strategy=ResolutionStrategy.USER_RESOLUTION)

    request = exc_info.value.request
    assert request.round == 1
    (options,) = request.options
    assert options[0] == ResolutionOption(
        action=ResolutionAction.BREAK_EDGE, edge=Edge("y", "x", kind=EdgeKind.TEMPORAL)
    )
    assert options[-1] == ResolutionOption(action=ResolutionAction.MERGE)
    (event,) = bus.replay(event_type=EventType.RESOLUTION_REQUIRED)
    assert event.payload["round"] == 1


@pytest.mark.unit
def test_user_resolution_applies_handler_choice() -> None:
    requests: list[ResolutionRequest] = []

    def choose_merge(request: ResolutionRequest) -> ResolutionDecision:
        requests.append(request)
        return ResolutionDecision(choices={0: ResolutionOption(action=ResolutionAction.MERGE)})

    result = resolve(
        _two_way_cycle(),
        strategy=ResolutionStrategy.USER_RESOLUTION,
        resolution_handler=choose_merge,
    )

    assert len(requests) == 1
    assert result.order == ("merged:x+y",)

    by_index = resolve(
        _two_way_cycle(),
        strategy=ResolutionStrategy.USER_RESOLUTION,
        resolution_handler=lambda request: ResolutionDecision(choices={0: 1}),
    )
    assert by_index.resolutions[0].removed_edge == Edge("x", "y")
    assert by_index.order == ("y", "x")


@pytest.mark.unit
@pytest.mark.parametrize("choices", [{}, {0: 7}, {0: True}])
def test_user_resolution_rejects_invalid_decisions(choices: dict[int, object]) -> None:
    with pytest.raises(CycleResolutionError):
        resolve(
            _two_way_cycle(),
            strategy=ResolutionStrategy.USER_RESOLUTION,
            resolution_handler=lambda request: ResolutionDecision(choices=choices),  # type: ignore[arg-type]
        )


@pytest.mark.unit
def test_unknown_and_duplicate_items_are_rejected() -> None:
    with pytest.raises(UnknownDependencyError) as exc_info:
        resolve([_item("a", "ghost")])
    assert exc_info.value.dependency == "ghost"

    with pytest.raises(ResolutionError, match="duplicate"):
        resolve([_item("a"), _item("a")])


@pytest.mark.unit
def test_edge_inference_kinds_and_selection() -> None:
    items = [
        _item("build"),
        _item("build-tools"),
        _item("deploy", metadata={"content": "ship once build passes"}),
        _item("docs", metadata={"consumes": "api.json"}),
        _item("schema", metadata={"produces": ["api.json"], "before": "deploy"}),
    ]
    resolver = DependencyResolver()

    graph = resolver.build_graph(items)

    assert graph.get_edge("build", "deploy") == Edge("build", "deploy", kind=EdgeKind.IMPLICIT)
    assert not graph.has_edge("build-tools", "deploy")
    assert graph.get_edge("schema", "docs") == Edge("schema", "docs", kind=EdgeKind.DATA_FLOW)
    assert graph.get_edge("schema", "deploy") == Edge("schema", "deploy", kind=EdgeKind.TEMPORAL)

    explicit_only = resolver.build_graph(items, edge_kinds=["explicit"])
    assert explicit_only.edges == ()
    data_only = resolver.build_graph(items, edge_kinds=[EdgeKind.DATA_FLOW])
    assert [edge.key for edge in data_only.edges] == [("schema", "docs")]


@pytest.mark.unit
def test_weighted_critical_path_uses_item_budgets() -> None:
    items = [
        _item("A", budget=1.0),
        _item("B", "A", budget=1.0),
        _item("C", "A", budget=6.0),
        _item("D", "B", "C", budget=1.0),
    ]

    assert resolve(items).critical_path == ("A", "B", "D")
    assert resolve(items, weighted_critical_path=True).critical_path == ("A", "C", "D")
