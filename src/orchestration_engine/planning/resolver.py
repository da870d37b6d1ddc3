"""
Dependency resolution: edge inference, cycle handling, and execution ordering.

The resolver turns a flat list of work items into a resolved plan:
- builds a weighted `DependencyGraph` from declared and inferred relationships
- detects cycles (Tarjan SCC) and resolves them with the selected strategy
- emits a Kahn ordering, depth-level parallel groups, and the critical path

Cycle handling runs in rounds; each round applies exactly one action to every current cycle
until the graph is acyclic. Decisions are logged through `structlog` and published as
engine events when an `EventBus` is supplied.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping, Sequence
import dataclasses
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from orchestration_engine.domain.events import EventType
from orchestration_engine.domain.models import (
    DEFAULT_EDGE_STRENGTH,
    Edge,
    EdgeKind,
    JSONValue,
    WorkItem,
)
from orchestration_engine.planning.task_graph import (
    Cycle,
    CycleError,
    DependencyGraph,
    ResolutionError,
)

if TYPE_CHECKING:
    from orchestration_engine.observability.events import EventBus

MERGED_ID_PREFIX = "merged:"


class ResolutionStrategy(StrEnum):
    FAIL_ON_CYCLE = "fail_on_cycle"
    BREAK_WEAKEST = "break_weakest"
    MERGE_CYCLE = "merge_cycle"
    USER_RESOLUTION = "user_resolution"


class ResolutionAction(StrEnum):
    BREAK_EDGE = "break_edge"
    MERGE = "merge"


class UnknownDependencyError(ResolutionError):
    """Raised when a declared dependency names an item that is not in the queue."""

    def __init__(self, work_item_id: str, dependency: str) -> None:
        self.work_item_id = work_item_id
        self.dependency = dependency
        super().__init__(f"work item {work_item_id!r} depends on unknown item {dependency!r}")


class CycleResolutionError(ResolutionError):
    """Raised when cycles cannot be resolved into an acyclic graph."""


class ResolutionRequiredError(ResolutionError):
    """Raised when cycles need an external decision and no handler was supplied."""

    def __init__(self, request: ResolutionRequest) -> None:
        self.request = request
        super().__init__(
            f"{len(request.cycles)} cycle(s) require an external resolution decision"
        )


@dataclass(frozen=True, slots=True)
class ResolutionOption:
    """One candidate action for a single cycle."""

    action: ResolutionAction
    edge: Edge | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "action": self.action.value,
            "edge": self.edge.to_dict() if self.edge is not None else None,
        }


@dataclass(frozen=True, slots=True)
class ResolutionRequest:
    """Cycles awaiting an external decision, each with its candidate options."""

    round: int
    cycles: tuple[Cycle, ...]
    options: tuple[tuple[ResolutionOption, ...], ...]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "round": self.round,
            "cycles": [
                {**cycle.to_dict(), "options": [option.to_dict() for option in options]}
                for cycle, options in zip(self.cycles, self.options, strict=True)
            ],
        }


@dataclass(frozen=True, slots=True)
class ResolutionDecision:
    """Chosen option per cycle index, either by option index or by value."""

    choices: Mapping[int, int | ResolutionOption]


ResolutionHandler = Callable[[ResolutionRequest], ResolutionDecision]


@dataclass(frozen=True, slots=True)
class CycleResolution:
    """Record of one action applied to one cycle."""

    action: ResolutionAction
    cycle: Cycle
    removed_edge: Edge | None = None
    merged_id: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "action": self.action.value,
            "cycle": self.cycle.to_dict(),
            "removed_edge": self.removed_edge.to_dict() if self.removed_edge else None,
            "merged_id": self.merged_id,
        }


@dataclass(frozen=True, slots=True)
class ResolutionResult:
    """Acyclic plan handed read-only to the queue processor."""

    ordered_items: tuple[WorkItem, ...]
    graph: DependencyGraph
    cycles: tuple[Cycle, ...]
    parallel_groups: tuple[tuple[str, ...], ...]
    critical_path: tuple[str, ...]
    resolutions: tuple[CycleResolution, ...]
    members: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def order(self) -> tuple[str, ...]:
        return tuple(item.id for item in self.ordered_items)

    @property
    def items(self) -> dict[str, WorkItem]:
        return {item.id: item for item in self.ordered_items}

    def original_ids(self, node_id: str) -> tuple[str, ...]:
        """Map a graph node back to the work-item ids it stands for."""
        return self.members.get(node_id, (node_id,))


class DependencyResolver:
    """Build, de-cycle, and order the dependency graph for a work-item queue."""

    def __init__(
        self,
        *,
        resolution_handler: ResolutionHandler | None = None,
        weighted_critical_path: bool = False,
        event_bus: EventBus | None = None,
        logger: Any | None = None,
    ) -> None:
        self._resolution_handler = resolution_handler
        self._weighted_critical_path = weighted_critical_path
        self._event_bus = event_bus
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def build_graph(
        self,
        items: Sequence[WorkItem],
        edge_kinds: Iterable[EdgeKind | str] | None = None,
    ) -> DependencyGraph:
        """Build nodes for every item and edges for the selected kinds."""

        kinds = _normalize_edge_kinds(edge_kinds)
        by_id: dict[str, WorkItem] = {}
        for item in items:
            if item.id in by_id:
                raise ResolutionError(f"duplicate work item id: {item.id!r}")
            by_id[item.id] = item

        graph = DependencyGraph(nodes=by_id)
        for edge in self._infer_edges(by_id, kinds):
            graph.add_edge(edge)
        return graph

    def resolve(
        self,
        items: Sequence[WorkItem],
        edge_kinds: Iterable[EdgeKind | str] | None = None,
        strategy: ResolutionStrategy | str = ResolutionStrategy.FAIL_ON_CYCLE,
    ) -> ResolutionResult:
        """
        Resolve ``items`` into an acyclic, ordered plan.

        Raises ``CycleError`` under ``fail_on_cycle`` when any cycle exists,
        ``ResolutionRequiredError`` under ``user_resolution`` without a handler, and
        ``CycleResolutionError`` when resolution cannot produce an acyclic graph.
        """

        resolved_strategy = ResolutionStrategy(strategy)
        graph = self.build_graph(items, edge_kinds)
        work_items: dict[str, WorkItem] = {item.id: item for item in items}
        members: dict[str, tuple[str, ...]] = {}

        detected = graph.detect_cycles()
        for cycle in detected:
            self._emit(EventType.CYCLE_DETECTED, cycle.to_dict())
        if detected:
            self._logger.info(
                "planning_cycles_detected",
                strategy=resolved_strategy.value,
                cycles=[list(cycle.members) for cycle in detected],
            )
        if detected and resolved_strategy is ResolutionStrategy.FAIL_ON_CYCLE:
            raise CycleError(detected)

        resolutions: list[CycleResolution] = []
        cycles = detected
        max_rounds = len(graph.edges) + 1
        round_number = 0
        while cycles:
            round_number += 1
            if round_number > max_rounds:
                raise CycleResolutionError(
                    f"graph still cyclic after {max_rounds} resolution round(s)"
                )

            if resolved_strategy is ResolutionStrategy.USER_RESOLUTION:
                chosen = self._request_decision(round_number, cycles)
            else:
                chosen = tuple(
                    _default_option(cycle, resolved_strategy) for cycle in cycles
                )

            for cycle, option in zip(cycles, chosen, strict=True):
                record = self._apply(graph, work_items, members, cycle, option)
                resolutions.append(record)
                self._emit(EventType.CYCLE_RESOLVED, record.to_dict())
                self._logger.info(
                    "planning_cycle_resolved",
                    round=round_number,
                    action=record.action.value,
                    members=list(cycle.members),
                    removed_edge=record.removed_edge.to_dict() if record.removed_edge else None,
                    merged_id=record.merged_id,
                )
            cycles = graph.detect_cycles()

        priorities = {node: work_items[node].priority for node in graph.nodes}
        order = graph.topological_sort(priorities)
        weights = (
            {node: work_items[node].budget for node in graph.nodes}
            if self._weighted_critical_path
            else None
        )
        return ResolutionResult(
            ordered_items=tuple(work_items[node] for node in order),
            graph=graph,
            cycles=detected,
            parallel_groups=graph.parallel_groups(priorities),
            critical_path=graph.critical_path(weights),
            resolutions=tuple(resolutions),
            members=members,
        )

    def _infer_edges(self, by_id: Mapping[str, WorkItem], kinds: frozenset[EdgeKind]) -> list[Edge]:
        edges: list[Edge] = []

        for item in by_id.values():
            for dependency in item.dependencies:
                if dependency not in by_id:
                    raise UnknownDependencyError(item.id, dependency)
                edges.append(Edge(dependency, item.id, kind=EdgeKind.EXPLICIT))

        if EdgeKind.IMPLICIT in kinds:
            edges.extend(self._content_edges(by_id))
        if EdgeKind.DATA_FLOW in kinds:
            edges.extend(_data_flow_edges(by_id))
        if EdgeKind.TEMPORAL in kinds:
            edges.extend(self._temporal_edges(by_id))
        return edges

    def _content_edges(self, by_id: Mapping[str, WorkItem]) -> list[Edge]:
        edges: list[Edge] = []
        for item in by_id.values():
            content = item.metadata.get("content")
            if not isinstance(content, str) or not content:
                continue
            for other_id in sorted(by_id):
                if other_id != item.id and _mentions(content, other_id):
                    edges.append(Edge(other_id, item.id, kind=EdgeKind.IMPLICIT))
        return edges

    def _temporal_edges(self, by_id: Mapping[str, WorkItem]) -> list[Edge]:
        edges: list[Edge] = []
        for item in by_id.values():
            for key, forward in (("after", False), ("before", True)):
                for other_id in _metadata_names(item.metadata.get(key)):
                    if other_id == item.id:
                        continue
                    if other_id not in by_id:
                        self._logger.debug(
                            "planning_unknown_temporal_reference",
                            work_item_id=item.id,
                            reference=other_id,
                            relation=key,
                        )
                        continue
                    source, target = (item.id, other_id) if forward else (other_id, item.id)
                    edges.append(Edge(source, target, kind=EdgeKind.TEMPORAL))
        return edges

    def _request_decision(
        self, round_number: int, cycles: tuple[Cycle, ...]
    ) -> tuple[ResolutionOption, ...]:
        request = ResolutionRequest(
            round=round_number,
            cycles=cycles,
            options=tuple(_options_for(cycle) for cycle in cycles),
        )
        self._emit(EventType.RESOLUTION_REQUIRED, request.to_dict())
        self._logger.info(
            "planning_resolution_required",
            round=round_number,
            cycles=[list(cycle.members) for cycle in cycles],
        )
        if self._resolution_handler is None:
            raise ResolutionRequiredError(request)

        decision = self._resolution_handler(request)
        if not isinstance(decision, ResolutionDecision):
            raise CycleResolutionError(
                f"resolution handler returned {type(decision).__name__}, expected ResolutionDecision"
            )

        chosen: list[ResolutionOption] = []
        for index, options in enumerate(request.options):
            if index not in decision.choices:
                raise CycleResolutionError(f"no decision supplied for cycle {index}")
            choice = decision.choices[index]
            if isinstance(choice, ResolutionOption):
                if choice not in options:
                    raise CycleResolutionError(f"decision for cycle {index} is not a valid option")
                chosen.append(choice)
            elif isinstance(choice, int) and not isinstance(choice, bool) and 0 <= choice < len(options):
                chosen.append(options[choice])
            else:
                raise CycleResolutionError(f"decision for cycle {index} is out of range: {choice!r}")
        return tuple(chosen)

    def _apply(
        self,
        graph: DependencyGraph,
        work_items: dict[str, WorkItem],
        members: dict[str, tuple[str, ...]],
        cycle: Cycle,
        option: ResolutionOption,
    ) -> CycleResolution:
        if option.action is ResolutionAction.BREAK_EDGE:
            if option.edge is None:
                raise CycleResolutionError("break_edge option requires an edge")
            removed = graph.remove_edge(option.edge.source, option.edge.target)
            return CycleResolution(action=option.action, cycle=cycle, removed_edge=removed)

        merged = _merge_items(cycle.members, work_items, members)
        graph.merge_nodes(cycle.members, merged.id)
        for member in cycle.members:
            del work_items[member]
            members.pop(member, None)
        merged.dependencies = graph.get_dependencies(merged.id)
        work_items[merged.id] = merged
        absorbed = set(cycle.members)
        for node_id, item in list(work_items.items()):
            if absorbed.intersection(item.dependencies):
                redirected = (merged.id if dep in absorbed else dep for dep in item.dependencies)
                work_items[node_id] = dataclasses.replace(
                    item, dependencies=tuple(dict.fromkeys(redirected))
                )
        members[merged.id] = tuple(merged.metadata["merged_items"])  # type: ignore[arg-type]
        return CycleResolution(action=option.action, cycle=cycle, merged_id=merged.id)

    def _emit(self, event_type: EventType, payload: Mapping[str, object]) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, payload)


def resolve(
    items: Sequence[WorkItem],
    edge_kinds: Iterable[EdgeKind | str] | None = None,
    strategy: ResolutionStrategy | str = ResolutionStrategy.FAIL_ON_CYCLE,
    *,
    resolution_handler: ResolutionHandler | None = None,
    weighted_critical_path: bool = False,
    event_bus: EventBus | None = None,
) -> ResolutionResult:
    """Resolve ``items`` with a one-off `DependencyResolver`."""

    return DependencyResolver(
        resolution_handler=resolution_handler,
        weighted_critical_path=weighted_critical_path,
        event_bus=event_bus,
    ).resolve(items, edge_kinds, strategy)


def _normalize_edge_kinds(edge_kinds: Iterable[EdgeKind | str] | None) -> frozenset[EdgeKind]:
    if edge_kinds is None:
        return frozenset(EdgeKind)
    return frozenset(EdgeKind(kind) for kind in edge_kinds) | {EdgeKind.EXPLICIT}


def _default_option(cycle: Cycle, strategy: ResolutionStrategy) -> ResolutionOption:
    if strategy is ResolutionStrategy.MERGE_CYCLE:
        return ResolutionOption(action=ResolutionAction.MERGE)
    return ResolutionOption(action=ResolutionAction.BREAK_EDGE, edge=cycle.weakest_edge)


def _options_for(cycle: Cycle) -> tuple[ResolutionOption, ...]:
    ranked = sorted(cycle.edges, key=lambda edge: (edge.strength, edge.source, edge.target))
    breaks = tuple(ResolutionOption(action=ResolutionAction.BREAK_EDGE, edge=edge) for edge in ranked)
    return breaks + (ResolutionOption(action=ResolutionAction.MERGE),)


def _merge_items(
    node_ids: Sequence[str],
    work_items: Mapping[str, WorkItem],
    members: Mapping[str, tuple[str, ...]],
) -> WorkItem:
    nodes = [work_items[node_id] for node_id in node_ids]
    originals = sorted(
        original for node_id in node_ids for original in members.get(node_id, (node_id,))
    )
    item_metadata: dict[str, JSONValue] = {}
    for node in nodes:
        nested = node.metadata.get("items") if node.id in members else None
        if isinstance(nested, dict):
            item_metadata.update(nested)
        else:
            item_metadata[node.id] = node.metadata
    alternates = sorted(
        {alt for node in nodes for alt in node.alternates} - set(originals) - set(node_ids)
    )

    return WorkItem(
        id=MERGED_ID_PREFIX + "+".join(originals),
        name=" + ".join(node.name for node in nodes),
        priority=max(node.priority for node in nodes),
        budget=sum(node.budget for node in nodes),
        alternates=tuple(alternates),
        metadata={
            "merged_items": list(originals),
            "items": {key: item_metadata[key] for key in sorted(item_metadata)},
        },
    )


def _data_flow_edges(by_id: Mapping[str, WorkItem]) -> list[Edge]:
    producers: dict[str, set[str]] = {}
    for item in by_id.values():
        for artifact in _metadata_names(item.metadata.get("produces")):
            producers.setdefault(artifact, set()).add(item.id)

    edges: list[Edge] = []
    for item in by_id.values():
        for artifact in _metadata_names(item.metadata.get("consumes")):
            for producer in sorted(producers.get(artifact, ())):
                if producer != item.id:
                    edges.append(
                        Edge(
                            producer,
                            item.id,
                            kind=EdgeKind.DATA_FLOW,
                            strength=DEFAULT_EDGE_STRENGTH[EdgeKind.DATA_FLOW],
                        )
                    )
    return edges


def _metadata_names(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if isinstance(value, list):
        return tuple(entry for entry in value if isinstance(entry, str) and entry.strip())
    return ()


def _mentions(content: str, item_id: str) -> bool:
    pattern = rf"(?<![\w\-.]){re.escape(item_id)}(?![\w\-])"
    return re.search(pattern, content) is not None


__all__ = [
    "MERGED_ID_PREFIX",
    "CycleResolution",
    "CycleResolutionError",
    "DependencyResolver",
    "ResolutionAction",
    "ResolutionDecision",
    "ResolutionHandler",
    "ResolutionOption",
    "ResolutionRequest",
    "ResolutionRequiredError",
    "ResolutionResult",
    "ResolutionStrategy",
    "UnknownDependencyError",
    "resolve",
]
