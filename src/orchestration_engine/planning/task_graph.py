"""Dependency graph over work-item ids: cycles, ordering, layering and critical path."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from heapq import heapify, heappop, heappush
from typing import cast

from orchestration_engine.domain.models import Edge, JSONValue


class ResolutionError(ValueError):
    """Base class for dependency resolution failures."""


@dataclass(frozen=True, slots=True)
class Cycle:
    """A strongly connected component with more than one member."""

    members: tuple[str, ...]
    edges: tuple[Edge, ...]

    @property
    def average_strength(self) -> float:
        if not self.edges:
            return 0.0
        return sum(cast("float", edge.strength) for edge in self.edges) / len(self.edges)

    @property
    def weakest_edge(self) -> Edge:
        return min(self.edges, key=lambda edge: (edge.strength, edge.source, edge.target))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "members": list(self.members),
            "edges": [edge.to_dict() for edge in self.edges],
            "average_strength": self.average_strength,
        }


class CycleError(ResolutionError):
    """The graph still has cycles where an acyclic one is required."""

    cycles: tuple[Cycle, ...]

    def __init__(self, cycles: Iterable[Cycle]) -> None:
        self.cycles = tuple(cycles)
        shown = "; ".join(" -> ".join(cycle.members) for cycle in self.cycles[:3]) or "unknown members"
        more = f" (+{len(self.cycles) - 3} more)" if len(self.cycles) > 3 else ""
        super().__init__(f"dependency cycle among {shown}{more}")


class DependencyGraph:
    """Directed graph of work-item ids with at most one weighted edge per ordered pair."""

    __slots__ = ("_nodes", "_children", "_parents")

    def __init__(
        self,
        nodes: Iterable[str] | None = None,
        edges: Iterable[Edge] | None = None,
    ) -> None:
        self._nodes: set[str] = set()
        self._children: dict[str, dict[str, Edge]] = {}
        self._parents: dict[str, set[str]] = {}

        if nodes is not None:
            for node_id in nodes:
                self.add_node(node_id)

        if edges is not None:
            for edge in edges:
                self.add_edge(edge)

    @property
    def nodes(self) -> tuple[str, ...]:
        """Sorted node ids."""
        return tuple(sorted(self._nodes))

    @property
    def edges(self) -> tuple[Edge, ...]:
        """All edges ordered by ``(source, target)``."""
        ordered: list[Edge] = []
        for parent in sorted(self._nodes):
            children = self._children[parent]
            ordered.extend(children[child] for child in sorted(children))
        return tuple(ordered)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def copy(self) -> DependencyGraph:
        return DependencyGraph(nodes=self._nodes, edges=self.edges)

    def add_node(self, node_id: str) -> None:
        """Idempotent."""
        self._validate_node_id(node_id)
        if node_id in self._nodes:
            return

        self._nodes.add(node_id)
        self._children[node_id] = {}
        self._parents[node_id] = set()

    def remove_node(self, node_id: str) -> None:
        """Drop ``node_id`` together with every edge touching it."""
        self._assert_node_exists(node_id)

        for parent in tuple(self._parents[node_id]):
            del self._children[parent][node_id]
        for child in tuple(self._children[node_id]):
            self._parents[child].remove(node_id)

        del self._children[node_id]
        del self._parents[node_id]
        self._nodes.remove(node_id)

    def add_edge(self, edge: Edge) -> bool:
        """
        Add ``edge`` unless a stronger edge already links the same pair.

        Returns ``True`` when the stored edge changed.
        """
        self._assert_node_exists(edge.source)
        self._assert_node_exists(edge.target)

        existing = self._children[edge.source].get(edge.target)
        if existing is not None and not edge.outranks(existing):
            return False

        self._children[edge.source][edge.target] = edge
        self._parents[edge.target].add(edge.source)
        return True

    def remove_edge(self, source: str, target: str) -> Edge:
        """Remove and return the edge ``source -> target``."""
        edge = self.get_edge(source, target)
        if edge is None:
            raise KeyError(f"Unknown edge: {source} -> {target}")
        del self._children[source][target]
        self._parents[target].remove(source)
        return edge

    def get_edge(self, source: str, target: str) -> Edge | None:
        self._assert_node_exists(source)
        return self._children[source].get(target)

    def has_edge(self, source: str, target: str) -> bool:
        return source in self._nodes and target in self._children[source]

    def merge_nodes(self, members: Iterable[str], merged_id: str) -> None:
        """
        Collapse ``members`` into a single node ``merged_id``.

        Internal edges disappear; external edges are redirected to the merged node and the
        strongest edge wins when several collapse onto the same pair.
        """
        member_set = set(members)
        for member in member_set:
            self._assert_node_exists(member)
        if merged_id in self._nodes:
            raise ValueError(f"Merged node id already exists: {merged_id}")

        redirected: list[Edge] = []
        for member in sorted(member_set):
            for parent in sorted(self._parents[member]):
                if parent not in member_set:
                    edge = self._children[parent][member]
                    redirected.append(
                        Edge(parent, merged_id, kind=edge.kind, strength=edge.strength)
                    )
            for child, edge in sorted(self._children[member].items()):
                if child not in member_set:
                    redirected.append(Edge(merged_id, child, kind=edge.kind, strength=edge.strength))

        for member in member_set:
            self.remove_node(member)
        self.add_node(merged_id)
        for edge in redirected:
            self.add_edge(edge)

    def strongly_connected_components(self) -> tuple[tuple[str, ...], ...]:
        """
        Compute strongly connected components with an iterative Tarjan traversal.

        Each component is sorted; components are returned in sorted order.
        """
        index_of: dict[str, int] = {}
        lowlink: dict[str, int] = {}
        on_stack: set[str] = set()
        stack: list[str] = []
        components: list[tuple[str, ...]] = []
        counter = 0

        for start in sorted(self._nodes):
            if start in index_of:
                continue

            index_of[start] = lowlink[start] = counter
            counter += 1
            stack.append(start)
            on_stack.add(start)
            frames: list[tuple[str, Iterator[str]]] = [(start, iter(sorted(self._children[start])))]

            while frames:
                node, child_iter = frames[-1]

                try:
                    child = next(child_iter)
                except StopIteration:
                    frames.pop()
                    if frames:
                        parent = frames[-1][0]
                        lowlink[parent] = min(lowlink[parent], lowlink[node])
                    if lowlink[node] == index_of[node]:
                        component: list[str] = []
                        while True:
                            member = stack.pop()
                            on_stack.discard(member)
                            component.append(member)
                            if member == node:
                                break
                        components.append(tuple(sorted(component)))
                    continue

                if child not in index_of:
                    index_of[child] = lowlink[child] = counter
                    counter += 1
                    stack.append(child)
                    on_stack.add(child)
                    frames.append((child, iter(sorted(self._children[child]))))
                elif child in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[child])

        return tuple(sorted(components))

    def detect_cycles(self) -> tuple[Cycle, ...]:
        """Return every SCC of size > 1 together with its internal edges."""
        cycles: list[Cycle] = []
        for component in self.strongly_connected_components():
            if len(component) < 2:
                continue
            members = set(component)
            internal = tuple(
                self._children[source][target]
                for source in component
                for target in sorted(self._children[source])
                if target in members
            )
            cycles.append(Cycle(members=component, edges=internal))
        return tuple(cycles)

    def is_acyclic(self) -> bool:
        return all(len(component) == 1 for component in self.strongly_connected_components())

    def topological_sort(self, priorities: Mapping[str, int] | None = None) -> tuple[str, ...]:
        """
        Return a deterministic Kahn ordering or raise ``CycleError``.

        Among ready nodes, higher priority goes first, then the lexically smaller id.
        """
        indegree: dict[str, int] = {node: len(self._parents[node]) for node in self._nodes}
        ready: list[tuple[int, str]] = [
            (-self._priority_for(node, priorities), node)
            for node, degree in indegree.items()
            if degree == 0
        ]
        heapify(ready)

        order: list[str] = []
        while ready:
            _, node = heappop(ready)
            order.append(node)

            for child in sorted(self._children[node]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heappush(ready, (-self._priority_for(child, priorities), child))

        if len(order) != len(self._nodes):
            raise CycleError(self.detect_cycles())

        return tuple(order)

    def depths(self) -> dict[str, int]:
        """Longest edge-count distance from any root, per node."""
        depth: dict[str, int] = {}
        for node in self.topological_sort():
            parents = self._parents[node]
            depth[node] = 1 + max(depth[parent] for parent in parents) if parents else 0
        return depth

    def parallel_groups(
        self, priorities: Mapping[str, int] | None = None
    ) -> tuple[tuple[str, ...], ...]:
        """
        Group nodes by topological depth.

        Every edge strictly increases depth, so no two members of a group are linked.
        """
        levels: dict[int, list[str]] = {}
        for node, depth in self.depths().items():
            levels.setdefault(depth, []).append(node)
        return tuple(
            tuple(
                sorted(levels[depth], key=lambda node: (-self._priority_for(node, priorities), node))
            )
            for depth in sorted(levels)
        )

    def get_dependencies(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Nodes ``node_id`` waits on; with ``transitive`` the whole upstream cone."""
        self._assert_node_exists(node_id)
        if transitive:
            return self._reachable(node_id, self._parents)
        return tuple(sorted(self._parents[node_id]))

    def get_dependents(self, node_id: str, *, transitive: bool = False) -> tuple[str, ...]:
        """Nodes waiting on ``node_id``; with ``transitive`` the whole downstream cone."""
        self._assert_node_exists(node_id)
        if transitive:
            return self._reachable(node_id, {node: set(kids) for node, kids in self._children.items()})
        return tuple(sorted(self._children[node_id]))

    def critical_path(self, weights: Mapping[str, float] | None = None) -> tuple[str, ...]:
        """
        Heaviest root-to-leaf chain, counting each node's weight (default ``1.0``).

        Ties prefer the lexically smaller predecessor and then the lexically
        smaller end node, so the answer is stable across runs.
        """
        best: dict[str, tuple[float, str | None]] = {}
        for node in self.topological_sort():
            weight = self._weight_for(node, weights)
            incoming = [(best[parent][0], parent) for parent in self._parents[node]]
            if incoming:
                # max distance, then smallest parent id
                distance, parent = min(incoming, key=lambda pair: (-pair[0], pair[1]))
                best[node] = (distance + weight, parent)
            else:
                best[node] = (weight, None)
        if not best:
            return ()

        cursor: str | None = min(best, key=lambda node: (-best[node][0], node))
        path: list[str] = []
        while cursor is not None:
            path.append(cursor)
            cursor = best[cursor][1]
        return tuple(reversed(path))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "nodes": list(self.nodes),
            "edges": [edge.to_dict() for edge in self.edges],
        }

    @staticmethod
    def _reachable(start: str, links: Mapping[str, set[str]]) -> tuple[str, ...]:
        seen: set[str] = set()
        frontier = list(links[start])
        while frontier:
            node = frontier.pop()
            if node not in seen:
                seen.add(node)
                frontier.extend(links[node] - seen)
        return tuple(sorted(seen))

    @staticmethod
    def _priority_for(node_id: str, priorities: Mapping[str, int] | None) -> int:
        return 0 if priorities is None else priorities.get(node_id, 0)

    @staticmethod
    def _weight_for(node_id: str, weights: Mapping[str, float] | None) -> float:
        value = 1.0 if weights is None else weights.get(node_id, 1.0)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeError(f"weight for {node_id!r} must be a number")
        return float(value)

    @staticmethod
    def _validate_node_id(node_id: str) -> None:
        if not isinstance(node_id, str) or not node_id:
            raise ValueError("node id must be a non-empty string")

    def _assert_node_exists(self, node_id: str) -> None:
        if node_id not in self._nodes:
            raise KeyError(f"unknown node: {node_id}")


__all__ = ["Cycle", "CycleError", "DependencyGraph", "ResolutionError"]
