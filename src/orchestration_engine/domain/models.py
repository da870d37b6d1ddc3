"""Work items, edges, budgets, iteration records and run reports, validated on construction."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum, StrEnum
from typing import NoReturn, TypeVar, cast

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

TEnum = TypeVar("TEnum", bound=Enum)

_MAX_TEXT = 8192
_MAX_JSON_DEPTH = 16


class WorkItemStatus(StrEnum):
    PENDING = "pending"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: frozenset[WorkItemStatus] = frozenset(
    {
        WorkItemStatus.COMPLETED,
        WorkItemStatus.PARTIAL,
        WorkItemStatus.FAILED,
        WorkItemStatus.SKIPPED,
    }
)

_ALLOWED_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.PENDING: frozenset({WorkItemStatus.READY, WorkItemStatus.SKIPPED}),
    WorkItemStatus.READY: frozenset({WorkItemStatus.IN_PROGRESS, WorkItemStatus.SKIPPED}),
    WorkItemStatus.IN_PROGRESS: frozenset(
        {WorkItemStatus.COMPLETED, WorkItemStatus.PARTIAL, WorkItemStatus.FAILED}
    ),
    WorkItemStatus.COMPLETED: frozenset(),
    WorkItemStatus.PARTIAL: frozenset(),
    WorkItemStatus.FAILED: frozenset(),
    WorkItemStatus.SKIPPED: frozenset(),
}


class EdgeKind(StrEnum):
    EXPLICIT = "explicit"
    DATA_FLOW = "data_flow"
    TEMPORAL = "temporal"
    IMPLICIT = "implicit"


DEFAULT_EDGE_STRENGTH: dict[EdgeKind, float] = {
    EdgeKind.EXPLICIT: 1.0,
    EdgeKind.DATA_FLOW: 0.8,
    EdgeKind.TEMPORAL: 0.7,
    EdgeKind.IMPLICIT: 0.5,
}

_EDGE_KIND_RANK: dict[EdgeKind, int] = {kind: index for index, kind in enumerate(EdgeKind)}


class OutcomeStatus(StrEnum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class InvalidTransitionError(ValueError):
    """Raised when a work-item status change would move backwards or skip a stage."""

    def __init__(self, work_item_id: str, current: WorkItemStatus, target: WorkItemStatus) -> None:
        self.work_item_id = work_item_id
        self.current = current
        self.target = target
        super().__init__(
            f"work item {work_item_id!r} cannot transition {current.value} -> {target.value}"
        )


class CanonicalModel:
    """Provides sorted-key compact JSON on top of ``to_dict``."""

    def to_dict(self) -> dict[str, JSONValue]:
        raise NotImplementedError

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _fail(path: str, message: str) -> NoReturn:
    raise ValueError(f"{path}: {message}")


def _as_str(value: object, path: str, *, max_len: int = _MAX_TEXT) -> str:
    if not isinstance(value, str):
        _fail(path, f"expected string, got {type(value).__name__}")
    parsed = value.strip()
    if not parsed:
        _fail(path, "must not be empty")
    if len(parsed) > max_len:
        _fail(path, f"exceeds max length {max_len}")
    return parsed


def _as_int(value: object, path: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        _fail(path, f"expected integer, got {type(value).__name__}")
    if minimum is not None and value < minimum:
        _fail(path, f"must be >= {minimum}")
    return value


def _as_float(
    value: object,
    path: str,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        _fail(path, f"expected number, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        _fail(path, "must be finite")
    if minimum is not None and parsed < minimum:
        _fail(path, f"must be >= {minimum}")
    if maximum is not None and parsed > maximum:
        _fail(path, f"must be <= {maximum}")
    return parsed


def _as_enum(enum_type: type[TEnum], value: object, path: str) -> TEnum:
    if isinstance(value, enum_type):
        return value
    try:
        return enum_type(value)
    except ValueError:
        allowed = ", ".join(str(item.value) for item in enum_type)
        _fail(path, f"must be one of: {allowed}")


def _as_str_tuple(value: object, path: str, *, unique: bool = True) -> tuple[str, ...]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
        _fail(path, f"expected sequence of strings, got {type(value).__name__}")
    items = sorted(value) if isinstance(value, (set, frozenset)) else list(value)
    parsed = tuple(_as_str(item, f"{path}[{index}]") for index, item in enumerate(items))
    if unique and len(set(parsed)) != len(parsed):
        _fail(path, "must not contain duplicates")
    return parsed


def _as_str_frozenset(value: object, path: str) -> frozenset[str]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
        _fail(path, f"expected collection of strings, got {type(value).__name__}")
    return frozenset(_as_str(item, f"{path}[]") for item in value)


def _as_json_value(value: object, path: str, *, depth: int = 0) -> JSONValue:
    if depth > _MAX_JSON_DEPTH:
        _fail(path, f"JSON nesting exceeds max depth {_MAX_JSON_DEPTH}")

    if value is None or isinstance(value, (bool, str, int)):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            _fail(path, "float values must be finite")
        return value
    if isinstance(value, (list, tuple)):
        return [
            _as_json_value(item, f"{path}[{idx}]", depth=depth + 1)
            for idx, item in enumerate(value)
        ]
    if isinstance(value, Mapping):
        parsed: dict[str, JSONValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                _fail(path, f"object key must be string, got {type(key).__name__}")
            parsed[key] = _as_json_value(item, f"{path}.{key}", depth=depth + 1)
        return parsed

    _fail(path, f"value is not JSON-serializable ({type(value).__name__})")


def _as_json_object(value: object, path: str) -> dict[str, JSONValue]:
    parsed = _as_json_value(value, path)
    if not isinstance(parsed, dict):
        _fail(path, "expected JSON object")
    return parsed


@dataclass(slots=True)
class Budget(CanonicalModel):
    """Run-wide resource envelope."""

    total_units: float
    wall_clock_seconds: float | None = None
    max_iterations_per_item: int = 5

    def __post_init__(self) -> None:
        self.total_units = _as_float(self.total_units, "Budget.total_units", minimum=0.0)
        if self.total_units <= 0:
            _fail("Budget.total_units", "must be > 0")
        if self.wall_clock_seconds is not None:
            self.wall_clock_seconds = _as_float(
                self.wall_clock_seconds, "Budget.wall_clock_seconds", minimum=0.0
            )
            if self.wall_clock_seconds <= 0:
                _fail("Budget.wall_clock_seconds", "must be > 0")
        self.max_iterations_per_item = _as_int(
            self.max_iterations_per_item, "Budget.max_iterations_per_item", minimum=1
        )

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "total_units": self.total_units,
            "wall_clock_seconds": self.wall_clock_seconds,
            "max_iterations_per_item": self.max_iterations_per_item,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Budget:
        wall_clock = data.get("wall_clock_seconds")
        return cls(
            total_units=cast("float", data.get("total_units")),
            wall_clock_seconds=cast("float | None", wall_clock),
            max_iterations_per_item=cast("int", data.get("max_iterations_per_item", 5)),
        )


@dataclass(slots=True)
class WorkItem(CanonicalModel):
    """A schedulable unit of work with dependencies and a budget allocation."""

    id: str
    name: str
    priority: int = 0
    dependencies: tuple[str, ...] = ()
    status: WorkItemStatus = WorkItemStatus.PENDING
    budget: float = 0.0
    metadata: dict[str, JSONValue] = field(default_factory=dict)
    alternates: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        self.id = _as_str(self.id, "WorkItem.id", max_len=256)
        self.name = _as_str(self.name, "WorkItem.name", max_len=256)
        self.priority = _as_int(self.priority, "WorkItem.priority")
        self.dependencies = _as_str_tuple(self.dependencies, "WorkItem.dependencies")
        if self.id in self.dependencies:
            _fail("WorkItem.dependencies", f"work item {self.id!r} cannot depend on itself")
        self.status = _as_enum(WorkItemStatus, self.status, "WorkItem.status")
        self.budget = _as_float(self.budget, "WorkItem.budget", minimum=0.0)
        self.metadata = _as_json_object(self.metadata, "WorkItem.metadata")
        self.alternates = _as_str_tuple(self.alternates, "WorkItem.alternates")
        if self.id in self.alternates:
            _fail("WorkItem.alternates", f"work item {self.id!r} cannot substitute itself")

    def transition(self, target: WorkItemStatus | str) -> None:
        """Move to ``target`` along the monotonic lifecycle or raise ``InvalidTransitionError``."""

        resolved = _as_enum(WorkItemStatus, target, "WorkItem.status")
        if resolved not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.id, self.status, resolved)
        self.status = resolved

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "name": self.name,
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "status": self.status.value,
            "budget": self.budget,
            "metadata": self.metadata,
            "alternates": list(self.alternates),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> WorkItem:
        return cls(
            id=cast("str", data.get("id")),
            name=cast("str", data.get("name", data.get("id"))),
            priority=cast("int", data.get("priority", 0)),
            dependencies=cast("tuple[str, ...]", data.get("dependencies", ())),
            status=cast("WorkItemStatus", data.get("status", WorkItemStatus.PENDING)),
            budget=cast("float", data.get("budget", 0.0)),
            metadata=cast("dict[str, JSONValue]", data.get("metadata", {})),
            alternates=cast("tuple[str, ...]", data.get("alternates", ())),
        )


@dataclass(frozen=True, slots=True)
class Edge:
    """Directed dependency: ``source`` must run before ``target``."""

    source: str
    target: str
    kind: EdgeKind = EdgeKind.EXPLICIT
    strength: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "source", _as_str(self.source, "Edge.source"))
        object.__setattr__(self, "target", _as_str(self.target, "Edge.target"))
        if self.source == self.target:
            _fail("Edge", f"self-edge on {self.source!r} is not allowed")
        kind = _as_enum(EdgeKind, self.kind, "Edge.kind")
        object.__setattr__(self, "kind", kind)
        strength = DEFAULT_EDGE_STRENGTH[kind] if self.strength is None else self.strength
        object.__setattr__(
            self, "strength", _as_float(strength, "Edge.strength", minimum=0.0, maximum=1.0)
        )

    @property
    def key(self) -> tuple[str, str]:
        return (self.source, self.target)

    def outranks(self, other: Edge) -> bool:
        """Return ``True`` when this edge should replace ``other`` for the same pair."""

        own = cast("float", self.strength)
        theirs = cast("float", other.strength)
        if own != theirs:
            return own > theirs
        return _EDGE_KIND_RANK[self.kind] < _EDGE_KIND_RANK[other.kind]

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "from": self.source,
            "to": self.target,
            "kind": self.kind.value,
            "strength": self.strength,
        }


@dataclass(frozen=True, slots=True)
class IterationRecord:
    """Per-iteration snapshot reported by an executor."""

    iteration: int
    touched: frozenset[str] = frozenset()
    progress: float = 0.0
    elapsed_seconds: float = 0.0
    scope_baseline: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "iteration", _as_int(self.iteration, "IterationRecord.iteration", minimum=1)
        )
        object.__setattr__(
            self, "touched", _as_str_frozenset(self.touched, "IterationRecord.touched")
        )
        object.__setattr__(
            self,
            "progress",
            _as_float(self.progress, "IterationRecord.progress", minimum=0.0, maximum=1.0),
        )
        object.__setattr__(
            self,
            "elapsed_seconds",
            _as_float(self.elapsed_seconds, "IterationRecord.elapsed_seconds", minimum=0.0),
        )
        object.__setattr__(
            self,
            "scope_baseline",
            _as_str_frozenset(self.scope_baseline, "IterationRecord.scope_baseline"),
        )

    @property
    def out_of_scope(self) -> frozenset[str]:
        return self.touched - self.scope_baseline

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "iteration": self.iteration,
            "touched": sorted(self.touched),
            "progress": self.progress,
            "elapsed_seconds": self.elapsed_seconds,
            "scope_baseline": sorted(self.scope_baseline),
        }


@dataclass(frozen=True, slots=True)
class ExecutionOutcome:
    """Final result reported by an executor for one work item."""

    status: OutcomeStatus
    budget_consumed: float = 0.0
    error: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "status", _as_enum(OutcomeStatus, self.status, "ExecutionOutcome.status")
        )
        object.__setattr__(
            self,
            "budget_consumed",
            _as_float(self.budget_consumed, "ExecutionOutcome.budget_consumed", minimum=0.0),
        )
        if self.error is not None and not isinstance(self.error, str):
            _fail("ExecutionOutcome.error", "must be a string or None")

    @classmethod
    def success(cls, budget_consumed: float = 0.0) -> ExecutionOutcome:
        return cls(status=OutcomeStatus.SUCCESS, budget_consumed=budget_consumed)

    @classmethod
    def partial(cls, budget_consumed: float = 0.0, error: str | None = None) -> ExecutionOutcome:
        return cls(status=OutcomeStatus.PARTIAL, budget_consumed=budget_consumed, error=error)

    @classmethod
    def failure(cls, error: str, budget_consumed: float = 0.0) -> ExecutionOutcome:
        return cls(status=OutcomeStatus.FAILURE, budget_consumed=budget_consumed, error=error)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "status": self.status.value,
            "budget_consumed": self.budget_consumed,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class Report(CanonicalModel):
    """Immutable run summary produced once at termination."""

    items_total: int
    items_processed: int
    counts: Mapping[str, int]
    success_rate: float
    budget_efficiency: float
    budget_used: float
    budget_remaining: float
    final_commitment_level: int
    termination: str
    critical_path: tuple[str, ...] = ()
    bottlenecks: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "items_total": self.items_total,
            "items_processed": self.items_processed,
            "counts": {key: self.counts[key] for key in sorted(self.counts)},
            "success_rate": self.success_rate,
            "budget_efficiency": self.budget_efficiency,
            "budget_used": self.budget_used,
            "budget_remaining": self.budget_remaining,
            "final_commitment_level": self.final_commitment_level,
            "termination": self.termination,
            "critical_path": list(self.critical_path),
            "bottlenecks": list(self.bottlenecks),
            "recommendations": list(self.recommendations),
        }


__all__ = [
    "DEFAULT_EDGE_STRENGTH",
    "TERMINAL_STATUSES",
    "Budget",
    "CanonicalModel",
    "Edge",
    "EdgeKind",
    "ExecutionOutcome",
    "InvalidTransitionError",
    "IterationRecord",
    "JSONValue",
    "OutcomeStatus",
    "Report",
    "WorkItem",
    "WorkItemStatus",
]
