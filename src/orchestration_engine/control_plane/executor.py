"""
Executor boundary for per-item work.

An executor is an opaque capability: given an item's metadata and a constrained
`ExecutionConfig`, it streams `IterationRecord`s and finishes with one `ExecutionOutcome`.
The processor never inspects how the work is done.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol, runtime_checkable

from orchestration_engine.domain.models import (
    ExecutionOutcome,
    IterationRecord,
    JSONValue,
)

ExecutorEvent = IterationRecord | ExecutionOutcome


class ExecutionMode(StrEnum):
    NORMAL = "normal"
    REDUCED = "reduced"
    FIXES_ONLY = "fixes_only"


class ExecutorRoutingError(LookupError):
    """Raised when no executor is registered for a work item's kind."""


@dataclass(frozen=True, slots=True)
class ExecutionConfig:
    """Commitment-constrained parameters for a single dispatch."""

    work_item_id: str
    allocated_budget: float
    max_iterations: int
    mode: ExecutionMode = ExecutionMode.NORMAL
    commitment_level: int = 0

    def __post_init__(self) -> None:
        if self.allocated_budget < 0:
            raise ValueError("allocated_budget must be >= 0")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        if not 0 <= self.commitment_level <= 5:
            raise ValueError("commitment_level must be in [0, 5]")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "work_item_id": self.work_item_id,
            "allocated_budget": self.allocated_budget,
            "max_iterations": self.max_iterations,
            "mode": self.mode.value,
            "commitment_level": self.commitment_level,
        }


@runtime_checkable
class Executor(Protocol):
    def execute(
        self, metadata: Mapping[str, JSONValue], config: ExecutionConfig
    ) -> AsyncIterator[ExecutorEvent]: ...


class BaseExecutor(ABC):
    """
    Iteration-loop executor skeleton.

    Subclasses implement `step`; the loop stops at ``config.max_iterations`` or once an
    iteration reports full progress, then yields the outcome from `finish`.
    """

    async def execute(
        self, metadata: Mapping[str, JSONValue], config: ExecutionConfig
    ) -> AsyncIterator[ExecutorEvent]:
        records: list[IterationRecord] = []
        for iteration in range(1, config.max_iterations + 1):
            record = await self.step(metadata, config, iteration)
            records.append(record)
            yield record
            if record.progress >= 1.0:
                break
        yield self.finish(metadata, config, tuple(records))

    @abstractmethod
    async def step(
        self, metadata: Mapping[str, JSONValue], config: ExecutionConfig, iteration: int
    ) -> IterationRecord:
        """Perform one iteration of work."""

    def finish(
        self,
        metadata: Mapping[str, JSONValue],
        config: ExecutionConfig,
        records: tuple[IterationRecord, ...],
    ) -> ExecutionOutcome:
        progress = records[-1].progress if records else 0.0
        consumed = self.consumed(metadata, config, records)
        if progress >= 1.0:
            return ExecutionOutcome.success(consumed)
        if progress > 0.0:
            return ExecutionOutcome.partial(consumed, error="iteration cap reached")
        return ExecutionOutcome.failure("no progress", consumed)

    def consumed(
        self,
        metadata: Mapping[str, JSONValue],
        config: ExecutionConfig,
        records: tuple[IterationRecord, ...],
    ) -> float:
        del metadata, records
        return config.allocated_budget


class KindRoutingExecutor:
    """Dispatch to one executor per work-item kind, read from ``metadata["kind"]``."""

    __slots__ = ("_routes", "_default")

    def __init__(
        self,
        routes: Mapping[str, Executor],
        *,
        default: Executor | None = None,
    ) -> None:
        self._routes = dict(routes)
        self._default = default

    @property
    def kinds(self) -> tuple[str, ...]:
        return tuple(sorted(self._routes))

    def route(self, metadata: Mapping[str, JSONValue]) -> Executor:
        kind = metadata.get("kind")
        if isinstance(kind, str) and kind in self._routes:
            return self._routes[kind]
        if self._default is not None:
            return self._default
        raise ExecutorRoutingError(f"no executor registered for kind {kind!r}")

    async def execute(
        self, metadata: Mapping[str, JSONValue], config: ExecutionConfig
    ) -> AsyncIterator[ExecutorEvent]:
        executor = self.route(metadata)
        async for event in executor.execute(metadata, config):
            yield event


__all__ = [
    "BaseExecutor",
    "ExecutionConfig",
    "ExecutionMode",
    "Executor",
    "ExecutorEvent",
    "ExecutorRoutingError",
    "KindRoutingExecutor",
]
