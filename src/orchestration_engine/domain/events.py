"""Events published while planning and processing a run."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from orchestration_engine.domain import ids
from orchestration_engine.domain.models import JSONValue, _as_json_object


class EventType(StrEnum):
    RUN_STARTED = "RunStarted"
    RUN_COMPLETED = "RunCompleted"

    WORK_ITEM_DISPATCHED = "WorkItemDispatched"
    WORK_ITEM_FINISHED = "WorkItemFinished"
    WORK_ITEM_SKIPPED = "WorkItemSkipped"

    COMMITMENT_RAISED = "CommitmentRaised"
    SPIRAL_DETECTED = "SpiralDetected"

    CYCLE_DETECTED = "CycleDetected"
    CYCLE_RESOLVED = "CycleResolved"
    RESOLUTION_REQUIRED = "ResolutionRequired"

    BUDGET_EXHAUSTED = "BudgetExhausted"
    DEPENDENCY_UNRESOLVED = "DependencyUnresolved"
    CRITICAL_PATH_BROKEN = "CriticalPathBroken"
    FORCE_COMPLETED = "ForceCompleted"


@dataclass(slots=True)
class EngineEvent:
    """
    Envelope around a JSON payload.

    ``timestamp`` is always stored in UTC; naive datetimes are rejected so
    replay filters compare like with like.
    """

    event_type: EventType
    payload: dict[str, JSONValue] = field(default_factory=dict)
    correlation_id: str | None = None
    event_id: str = field(default_factory=ids.generate_event_id)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        try:
            self.event_type = EventType(self.event_type)
        except ValueError as exc:
            raise ValueError(f"EngineEvent.event_type: unknown event type {self.event_type!r}") from exc
        ids.validate_event_id(self.event_id)
        self.timestamp = _utc(self.timestamp)
        if self.correlation_id is not None:
            if not isinstance(self.correlation_id, str) or not self.correlation_id.strip():
                raise ValueError("EngineEvent.correlation_id: must be a non-empty string")
            self.correlation_id = self.correlation_id.strip()
        self.payload = _as_json_object(self.payload, "EngineEvent.payload")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "timestamp": self.timestamp.isoformat(timespec="microseconds").replace("+00:00", "Z"),
            "correlation_id": self.correlation_id,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: object) -> EngineEvent:
        if not isinstance(data, dict):
            raise ValueError("EngineEvent: expected a JSON object")
        missing = sorted({"event_id", "event_type", "timestamp", "payload"} - data.keys())
        if missing:
            raise ValueError(f"EngineEvent: missing fields {missing}")
        return cls(
            event_type=data["event_type"],
            payload=data["payload"],
            correlation_id=data.get("correlation_id"),
            event_id=data["event_id"],
            timestamp=data["timestamp"],
        )

    @classmethod
    def from_json(cls, raw: str) -> EngineEvent:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"EngineEvent: invalid JSON: {exc}") from exc
        return cls.from_dict(data)


def _utc(value: object) -> datetime:
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"EngineEvent.timestamp: not ISO-8601: {value!r}") from exc
    if not isinstance(value, datetime):
        raise ValueError(f"EngineEvent.timestamp: expected datetime, got {type(value).__name__}")
    if value.utcoffset() is None:
        raise ValueError("EngineEvent.timestamp: must be timezone-aware")
    return value.astimezone(UTC)


__all__ = ["EngineEvent", "EventType"]
