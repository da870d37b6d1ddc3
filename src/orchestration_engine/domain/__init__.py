"""
orchestration-engine domain package.

File: src/orchestration_engine/domain/__init__.py

Purpose
- Domain types shared across planning and the control plane: WorkItem, Edge, Budget,
  IterationRecord, ExecutionOutcome, Report, and engine events.

Functional requirements
- Domain objects validate on construction and serialize canonically.
- Keep the domain layer free of IO side effects.
"""

from orchestration_engine.domain.events import EngineEvent, EventType
from orchestration_engine.domain.models import (
    DEFAULT_EDGE_STRENGTH,
    TERMINAL_STATUSES,
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

__all__ = [
    "DEFAULT_EDGE_STRENGTH",
    "TERMINAL_STATUSES",
    "Budget",
    "Edge",
    "EdgeKind",
    "EngineEvent",
    "EventType",
    "ExecutionOutcome",
    "InvalidTransitionError",
    "IterationRecord",
    "OutcomeStatus",
    "Report",
    "WorkItem",
    "WorkItemStatus",
]
