"""
orchestration-engine control plane.

File: src/orchestration_engine/control_plane/__init__.py

Purpose
- Scheduling loop, commitment ladder, budget ledger, spiral detection, executor boundary,
  and run reports.
"""

from orchestration_engine.control_plane.budgets import BudgetCharge, BudgetLedger
from orchestration_engine.control_plane.commitment import (
    TRANSITIONS,
    CommitmentChange,
    CommitmentLadder,
    CommitmentLevel,
    CommitmentPolicy,
    CommitmentTrigger,
)
from orchestration_engine.control_plane.executor import (
    BaseExecutor,
    ExecutionConfig,
    ExecutionMode,
    Executor,
    ExecutorRoutingError,
    KindRoutingExecutor,
)
from orchestration_engine.control_plane.processor import QueueProcessor, RunResult, orchestrate
from orchestration_engine.control_plane.report import ReportBuilder, TerminationReason
from orchestration_engine.control_plane.scheduler import (
    ScheduleDecision,
    Scheduler,
    SchedulerLimits,
    dependency_satisfied,
)
from orchestration_engine.control_plane.spiral import (
    SpiralCheck,
    SpiralDetector,
    SpiralFinding,
    SpiralPattern,
    SpiralSeverity,
    SpiralThresholds,
)

__all__ = [
    "TRANSITIONS",
    "BaseExecutor",
    "BudgetCharge",
    "BudgetLedger",
    "CommitmentChange",
    "CommitmentLadder",
    "CommitmentLevel",
    "CommitmentPolicy",
    "CommitmentTrigger",
    "ExecutionConfig",
    "ExecutionMode",
    "Executor",
    "ExecutorRoutingError",
    "KindRoutingExecutor",
    "QueueProcessor",
    "ReportBuilder",
    "RunResult",
    "ScheduleDecision",
    "Scheduler",
    "SchedulerLimits",
    "SpiralCheck",
    "SpiralDetector",
    "SpiralFinding",
    "SpiralPattern",
    "SpiralSeverity",
    "SpiralThresholds",
    "TerminationReason",
    "dependency_satisfied",
    "orchestrate",
]
