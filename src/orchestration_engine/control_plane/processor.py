"""
orchestration-engine queue processor.

File: src/orchestration_engine/control_plane/processor.py

Purpose
- Drive a resolved plan to completion: select ready items, dispatch them to the executor
  with commitment-constrained parameters, watch iterations for spirals, and charge the
  budget as each executor finishes.

Functional requirements
- Commitment level is monotonic for the run; level 5 force-completes the queue.
- Every input work item ends in exactly one terminal status.
- Budget is consumed on completion and never goes negative.

Non-functional requirements
- The loop is cooperative: it suspends only while awaiting executors and never
  interrupts one that has started.
"""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from orchestration_engine.control_plane.budgets import BudgetLedger, Clock
from orchestration_engine.control_plane.commitment import (
    CommitmentChange,
    CommitmentLadder,
    CommitmentLevel,
    CommitmentPolicy,
    CommitmentTrigger,
)
from orchestration_engine.control_plane.executor import ExecutionConfig, ExecutionMode, Executor
from orchestration_engine.control_plane.report import ReportBuilder, TerminationReason
from orchestration_engine.control_plane.scheduler import Scheduler, SchedulerLimits
from orchestration_engine.control_plane.spiral import SpiralCheck, SpiralDetector, SpiralThresholds
from orchestration_engine.domain import ids
from orchestration_engine.domain.events import EventType
from orchestration_engine.domain.models import (
    Budget,
    EdgeKind,
    ExecutionOutcome,
    IterationRecord,
    JSONValue,
    OutcomeStatus,
    Report,
    WorkItem,
    WorkItemStatus,
)
from orchestration_engine.observability import metrics as metric_names
from orchestration_engine.observability.logging import correlation_scope
from orchestration_engine.planning.resolver import (
    DependencyResolver,
    ResolutionHandler,
    ResolutionResult,
    ResolutionStrategy,
)
from orchestration_engine.utils.concurrency import CancellationToken, WorkerPool

if TYPE_CHECKING:
    from orchestration_engine.config.settings import EngineSettings
    from orchestration_engine.observability.events import EventBus
    from orchestration_engine.observability.metrics import MetricsRegistry

_OPEN_STATUSES = frozenset({WorkItemStatus.PENDING, WorkItemStatus.READY})
_VIABLE_ALTERNATE_STATUSES = frozenset(
    {WorkItemStatus.PENDING, WorkItemStatus.READY, WorkItemStatus.COMPLETED}
)
_OUTCOME_STATUS: dict[OutcomeStatus, WorkItemStatus] = {
    OutcomeStatus.SUCCESS: WorkItemStatus.COMPLETED,
    OutcomeStatus.PARTIAL: WorkItemStatus.PARTIAL,
    OutcomeStatus.FAILURE: WorkItemStatus.FAILED,
}


@dataclass(frozen=True, slots=True)
class RunResult:
    """Per-item terminal statuses plus budget, commitment, and spiral history of one run."""

    run_id: str
    completed: tuple[str, ...]
    partial: tuple[str, ...]
    skipped: tuple[str, ...]
    failed: tuple[str, ...]
    budget_used: float
    budget_remaining: float
    per_item_budget: Mapping[str, float]
    commitment_history: tuple[CommitmentChange, ...]
    spiral_signals: tuple[SpiralCheck, ...]
    termination: TerminationReason
    stranded: tuple[str, ...]
    report: Report

    @property
    def statuses(self) -> dict[str, WorkItemStatus]:
        out: dict[str, WorkItemStatus] = {}
        for status, members in (
            (WorkItemStatus.COMPLETED, self.completed),
            (WorkItemStatus.PARTIAL, self.partial),
            (WorkItemStatus.SKIPPED, self.skipped),
            (WorkItemStatus.FAILED, self.failed),
        ):
            for work_item_id in members:
                out[work_item_id] = status
        return out

    @property
    def commitment_levels(self) -> tuple[int, ...]:
        return (0, *(int(change.level) for change in self.commitment_history))

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "completed": list(self.completed),
            "partial": list(self.partial),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
            "budget_used": self.budget_used,
            "budget_remaining": self.budget_remaining,
            "per_item_budget": {key: self.per_item_budget[key] for key in sorted(self.per_item_budget)},
            "commitment_history": [change.to_dict() for change in self.commitment_history],
            "spiral_signals": [check.to_dict() for check in self.spiral_signals],
            "termination": self.termination.value,
            "stranded": list(self.stranded),
            "report": self.report.to_dict(),
        }


@dataclass(slots=True)
class _RunState:
    """Mutable context threaded through one scheduling loop."""

    run_id: str
    resolution: ResolutionResult
    items: dict[str, WorkItem]
    alternates: dict[str, tuple[str, ...]]
    scheduler: Scheduler
    ledger: BudgetLedger
    ladder: CommitmentLadder
    report: ReportBuilder
    token: CancellationToken = field(default_factory=CancellationToken)
    dispatch_order: list[str] = field(default_factory=list)
    spiral_signals: list[SpiralCheck] = field(default_factory=list)
    stranded: tuple[str, ...] = ()

    @property
    def statuses(self) -> dict[str, WorkItemStatus]:
        return {node: item.status for node, item in self.items.items()}

    def open_nodes(self) -> list[str]:
        return sorted(node for node, item in self.items.items() if item.status in _OPEN_STATUSES)


class QueueProcessor:
    """Budget-aware, commitment-constrained scheduling loop over a resolved plan."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        detector: SpiralDetector | None = None,
        event_bus: EventBus | None = None,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        self._limits: SchedulerLimits = settings.scheduler if settings is not None else SchedulerLimits()
        self._policy: CommitmentPolicy = (
            settings.commitment if settings is not None else CommitmentPolicy()
        )
        thresholds: SpiralThresholds | None = settings.spiral if settings is not None else None
        self._detector = detector if detector is not None else SpiralDetector(thresholds)
        self._event_bus = event_bus
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._clock = clock
        self._force_requested = False
        self._state: _RunState | None = None

    @property
    def commitment_level(self) -> CommitmentLevel:
        if self._state is None:
            return CommitmentLevel.UNRESTRICTED
        return self._state.ladder.level

    def force_complete(self, detail: str = "force requested") -> None:
        """Request commitment level 5; takes effect immediately during a run."""

        self._force_requested = True
        if self._state is not None:
            self._raise_commitment(self._state, CommitmentTrigger.FORCE, detail)

    async def run(
        self,
        resolution: ResolutionResult,
        budget: Budget,
        executor: Executor,
    ) -> RunResult:
        """Process every item of ``resolution`` until the queue drains or the run stops early."""

        state = self._start(resolution, budget)
        self._state = state
        try:
            with correlation_scope(run_id=state.run_id):
                self._emit(
                    EventType.RUN_STARTED,
                    {
                        "run_id": state.run_id,
                        "items": list(resolution.order),
                        "budget": budget.to_dict(),
                    },
                )
                self._logger.info(
                    "control_plane_run_started",
                    run_id=state.run_id,
                    items=len(state.items),
                    total_units=budget.total_units,
                )
                termination = await self._loop(state, executor)
                result = self._finish_run(state, termination)
        finally:
            self._state = None
            self._force_requested = False
        return result

    def _start(self, resolution: ResolutionResult, budget: Budget) -> _RunState:
        items = {
            item.id: dataclasses.replace(
                item, status=WorkItemStatus.PENDING, metadata=deepcopy(item.metadata)
            )
            for item in resolution.ordered_items
        }
        node_of = {
            original: node for node in items for original in resolution.original_ids(node)
        }
        alternates: dict[str, tuple[str, ...]] = {}
        for node, item in items.items():
            mapped = [node_of[alt] for alt in item.alternates if alt in node_of]
            alternates[node] = tuple(dict.fromkeys(alt for alt in mapped if alt != node))

        ladder = CommitmentLadder(
            critical_spirals_for_force=self._policy.critical_spirals_for_force,
            logger=self._logger,
        )
        self._detector.reset()
        state = _RunState(
            run_id=ids.generate_run_id(),
            resolution=resolution,
            items=items,
            alternates=alternates,
            scheduler=Scheduler(resolution.graph, resolution.parallel_groups, limits=self._limits),
            ledger=BudgetLedger(budget, clock=self._clock, logger=self._logger),
            ladder=ladder,
            report=ReportBuilder(critical_path=self._expand(resolution, resolution.critical_path)),
        )
        if self._force_requested:
            self._raise_commitment(state, CommitmentTrigger.FORCE, "force requested before run")
        return state

    async def _loop(self, state: _RunState, executor: Executor) -> TerminationReason:
        while True:
            self._apply_time_triggers(state)

            ready = state.scheduler.ready(state.statuses, state.alternates)
            for node in ready:
                if state.items[node].status is WorkItemStatus.PENDING:
                    state.items[node].transition(WorkItemStatus.READY)
            open_nodes = state.open_nodes()

            if state.ladder.is_forced:
                self._skip(state, open_nodes, "force_completed")
                self._emit(
                    EventType.FORCE_COMPLETED,
                    {"level": int(state.ladder.level), "skipped": open_nodes},
                )
                return TerminationReason.FORCE_COMPLETED

            if not ready and open_nodes:
                state.stranded = tuple(open_nodes)
                state.report.record_stranded(self._expand(state.resolution, open_nodes))
                self._skip(state, open_nodes, "unresolved_dependencies")
                self._emit(EventType.DEPENDENCY_UNRESOLVED, {"stranded": open_nodes})
                self._logger.warning(
                    "control_plane_dependencies_unresolved", stranded=open_nodes
                )
                return TerminationReason.UNRESOLVED_DEPENDENCIES

            if not open_nodes:
                return TerminationReason.QUEUE_DRAINED

            if state.ledger.exhausted:
                self._skip(state, open_nodes, "budget_exhausted")
                self._emit(
                    EventType.BUDGET_EXHAUSTED,
                    {"used": state.ledger.used, "skipped": open_nodes},
                )
                return TerminationReason.BUDGET_EXHAUSTED

            time_ratio = state.ledger.time_ratio
            if time_ratio is not None and time_ratio >= 1.0:
                self._skip(state, open_nodes, "time_exhausted")
                self._emit(
                    EventType.BUDGET_EXHAUSTED,
                    {
                        "used": state.ledger.used,
                        "elapsed_seconds": state.ledger.elapsed_seconds,
                        "skipped": open_nodes,
                    },
                )
                return TerminationReason.TIME_EXHAUSTED

            broken = await self._dispatch_batch(state, ready, executor)
            if state.ladder.is_forced:
                continue
            if broken:
                state.report.record_critical_path_break(self._expand(state.resolution, broken))
                remaining = state.open_nodes()
                self._skip(state, remaining, "critical_path_broken")
                self._emit(
                    EventType.CRITICAL_PATH_BROKEN,
                    {"failed": list(broken), "skipped": remaining},
                )
                self._logger.warning(
                    "control_plane_critical_path_broken", failed=list(broken), skipped=remaining
                )
                return TerminationReason.CRITICAL_PATH_BROKEN

    async def _dispatch_batch(
        self,
        state: _RunState,
        ready: Sequence[str],
        executor: Executor,
    ) -> tuple[str, ...]:
        """Run one batch; return failed critical-path items left without a viable alternate."""

        clamp = state.ladder.level >= CommitmentLevel.HARD_CAP
        allocations = {
            node: state.ledger.allocation_for(state.items[node].budget, clamp=clamp)
            for node in ready
        }
        decision = state.scheduler.select(
            ready,
            state.items,
            allocations=allocations,
            remaining=state.ledger.remaining,
        )
        configs = {
            node: self._constrained_config(state, node, allocations[node])
            for node in decision.selected
        }
        self._logger.info(
            "control_plane_dispatch",
            selected=list(decision.selected),
            deferred=list(decision.deferred),
            group=decision.group_index,
            level=int(state.ladder.level),
        )
        if self._metrics is not None:
            self._metrics.observe(metric_names.BATCH_SIZE, float(len(decision.selected)))

        pool: WorkerPool[str] = WorkerPool(
            max_concurrency=len(decision.selected), cancel_token=state.token
        )
        jobs = [self._job(state, node, configs[node], executor) for node in decision.selected]
        finished = [node async for node in pool.run(jobs)]

        for node in decision.selected:
            if node not in finished and state.items[node].status is WorkItemStatus.READY:
                self._skip(state, [node], "force_completed")

        return tuple(
            node
            for node in decision.selected
            if state.items[node].status is WorkItemStatus.FAILED
            and node in state.resolution.critical_path
            and not any(
                state.items[alt].status in _VIABLE_ALTERNATE_STATUSES
                for alt in state.alternates[node]
            )
        )

    def _job(
        self, state: _RunState, node: str, config: ExecutionConfig, executor: Executor
    ) -> Callable[[], Awaitable[str]]:
        async def run_item() -> str:
            await self._execute_item(state, node, config, executor)
            return node

        return run_item

    def _constrained_config(self, state: _RunState, node: str, allocation: float) -> ExecutionConfig:
        level = state.ladder.level
        if level >= CommitmentLevel.FIXES_ONLY:
            mode = ExecutionMode.FIXES_ONLY
        elif level >= CommitmentLevel.REDUCED_ITERATIONS:
            mode = ExecutionMode.REDUCED
        else:
            mode = ExecutionMode.NORMAL
        return ExecutionConfig(
            work_item_id=node,
            allocated_budget=allocation,
            max_iterations=self._policy.iteration_cap(
                state.ledger.budget.max_iterations_per_item, level
            ),
            mode=mode,
            commitment_level=int(level),
        )

    async def _execute_item(
        self,
        state: _RunState,
        node: str,
        config: ExecutionConfig,
        executor: Executor,
    ) -> None:
        item = state.items[node]
        item.transition(WorkItemStatus.IN_PROGRESS)
        state.dispatch_order.append(node)
        if self._metrics is not None:
            self._metrics.inc(metric_names.DISPATCHES)
        self._emit(EventType.WORK_ITEM_DISPATCHED, {"work_item_id": node, "config": config.to_dict()})

        history: list[IterationRecord] = []
        outcome: ExecutionOutcome | None = None
        with correlation_scope(work_item_id=node):
            try:
                async for event in executor.execute(item.metadata, config):
                    if outcome is not None:
                        continue
                    if isinstance(event, ExecutionOutcome):
                        outcome = event
                        continue
                    self._observe_iteration(state, node, history, event)
                    history.append(event)
            except Exception as exc:  # noqa: BLE001 - executor failures are recorded per item
                self._logger.warning(
                    "control_plane_executor_error",
                    work_item_id=node,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                outcome = ExecutionOutcome.failure(f"{type(exc).__name__}: {exc}")
            if outcome is None:
                outcome = ExecutionOutcome.failure("executor stream ended without an outcome")
            self._record_outcome(state, node, outcome, iterations=len(history))

    def _observe_iteration(
        self,
        state: _RunState,
        node: str,
        history: Sequence[IterationRecord],
        record: IterationRecord,
    ) -> None:
        """
        Feed one iteration to the spiral detector.

        A critical check moves the ladder through the ``CRITICAL_SPIRAL`` row of the
        transition table (level 4, then 5), so ``SpiralCheck.commitment_delta`` is only
        reported, never added to the level. Warnings never move the ladder.
        """

        if self._metrics is not None:
            self._metrics.inc(metric_names.ITERATIONS)
            self._metrics.observe(metric_names.ITERATION_SECONDS, record.elapsed_seconds)

        check = self._detector.check(node, history, record)
        if not check.patterns:
            return

        state.spiral_signals.append(check)
        state.report.record_spiral(check)
        if self._metrics is not None:
            for pattern in check.patterns:
                self._metrics.inc(metric_names.SPIRAL_PATTERNS, labels={"pattern": pattern.value})
        self._emit(EventType.SPIRAL_DETECTED, check.to_dict())
        if check.is_critical:
            self._raise_commitment(
                state,
                CommitmentTrigger.CRITICAL_SPIRAL,
                f"{node}: {', '.join(pattern.value for pattern in check.patterns)}",
            )

    def _record_outcome(
        self,
        state: _RunState,
        node: str,
        outcome: ExecutionOutcome,
        *,
        iterations: int,
    ) -> None:
        # Anything still running when level 5 lands ends partial, whatever it reports.
        status = _OUTCOME_STATUS[outcome.status]
        if state.ladder.is_forced:
            status = WorkItemStatus.PARTIAL
        state.items[node].transition(status)

        charge = state.ledger.charge(node, outcome.budget_consumed)
        if self._metrics is not None:
            self._metrics.inc(metric_names.OUTCOMES, labels={"status": status.value})
            self._metrics.set_gauge(metric_names.BUDGET_REMAINING, charge.remaining)
        self._emit(
            EventType.WORK_ITEM_FINISHED,
            {
                "work_item_id": node,
                "status": status.value,
                "iterations": iterations,
                "error": outcome.error,
                "charge": charge.to_dict(),
            },
        )
        self._logger.info(
            "control_plane_item_finished",
            work_item_id=node,
            status=status.value,
            iterations=iterations,
            charged=charge.charged,
            remaining=charge.remaining,
        )
        for trigger in self._policy.budget_triggers(state.ledger.consumed_ratio):
            self._raise_commitment(
                state, trigger, f"{state.ledger.consumed_ratio:.0%} of budget consumed"
            )

    def _apply_time_triggers(self, state: _RunState) -> None:
        time_ratio = state.ledger.time_ratio
        for trigger in self._policy.time_triggers(time_ratio):
            self._raise_commitment(state, trigger, f"{time_ratio:.0%} of wall-clock budget consumed")

    def _raise_commitment(
        self,
        state: _RunState,
        trigger: CommitmentTrigger,
        detail: str,
    ) -> CommitmentChange | None:
        change = state.ladder.apply(trigger, detail)
        if change is None:
            return None
        if self._metrics is not None:
            self._metrics.set_gauge(metric_names.COMMITMENT_LEVEL, float(change.level))
        self._emit(EventType.COMMITMENT_RAISED, change.to_dict())
        if state.ladder.is_forced:
            state.token.cancel()
        return change

    def _skip(self, state: _RunState, nodes: Iterable[str], reason: str) -> None:
        for node in nodes:
            state.items[node].transition(WorkItemStatus.SKIPPED)
            self._emit(EventType.WORK_ITEM_SKIPPED, {"work_item_id": node, "reason": reason})

    def _finish_run(self, state: _RunState, termination: TerminationReason) -> RunResult:
        resolution = state.resolution
        dispatch_rank = {node: index for index, node in enumerate(state.dispatch_order)}
        ordered_nodes = sorted(
            state.items, key=lambda node: (dispatch_rank.get(node, len(dispatch_rank)), node)
        )

        by_status: dict[WorkItemStatus, list[str]] = {
            WorkItemStatus.COMPLETED: [],
            WorkItemStatus.PARTIAL: [],
            WorkItemStatus.SKIPPED: [],
            WorkItemStatus.FAILED: [],
        }
        statuses: dict[str, WorkItemStatus] = {}
        for node in ordered_nodes:
            status = state.items[node].status
            for original in resolution.original_ids(node):
                by_status[status].append(original)
                statuses[original] = status

        completed_units = sum(
            state.ledger.charged_to(node)
            for node, item in state.items.items()
            if item.status is WorkItemStatus.COMPLETED
        )
        report = state.report.build(
            statuses=statuses,
            budget_used=state.ledger.used,
            budget_remaining=state.ledger.remaining,
            completed_units=completed_units,
            final_commitment_level=int(state.ladder.level),
            termination=termination,
        )
        result = RunResult(
            run_id=state.run_id,
            completed=tuple(by_status[WorkItemStatus.COMPLETED]),
            partial=tuple(by_status[WorkItemStatus.PARTIAL]),
            skipped=tuple(by_status[WorkItemStatus.SKIPPED]),
            failed=tuple(by_status[WorkItemStatus.FAILED]),
            budget_used=state.ledger.used,
            budget_remaining=state.ledger.remaining,
            per_item_budget=state.ledger.per_item,
            commitment_history=state.ladder.history,
            spiral_signals=tuple(state.spiral_signals),
            termination=termination,
            stranded=self._expand(resolution, state.stranded),
            report=report,
        )
        self._emit(
            EventType.RUN_COMPLETED,
            {"run_id": state.run_id, "termination": termination.value, "counts": dict(report.counts)},
        )
        self._logger.info(
            "control_plane_run_completed",
            run_id=state.run_id,
            termination=termination.value,
            counts=dict(report.counts),
            budget_used=state.ledger.used,
            level=int(state.ladder.level),
        )
        return result

    @staticmethod
    def _expand(resolution: ResolutionResult, nodes: Iterable[str]) -> tuple[str, ...]:
        return tuple(original for node in nodes for original in resolution.original_ids(node))

    def _emit(self, event_type: EventType, payload: Mapping[str, object]) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, payload)


async def orchestrate(
    items: Sequence[WorkItem],
    budget: Budget | None,
    executor: Executor,
    *,
    strategy: ResolutionStrategy | str | None = None,
    edge_kinds: Iterable[EdgeKind | str] | None = None,
    settings: EngineSettings | None = None,
    resolution_handler: ResolutionHandler | None = None,
    event_bus: EventBus | None = None,
    metrics: MetricsRegistry | None = None,
    logger: Any | None = None,
) -> RunResult:
    """
    Resolve ``items`` and run them in one call.

    Explicit ``strategy``, ``edge_kinds`` and ``budget`` take precedence over ``settings``.
    """

    if budget is None:
        if settings is None:
            raise ValueError("budget is required when no settings are supplied")
        budget = settings.budget
    if strategy is None:
        strategy = settings.strategy if settings is not None else ResolutionStrategy.FAIL_ON_CYCLE
    if edge_kinds is None and settings is not None:
        edge_kinds = settings.edge_kinds

    resolver = DependencyResolver(
        resolution_handler=resolution_handler,
        weighted_critical_path=settings.weighted_critical_path if settings is not None else False,
        event_bus=event_bus,
        logger=logger,
    )
    resolution = resolver.resolve(items, edge_kinds, strategy)
    processor = QueueProcessor(settings, event_bus=event_bus, metrics=metrics, logger=logger)
    return await processor.run(resolution, budget, executor)


__all__ = ["QueueProcessor", "RunResult", "TerminationReason", "orchestrate"]
