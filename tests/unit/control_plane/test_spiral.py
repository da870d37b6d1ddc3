"""Unit tests for control_plane.spiral."""

from __future__ import annotations

from typing import Any

import pytest

from orchestration_engine.control_plane.spiral import (
    SpiralDetector,
    SpiralPattern,
    SpiralSeverity,
    SpiralThresholds,
)
from orchestration_engine.domain.models import IterationRecord


class _RecordingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def info(self, event: str, **fields: Any) -> None:
        self.events.append((event, fields))


def _record(
    iteration: int,
    touched: set[str] | None = None,
    *,
    progress: float = 0.0,
    elapsed: float = 0.0,
    baseline: set[str] | None = None,
) -> IterationRecord:
    return IterationRecord(
        iteration=iteration,
        touched=frozenset(touched or ()),
        progress=progress,
        elapsed_seconds=elapsed,
        scope_baseline=frozenset(baseline or ()),
    )


@pytest.mark.unit
def test_oscillation_reported_as_warning_on_third_iteration() -> None:
    detector = SpiralDetector()
    files = {"f1", "f2", "f3"}
    history = [_record(1, files, progress=0.2), _record(2, files, progress=0.5)]

    second = detector.check("item", history[:1], history[1])
    third = detector.check("item", history, _record(3, files, progress=0.8))

    assert second.patterns == ()
    assert second.severity is SpiralSeverity.NONE
    assert third.patterns == (SpiralPattern.OSCILLATION,)
    assert third.severity is SpiralSeverity.WARNING
    assert third.commitment_delta == 1
    assert not third.escalate


@pytest.mark.unit
def test_oscillation_turns_critical_when_it_persists_across_two_windows() -> None:
    detector = SpiralDetector()
    files = {"f1", "f2", "f3"}
    history = [_record(index, files, progress=index * 0.15) for index in range(1, 6)]

    check = detector.check("item", history, _record(6, files, progress=0.9))

    assert check.patterns == (SpiralPattern.OSCILLATION,)
    assert check.is_critical
    assert check.commitment_delta == 2


@pytest.mark.unit
def test_oscillation_needs_minimum_overlap() -> None:
    detector = SpiralDetector()
    history = [_record(1, {"f1", "f2"}, progress=0.2), _record(2, {"f1", "f2"}, progress=0.5)]

    check = detector.check("item", history, _record(3, {"f1", "f2", "f3"}, progress=0.8))

    assert check.severity is SpiralSeverity.NONE


@pytest.mark.unit
def test_gold_plating_after_progress_reaches_completion() -> None:
    detector = SpiralDetector()
    history = [
        _record(1, {"a"}, progress=0.3),
        _record(2, {"b"}, progress=0.7),
        _record(3, {"c"}, progress=1.0),
    ]

    check = detector.check("item", history, _record(4, {"d"}, progress=1.0))

    assert check.patterns == (SpiralPattern.GOLD_PLATING,)
    assert check.severity is SpiralSeverity.WARNING

    idle = detector.check("item", history, _record(4, progress=1.0))
    assert idle.patterns == ()


@pytest.mark.unit
def test_scope_creep_warning_and_critical() -> None:
    detector = SpiralDetector()
    baseline = {"core.py"}

    warning = detector.check(
        "item", [], _record(1, {"core.py", "extra.py"}, progress=0.5, baseline=baseline)
    )
    critical = detector.check(
        "item",
        [],
        _record(1, {"core.py", *(f"x{index}" for index in range(5))}, progress=0.5, baseline=baseline),
    )
    unbounded = detector.check("item", [], _record(1, {"anything"}, progress=0.5))

    assert warning.patterns == (SpiralPattern.SCOPE_CREEP,)
    assert warning.severity is SpiralSeverity.WARNING
    assert critical.severity is SpiralSeverity.CRITICAL
    assert unbounded.patterns == ()


@pytest.mark.unit
def test_diminishing_returns_over_window() -> None:
    detector = SpiralDetector()
    history = [_record(1, progress=0.10), _record(2, progress=0.15)]

    check = detector.check("item", history, _record(3, progress=0.18))

    assert check.patterns == (SpiralPattern.DIMINISHING_RETURNS,)
    assert check.severity is SpiralSeverity.WARNING

    recovering = detector.check("item", history, _record(3, progress=0.40))
    assert recovering.patterns == ()


@pytest.mark.unit
def test_thrashing_is_critical_when_slow_without_progress() -> None:
    detector = SpiralDetector()
    history = [_record(1, progress=0.2, elapsed=1.0), _record(2, progress=0.5, elapsed=1.0)]

    slow = detector.check("item", history, _record(3, progress=0.5, elapsed=3.0))
    slow_but_moving = detector.check("item", history, _record(3, progress=0.7, elapsed=3.0))

    assert slow.patterns == (SpiralPattern.THRASHING,)
    assert slow.is_critical
    assert slow.commitment_delta == 2
    assert slow_but_moving.patterns == ()


@pytest.mark.unit
def test_repeated_warnings_are_flagged_for_escalation_per_item() -> None:
    logger = _RecordingLogger()
    detector = SpiralDetector(logger=logger)
    creeping = _record(1, {"in", "out"}, progress=0.5, baseline={"in"})

    checks = [detector.check("a", [], creeping) for _ in range(4)]
    other = detector.check("b", [], creeping)

    assert [check.escalate for check in checks] == [False, False, True, True]
    assert all(check.commitment_delta == 1 for check in checks)
    assert detector.warning_count("a") == 4
    assert not other.escalate
    assert logger.events[0][0] == "control_plane_spiral_check"
    assert logger.events[0][1]["patterns"] == ["SCOPE_CREEP"]

    detector.reset("a")
    assert detector.warning_count("a") == 0
    assert detector.warning_count("b") == 1
    detector.reset()
    assert detector.warning_count("b") == 0


@pytest.mark.unit
def test_critical_checks_do_not_count_as_warnings() -> None:
    detector = SpiralDetector(SpiralThresholds(warning_escalation_after=1))
    history = [_record(1, progress=0.2, elapsed=1.0)]

    check = detector.check("item", history, _record(2, progress=0.2, elapsed=5.0))

    assert check.is_critical
    assert not check.escalate
    assert detector.warning_count("item") == 0


@pytest.mark.unit
def test_thresholds_validation_and_mapping() -> None:
    thresholds = SpiralThresholds.from_mapping(
        {"oscillation_window": 4, "diminishing_delta": 0.05, "unrelated": True}
    )
    assert thresholds.oscillation_window == 4
    assert thresholds.diminishing_delta == 0.05

    with pytest.raises(ValueError, match="oscillation_window"):
        SpiralThresholds(oscillation_window=1)
    with pytest.raises(ValueError, match="scope_creep_critical_extra"):
        SpiralThresholds(scope_creep_tolerance=2, scope_creep_critical_extra=2)
    with pytest.raises(ValueError, match="thrashing_time_factor"):
        SpiralThresholds(thrashing_time_factor=1.0)
