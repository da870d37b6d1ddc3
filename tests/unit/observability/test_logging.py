"""Unit tests for run-scoped structured logging."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from orchestration_engine.observability.logging import (
    REDACTED,
    LoggingConfig,
    correlation_scope,
    get_active_logging_handle,
    get_correlation_context,
    redact,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)


@pytest.fixture(autouse=True)
def _restore_logging() -> Iterator[None]:
    yield
    shutdown_logging()
    structlog.reset_defaults()


def _read_lines(path: Path) -> list[dict[str, object]]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


@pytest.mark.unit
def test_structlog_events_reach_run_file_with_correlation(tmp_path: Path) -> None:
    handle = setup_logging(
        {"log_level": "INFO", "log_to_stdout": False}, run_id="run-1", log_dir=tmp_path
    )
    logger = structlog.get_logger("orchestration_engine.control_plane.processor")

    with correlation_scope(run_id="run-1", work_item_id="build"):
        logger.info("control_plane_item_dispatched", allocated_budget=2.5)
    logger.debug("control_plane_noise")
    shutdown_logging(handle)

    assert handle.log_path == tmp_path / "run-1" / "engine.jsonl"
    (line,) = _read_lines(handle.log_path)
    assert line["event"] == "control_plane_item_dispatched"
    assert line["level"] == "info"
    assert line["logger"] == "orchestration_engine.control_plane.processor"
    assert line["run_id"] == "run-1"
    assert line["work_item_id"] == "build"
    assert line["allocated_budget"] == 2.5
    assert str(line["timestamp"]).endswith("Z")


@pytest.mark.unit
def test_stdlib_records_are_rendered_and_redacted(tmp_path: Path) -> None:
    handle = setup_structured_logging(
        LoggingConfig(run_id="run-2", log_dir=tmp_path, log_to_stdout=False)
    )
    stdlib_logger = logging.getLogger("orchestration_engine.executor")

    with correlation_scope(work_item_id="docs"):
        stdlib_logger.warning("retrying with token=abc123", extra={"api_key": "k-1", "attempt": 2})
    shutdown_logging(handle)

    (line,) = _read_lines(handle.log_path)
    assert line["event"] == f"retrying with token={REDACTED}"
    assert line["level"] == "warning"
    assert line["api_key"] == REDACTED
    assert line["attempt"] == 2
    assert line["work_item_id"] == "docs"
    assert line["run_id"] == "run-2"


@pytest.mark.unit
def test_redaction_can_be_disabled(tmp_path: Path) -> None:
    handle = setup_logging(
        {"log_to_stdout": False, "redact_secrets": False}, run_id="run-3", log_dir=tmp_path
    )
    structlog.get_logger("orchestration_engine.test").warning("probe", password="plain")
    shutdown_logging(handle)

    (line,) = _read_lines(handle.log_path)
    assert line["password"] == "plain"


@pytest.mark.unit
def test_new_setup_replaces_active_handle(tmp_path: Path) -> None:
    first = setup_logging({"log_to_stdout": False}, run_id="first", log_dir=tmp_path)
    second = setup_logging({"log_to_stdout": False}, run_id="second", log_dir=tmp_path)

    assert first.closed
    assert not second.closed
    assert get_active_logging_handle() is second

    shutdown_logging()
    assert second.closed
    assert get_active_logging_handle() is None


@pytest.mark.unit
def test_correlation_scope_restores_previous_context() -> None:
    with correlation_scope(run_id="outer"):
        with correlation_scope(work_item_id="inner", event_id=None):
            assert get_correlation_context() == {"run_id": "outer", "work_item_id": "inner"}
        assert get_correlation_context() == {"run_id": "outer"}
    assert get_correlation_context() == {}

    with pytest.raises(ValueError):
        with correlation_scope(run_id="  "):
            pass


@pytest.mark.unit
def test_redact_masks_nested_keys_and_inline_credentials() -> None:
    assert redact(
        {
            "headers": {"Authorization": "Bearer abc.def", "accept": "json"},
            "notes": ["password: hunter2", "plain"],
            "count": 3,
        }
    ) == {
        "headers": {"Authorization": REDACTED, "accept": "json"},
        "notes": [f"password: {REDACTED}", "plain"],
        "count": 3,
    }
    assert redact("use Bearer abc.def now") == f"use Bearer {REDACTED} now"


@pytest.mark.unit
@pytest.mark.parametrize(
    "config",
    [
        LoggingConfig(run_id=" "),
        LoggingConfig(run_id="r", log_filename="nested/engine.jsonl"),
        LoggingConfig(run_id="r", queue_size=0),
        LoggingConfig(run_id="r", level="CHATTY"),
    ],
)
def test_invalid_logging_config(config: LoggingConfig) -> None:
    with pytest.raises(ValueError):
        setup_structured_logging(config)
