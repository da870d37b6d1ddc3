"""
Run-scoped structured logging.

Engine modules log through ``structlog.get_logger(__name__)``. ``setup_logging``
routes those events, plus anything sent to the stdlib ``orchestration_engine``
logger, through a non-blocking queue into JSON-lines sinks: one file per run
under ``<log_dir>/<run_id>/`` and optionally stdout. Correlation fields bound
with ``correlation_scope`` (``run_id``, ``work_item_id``) ride along on every
line, and sensitive values are masked before rendering.
"""

from __future__ import annotations

import atexit
import logging
import logging.handlers
import queue
import re
import sys
import threading
import time
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final

import structlog

REDACTED: Final[str] = "***REDACTED***"
ENGINE_LOGGER: Final[str] = "orchestration_engine"

_SENSITIVE_FIELDS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "private_key",
)
_INLINE_CREDENTIAL: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)(\s*[:=]\s*)([^\s,;]+)"
)
_BEARER: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Keys rendered by the pipeline itself; never treated as payload.
_ENVELOPE_KEYS: Final[frozenset[str]] = frozenset({"event", "level", "logger", "timestamp"})

_active_lock = threading.Lock()
_active: LoggingHandle | None = None
_atexit_registered = False


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    run_id: str
    log_dir: Path | str = Path("logs")
    level: int | str = "INFO"
    log_to_stdout: bool = True
    redact: bool = True
    log_filename: str = "engine.jsonl"
    queue_size: int = 4096


class _RunQueueHandler(logging.handlers.QueueHandler):
    """Enqueue records untouched so the listener-side formatter sees structlog's event dict."""

    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self.dropped = 0

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        if not isinstance(record.msg, dict):
            # Foreign stdlib records are formatted on the listener thread, which
            # cannot see this thread's contextvars.
            record.correlation = structlog.contextvars.get_contextvars()
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1


class LoggingHandle:
    """Owns the queue listener and sinks of one configured run."""

    def __init__(
        self,
        *,
        run_id: str,
        log_path: Path,
        logger: logging.Logger,
        handler: _RunQueueHandler,
        listener: logging.handlers.QueueListener,
        sinks: tuple[logging.Handler, ...],
    ) -> None:
        self.run_id = run_id
        self.log_path = log_path
        self.logger = logger
        self._handler = handler
        self._listener = listener
        self._sinks = sinks
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def dropped_records(self) -> int:
        return self._handler.dropped

    @property
    def closed(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        log_queue = self._handler.queue
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while getattr(log_queue, "unfinished_tasks", 0) and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def close(self, *, timeout_seconds: float = 2.0) -> None:
        with self._close_lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._handler)
            self._handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


def setup_logging(
    observability: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
) -> LoggingHandle:
    """Configure logging from an ``[observability]`` config section."""

    section = dict(observability or {})
    level = section.get("log_level", "INFO")
    configured_dir = log_dir if log_dir is not None else section.get("log_dir", "logs")
    return setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            log_dir=configured_dir if isinstance(configured_dir, (str, Path)) else "logs",
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(section.get("log_to_stdout", True)),
            redact=bool(section.get("redact_secrets", True)),
        )
    )


def setup_structured_logging(config: LoggingConfig) -> LoggingHandle:
    """Start queue-backed JSON-lines logging for one run, replacing any active setup."""

    global _active
    run_id = _non_empty(config.run_id, "run_id")
    filename = _non_empty(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must be a bare file name")
    if config.queue_size < 1:
        raise ValueError("queue_size must be >= 1")
    level = _level_number(config.level)

    shutdown_logging()

    run_dir = Path(config.log_dir) / run_id
    run_dir.mkdir(parents=True, exist_ok=True)
    log_path = run_dir / filename

    formatter = _json_formatter(run_id=run_id, mask=config.redact)
    sinks: list[logging.Handler] = [logging.FileHandler(log_path, encoding="utf-8")]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler(sys.stdout))
    for sink in sinks:
        sink.setFormatter(formatter)
        sink.setLevel(level)

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    handler = _RunQueueHandler(log_queue)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)

    logger = logging.getLogger(ENGINE_LOGGER)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False
    logger.addHandler(handler)
    listener.start()

    configure_structlog()

    handle = LoggingHandle(
        run_id=run_id,
        log_path=log_path,
        logger=logger,
        handler=handler,
        listener=listener,
        sinks=tuple(sinks),
    )
    with _active_lock:
        _active = handle
    _register_atexit()
    return handle


def configure_structlog() -> None:
    """Hand structlog events to stdlib logging; rendering happens in the sink formatter."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )


def get_active_logging_handle() -> LoggingHandle | None:
    with _active_lock:
        return _active


def flush_logging(handle: LoggingHandle | None = None, *, timeout_seconds: float = 2.0) -> None:
    target = handle or get_active_logging_handle()
    if target is not None:
        target.flush(timeout_seconds=timeout_seconds)


def shutdown_logging(handle: LoggingHandle | None = None, *, timeout_seconds: float = 2.0) -> None:
    """Drain and close ``handle`` (default: the active one)."""

    global _active
    target = handle or get_active_logging_handle()
    if target is None:
        return
    target.close(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for every log line emitted inside the block.

    ``None`` values are skipped, so callers can pass optional identifiers.
    """

    bound = {key: _non_empty(value, key) for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def get_correlation_context() -> dict[str, Any]:
    return structlog.contextvars.get_contextvars()


def redact(value: Any, *, field: str | None = None) -> Any:
    """Deep-mask sensitive mapping keys and inline credentials in strings."""

    if field is not None and _is_sensitive(field):
        return REDACTED
    if isinstance(value, str):
        return _BEARER.sub(f"Bearer {REDACTED}", _INLINE_CREDENTIAL.sub(rf"\1\2{REDACTED}", value))
    if isinstance(value, Mapping):
        return {key: redact(item, field=str(key)) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


def redact_event_dict(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor applying ``redact`` to message and payload fields."""

    for key, value in list(event_dict.items()):
        if key == "event":
            event_dict[key] = redact(value)
        elif key not in _ENVELOPE_KEYS:
            event_dict[key] = redact(value, field=key)
    return event_dict


def _json_formatter(*, run_id: str, mask: bool) -> structlog.stdlib.ProcessorFormatter:
    def add_run_id(
        _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        event_dict.setdefault("run_id", run_id)
        return event_dict

    render: list[Any] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta, add_run_id]
    if mask:
        render.append(redact_event_dict)
    render.append(structlog.processors.JSONRenderer(sort_keys=True))

    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.stdlib.ExtraAdder(),
            _merge_record_correlation,
            structlog.processors.format_exc_info,
        ],
        processors=render,
    )


def _merge_record_correlation(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    captured = event_dict.pop("correlation", None)
    if isinstance(captured, Mapping):
        for key, value in captured.items():
            event_dict.setdefault(key, value)
    return event_dict


def _is_sensitive(field: str) -> bool:
    lowered = field.lower()
    return any(term in lowered for term in _SENSITIVE_FIELDS)


def _level_number(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"unsupported logging level {level!r}")
    return resolved


def _non_empty(value: object, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value.strip()


def _register_atexit() -> None:
    global _atexit_registered
    if not _atexit_registered:
        atexit.register(shutdown_logging)
        _atexit_registered = True


__all__ = [
    "ENGINE_LOGGER",
    "REDACTED",
    "LoggingConfig",
    "LoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "redact",
    "redact_event_dict",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
