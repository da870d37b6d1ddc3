"""Structured logging, the engine event bus, and run metrics."""

from orchestration_engine.observability.events import DispatchError, EventBus, Subscriber
from orchestration_engine.observability.logging import (
    LoggingConfig,
    LoggingHandle,
    configure_structlog,
    correlation_scope,
    flush_logging,
    get_active_logging_handle,
    get_correlation_context,
    redact,
    redact_event_dict,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)
from orchestration_engine.observability.metrics import MetricsRegistry, series_id

__all__ = [
    "DispatchError",
    "EventBus",
    "LoggingConfig",
    "LoggingHandle",
    "MetricsRegistry",
    "Subscriber",
    "configure_structlog",
    "correlation_scope",
    "flush_logging",
    "get_active_logging_handle",
    "get_correlation_context",
    "redact",
    "redact_event_dict",
    "series_id",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
