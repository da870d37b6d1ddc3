"""In-process fan-out of engine events with a bounded replay history."""

from __future__ import annotations

import asyncio
import inspect
import itertools
import threading
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from orchestration_engine.domain.events import EngineEvent, EventType
from orchestration_engine.domain.models import _as_json_object

Subscriber = Callable[[EngineEvent], object]


@dataclass(frozen=True, slots=True)
class DispatchError:
    """A subscriber failure, recorded instead of propagated to the publisher."""

    event_id: str
    subscriber: str
    error_type: str
    message: str

    @classmethod
    def capture(cls, event: EngineEvent, subscriber: object, exc: BaseException) -> DispatchError:
        name = getattr(subscriber, "__qualname__", None) or type(subscriber).__name__
        return cls(event.event_id, name, type(exc).__name__, str(exc))


class EventBus:
    """
    Deliver planner and processor events to subscribers.

    Subscribers may be plain callables or coroutine functions. A failing
    subscriber never interrupts the publisher or other subscribers; its error is
    logged and kept in ``errors``. Coroutine subscribers run as tasks on the
    publisher's loop when one is running (await ``drain`` to settle them), or
    to completion otherwise.
    """

    def __init__(self, *, history_size: int = 512, logger: Any = None) -> None:
        if isinstance(history_size, bool) or not isinstance(history_size, int) or history_size < 1:
            raise ValueError("history_size must be a positive integer")
        self._history: deque[EngineEvent] = deque(maxlen=history_size)
        self._subscribers: dict[int, tuple[EventType | None, Subscriber]] = {}
        self._tokens = itertools.count(1)
        self._errors: list[DispatchError] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._lock = threading.RLock()
        self._logger = logger or structlog.get_logger(__name__)

    def subscribe(self, callback: Subscriber, event_type: EventType | str | None = None) -> int:
        """Register ``callback`` for one event type, or for all events when omitted."""

        if not callable(callback):
            raise ValueError("callback must be callable")
        wanted = None if event_type is None else EventType(event_type)
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = (wanted, callback)
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def emit(
        self,
        event_type: EventType | str,
        payload: Mapping[str, object] | None = None,
        *,
        correlation_id: str | None = None,
    ) -> EngineEvent:
        """Build an event from ``payload`` and publish it."""

        event = EngineEvent(
            event_type=EventType(event_type),
            payload=_as_json_object(dict(payload or {}), "payload"),
            correlation_id=correlation_id,
        )
        self.publish(event)
        return event

    def publish(self, event: EngineEvent) -> tuple[DispatchError, ...]:
        if not isinstance(event, EngineEvent):
            raise ValueError(f"expected EngineEvent, got {type(event).__name__}")
        with self._lock:
            self._history.append(event)
            targets = [
                callback
                for wanted, callback in self._subscribers.values()
                if wanted is None or wanted is event.event_type
            ]

        failures: list[DispatchError] = []
        for callback in targets:
            try:
                result = callback(event)
                if inspect.iscoroutine(result):
                    self._run_coroutine(result, event, callback)
            except Exception as exc:  # noqa: BLE001
                failures.append(self._record_failure(event, callback, exc))
        return tuple(failures)

    async def drain(self) -> tuple[DispatchError, ...]:
        """Wait for coroutine subscribers scheduled by ``publish``; return all recorded errors."""

        with self._lock:
            pending = list(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return self.errors

    @property
    def errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)

    def replay(
        self,
        *,
        event_type: EventType | str | None = None,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> tuple[EngineEvent, ...]:
        """Return buffered events in publish order, optionally filtered."""

        if since is not None and since.utcoffset() is None:
            raise ValueError("since must be timezone-aware")
        wanted = None if event_type is None else EventType(event_type)
        cutoff = None if since is None else since.astimezone(UTC)
        with self._lock:
            selected = [
                event
                for event in self._history
                if (wanted is None or event.event_type is wanted)
                and (cutoff is None or event.timestamp > cutoff)
            ]
        if limit is not None:
            selected = selected[-limit:] if limit > 0 else []
        return tuple(selected)

    def _run_coroutine(self, coroutine: Any, event: EngineEvent, callback: Subscriber) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(coroutine)
            return
        task = loop.create_task(coroutine)
        with self._lock:
            self._tasks.add(task)

        def settle(done: asyncio.Task[Any]) -> None:
            with self._lock:
                self._tasks.discard(done)
            if not done.cancelled() and done.exception() is not None:
                self._record_failure(event, callback, done.exception())  # type: ignore[arg-type]

        task.add_done_callback(settle)

    def _record_failure(
        self, event: EngineEvent, callback: Subscriber, exc: BaseException
    ) -> DispatchError:
        failure = DispatchError.capture(event, callback, exc)
        with self._lock:
            self._errors.append(failure)
        self._logger.warning(
            "event_bus_subscriber_failed",
            event_type=event.event_type.value,
            subscriber=failure.subscriber,
            error_type=failure.error_type,
            error=failure.message,
        )
        return failure


__all__ = ["DispatchError", "EventBus", "Subscriber"]
