"""Bounded async dispatch with cooperative cancellation."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from typing import Generic, TypeVar

T = TypeVar("T")

Job = Callable[[], Awaitable[T]]


class CancellationToken:
    """One-way stop flag shared between a run and its worker pools."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


class WorkerPool(Generic[T]):
    """
    Run zero-argument async jobs, at most ``max_concurrency`` at a time,
    yielding each result as soon as its job finishes.

    A job is only called once it holds a slot. If the token is cancelled by
    then, the job is withheld and never called; jobs already running are
    never interrupted. The first job exception cancels the remaining jobs and
    propagates to the consumer.
    """

    def __init__(self, max_concurrency: int, cancel_token: CancellationToken | None = None) -> None:
        if isinstance(max_concurrency, bool) or not isinstance(max_concurrency, int):
            raise ValueError("max_concurrency must be an integer")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.token = cancel_token or CancellationToken()
        self.withheld = 0
        self.in_flight = 0
        self.peak_in_flight = 0
        self._slots = asyncio.Semaphore(max_concurrency)

    async def run(self, jobs: Iterable[Job[T]]) -> AsyncIterator[T]:
        tasks = {asyncio.create_task(self._guarded(job)) for job in jobs}
        try:
            while tasks:
                done, tasks = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    started, result = task.result()
                    if started:
                        yield result  # type: ignore[misc]
        finally:
            # Reached on job failure, consumer cancellation, or early close.
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)

    async def _guarded(self, job: Job[T]) -> tuple[bool, T | None]:
        async with self._slots:
            if self.token.is_cancelled:
                self.withheld += 1
                return False, None
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                return True, await job()
            finally:
                self.in_flight -= 1


__all__ = ["CancellationToken", "Job", "WorkerPool"]
