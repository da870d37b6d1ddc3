"""Shared async helpers."""

from orchestration_engine.utils.concurrency import CancellationToken, WorkerPool

__all__ = ["CancellationToken", "WorkerPool"]
