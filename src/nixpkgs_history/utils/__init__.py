"""Utility exports for filesystem and concurrency helpers."""

from nixpkgs_history.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)
from nixpkgs_history.utils.fs import atomic_text_writer

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "WorkerPool",
    "atomic_text_writer",
    "run_with_timeout",
]
