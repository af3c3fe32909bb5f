"""Serial job queue for sync batches.

This module provides:
- JobQueue: Runs coroutine factories one at a time, in submission order

Every mutating engine operation (upload batch, delete, download, reset)
goes through the same queue so that two batches never interleave their
remote writes. A job that raises only fails its own caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

Job = Callable[[], Awaitable[T]]


class JobQueue:
    """FIFO queue executing one job at a time.

    Usage:
        queue = JobQueue()
        result = await queue.enqueue(lambda: upload_batch(assets))
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._size = 0

    @property
    def pending(self) -> int:
        """Jobs queued or running."""
        return self._size

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def enqueue(self, job: Job[T]) -> T:
        """Run job after every previously enqueued job has finished.

        Returns:
            The job's result.

        Raises:
            Whatever the job raises; later jobs still run.
        """
        self._size += 1
        try:
            # asyncio.Lock wakes waiters in FIFO order
            async with self._lock:
                return await job()
        except Exception as e:
            logger.debug(f"Queued job failed: {e}")
            raise
        finally:
            self._size = max(0, self._size - 1)
