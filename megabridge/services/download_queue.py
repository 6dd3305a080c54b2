"""Bounded-concurrency job queue for file transfers"""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, Set, Tuple

from megabridge.sources.base import RemoteFile
from megabridge.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class DownloadJob:
    """In-memory work item for one file; rebuilt from the store whenever work resumes"""

    folder_id: str
    node_id: str
    remote_file: RemoteFile
    name: str
    size: int


class DownloadQueue:
    """
    FIFO of pending download jobs with a global concurrency ceiling.

    `drain()` starts jobs until the ceiling is reached. Every finished job
    decrements the active count and calls `drain()` again, so the pool refills
    itself without a polling loop. All queue mutation happens synchronously on
    the event loop, so no lock is needed.
    """

    def __init__(self, handler: Callable[[DownloadJob], Awaitable[None]], max_concurrent: int):
        if max_concurrent <= 0:
            raise ValueError("max_concurrent must be a positive integer")
        self._handler = handler
        self._max_concurrent = max_concurrent
        self._queue: Deque[DownloadJob] = deque()
        self._active = 0
        self._tasks: Set[asyncio.Task] = set()
        self._running: Set[Tuple[str, str]] = set()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def enqueue(self, job: DownloadJob):
        """Append a job to the tail of the queue"""
        self._queue.append(job)

    def enqueue_many(self, jobs: Iterable[DownloadJob]):
        self._queue.extend(jobs)

    def has_job(self, folder_id: str, node_id: str) -> bool:
        """True if the file is queued or its job is already running"""
        if (folder_id, node_id) in self._running:
            return True
        return any(j.folder_id == folder_id and j.node_id == node_id for j in self._queue)

    def has_running_jobs(self, folder_id: str) -> bool:
        return any(running_folder == folder_id for running_folder, _ in self._running)

    def pending_jobs(self):
        return list(self._queue)

    def remove_folder_jobs(self, folder_id: str) -> int:
        """Drop every queued (not yet started) job of a folder"""
        before = len(self._queue)
        self._queue = deque(j for j in self._queue if j.folder_id != folder_id)
        removed = before - len(self._queue)
        if removed:
            logger.debug("Removed queued jobs", folder_id=folder_id, count=removed)
        return removed

    def clear(self) -> int:
        """Drop all queued jobs; running transfers are left alone"""
        dropped = len(self._queue)
        self._queue.clear()
        return dropped

    def drain(self):
        """Start queued jobs until the concurrency ceiling is reached; safe to call at any time"""
        while self._active < self._max_concurrent and self._queue:
            job = self._queue.popleft()
            self._active += 1
            self._running.add((job.folder_id, job.node_id))
            task = asyncio.create_task(self._run(job), name=f"download:{job.folder_id}/{job.node_id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, job: DownloadJob):
        try:
            await self._handler(job)
        except Exception as e:
            # The handler records outcomes itself; this only guards the pool
            logger.error(
                f"Unhandled error in download job: {e}",
                folder_id=job.folder_id,
                node_id=job.node_id,
                exc_info=True,
            )
        finally:
            self._active -= 1
            self._running.discard((job.folder_id, job.node_id))
            self.drain()

    async def wait_idle(self):
        """Wait for running jobs and every job they pull off the queue to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def get_status(self) -> Dict[str, Any]:
        return {
            "queue_size": len(self._queue),
            "active": self._active,
            "max_concurrent": self._max_concurrent,
        }
