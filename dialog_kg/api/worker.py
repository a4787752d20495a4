"""
Background Analysis Worker

Runs analysis jobs off the chat turn. A bounded asyncio.Queue feeds a fixed
number of consumer tasks; jobs for the same context are serialized through a
per-context asyncio.Lock, while different contexts proceed in parallel.

submit() never blocks: when the queue is full the job is dropped with a
warning. Because the analysis cursor only advances when a job runs, a
dropped job's messages are picked up by the next accepted trigger.

Example:
    >>> worker = AnalysisWorker(handle_job, concurrency=2, queue_size=100)
    >>> worker.submit(AnalysisJob(context_id="alice", conversation=conversation))
    True
    >>> await worker.drain()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from dialog_kg.types import Conversation, KnownEntity

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class AnalysisJob:
    """One queued request to analyze a context's conversation."""

    context_id: str
    conversation: Conversation
    known_entities: list[KnownEntity] = field(default_factory=list)
    prompt_variables: dict[str, Any] = field(default_factory=dict)
    force: bool = False


class AnalysisWorker:
    """
    Bounded queue plus consumer tasks with per-context serialization.

    Args:
        handler: Coroutine function run for each job
        concurrency: Number of consumer tasks
        queue_size: Max queued jobs before submit() starts dropping
    """

    def __init__(
        self,
        handler: Callable[[AnalysisJob], Awaitable[Any]],
        *,
        concurrency: int = 2,
        queue_size: int = 100,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.handler = handler
        self.concurrency = concurrency
        self.queue_size = queue_size

        self._queue: asyncio.Queue[AnalysisJob] | None = None
        self._tasks: list[asyncio.Task] = []
        self._context_locks: dict[str, asyncio.Lock] = {}
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    def start(self) -> None:
        """Start consumer tasks. Must be called from a running event loop."""
        if self._tasks:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._tasks = [
            asyncio.create_task(self._consume(i), name=f"dialog-kg-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.debug(f"Started {self.concurrency} analysis consumers")

    def submit(self, job: AnalysisJob) -> bool:
        """
        Queue a job without waiting.

        Returns:
            True if queued, False if dropped (queue full or no event loop)
        """
        if not self._tasks:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.warning(f"No running event loop, dropping analysis job for {job.context_id}")
                self.dropped += 1
                return False
            self.start()

        assert self._queue is not None
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                f"Analysis queue full ({self.queue_size}), dropping job for {job.context_id}"
            )
            return False
        return True

    def _lock_for(self, context_id: str) -> asyncio.Lock:
        lock = self._context_locks.get(context_id)
        if lock is None:
            lock = asyncio.Lock()
            self._context_locks[context_id] = lock
        return lock

    async def run_exclusive(self, context_id: str, job: Callable[[], Awaitable[T]]) -> T:
        """Run `job` while holding the context's lock."""
        async with self._lock_for(context_id):
            return await job()

    async def _consume(self, index: int) -> None:
        assert self._queue is not None
        while True:
            job = await self._queue.get()
            try:
                await self.run_exclusive(job.context_id, lambda: self.handler(job))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Analysis job for {job.context_id} failed in consumer {index}: {e}")
            finally:
                self._queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued job has finished."""
        if self._queue is not None:
            await self._queue.join()

    async def stop(self, drain: bool = False) -> None:
        """Cancel consumers, optionally after draining the queue."""
        if drain:
            await self.drain()
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._queue = None
