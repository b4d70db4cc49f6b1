"""Job queue: bounded channel, worker pool and per-evidence locks."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable

from ..models import JobStatus
from ..repository import EvidenceRepository

logger = logging.getLogger(__name__)

JobHandler = Callable[[str], Awaitable[Any]]


class EvidenceLocks:
    """One asyncio.Lock per evidence ID, dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def _acquire_ref(self, key: str) -> asyncio.Lock:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] = self._refs.get(key, 0) + 1
        return lock

    def _release_ref(self, key: str) -> None:
        self._refs[key] -= 1
        if self._refs[key] == 0:
            del self._refs[key]
            del self._locks[key]

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Wait for and hold the lock for ``key``."""
        lock = self._acquire_ref(key)
        try:
            async with lock:
                yield
        finally:
            self._release_ref(key)

    @asynccontextmanager
    async def try_hold(self, key: str) -> AsyncIterator[bool]:
        """Hold the lock only if it is free. Yields whether it was acquired."""
        lock = self._acquire_ref(key)
        try:
            if lock.locked():
                yield False
                return
            await lock.acquire()
            try:
                yield True
            finally:
                lock.release()
        finally:
            self._release_ref(key)


class JobQueue:
    """Dispatch persisted jobs to a fixed pool of worker tasks.

    The database is the source of truth: a job exists once it is written as
    QUEUED, whether or not the workers are running. Starting the queue picks
    up QUEUED jobs left from a previous run.
    """

    def __init__(
        self,
        repository: EvidenceRepository,
        workers: int = 5,
        max_size: int = 1000,
    ):
        self.repository = repository
        self.worker_count = workers
        self.max_size = max_size
        self._channel: asyncio.Queue[str] | None = None
        self._workers: list[asyncio.Task] = []
        self._handler: JobHandler | None = None

    @property
    def running(self) -> bool:
        return bool(self._workers)

    @property
    def depth(self) -> int:
        return self._channel.qsize() if self._channel is not None else 0

    async def enqueue(self, evidence_id: str, options: dict[str, Any] | None = None) -> str:
        """Register a job for the evidence, or return the non-terminal one it already has."""
        job, created = self.repository.create_job_if_absent(evidence_id, options)
        if created:
            logger.info("Queued job %s for evidence %s", job.id, evidence_id)
            await self._dispatch(job.id)
        else:
            logger.debug("Evidence %s already has active job %s", evidence_id, job.id)
        return job.id

    async def _dispatch(self, job_id: str) -> None:
        if self._channel is not None and self.running:
            await self._channel.put(job_id)

    async def start(self, handler: JobHandler) -> None:
        if self.running:
            return
        self._handler = handler
        self._channel = asyncio.Queue(maxsize=self.max_size)

        interrupted = self.repository.fail_interrupted_jobs()
        if interrupted:
            logger.warning("Failed %d job(s) interrupted by a previous shutdown", interrupted)

        self._workers = [
            asyncio.create_task(self._worker(i), name=f"evidoc-worker-{i}")
            for i in range(self.worker_count)
        ]

        pending = self.repository.list_jobs(JobStatus.QUEUED)
        for job in pending:
            await self._channel.put(job.id)
        logger.info("Started %d worker(s); %d queued job(s) re-dispatched", self.worker_count, len(pending))

    async def _worker(self, index: int) -> None:
        assert self._channel is not None and self._handler is not None
        while True:
            job_id = await self._channel.get()
            try:
                await self._handler(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker %d crashed on job %s", index, job_id)
            finally:
                self._channel.task_done()

    async def join(self) -> None:
        """Wait until every dispatched job has been handled."""
        if self._channel is not None:
            await self._channel.join()

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        self._channel = None
        logger.info("Stopped job queue")
