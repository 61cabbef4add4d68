"""Priority job queue that runs attachment batches in the background."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from typing import Any

from mail_vectorizer.core.attachments import Attachment, AttachmentProcessor
from mail_vectorizer.core.exceptions import AttachmentProcessingError
from mail_vectorizer.core.models import (
    MAX_CONCURRENT,
    MIN_CONCURRENT,
    AttachmentBatchResult,
    AttachmentFailure,
    AttachmentJobResult,
    AttachmentStats,
    ErrorKind,
    JobPriority,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT_JOBS = 3
PRIORITY_RANK = {JobPriority.HIGH: 0, JobPriority.NORMAL: 1, JobPriority.LOW: 2}

JobCallback = Callable[[AttachmentJobResult], None]


@dataclass
class _Job:
    id: str
    attachments: tuple[Attachment, ...]
    priority: JobPriority
    created_at: float
    future: asyncio.Future[AttachmentJobResult]
    callback: JobCallback | None = None


@dataclass
class _Performance:
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    average_processing_time_ms: float = 0.0

    def record(self, elapsed_ms: float) -> None:
        self.completed_jobs += 1
        self.average_processing_time_ms += (
            elapsed_ms - self.average_processing_time_ms
        ) / self.completed_jobs


def _clamp(max_concurrent: int) -> int:
    return max(MIN_CONCURRENT, min(max_concurrent, MAX_CONCURRENT))


class AttachmentQueue:
    """Queue attachment batches and process up to ``max_concurrent`` jobs at once.

    Jobs run highest priority first, oldest first within a priority. Each job
    is one ``AttachmentProcessor.process_attachments`` call, so per-attachment
    concurrency still follows the processor's own limits.

    Results are delivered to the job callback, if any, and to ``wait``.
    Must be used from a running event loop.
    """

    def __init__(
        self,
        processor: AttachmentProcessor | None = None,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT_JOBS,
    ) -> None:
        self._processor = processor or AttachmentProcessor()
        self._max_concurrent = _clamp(max_concurrent)
        self._pending: list[tuple[int, int, _Job]] = []
        self._sequence = itertools.count()
        self._active: dict[str, asyncio.Task[None]] = {}
        self._futures: dict[str, asyncio.Future[AttachmentJobResult]] = {}
        self._idle = asyncio.Event()
        self._idle.set()
        self._performance = _Performance()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def queue_attachments(
        self,
        attachments: Sequence[Attachment],
        *,
        priority: JobPriority = JobPriority.NORMAL,
        callback: JobCallback | None = None,
    ) -> str:
        """Enqueue a batch and start it if a slot is free.

        Returns:
            The job id, accepted by ``wait``.
        """
        job = _Job(
            id=f"job_{uuid.uuid4().hex[:12]}",
            attachments=tuple(attachments),
            priority=JobPriority(priority),
            created_at=time.monotonic(),
            future=asyncio.get_running_loop().create_future(),
            callback=callback,
        )
        self._futures[job.id] = job.future
        heapq.heappush(self._pending, (PRIORITY_RANK[job.priority], next(self._sequence), job))
        self._idle.clear()
        logger.debug(
            "Queued %s with %d attachments (%s priority)",
            job.id,
            len(job.attachments),
            job.priority,
        )
        self._dispatch()
        return job.id

    async def wait(self, job_id: str) -> AttachmentJobResult:
        """Wait for a queued job and return its result.

        Raises:
            KeyError: If the job id is unknown or its result was already taken.
            asyncio.CancelledError: If the job was dropped by ``clear``.
        """
        try:
            future = self._futures[job_id]
        except KeyError:
            raise KeyError(f"Unknown job: {job_id}") from None
        try:
            return await asyncio.shield(future)
        finally:
            if future.done():
                self._futures.pop(job_id, None)

    async def join(self) -> None:
        """Wait until no job is pending or running."""
        await self._idle.wait()

    async def process_immediately(
        self, attachments: Sequence[Attachment]
    ) -> AttachmentJobResult:
        """Process a batch now, bypassing the queue and its statistics.

        Raises:
            AttachmentProcessingError: If the processor fails as a whole.
        """
        job_id = f"job_{uuid.uuid4().hex[:12]}"
        started = time.perf_counter()
        try:
            result = await self._processor.process_attachments(attachments)
        except Exception as e:
            raise AttachmentProcessingError(f"Immediate processing failed: {e}") from e
        return AttachmentJobResult(job_id=job_id, result=_with_elapsed(result, started))

    def configure(self, *, max_concurrent: int | None = None) -> int:
        """Change the job concurrency, clamped to 1..10. Returns the new value."""
        if max_concurrent is not None:
            self._max_concurrent = _clamp(max_concurrent)
            if self._pending:
                self._dispatch()
        return self._max_concurrent

    def clear(self) -> int:
        """Drop pending jobs and reset statistics. Running jobs finish normally.

        Returns:
            The number of jobs dropped. Their waiters are cancelled.
        """
        dropped = [job for _, _, job in self._pending]
        self._pending.clear()
        for job in dropped:
            job.future.cancel()
            self._futures.pop(job.id, None)
        self._performance = _Performance()
        if not self._active:
            self._idle.set()
        if dropped:
            logger.info("Dropped %d pending attachment jobs", len(dropped))
        return len(dropped)

    def get_stats(self) -> dict[str, Any]:
        performance = self._performance
        return {
            "queue": {
                "pending": len(self._pending),
                "active": len(self._active),
                "max_concurrent": self._max_concurrent,
            },
            "performance": {
                "total_jobs": performance.total_jobs,
                "completed_jobs": performance.completed_jobs,
                "failed_jobs": performance.failed_jobs,
                "average_processing_time_ms": performance.average_processing_time_ms,
            },
        }

    def get_queue_status(self) -> dict[str, Any]:
        next_job = None
        if self._pending:
            job = self._pending[0][2]
            next_job = {
                "id": job.id,
                "priority": str(job.priority),
                "attachment_count": len(job.attachments),
                "wait_time_ms": (time.monotonic() - job.created_at) * 1000,
            }
        return {
            "is_processing": bool(self._active or self._pending),
            "queue_length": len(self._pending),
            "active_jobs": len(self._active),
            "next_job": next_job,
        }

    def _dispatch(self) -> None:
        while self._pending and len(self._active) < self._max_concurrent:
            _, _, job = heapq.heappop(self._pending)
            self._performance.total_jobs += 1
            task = asyncio.create_task(self._run(job), name=job.id)
            self._active[job.id] = task
            task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[None]) -> None:
        self._active.pop(task.get_name(), None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Attachment job %s failed: %s", task.get_name(), task.exception())
        self._dispatch()
        if not self._active and not self._pending:
            self._idle.set()

    async def _run(self, job: _Job) -> None:
        started = time.perf_counter()
        try:
            result = await self._processor.process_attachments(job.attachments)
        except Exception as e:
            self._performance.failed_jobs += 1
            logger.error("Attachment job %s failed: %s", job.id, e)
            outcome = AttachmentJobResult(
                job_id=job.id, result=_failed_result(job, str(e), started), failed=True
            )
        else:
            outcome = AttachmentJobResult(job_id=job.id, result=_with_elapsed(result, started))
            self._performance.record(outcome.result.stats.processing_time_ms)
            logger.debug(
                "Attachment job %s done in %.1f ms",
                job.id,
                outcome.result.stats.processing_time_ms,
            )

        if not job.future.done():
            job.future.set_result(outcome)
        if job.callback is not None:
            job.callback(outcome)


def _with_elapsed(result: AttachmentBatchResult, started: float) -> AttachmentBatchResult:
    elapsed_ms = (time.perf_counter() - started) * 1000
    return replace(result, stats=replace(result.stats, processing_time_ms=elapsed_ms))


def _failed_result(job: _Job, error: str, started: float) -> AttachmentBatchResult:
    count = len(job.attachments)
    return AttachmentBatchResult(
        errors=tuple(
            AttachmentFailure(attachment=info, error=error, kind=ErrorKind.EXTRACTION)
            for info, _ in job.attachments
        ),
        stats=AttachmentStats(
            total=count,
            errors=count,
            processing_time_ms=(time.perf_counter() - started) * 1000,
        ),
    )
