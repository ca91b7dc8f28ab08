"""In-process job trigger: a bounded queue feeding validation runs."""

import asyncio
import logging
from typing import Optional

from .models import JobRecord, ValidationRequest

logger = logging.getLogger("listverify.jobs")


class ValidationJobQueue:
    """Bounded background queue for validation runs.

    Jobs are recorded as In Queue before they are accepted. Workers start
    lazily on first enqueue; a failed run is already recorded as Error by the
    pipeline, so workers only log and move on.
    """

    def __init__(self, pipeline, max_queue_size: int, workers: int):
        self._pipeline = pipeline
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._workers = max(0, workers)
        self._started = False
        self._worker_tasks: list[asyncio.Task] = []
        self._start_lock = asyncio.Lock()

    async def _ensure_started(self) -> None:
        if self._started or self._workers == 0:
            return
        async with self._start_lock:
            if self._started:
                return
            for idx in range(self._workers):
                task = asyncio.create_task(self._worker_loop(idx))
                self._worker_tasks.append(task)
            self._started = True

    async def enqueue(self, request: ValidationRequest) -> Optional[JobRecord]:
        """Record In Queue and queue the run. Returns None when the queue is full."""
        await self._ensure_started()
        if self._queue.full():
            return None
        job = await asyncio.to_thread(
            self._pipeline.recorder.record_queued,
            request.file_id,
            request.user_email,
            request.total_emails,
        )
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            await asyncio.to_thread(
                self._pipeline.recorder.record_failure, request.file_id, "job queue is full"
            )
            return None
        return job

    def queue_size(self) -> int:
        return self._queue.qsize()

    async def join(self) -> None:
        await self._queue.join()

    async def shutdown(self) -> None:
        for task in self._worker_tasks:
            task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks.clear()
        self._started = False

    async def _worker_loop(self, worker_id: int) -> None:
        while True:
            request = await self._queue.get()

            def _progress(value: int, file_id: str = request.file_id) -> None:
                logger.debug("Job %s progress %d%%", file_id, value)

            try:
                await self._pipeline.run(request, progress=_progress)
            except Exception as e:
                logger.error("Job worker %s: job %s failed: %s", worker_id, request.file_id, e)
            finally:
                self._queue.task_done()
