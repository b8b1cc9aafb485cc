"""In-process job queue.

Selected with QUEUE_BACKEND=memory for local runs without a broker; the API
then runs a worker in the same process. Also used by the test suite. Jobs do
not survive the process.
"""

from __future__ import annotations

import asyncio
from collections import deque

from docflow.jobs.base import Job, JobQueue, QueuedJob
from docflow.schemas import QueueName, parse_job


class InMemoryJobQueue(JobQueue):
    """FIFO queues held in memory, one per queue name."""

    def __init__(self) -> None:
        self._queues: dict[QueueName, deque[str]] = {name: deque() for name in QueueName}
        self._payloads: dict[str, str] = {}
        self._processing: set[str] = set()
        self._available = asyncio.Event()

    async def enqueue(self, job: Job) -> str:
        job_id = job.job_id
        # Payloads round-trip through JSON, like they would through a broker.
        self._payloads[job_id] = job.model_dump_json()
        self._queues[job.queue_name].appendleft(job_id)
        self._available.set()
        return job_id

    async def cancel(self, job_id: str) -> bool:
        for queue in self._queues.values():
            if job_id in queue:
                queue.remove(job_id)
                self._payloads.pop(job_id, None)
                return True
        return False

    async def dequeue(self, queue_name: QueueName, timeout: float = 5.0) -> QueuedJob | None:
        queue = self._queues[queue_name]
        if not queue:
            self._available.clear()
            try:
                await asyncio.wait_for(self._available.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                return None
            if not queue:
                return None

        job_id = queue.pop()
        self._processing.add(job_id)
        return QueuedJob(job_id=job_id, queue_name=queue_name, payload=parse_job(self._payloads[job_id]))

    async def ack(self, job: QueuedJob) -> None:
        self._processing.discard(job.job_id)
        self._payloads.pop(job.job_id, None)

    def pending(self, queue_name: QueueName) -> list[Job]:
        """Queued jobs in the order workers would take them."""
        return [parse_job(self._payloads[job_id]) for job_id in reversed(self._queues[queue_name])]

    def pending_ids(self, queue_name: QueueName) -> list[str]:
        return list(reversed(self._queues[queue_name]))

    def in_progress_ids(self) -> set[str]:
        """Jobs taken by a worker and not acked yet."""
        return set(self._processing)
