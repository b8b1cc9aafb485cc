"""Redis-backed durable job queue.

Layout (keys under the configured prefix):
- {prefix}:queue:{name}       list of job ids waiting for a worker
- {prefix}:processing:{name}  list of job ids taken by a worker, not yet acked
- {prefix}:job:{id}           hash with the serialized payload

Workers move ids atomically from the queue list to the processing list with
BLMOVE. A job taken by a worker that dies stays in the processing list; its
step stays RUNNING until the cleanup sweeper times the run out, and
`docflow worker --requeue` puts such jobs back on the queue before consuming.
"""

from __future__ import annotations

import logging

import redis.asyncio as redis
from redis.exceptions import RedisError

from docflow.config import get_settings
from docflow.errors import ExternalServiceError
from docflow.jobs.base import Job, JobQueue, QueuedJob
from docflow.schemas import QueueName, parse_job


logger = logging.getLogger(__name__)


class RedisJobQueue(JobQueue):
    """Job queue on top of Redis lists."""

    def __init__(
        self,
        url: str | None = None,
        prefix: str | None = None,
        client: redis.Redis | None = None,
    ):
        settings = get_settings()
        self.prefix = prefix or settings.queue_prefix
        self._client = client or redis.Redis.from_url(url or str(settings.redis_url), decode_responses=True)

    def _queue_key(self, queue_name: QueueName) -> str:
        return f"{self.prefix}:queue:{queue_name.value}"

    def _processing_key(self, queue_name: QueueName) -> str:
        return f"{self.prefix}:processing:{queue_name.value}"

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    async def enqueue(self, job: Job) -> str:
        job_id = job.job_id
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(
                    self._job_key(job_id),
                    mapping={"payload": job.model_dump_json(), "queue": job.queue_name.value},
                )
                pipe.lpush(self._queue_key(job.queue_name), job_id)
                await pipe.execute()
        except RedisError as e:
            raise ExternalServiceError(f"Could not enqueue job {job_id}: {e}") from e
        return job_id

    async def cancel(self, job_id: str) -> bool:
        try:
            queue_value = await self._client.hget(self._job_key(job_id), "queue")
            if queue_value is None:
                return False
            removed = await self._client.lrem(self._queue_key(QueueName(queue_value)), 0, job_id)
            if removed:
                await self._client.delete(self._job_key(job_id))
            return bool(removed)
        except RedisError as e:
            raise ExternalServiceError(f"Could not cancel job {job_id}: {e}") from e

    async def dequeue(self, queue_name: QueueName, timeout: float = 5.0) -> QueuedJob | None:
        try:
            job_id = await self._client.blmove(
                self._queue_key(queue_name),
                self._processing_key(queue_name),
                timeout,
                "RIGHT",
                "LEFT",
            )
            if job_id is None:
                return None
            raw = await self._client.hget(self._job_key(job_id), "payload")
            if raw is None:
                # Payload already removed: the job was cancelled while being moved.
                await self._client.lrem(self._processing_key(queue_name), 1, job_id)
                return None
        except RedisError as e:
            raise ExternalServiceError(f"Could not read from {queue_name.value}: {e}") from e
        return QueuedJob(job_id=job_id, queue_name=queue_name, payload=parse_job(raw))

    async def ack(self, job: QueuedJob) -> None:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.lrem(self._processing_key(job.queue_name), 1, job.job_id)
                pipe.delete(self._job_key(job.job_id))
                await pipe.execute()
        except RedisError as e:
            raise ExternalServiceError(f"Could not ack job {job.job_id}: {e}") from e

    async def requeue_unacked(self, queue_name: QueueName) -> int:
        """Put jobs left in the processing list back at the head of the queue.

        Only safe while no worker is consuming `queue_name`; a job still being
        handled would run twice. Returns the number of jobs moved.
        """
        moved = 0
        try:
            while await self._client.lmove(
                self._processing_key(queue_name), self._queue_key(queue_name), "LEFT", "RIGHT"
            ):
                moved += 1
        except RedisError as e:
            raise ExternalServiceError(f"Could not requeue jobs of {queue_name.value}: {e}") from e
        if moved:
            logger.warning(f"Requeued {moved} unacked job(s) on {queue_name.value}")
        return moved

    async def close(self) -> None:
        await self._client.aclose()
