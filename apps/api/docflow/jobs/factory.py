"""Process-wide job queue instance."""

from __future__ import annotations

from docflow.config import get_settings
from docflow.jobs.base import JobQueue
from docflow.jobs.memory import InMemoryJobQueue
from docflow.jobs.redis_queue import RedisJobQueue


# Singleton instance
_queue: JobQueue | None = None


def get_job_queue() -> JobQueue:
    """Get the global job queue instance, built for the configured backend."""
    global _queue
    if _queue is None:
        if get_settings().queue_backend == "memory":
            _queue = InMemoryJobQueue()
        else:
            _queue = RedisJobQueue()
    return _queue


async def close_job_queue() -> None:
    global _queue
    if _queue is not None:
        await _queue.close()
        _queue = None
