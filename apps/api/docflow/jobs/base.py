"""Abstract base class for job queue backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from docflow.schemas import AgentExecutionJob, CoordinatorJob, QueueName


Job = AgentExecutionJob | CoordinatorJob


@dataclass(frozen=True)
class QueuedJob:
    """A job taken off a queue, to be acked once handled."""
    job_id: str
    queue_name: QueueName
    payload: Job


class JobQueue(ABC):
    """Durable job queue used to hand work to workers.

    Backends (Redis, in-memory) implement this interface so the scheduler and
    the workers never depend on the broker in use.
    """

    @abstractmethod
    async def enqueue(self, job: Job) -> str:
        """Queue a job and return its handle.

        Raises:
            ExternalServiceError: the broker could not accept the job
        """
        ...

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Remove a job that no worker has taken yet.

        Returns:
            True if the job was removed, False if it was already taken or gone
        """
        ...

    @abstractmethod
    async def dequeue(self, queue_name: QueueName, timeout: float = 5.0) -> QueuedJob | None:
        """Take the next job, waiting up to `timeout` seconds."""
        ...

    @abstractmethod
    async def ack(self, job: QueuedJob) -> None:
        """Forget a job once its handler finished."""
        ...

    async def close(self) -> None:
        """Release broker connections."""
