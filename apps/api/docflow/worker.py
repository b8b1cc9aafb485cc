"""Queue worker.

Consumes two queues:
- agent-execution: runs one agent per job, with bounded concurrency, and
  reports the outcome on the orchestration queue
- workflow-orchestration: feeds step outcomes to the scheduler, which
  advances the run
"""

from __future__ import annotations

import asyncio
import logging

from docflow.agent.runner import AgentRunner, AgentRunResult
from docflow.config import Settings, get_settings
from docflow.engine.scheduler import StepScheduler
from docflow.errors import DocflowError, ExternalServiceError
from docflow.jobs.base import JobQueue, QueuedJob
from docflow.schemas import AgentExecutionJob, CoordinatorJob, QueueName


logger = logging.getLogger(__name__)


class Worker:
    """Pulls jobs until stopped."""

    def __init__(
        self,
        queue: JobQueue,
        scheduler: StepScheduler | None = None,
        runner: AgentRunner | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.queue = queue
        self.scheduler = scheduler or StepScheduler(queue, settings=self.settings)
        self.runner = runner or AgentRunner()
        self.concurrency = self.settings.worker_concurrency
        self.poll_timeout = self.settings.worker_poll_timeout_seconds
        self._stop = asyncio.Event()

    # =========================================================================
    # Job handlers
    # =========================================================================

    async def handle_agent_job(self, queued: QueuedJob) -> None:
        job = queued.payload
        if not isinstance(job, AgentExecutionJob):
            logger.error(f"Unexpected job {queued.job_id} on {queued.queue_name.value}")
            await self.queue.ack(queued)
            return

        try:
            result = await self.runner.run(job)
        except Exception as e:
            # Any crash still has to reach the scheduler, or the run hangs until swept.
            logger.exception(f"[{job.execution_id}] Agent job {queued.job_id} crashed")
            result = AgentRunResult(step_id=job.step_id, error=f"Worker error: {e}")

        try:
            if not result.skipped:
                await self._report(CoordinatorJob(
                    execution_id=job.execution_id,
                    step_id=job.step_id,
                    succeeded=result.succeeded,
                    output_text=result.output_text,
                    error=result.error,
                ))
        finally:
            await self.queue.ack(queued)

    async def handle_coordinator_job(self, queued: QueuedJob) -> None:
        job = queued.payload
        if not isinstance(job, CoordinatorJob):
            logger.error(f"Unexpected job {queued.job_id} on {queued.queue_name.value}")
            await self.queue.ack(queued)
            return

        retry = False
        try:
            await self._apply(job)
        except DocflowError as e:
            logger.error(f"[{job.execution_id}] Could not apply outcome of step {job.step_id}: {e.message}")
        except Exception:
            logger.exception(f"[{job.execution_id}] Scheduler failed on outcome of step {job.step_id}")
            retry = True
        # Ack before redelivering: the redelivered job reuses the same id.
        await self.queue.ack(queued)
        if retry:
            await self._redeliver(job)

    async def _apply(self, job: CoordinatorJob) -> None:
        if job.succeeded:
            await self.scheduler.on_step_succeeded(job.step_id, job.output_text)
        else:
            await self.scheduler.on_step_failed(job.step_id, job.error or "Unknown error")

    async def _report(self, outcome: CoordinatorJob) -> None:
        try:
            await self.queue.enqueue(outcome)
        except ExternalServiceError as e:
            # The broker refused the report; hand the outcome to the scheduler here instead.
            logger.error(
                f"[{outcome.execution_id}] Could not report step {outcome.step_id}: {e.message}; "
                f"applying it directly"
            )
            await self._apply(outcome)

    async def _redeliver(self, job: CoordinatorJob) -> None:
        if job.attempt >= self.settings.worker_max_redeliveries:
            logger.error(
                f"[{job.execution_id}] Dropping outcome of step {job.step_id} after "
                f"{job.attempt} redeliveries; the sweeper will time the run out"
            )
            return
        await asyncio.sleep(self.poll_timeout)
        try:
            await self.queue.enqueue(job.model_copy(update={"attempt": job.attempt + 1}))
        except ExternalServiceError as e:
            logger.error(f"[{job.execution_id}] Could not redeliver outcome of step {job.step_id}: {e.message}")

    # =========================================================================
    # Loops
    # =========================================================================

    async def _run_agent_job(self, queued: QueuedJob, semaphore: asyncio.Semaphore) -> None:
        try:
            await self.handle_agent_job(queued)
        except Exception:
            logger.exception(f"Agent job {queued.job_id} failed outside the runner")
        finally:
            semaphore.release()

    async def _consume_agents(self) -> None:
        semaphore = asyncio.Semaphore(self.concurrency)
        in_flight: set[asyncio.Task] = set()

        while not self._stop.is_set():
            await semaphore.acquire()
            try:
                queued = await self.queue.dequeue(QueueName.AGENT_EXECUTION, self.poll_timeout)
            except ExternalServiceError as e:
                semaphore.release()
                logger.error(f"Agent queue unavailable: {e.message}")
                await asyncio.sleep(self.poll_timeout)
                continue
            if queued is None:
                semaphore.release()
                continue

            task = asyncio.create_task(self._run_agent_job(queued, semaphore))
            in_flight.add(task)
            task.add_done_callback(in_flight.discard)

        if in_flight:
            await asyncio.gather(*in_flight)

    async def _consume_coordinator(self) -> None:
        while not self._stop.is_set():
            try:
                queued = await self.queue.dequeue(QueueName.WORKFLOW_ORCHESTRATION, self.poll_timeout)
            except ExternalServiceError as e:
                logger.error(f"Orchestration queue unavailable: {e.message}")
                await asyncio.sleep(self.poll_timeout)
                continue
            if queued is None:
                continue
            try:
                await self.handle_coordinator_job(queued)
            except Exception:
                logger.exception(f"Coordinator job {queued.job_id} could not be handled")

    async def run(self) -> None:
        """Consume both queues until `stop()` is called."""
        logger.info(f"Worker started (concurrency={self.concurrency})")
        self._stop.clear()
        await asyncio.gather(self._consume_agents(), self._consume_coordinator())
        logger.info("Worker stopped")

    def stop(self) -> None:
        self._stop.set()

    async def drain(self, timeout: float = 0.1, max_jobs: int = 10_000) -> int:
        """Process jobs one at a time until both queues are empty.

        Outcome reports go first so a run advances before new agent work is
        picked up. Returns the number of jobs processed.
        """
        processed = 0
        while processed < max_jobs:
            queued = await self.queue.dequeue(QueueName.WORKFLOW_ORCHESTRATION, timeout)
            if queued is not None:
                await self.handle_coordinator_job(queued)
            else:
                queued = await self.queue.dequeue(QueueName.AGENT_EXECUTION, timeout)
                if queued is None:
                    break
                await self.handle_agent_job(queued)
            processed += 1
        return processed
