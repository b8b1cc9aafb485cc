"""Step scheduler: the run-time state machine.

Step states:
    PENDING / WAITING_INPUTS -> RUNNING (dispatched) -> COMPLETED | FAILED
    any non-terminal step of a cancelled or failed run -> SKIPPED

Run states:
    PENDING -> RUNNING (first dispatch) -> COMPLETED | FAILED | CANCELLED

A step is dispatched once every predecessor is COMPLETED. The frontier is
re-evaluated on every step completion; nothing polls. Each operation commits
its status writes before touching the queue, so a worker never sees a job
whose step is not yet durably RUNNING, and a successor is never enqueued
before its predecessors are durably COMPLETED.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from docflow.config import Settings, get_settings
from docflow.database import repository
from docflow.database.models import Agent, WorkflowExecution, WorkflowStep, as_utc, utcnow
from docflow.database.session import SessionMaker, get_session_maker, session_scope
from docflow.engine.compiler import WorkflowCompiler
from docflow.engine.graph import transitive_successors
from docflow.errors import ConflictError, ExternalServiceError, NotFoundError, RunAlreadyFinishedError
from docflow.jobs.base import JobQueue
from docflow.schemas import (
    ACTIVE_EXECUTION_STATUSES,
    NON_TERMINAL_STEP_STATUSES,
    NOT_STARTED_STEP_STATUSES,
    AgentExecutionJob,
    CancelResponse,
    ExecutionStatus,
    StepStatus,
)


logger = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, timezone.utc)


class StepScheduler:
    """Dispatches ready steps and reacts to step outcomes."""

    def __init__(
        self,
        queue: JobQueue,
        session_maker: SessionMaker | None = None,
        settings: Settings | None = None,
        compiler: WorkflowCompiler | None = None,
    ):
        self.queue = queue
        self.settings = settings or get_settings()
        self.compiler = compiler or WorkflowCompiler(self.settings)
        self._session_maker = session_maker

    def _session(self):
        return session_scope(self._session_maker or get_session_maker())

    # =========================================================================
    # Starting runs
    # =========================================================================

    async def start_run(self, document_id: str, additional_context: str | None = None) -> WorkflowExecution:
        """Compile a run for the document and dispatch its initial frontier.

        Raises:
            NotFoundError: unknown document, or no extracted content yet
            ConflictError: the document already has a run in progress
            NoActiveAgentsError / CycleDetectedError: nothing valid to compile
        """
        try:
            async with self._session() as db:
                document = await repository.get_document(db, document_id)
                if not document.markdown_content:
                    raise NotFoundError(
                        f"Document {document_id} has no extracted content; run extraction first"
                    )
                active = await repository.find_active_execution(db, document_id)
                if active is not None:
                    raise self._already_running(document_id, active.id)
                compiled = await self.compiler.compile(db, document_id, additional_context)
                execution_id = compiled.execution.id
        except IntegrityError:
            # A concurrent request created the active run between our check and insert.
            async with self._session() as db:
                active = await repository.find_active_execution(db, document_id)
            raise self._already_running(document_id, active.id if active else None) from None

        logger.info(f"[{execution_id}] Run created for document {document_id}")
        await self.dispatch_ready(execution_id)

        async with self._session() as db:
            return await repository.get_execution(db, execution_id)

    @staticmethod
    def _already_running(document_id: str, execution_id: str | None) -> ConflictError:
        return ConflictError(
            f"A workflow is already in progress for document {document_id}",
            details={"execution_id": execution_id} if execution_id else None,
        )

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def dispatch_ready(self, execution_id: str) -> list[str]:
        """Dispatch every step whose predecessors are all COMPLETED."""
        async with self._session() as db:
            execution = await repository.get_execution(db, execution_id)
            if ExecutionStatus(execution.status) not in ACTIVE_EXECUTION_STATUSES:
                return []
            steps = await repository.list_steps(db, execution_id)
        return await self._dispatch_frontier(execution, steps)

    async def _dispatch_frontier(
        self,
        execution: WorkflowExecution,
        steps: Sequence[WorkflowStep],
    ) -> list[str]:
        completed = {s.id for s in steps if s.status == StepStatus.COMPLETED.value}
        ready = [
            s for s in steps
            if StepStatus(s.status) in NOT_STARTED_STEP_STATUSES
            and set(s.predecessor_ids) <= completed
        ]
        dispatched: list[str] = []
        for step in ready:
            if await self._dispatch(execution, step):
                dispatched.append(step.id)
        return dispatched

    async def _dispatch(self, execution: WorkflowExecution, step: WorkflowStep) -> bool:
        job = AgentExecutionJob(
            execution_id=execution.id,
            step_id=step.id,
            agent_id=step.agent_id,
            document_id=execution.document_id,
        )
        async with self._session() as db:
            claimed = await repository.transition_step(
                db,
                step.id,
                NOT_STARTED_STEP_STATUSES,
                StepStatus.RUNNING,
                started_at=utcnow(),
                job_id=job.job_id,
            )
            if not claimed:
                # Another completion callback dispatched it first.
                return False
            await repository.transition_execution(
                db, execution.id, [ExecutionStatus.PENDING], ExecutionStatus.RUNNING
            )

        try:
            await self.queue.enqueue(job)
        except ExternalServiceError as e:
            logger.error(f"[{execution.id}] Could not dispatch step {step.id}: {e.message}")
            await self.on_step_failed(step.id, e.message)
            return False

        logger.info(f"[{execution.id}] Dispatched step {step.id} (agent {step.agent_id})")
        return True

    # =========================================================================
    # Outcomes
    # =========================================================================

    async def on_step_succeeded(self, step_id: str, output_text: str | None = None) -> None:
        """Record a step's success and advance the frontier."""
        async with self._session() as db:
            step = await repository.get_step(db, step_id)
            moved = await repository.transition_step(
                db,
                step_id,
                [StepStatus.RUNNING],
                StepStatus.COMPLETED,
                completed_at=utcnow(),
                output_text=output_text,
            )
        if not moved:
            logger.info(f"[{step.execution_id}] Ignoring success of step {step_id}: already {step.status}")
            return
        await self._advance(step.execution_id)

    async def _advance(self, execution_id: str) -> None:
        async with self._session() as db:
            execution = await repository.get_execution(db, execution_id)
            if ExecutionStatus(execution.status) not in ACTIVE_EXECUTION_STATUSES:
                logger.info(f"[{execution_id}] Run is {execution.status}; not propagating")
                return
            steps = await repository.list_steps(db, execution_id)

        if all(s.status == StepStatus.COMPLETED.value for s in steps):
            await self._complete_run(execution, steps)
            return
        await self._dispatch_frontier(execution, steps)

    async def _complete_run(self, execution: WorkflowExecution, steps: Sequence[WorkflowStep]) -> None:
        terminals = [s for s in steps if not s.successor_ids]
        last = max(terminals, key=lambda s: as_utc(s.completed_at) if s.completed_at else _EPOCH, default=None)
        async with self._session() as db:
            moved = await repository.transition_execution(
                db,
                execution.id,
                ACTIVE_EXECUTION_STATUSES,
                ExecutionStatus.COMPLETED,
                completed_at=utcnow(),
                output_text=last.output_text if last else None,
            )
        if moved:
            logger.info(f"[{execution.id}] Run completed ({len(steps)} steps)")

    async def on_step_failed(self, step_id: str, error: str) -> None:
        """Record a step's failure and fail the run.

        Downstream steps that have not started are skipped, and so is every
        other step still waiting, since a failed run dispatches nothing more.
        Steps already RUNNING are left to finish.
        """
        now = utcnow()
        async with self._session() as db:
            step = await repository.get_step(db, step_id)
            moved = await repository.transition_step(
                db,
                step_id,
                [StepStatus.RUNNING],
                StepStatus.FAILED,
                completed_at=now,
                error_message=error,
            )
            if not moved:
                logger.info(f"[{step.execution_id}] Ignoring failure of step {step_id}: already {step.status}")
                return

            steps = await repository.list_steps(db, step.execution_id)
            downstream = transitive_successors(step_id, {s.id: s.successor_ids for s in steps})
            skipped = 0
            for step_to_skip in downstream:
                if await repository.transition_step(
                    db, step_to_skip, NOT_STARTED_STEP_STATUSES, StepStatus.SKIPPED, completed_at=now
                ):
                    skipped += 1
            skipped += await repository.transition_steps_of_execution(
                db, step.execution_id, NOT_STARTED_STEP_STATUSES, StepStatus.SKIPPED, completed_at=now
            )

            agent = await db.get(Agent, step.agent_id)
            agent_name = agent.name if agent else step.agent_id
            await repository.transition_execution(
                db,
                step.execution_id,
                ACTIVE_EXECUTION_STATUSES,
                ExecutionStatus.FAILED,
                completed_at=now,
                error_message=f"Step '{agent_name}' failed: {error}",
            )

        logger.warning(
            f"[{step.execution_id}] Step {step_id} ({agent_name}) failed: {error}; "
            f"{skipped} steps skipped"
        )

    # =========================================================================
    # Cancellation
    # =========================================================================

    async def cancel_run(self, execution_id: str) -> CancelResponse:
        """Cancel a run that has not finished yet.

        Raises:
            NotFoundError: unknown execution
            RunAlreadyFinishedError: the run is already terminal
        """
        now = utcnow()
        async with self._session() as db:
            execution = await repository.get_execution(db, execution_id)
            moved = await repository.transition_execution(
                db,
                execution_id,
                ACTIVE_EXECUTION_STATUSES,
                ExecutionStatus.CANCELLED,
                completed_at=now,
                error_message=self.settings.cancel_message,
            )
            if not moved:
                raise RunAlreadyFinishedError(
                    f"Execution {execution_id} is already finished ({execution.status})"
                )
            job_ids = [
                s.job_id for s in await repository.list_steps(db, execution_id)
                if s.job_id and StepStatus(s.status) in NON_TERMINAL_STEP_STATUSES
            ]
            skipped = await repository.transition_steps_of_execution(
                db, execution_id, NON_TERMINAL_STEP_STATUSES, StepStatus.SKIPPED, completed_at=now
            )

        warnings: list[str] = []
        for job_id in job_ids:
            try:
                await self.queue.cancel(job_id)
            except ExternalServiceError as e:
                logger.error(f"[{execution_id}] Failed to remove job {job_id}: {e.message}")
                warnings.append(f"Failed to remove job: {job_id}")

        logger.info(f"[{execution_id}] Run cancelled; {skipped} steps skipped")
        return CancelResponse(cancelled=True, warnings=warnings)
