"""Sweeper for runs abandoned by a crashed or stuck worker."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from docflow.config import Settings, get_settings
from docflow.database import repository
from docflow.database.models import utcnow
from docflow.database.session import SessionMaker, get_session_maker, session_scope
from docflow.schemas import ACTIVE_EXECUTION_STATUSES, CleanupResponse, ExecutionStatus, StepStatus


logger = logging.getLogger(__name__)


class CleanupSweeper:
    """Force-fails runs that have been active longer than the stale threshold.

    Steps that were dispatched or ready (PENDING/RUNNING) are failed with the
    step timeout message; steps still waiting on inputs never ran and are
    skipped. Every write is guarded, so sweeping twice changes nothing.
    """

    def __init__(self, session_maker: SessionMaker | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._session_maker = session_maker

    async def sweep(self, now: datetime | None = None) -> CleanupResponse:
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.settings.stale_run_minutes)
        cleaned_workflows = 0
        cleaned_steps = 0

        async with session_scope(self._session_maker or get_session_maker()) as db:
            stale = await repository.find_stale_executions(db, cutoff)
            for execution in stale:
                moved = await repository.transition_execution(
                    db,
                    execution.id,
                    ACTIVE_EXECUTION_STATUSES,
                    ExecutionStatus.FAILED,
                    completed_at=now,
                    error_message=self.settings.run_timeout_message,
                )
                if not moved:
                    continue
                cleaned_workflows += 1
                cleaned_steps += await repository.transition_steps_of_execution(
                    db,
                    execution.id,
                    [StepStatus.PENDING, StepStatus.RUNNING],
                    StepStatus.FAILED,
                    completed_at=now,
                    error_message=self.settings.step_timeout_message,
                )
                cleaned_steps += await repository.transition_steps_of_execution(
                    db,
                    execution.id,
                    [StepStatus.WAITING_INPUTS],
                    StepStatus.SKIPPED,
                    completed_at=now,
                )
                logger.warning(f"[{execution.id}] Timed out after {self.settings.stale_run_minutes} minutes")

        message = (
            f"Cleaned up {cleaned_workflows} stale workflow(s) and {cleaned_steps} step(s)"
            if cleaned_workflows
            else "No stale workflows found"
        )
        logger.info(message)
        return CleanupResponse(
            cleaned_workflows=cleaned_workflows,
            cleaned_steps=cleaned_steps,
            message=message,
        )
