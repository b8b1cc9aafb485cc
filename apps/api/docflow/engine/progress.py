"""Run-level progress derived from step rows. Read-only."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database import repository
from docflow.schemas import ExecutionStatus, ProgressResponse, ProgressSummary, StepStatus


def summarize(counts: Mapping[str, int], execution_status: ExecutionStatus | str) -> ProgressSummary:
    """Build the summary from step counts keyed by status value.

    The percentage is completed/total rounded down. Steps and the run are
    written separately, so a poll can see every step COMPLETED before the run
    itself is; the percentage stays below 100 until the run is COMPLETED.
    """
    status = ExecutionStatus(execution_status)
    by_status = {s: int(counts.get(s.value, 0)) for s in StepStatus}
    total = sum(by_status.values())
    completed = by_status[StepStatus.COMPLETED]

    if total == 0:
        percentage = 0
    elif status == ExecutionStatus.COMPLETED:
        percentage = 100
    else:
        percentage = min(completed * 100 // total, 99)
    percentage = max(0, min(percentage, 100))

    return ProgressSummary(
        total=total,
        pending=by_status[StepStatus.PENDING],
        waiting_inputs=by_status[StepStatus.WAITING_INPUTS],
        running=by_status[StepStatus.RUNNING],
        completed=completed,
        failed=by_status[StepStatus.FAILED],
        skipped=by_status[StepStatus.SKIPPED],
        percentage=percentage,
    )


def summarize_steps(step_statuses: Iterable[str], execution_status: ExecutionStatus | str) -> ProgressSummary:
    return summarize(Counter(step_statuses), execution_status)


def to_progress(summary: ProgressSummary) -> ProgressResponse:
    return ProgressResponse(
        completed=summary.completed,
        total=summary.total,
        percentage=summary.percentage,
    )


class ProgressAggregator:
    """Serves the polling endpoints."""

    async def for_execution(self, db: AsyncSession, execution_id: str) -> ProgressSummary:
        execution = await repository.get_execution(db, execution_id)
        counts = await repository.count_steps_by_status(db, execution_id)
        return summarize(counts, execution.status)
