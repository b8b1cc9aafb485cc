"""Persistence helpers shared by the engine, the API and the workers.

Every status mutation goes through `transition_step` / `transition_execution`:
a single-row UPDATE guarded on the current status. A guard miss means another
writer already moved the row on, and the caller treats it as a no-op.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from docflow.database.models import (
    Agent,
    AgentConnection,
    AgentExecutionLog,
    Document,
    WorkflowExecution,
    WorkflowStep,
)
from docflow.errors import NotFoundError
from docflow.schemas import ACTIVE_EXECUTION_STATUSES, ExecutionStatus, StepStatus


def _values(statuses: Iterable[StepStatus | ExecutionStatus]) -> list[str]:
    return [s.value for s in statuses]


# =============================================================================
# Agents and connections
# =============================================================================

async def list_agents(db: AsyncSession, *, active_only: bool = False) -> Sequence[Agent]:
    query = select(Agent).order_by(Agent.order, Agent.name)
    if active_only:
        query = query.where(Agent.is_active == True)  # noqa: E712
    result = await db.execute(query)
    return result.scalars().all()


async def get_agent(db: AsyncSession, agent_id: str) -> Agent:
    agent = await db.get(Agent, agent_id)
    if agent is None:
        raise NotFoundError(f"Agent {agent_id} not found")
    return agent


async def find_agent_by_name(db: AsyncSession, name: str) -> Agent | None:
    result = await db.execute(select(Agent).where(Agent.name == name))
    return result.scalar_one_or_none()


async def list_connections(db: AsyncSession, *, active_only: bool = False) -> Sequence[AgentConnection]:
    query = select(AgentConnection).order_by(AgentConnection.order, AgentConnection.created_at)
    if active_only:
        query = query.where(AgentConnection.is_active == True)  # noqa: E712
    result = await db.execute(query)
    return result.scalars().all()


async def get_connection(db: AsyncSession, connection_id: str) -> AgentConnection:
    connection = await db.get(AgentConnection, connection_id)
    if connection is None:
        raise NotFoundError(f"Connection {connection_id} not found")
    return connection


async def find_connection(db: AsyncSession, source_agent_id: str, target_agent_id: str) -> AgentConnection | None:
    result = await db.execute(
        select(AgentConnection)
        .where(AgentConnection.source_agent_id == source_agent_id)
        .where(AgentConnection.target_agent_id == target_agent_id)
    )
    return result.scalar_one_or_none()


# =============================================================================
# Documents
# =============================================================================

async def get_document(db: AsyncSession, document_id: str) -> Document:
    document = await db.get(Document, document_id)
    if document is None:
        raise NotFoundError(f"Document {document_id} not found")
    return document


# =============================================================================
# Executions
# =============================================================================

async def get_execution(db: AsyncSession, execution_id: str) -> WorkflowExecution:
    execution = await db.get(WorkflowExecution, execution_id, populate_existing=True)
    if execution is None:
        raise NotFoundError(f"Execution {execution_id} not found")
    return execution


async def find_active_execution(db: AsyncSession, document_id: str) -> WorkflowExecution | None:
    result = await db.execute(
        select(WorkflowExecution)
        .where(WorkflowExecution.document_id == document_id)
        .where(col(WorkflowExecution.status).in_(_values(ACTIVE_EXECUTION_STATUSES)))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_executions(
    db: AsyncSession,
    *,
    document_id: str | None = None,
    status: ExecutionStatus | None = None,
    limit: int = 20,
    offset: int = 0,
) -> tuple[Sequence[WorkflowExecution], int]:
    query = select(WorkflowExecution)
    count_query = select(func.count()).select_from(WorkflowExecution)
    if document_id:
        query = query.where(WorkflowExecution.document_id == document_id)
        count_query = count_query.where(WorkflowExecution.document_id == document_id)
    if status:
        query = query.where(WorkflowExecution.status == status.value)
        count_query = count_query.where(WorkflowExecution.status == status.value)

    result = await db.execute(
        query.order_by(col(WorkflowExecution.started_at).desc()).offset(offset).limit(limit)
    )
    total = (await db.execute(count_query)).scalar_one()
    return result.scalars().all(), total


async def find_stale_executions(db: AsyncSession, started_before: datetime) -> Sequence[WorkflowExecution]:
    result = await db.execute(
        select(WorkflowExecution)
        .where(col(WorkflowExecution.status).in_(_values(ACTIVE_EXECUTION_STATUSES)))
        .where(col(WorkflowExecution.started_at) < started_before)
    )
    return result.scalars().all()


async def transition_execution(
    db: AsyncSession,
    execution_id: str,
    expected: Iterable[ExecutionStatus],
    new: ExecutionStatus,
    **values: Any,
) -> bool:
    """Move an execution to `new` if it is still in one of `expected`."""
    result = await db.execute(
        update(WorkflowExecution)
        .where(col(WorkflowExecution.id) == execution_id)
        .where(col(WorkflowExecution.status).in_(_values(expected)))
        .values(status=new.value, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# =============================================================================
# Steps
# =============================================================================

async def get_step(db: AsyncSession, step_id: str) -> WorkflowStep:
    step = await db.get(WorkflowStep, step_id, populate_existing=True)
    if step is None:
        raise NotFoundError(f"Step {step_id} not found")
    return step


async def list_steps(db: AsyncSession, execution_id: str) -> Sequence[WorkflowStep]:
    result = await db.execute(
        select(WorkflowStep)
        .where(WorkflowStep.execution_id == execution_id)
        .order_by(col(WorkflowStep.started_at).asc(), WorkflowStep.id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().all()


async def list_steps_with_agents(db: AsyncSession, execution_id: str) -> list[tuple[WorkflowStep, Agent]]:
    result = await db.execute(
        select(WorkflowStep, Agent)
        .join(Agent, col(Agent.id) == col(WorkflowStep.agent_id))
        .where(WorkflowStep.execution_id == execution_id)
        .order_by(Agent.order, Agent.name)
        .execution_options(populate_existing=True)
    )
    return [(step, agent) for step, agent in result.all()]


async def count_steps_by_status(db: AsyncSession, execution_id: str) -> dict[str, int]:
    result = await db.execute(
        select(WorkflowStep.status, func.count())
        .where(WorkflowStep.execution_id == execution_id)
        .group_by(WorkflowStep.status)
    )
    return {status: count for status, count in result.all()}


async def transition_step(
    db: AsyncSession,
    step_id: str,
    expected: Iterable[StepStatus],
    new: StepStatus,
    **values: Any,
) -> bool:
    """Move a step to `new` if it is still in one of `expected`."""
    result = await db.execute(
        update(WorkflowStep)
        .where(col(WorkflowStep.id) == step_id)
        .where(col(WorkflowStep.status).in_(_values(expected)))
        .values(status=new.value, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def transition_steps_of_execution(
    db: AsyncSession,
    execution_id: str,
    expected: Iterable[StepStatus],
    new: StepStatus,
    **values: Any,
) -> int:
    """Bulk guarded transition for every matching step of one execution."""
    result = await db.execute(
        update(WorkflowStep)
        .where(col(WorkflowStep.execution_id) == execution_id)
        .where(col(WorkflowStep.status).in_(_values(expected)))
        .values(status=new.value, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


# =============================================================================
# Agent logs
# =============================================================================

async def list_agent_logs(db: AsyncSession, agent_id: str, *, limit: int = 50) -> Sequence[AgentExecutionLog]:
    result = await db.execute(
        select(AgentExecutionLog)
        .where(AgentExecutionLog.agent_id == agent_id)
        .order_by(col(AgentExecutionLog.created_at).desc())
        .limit(limit)
    )
    return result.scalars().all()
