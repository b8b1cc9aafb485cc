"""FastAPI routes for the Docflow API.

Agents:
- GET    /agents                  - List agents
- POST   /agents                  - Register an agent
- GET    /agents/graph            - Graph view with levels and validation
- GET    /agents/{id}             - Agent detail
- PATCH  /agents/{id}             - Edit an agent
- GET    /agents/{id}/logs        - Recent calls made by an agent

Connections:
- GET    /agents/connections      - List connections
- POST   /agents/connections      - Connect two agents (cycle-checked)
- GET    /agents/connections/{id}
- PATCH  /agents/connections/{id} - Reorder or (de)activate
- DELETE /agents/connections/{id}

Workflow:
- POST   /workflow/execute        - Start a run for a document
- GET    /workflow/list           - List runs
- GET    /workflow/status/{id}    - Lightweight polling payload
- GET    /workflow/{id}           - Run detail
- DELETE /workflow/{id}           - Cancel a run
- POST   /workflow/cleanup        - Force-fail stale runs
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.config import get_settings
from docflow.database import repository
from docflow.database.models import Agent, AgentConnection, WorkflowStep, utcnow
from docflow.database.session import get_db
from docflow.engine.cleanup import CleanupSweeper
from docflow.engine.graph import AgentGraph, compute_levels, validate_graph, would_create_cycle
from docflow.engine.progress import ProgressAggregator, to_progress
from docflow.engine.scheduler import StepScheduler
from docflow.errors import ConflictError, CycleDetectedError, ValidationError
from docflow.jobs.base import JobQueue
from docflow.jobs.factory import get_job_queue
from docflow.schemas import (
    AgentCreateRequest,
    AgentLogResponse,
    AgentResponse,
    AgentUpdateRequest,
    CancelResponse,
    CleanupResponse,
    ConnectionCreateRequest,
    ConnectionResponse,
    ConnectionUpdateRequest,
    ExecutionListItem,
    ExecutionListResponse,
    ExecutionResponse,
    ExecutionStatus,
    ExecutionStatusResponse,
    GraphEdge,
    GraphNode,
    GraphResponse,
    Pagination,
    StepResponse,
    WorkflowExecuteRequest,
    WorkflowExecuteResponse,
)


logger = logging.getLogger(__name__)
router = APIRouter()

settings = get_settings()
progress = ProgressAggregator()


# =============================================================================
# Dependencies
# =============================================================================

def get_scheduler(queue: JobQueue = Depends(get_job_queue)) -> StepScheduler:
    return StepScheduler(queue)


def get_sweeper() -> CleanupSweeper:
    return CleanupSweeper()


# =============================================================================
# Health Check
# =============================================================================

@router.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
    }


# =============================================================================
# Helpers
# =============================================================================

def _agent_response(agent: Agent) -> AgentResponse:
    return AgentResponse(
        id=agent.id,
        name=agent.name,
        display_name=agent.display_name,
        description=agent.description,
        is_active=agent.is_active,
        order=agent.order,
    )


def _connection_response(connection: AgentConnection) -> ConnectionResponse:
    return ConnectionResponse(
        id=connection.id,
        source_agent_id=connection.source_agent_id,
        target_agent_id=connection.target_agent_id,
        is_active=connection.is_active,
        order=connection.order,
    )


def _step_response(step: WorkflowStep, agent: Agent | None) -> StepResponse:
    return StepResponse(
        id=step.id,
        agent_id=step.agent_id,
        agent_name=agent.name if agent else None,
        agent_display_name=agent.display_name if agent else None,
        status=step.status,
        job_id=step.job_id,
        predecessor_ids=step.predecessor_ids,
        successor_ids=step.successor_ids,
        started_at=step.started_at,
        completed_at=step.completed_at,
        error=step.error_message,
    )


async def _active_edges(db: AsyncSession, *, exclude_id: str | None = None) -> list[tuple[str, str]]:
    connections = await repository.list_connections(db, active_only=True)
    return [
        (c.source_agent_id, c.target_agent_id)
        for c in connections
        if c.id != exclude_id
    ]


# =============================================================================
# Agents Endpoints
# =============================================================================

@router.get("/agents", response_model=list[AgentResponse])
async def list_agents(
    active_only: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> list[AgentResponse]:
    agents = await repository.list_agents(db, active_only=active_only)
    return [_agent_response(a) for a in agents]


@router.post("/agents", response_model=AgentResponse, status_code=201)
async def create_agent(
    request: AgentCreateRequest,
    db: AsyncSession = Depends(get_db),
) -> AgentResponse:
    if await repository.find_agent_by_name(db, request.name) is not None:
        raise ConflictError(f"An agent named '{request.name}' already exists")

    agent = Agent(**request.model_dump())
    db.add(agent)
    await db.commit()
    await db.refresh(agent)

    logger.info(f"Created agent {agent.name} ({agent.id})")
    return _agent_response(agent)


@router.get("/agents/graph", response_model=GraphResponse)
async def get_graph(db: AsyncSession = Depends(get_db)) -> GraphResponse:
    """Graph view over the active configuration.

    Validation errors are reported, not raised, so an operator can see and
    repair a broken configuration.
    """
    agents = await repository.list_agents(db)
    connections = await repository.list_connections(db)
    graph = AgentGraph.from_records(agents, connections, active_only=True)

    errors = validate_graph(graph)
    levels = compute_levels(graph)

    # Inactive agents are listed but sit outside the graph
    nodes = [
        GraphNode(
            id=agent.id,
            name=agent.name,
            display_name=agent.display_name,
            is_active=agent.is_active,
            order=agent.order,
            level=levels.get(agent.id, 0),
            inputs=list(graph.incoming.get(agent.id, ())),
            outputs=list(graph.outgoing.get(agent.id, ())),
        )
        for agent in agents
    ]
    edges = [
        GraphEdge(
            id=c.id,
            source=c.source_agent_id,
            target=c.target_agent_id,
            is_active=c.is_active,
        )
        for c in connections
    ]
    return GraphResponse(nodes=nodes, edges=edges, is_valid=not errors, validation_errors=errors)


# =============================================================================
# Connections Endpoints
# =============================================================================

@router.get("/agents/connections", response_model=list[ConnectionResponse])
async def list_connections(
    active_only: bool = Query(default=False),
    db: AsyncSession = Depends(get_db),
) -> list[ConnectionResponse]:
    connections = await repository.list_connections(db, active_only=active_only)
    return [_connection_response(c) for c in connections]


@router.post("/agents/connections", response_model=ConnectionResponse, status_code=201)
async def create_connection(
    request: ConnectionCreateRequest,
    db: AsyncSession = Depends(get_db),
) -> ConnectionResponse:
    """Connect two agents.

    Rejected with 400 for a self-loop or an edge that would close a cycle,
    404 for an unknown agent, and 409 when the pair is already connected.
    """
    source_id, target_id = request.source_agent_id, request.target_agent_id
    if source_id == target_id:
        raise ValidationError("An agent cannot be connected to itself")

    await repository.get_agent(db, source_id)
    await repository.get_agent(db, target_id)

    if await repository.find_connection(db, source_id, target_id) is not None:
        raise ConflictError("These agents are already connected")

    if request.is_active and would_create_cycle(source_id, target_id, await _active_edges(db)):
        raise CycleDetectedError("This connection would create a cycle")

    connection = AgentConnection(
        source_agent_id=source_id,
        target_agent_id=target_id,
        order=request.order,
        is_active=request.is_active,
    )
    db.add(connection)
    await db.commit()
    await db.refresh(connection)

    logger.info(f"Connected {source_id} -> {target_id}")
    return _connection_response(connection)


@router.get("/agents/connections/{connection_id}", response_model=ConnectionResponse)
async def get_connection(connection_id: str, db: AsyncSession = Depends(get_db)) -> ConnectionResponse:
    return _connection_response(await repository.get_connection(db, connection_id))


@router.patch("/agents/connections/{connection_id}", response_model=ConnectionResponse)
async def update_connection(
    connection_id: str,
    request: ConnectionUpdateRequest,
    db: AsyncSession = Depends(get_db),
) -> ConnectionResponse:
    connection = await repository.get_connection(db, connection_id)

    if request.is_active and not connection.is_active:
        edges = await _active_edges(db, exclude_id=connection.id)
        if would_create_cycle(connection.source_agent_id, connection.target_agent_id, edges):
            raise CycleDetectedError("Re-activating this connection would create a cycle")

    for key, value in request.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(connection, key, value)
    await db.commit()
    await db.refresh(connection)
    return _connection_response(connection)


@router.delete("/agents/connections/{connection_id}")
async def delete_connection(connection_id: str, db: AsyncSession = Depends(get_db)) -> dict:
    connection = await repository.get_connection(db, connection_id)
    await db.delete(connection)
    await db.commit()
    return {"deleted": True, "id": connection_id}


# =============================================================================
# Single-agent Endpoints
# =============================================================================

@router.get("/agents/{agent_id}", response_model=AgentResponse)
async def get_agent(agent_id: str, db: AsyncSession = Depends(get_db)) -> AgentResponse:
    return _agent_response(await repository.get_agent(db, agent_id))


@router.patch("/agents/{agent_id}", response_model=AgentResponse)
async def update_agent(
    agent_id: str,
    request: AgentUpdateRequest,
    db: AsyncSession = Depends(get_db),
) -> AgentResponse:
    """Edit an agent. Runs already compiled keep using their own snapshot."""
    agent = await repository.get_agent(db, agent_id)
    for key, value in request.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(agent, key, value)
    agent.updated_at = utcnow()
    await db.commit()
    await db.refresh(agent)
    return _agent_response(agent)


@router.get("/agents/{agent_id}/logs", response_model=list[AgentLogResponse])
async def list_agent_logs(
    agent_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[AgentLogResponse]:
    await repository.get_agent(db, agent_id)
    logs = await repository.list_agent_logs(db, agent_id, limit=limit)
    return [
        AgentLogResponse(
            id=log.id,
            execution_id=log.execution_id,
            step_id=log.step_id,
            duration_ms=log.duration_ms,
            success=log.success,
            error_message=log.error_message,
            created_at=log.created_at,
        )
        for log in logs
    ]


# =============================================================================
# Workflow Endpoints
# =============================================================================

@router.post("/workflow/execute", response_model=WorkflowExecuteResponse)
async def execute_workflow(
    request: WorkflowExecuteRequest,
    scheduler: StepScheduler = Depends(get_scheduler),
) -> WorkflowExecuteResponse:
    """Start a run for a document.

    The run executes asynchronously in the workers.
    Use GET /workflow/status/{id} to poll for progress.
    """
    execution = await scheduler.start_run(request.document_id, request.additional_context)
    return WorkflowExecuteResponse(
        execution_id=execution.id,
        status=execution.status,
        message="Workflow started",
    )


@router.get("/workflow/list", response_model=ExecutionListResponse)
async def list_workflows(
    document_id: str | None = Query(default=None),
    status: ExecutionStatus | None = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
) -> ExecutionListResponse:
    executions, total = await repository.list_executions(
        db, document_id=document_id, status=status, limit=limit, offset=offset
    )
    items = []
    for execution in executions:
        items.append(ExecutionListItem(
            id=execution.id,
            document_id=execution.document_id,
            status=execution.status,
            started_at=execution.started_at,
            completed_at=execution.completed_at,
            error=execution.error_message,
            summary=await progress.for_execution(db, execution.id),
        ))
    return ExecutionListResponse(
        executions=items,
        pagination=Pagination(
            total=total,
            limit=limit,
            offset=offset,
            has_more=offset + len(items) < total,
        ),
    )


@router.get("/workflow/status/{execution_id}", response_model=ExecutionStatusResponse)
async def get_workflow_status(execution_id: str, db: AsyncSession = Depends(get_db)) -> ExecutionStatusResponse:
    execution = await repository.get_execution(db, execution_id)
    summary = await progress.for_execution(db, execution_id)
    rows = await repository.list_steps_with_agents(db, execution_id)
    return ExecutionStatusResponse(
        id=execution.id,
        status=execution.status,
        error=execution.error_message,
        started_at=execution.started_at,
        completed_at=execution.completed_at,
        progress=to_progress(summary),
        steps=[_step_response(step, agent) for step, agent in rows],
    )


@router.post("/workflow/cleanup", response_model=CleanupResponse)
async def cleanup_workflows(sweeper: CleanupSweeper = Depends(get_sweeper)) -> CleanupResponse:
    return await sweeper.sweep()


@router.get("/workflow/{execution_id}", response_model=ExecutionResponse)
async def get_workflow(execution_id: str, db: AsyncSession = Depends(get_db)) -> ExecutionResponse:
    execution = await repository.get_execution(db, execution_id)
    summary = await progress.for_execution(db, execution_id)
    rows = await repository.list_steps_with_agents(db, execution_id)
    return ExecutionResponse(
        id=execution.id,
        document_id=execution.document_id,
        status=execution.status,
        error=execution.error_message,
        output_text=execution.output_text,
        started_at=execution.started_at,
        completed_at=execution.completed_at,
        steps=[_step_response(step, agent) for step, agent in rows],
        summary=summary,
    )


@router.delete("/workflow/{execution_id}", response_model=CancelResponse)
async def cancel_workflow(
    execution_id: str,
    scheduler: StepScheduler = Depends(get_scheduler),
) -> CancelResponse:
    """Cancel a run. Finished runs are rejected with 400."""
    return await scheduler.cancel_run(execution_id)
