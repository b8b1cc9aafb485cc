"""Pydantic schemas for all engine I/O contracts.

These schemas define the strict contracts between:
- API endpoints and clients
- The job queue and the workers pulling from it
- LLM model inputs/outputs
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


# =============================================================================
# Enums
# =============================================================================

class ExecutionStatus(str, Enum):
    """Status of a workflow execution (one run against one document)."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    """Status of one agent's step within an execution."""
    PENDING = "PENDING"
    WAITING_INPUTS = "WAITING_INPUTS"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


ACTIVE_EXECUTION_STATUSES = (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
NOT_STARTED_STEP_STATUSES = (StepStatus.PENDING, StepStatus.WAITING_INPUTS)
NON_TERMINAL_STEP_STATUSES = (
    StepStatus.PENDING,
    StepStatus.WAITING_INPUTS,
    StepStatus.RUNNING,
)


class QueueName(str, Enum):
    """Durable queues used by the engine."""
    AGENT_EXECUTION = "agent-execution"
    WORKFLOW_ORCHESTRATION = "workflow-orchestration"


# =============================================================================
# Job Schemas
# =============================================================================

class AgentExecutionJob(BaseModel):
    """Run one agent for one step. Consumed by agent workers."""
    kind: Literal["agent_execution"] = "agent_execution"
    execution_id: str
    step_id: str
    agent_id: str
    document_id: str

    @property
    def queue_name(self) -> QueueName:
        return QueueName.AGENT_EXECUTION

    @property
    def job_id(self) -> str:
        return f"exec-{self.execution_id}-step-{self.step_id}"


class CoordinatorJob(BaseModel):
    """Report a step outcome back to the scheduler."""
    kind: Literal["coordinator"] = "coordinator"
    execution_id: str
    step_id: str
    succeeded: bool
    output_text: str | None = None
    error: str | None = None
    attempt: int = 0  # redeliveries after a failed hand-off to the scheduler

    @property
    def queue_name(self) -> QueueName:
        return QueueName.WORKFLOW_ORCHESTRATION

    @property
    def job_id(self) -> str:
        outcome = "ok" if self.succeeded else "failed"
        return f"exec-{self.execution_id}-step-{self.step_id}-{outcome}"


JobPayload = Annotated[
    Union[AgentExecutionJob, CoordinatorJob],
    Field(discriminator="kind"),
]

_job_adapter: TypeAdapter[JobPayload] = TypeAdapter(JobPayload)


def parse_job(raw: str | bytes) -> AgentExecutionJob | CoordinatorJob:
    """Validate a serialized job payload coming off a queue."""
    return _job_adapter.validate_json(raw)


# =============================================================================
# Graph Schemas
# =============================================================================

class AgentCreateRequest(BaseModel):
    """API request to register an agent."""
    name: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    description: str | None = None
    system_prompt: str = ""
    user_prompt_template: str = "{{markdown}}"
    is_active: bool = True
    order: int = 0


class AgentUpdateRequest(BaseModel):
    """API request to edit an agent. Only provided fields change."""
    display_name: str | None = None
    description: str | None = None
    system_prompt: str | None = None
    user_prompt_template: str | None = None
    is_active: bool | None = None
    order: int | None = None


class AgentResponse(BaseModel):
    id: str
    name: str
    display_name: str
    description: str | None = None
    is_active: bool
    order: int


class ConnectionCreateRequest(BaseModel):
    """API request to connect two agents."""
    source_agent_id: str = Field(..., min_length=1)
    target_agent_id: str = Field(..., min_length=1)
    order: int = 0
    is_active: bool = True


class ConnectionUpdateRequest(BaseModel):
    order: int | None = None
    is_active: bool | None = None


class ConnectionResponse(BaseModel):
    id: str
    source_agent_id: str
    target_agent_id: str
    is_active: bool
    order: int


class GraphNode(BaseModel):
    """An agent as seen in the graph view."""
    id: str
    name: str
    display_name: str
    is_active: bool
    order: int
    level: int
    inputs: list[str] = Field(default_factory=list)
    outputs: list[str] = Field(default_factory=list)


class GraphEdge(BaseModel):
    id: str
    source: str
    target: str
    is_active: bool


class GraphResponse(BaseModel):
    nodes: list[GraphNode]
    edges: list[GraphEdge]
    is_valid: bool
    validation_errors: list[str] = Field(default_factory=list)


class AgentLogResponse(BaseModel):
    id: str
    execution_id: str
    step_id: str
    duration_ms: int | None = None
    success: bool
    error_message: str | None = None
    created_at: datetime


# =============================================================================
# Workflow Schemas
# =============================================================================

class WorkflowExecuteRequest(BaseModel):
    """API request to run the pipeline against a document."""
    document_id: str = Field(..., min_length=1)
    additional_context: str | None = Field(
        default=None, description="Operator notes made available to prompt templates"
    )

    model_config = {
        "json_schema_extra": {
            "example": {
                "document_id": "9f1c2b7e-3c1a-4b8e-9d55-1f0c7a2e4d10",
                "additional_context": "Emphasise leadership experience",
            }
        }
    }


class WorkflowExecuteResponse(BaseModel):
    execution_id: str
    status: ExecutionStatus
    message: str


class ProgressSummary(BaseModel):
    """Step counts for one execution, grouped by status."""
    total: int = 0
    pending: int = 0
    waiting_inputs: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    percentage: int = Field(default=0, ge=0, le=100)


class StepResponse(BaseModel):
    id: str
    agent_id: str
    agent_name: str | None = None
    agent_display_name: str | None = None
    status: StepStatus
    job_id: str | None = None
    predecessor_ids: list[str] = Field(default_factory=list)
    successor_ids: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None


class ExecutionResponse(BaseModel):
    """Full run detail."""
    id: str
    document_id: str
    status: ExecutionStatus
    error: str | None = None
    output_text: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    steps: list[StepResponse] = Field(default_factory=list)
    summary: ProgressSummary


class ProgressResponse(BaseModel):
    completed: int
    total: int
    percentage: int = Field(ge=0, le=100)


class ExecutionStatusResponse(BaseModel):
    """Lightweight polling payload."""
    id: str
    status: ExecutionStatus
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
    progress: ProgressResponse
    steps: list[StepResponse] = Field(default_factory=list)


class ExecutionListItem(BaseModel):
    id: str
    document_id: str
    status: ExecutionStatus
    started_at: datetime
    completed_at: datetime | None = None
    error: str | None = None
    summary: ProgressSummary


class Pagination(BaseModel):
    total: int
    limit: int
    offset: int
    has_more: bool


class ExecutionListResponse(BaseModel):
    executions: list[ExecutionListItem]
    pagination: Pagination


class CancelResponse(BaseModel):
    cancelled: bool
    warnings: list[str] = Field(default_factory=list)


class CleanupResponse(BaseModel):
    cleaned_workflows: int
    cleaned_steps: int
    message: str


# =============================================================================
# LLM Schemas
# =============================================================================

class LLMMessage(BaseModel):
    """A single message in an LLM conversation."""
    role: Literal["system", "user", "assistant"] = Field(...)
    content: str = Field(...)


class LLMResponse(BaseModel):
    """Response from an LLM provider."""
    content: str | None = None
    model: str
    usage: dict[str, Any] = Field(default_factory=dict)
    finish_reason: str | None = None
    raw_response: dict[str, Any] | None = None
