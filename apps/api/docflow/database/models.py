"""SQLModel database tables.

Tables:
- Agent: Pipeline nodes (one text transformation each)
- AgentConnection: Directed edges between agents
- Document: Input documents with their extracted text
- WorkflowExecution: One run of the pipeline against one document
- WorkflowStep: One agent's execution within a run
- AgentExecutionLog: Every agent call made by a worker
"""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def _new_id() -> str:
    return str(uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to a naive value read back from a backend that drops offsets (SQLite)."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _timestamp(**kwargs):
    return Field(sa_type=DateTime(timezone=True), **kwargs)


# =============================================================================
# Graph configuration
# =============================================================================

class Agent(SQLModel, table=True):
    """A named pipeline node."""

    __tablename__ = "agents"

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str = Field(unique=True, index=True, description="Stable machine name")
    display_name: str
    description: str | None = Field(default=None, sa_column=Column(Text))

    system_prompt: str = Field(default="", sa_column=Column(Text, nullable=False))
    user_prompt_template: str = Field(default="{{markdown}}", sa_column=Column(Text, nullable=False))

    is_active: bool = Field(default=True, index=True)
    order: int = Field(default=0, description="Display order")

    created_at: datetime = _timestamp(default_factory=utcnow)
    updated_at: datetime | None = _timestamp(default=None)


class AgentConnection(SQLModel, table=True):
    """Directed edge: the target agent consumes the source agent's output."""

    __tablename__ = "agent_connections"
    __table_args__ = (
        UniqueConstraint("source_agent_id", "target_agent_id", name="uq_agent_connections_pair"),
        CheckConstraint("source_agent_id <> target_agent_id", name="ck_agent_connections_no_self_loop"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    source_agent_id: str = Field(foreign_key="agents.id", index=True)
    target_agent_id: str = Field(foreign_key="agents.id", index=True)
    is_active: bool = Field(default=True, index=True)
    order: int = Field(default=0)
    created_at: datetime = _timestamp(default_factory=utcnow)


# =============================================================================
# Documents (owned by ingestion, read-only here)
# =============================================================================

class Document(SQLModel, table=True):
    """A document whose text the pipeline rewrites."""

    __tablename__ = "documents"

    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    markdown_content: str | None = Field(
        default=None, sa_column=Column(Text), description="Extracted text, None until extraction ran"
    )
    created_at: datetime = _timestamp(default_factory=utcnow)


# =============================================================================
# Runs
# =============================================================================

class WorkflowExecution(SQLModel, table=True):
    """One run against one document. Never deleted."""

    __tablename__ = "workflow_executions"
    __table_args__ = (
        Index("ix_workflow_executions_document_status", "document_id", "status"),
        Index("ix_workflow_executions_status_started", "status", "started_at"),
        # At most one PENDING or RUNNING run per document
        Index(
            "uq_workflow_executions_active_document",
            "document_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'RUNNING')"),
            postgresql_where=text("status IN ('PENDING', 'RUNNING')"),
        ),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    document_id: str = Field(foreign_key="documents.id", index=True)

    status: str = Field(default="PENDING")  # ExecutionStatus values
    additional_context: str | None = Field(default=None, sa_column=Column(Text))
    output_text: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    started_at: datetime = _timestamp(default_factory=utcnow)
    completed_at: datetime | None = _timestamp(default=None)
    created_at: datetime = _timestamp(default_factory=utcnow)


class WorkflowStep(SQLModel, table=True):
    """One agent's execution within one run.

    Predecessor and successor step ids are frozen when the run is compiled,
    so later graph edits never reach an in-flight run.
    """

    __tablename__ = "workflow_steps"
    __table_args__ = (
        Index("ix_workflow_steps_execution_status", "execution_id", "status"),
    )

    id: str = Field(default_factory=_new_id, primary_key=True)
    execution_id: str = Field(foreign_key="workflow_executions.id", index=True)
    agent_id: str = Field(foreign_key="agents.id", index=True)

    status: str = Field(default="PENDING")  # StepStatus values
    job_id: str | None = Field(default=None, index=True)

    predecessor_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    successor_ids: list[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))

    output_text: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    started_at: datetime | None = _timestamp(default=None)
    completed_at: datetime | None = _timestamp(default=None)


# =============================================================================
# Agent call log (for debugging and prompt tuning)
# =============================================================================

class AgentExecutionLog(SQLModel, table=True):
    """Log of every agent call made by a worker."""

    __tablename__ = "agent_execution_logs"

    id: str = Field(default_factory=_new_id, primary_key=True)
    agent_id: str = Field(foreign_key="agents.id", index=True)
    execution_id: str = Field(index=True)
    step_id: str = Field(index=True)

    system_prompt: str | None = Field(default=None, sa_column=Column(Text))
    user_prompt: str | None = Field(default=None, sa_column=Column(Text))
    input_text: str | None = Field(default=None, sa_column=Column(Text))
    output_text: str | None = Field(default=None, sa_column=Column(Text))

    duration_ms: int | None = Field(default=None)
    success: bool = Field(default=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))

    created_at: datetime = _timestamp(default_factory=utcnow)
