"""Shared fixtures.

Every test gets its own SQLite file. Rows are seeded through a synchronous
engine; code under test talks to the same file through aiosqlite.
"""

from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LLM_API_KEY", "test-key")

from collections.abc import Iterable

import pytest
from sqlalchemy.pool import NullPool
from sqlmodel import Session, SQLModel, create_engine, select

from docflow.config import Settings, get_settings
from docflow.database.models import Agent, AgentConnection, Document, WorkflowExecution, WorkflowStep
from docflow.database.session import build_engine, build_session_maker
from docflow.errors import ExternalServiceError
from docflow.jobs.memory import InMemoryJobQueue


get_settings.cache_clear()


class Seeder:
    """Writes fixture rows and reads back state with a synchronous session."""

    def __init__(self, engine):
        self.engine = engine

    def agent(
        self,
        name: str,
        *,
        order: int = 0,
        is_active: bool = True,
        system_prompt: str = "You improve documents.",
        user_prompt_template: str = "{{markdown}}",
    ) -> str:
        with Session(self.engine) as session:
            agent = Agent(
                name=name,
                display_name=name.title(),
                order=order,
                is_active=is_active,
                system_prompt=system_prompt,
                user_prompt_template=user_prompt_template,
            )
            session.add(agent)
            session.commit()
            return agent.id

    def connect(self, source_id: str, target_id: str, *, is_active: bool = True) -> str:
        with Session(self.engine) as session:
            connection = AgentConnection(
                source_agent_id=source_id,
                target_agent_id=target_id,
                is_active=is_active,
            )
            session.add(connection)
            session.commit()
            return connection.id

    def pipeline(self, names: Iterable[str], edges: Iterable[tuple[str, str]] = ()) -> dict[str, str]:
        """Create agents (ordered as given) and edges by name; returns name -> id."""
        ids = {name: self.agent(name, order=i) for i, name in enumerate(names)}
        for source, target in edges:
            self.connect(ids[source], ids[target])
        return ids

    def document(self, markdown: str | None = "# Jane Doe\n\nPython developer", name: str = "cv.pdf") -> str:
        with Session(self.engine) as session:
            document = Document(name=name, markdown_content=markdown)
            session.add(document)
            session.commit()
            return document.id

    def execution(self, execution_id: str) -> WorkflowExecution:
        with Session(self.engine) as session:
            execution = session.get(WorkflowExecution, execution_id)
            session.expunge(execution)
            return execution

    def executions(self) -> list[WorkflowExecution]:
        with Session(self.engine) as session:
            return list(session.exec(select(WorkflowExecution)).all())

    def steps(self, execution_id: str) -> dict[str, WorkflowStep]:
        """Steps of a run keyed by agent name."""
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkflowStep, Agent)
                .join(Agent, Agent.id == WorkflowStep.agent_id)
                .where(WorkflowStep.execution_id == execution_id)
            ).all()
            for step, _ in rows:
                session.expunge(step)
            return {agent.name: step for step, agent in rows}

    def statuses(self, execution_id: str) -> dict[str, str]:
        return {name: step.status for name, step in self.steps(execution_id).items()}


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "docflow.db"


@pytest.fixture
def sync_engine(db_path):
    engine = create_engine(f"sqlite:///{db_path}")
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def seed(sync_engine) -> Seeder:
    return Seeder(sync_engine)


@pytest.fixture
def session_maker(db_path, sync_engine):
    engine = build_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    return build_session_maker(engine)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        llm_api_key="test-key",
        llm_backoff_seconds=0.0,
        worker_poll_timeout_seconds=0.05,
    )


@pytest.fixture
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


class FakeRouter:
    """Stands in for the model router; echoes the input with a marker."""

    def __init__(self, fail_on_system: str | None = None):
        self.fail_on_system = fail_on_system
        self.calls: list[tuple[str, str]] = []

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append((system_prompt, user_prompt))
        if system_prompt == self.fail_on_system:
            raise ExternalServiceError("Language model returned no content")
        return f"{user_prompt} [improved]"


@pytest.fixture
def fake_router() -> FakeRouter:
    return FakeRouter(fail_on_system="broken")
