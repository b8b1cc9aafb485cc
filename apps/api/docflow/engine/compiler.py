"""Workflow compiler: graph configuration -> concrete per-run plan.

Compilation snapshots the active agents and connections, re-checks that the
snapshot is acyclic, then creates one WorkflowExecution and one WorkflowStep
per agent. Each step records the step ids of its predecessors and successors
for this run; nothing later reads the connection table for a compiled run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from docflow.config import Settings, get_settings
from docflow.database import repository
from docflow.database.models import WorkflowExecution, WorkflowStep
from docflow.engine.graph import AgentGraph, detect_cycle
from docflow.errors import CycleDetectedError, NoActiveAgentsError
from docflow.schemas import ExecutionStatus, StepStatus


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StepPlan:
    """What one agent's step looks like before ids are assigned."""
    agent_id: str
    predecessors: tuple[str, ...]
    successors: tuple[str, ...]

    @property
    def initial_status(self) -> StepStatus:
        # Fan-in steps wait for every predecessor; roots are ready at once.
        return StepStatus.WAITING_INPUTS if self.predecessors else StepStatus.PENDING


@dataclass
class CompiledRun:
    execution: WorkflowExecution
    steps: list[WorkflowStep]

    @property
    def ready_steps(self) -> list[WorkflowStep]:
        return [s for s in self.steps if not s.predecessor_ids]


def plan_steps(graph: AgentGraph) -> list[StepPlan]:
    """Per-agent predecessor/successor sets. Pure; ids are agent ids."""
    return [
        StepPlan(
            agent_id=node,
            predecessors=graph.predecessors(node),
            successors=graph.successors(node),
        )
        for node in graph.nodes
    ]


class WorkflowCompiler:
    """Turns the current graph configuration into steps for one run."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()

    async def load_graph(self, db: AsyncSession) -> AgentGraph:
        """Snapshot active agents and the active connections between them."""
        excluded = set(self.settings.excluded_agent_names)
        agents = [
            a for a in await repository.list_agents(db, active_only=True)
            if a.name not in excluded
        ]
        connections = await repository.list_connections(db, active_only=True)
        return AgentGraph.from_records(agents, connections)

    async def compile(
        self,
        db: AsyncSession,
        document_id: str,
        additional_context: str | None = None,
    ) -> CompiledRun:
        """Create the execution and its steps in the caller's transaction.

        Raises:
            NoActiveAgentsError: no agent would take part in the run
            CycleDetectedError: the active configuration is not a DAG
        """
        graph = await self.load_graph(db)

        if not graph.nodes:
            raise NoActiveAgentsError()
        if detect_cycle(graph):
            raise CycleDetectedError("The active agent graph contains a cycle; fix the connections first")

        execution = WorkflowExecution(
            document_id=document_id,
            status=ExecutionStatus.PENDING.value,
            additional_context=additional_context,
        )
        db.add(execution)
        await db.flush()

        plans = plan_steps(graph)
        steps_by_agent = {
            plan.agent_id: WorkflowStep(
                execution_id=execution.id,
                agent_id=plan.agent_id,
                status=plan.initial_status.value,
            )
            for plan in plans
        }
        for plan in plans:
            step = steps_by_agent[plan.agent_id]
            step.predecessor_ids = [steps_by_agent[a].id for a in plan.predecessors]
            step.successor_ids = [steps_by_agent[a].id for a in plan.successors]

        steps = list(steps_by_agent.values())
        db.add_all(steps)
        await db.flush()

        logger.info(
            f"[{execution.id}] Compiled {len(steps)} steps "
            f"({len(graph.roots())} ready, {len(graph.edges)} dependencies)"
        )
        return CompiledRun(execution=execution, steps=steps)
