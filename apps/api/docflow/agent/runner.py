"""LangGraph workflow that runs one agent for one step.

Graph structure:
START → load → gather_inputs → render_prompts → call_agent → record_log → END
          ↓                          ↓
         END (step no longer RUNNING) record_log (configuration error)

The runner never changes step or run status. It returns the outcome, and the
worker reports it to the scheduler.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Literal, TypedDict

from langgraph.graph import END, StateGraph

from docflow.agent.prompts import build_agent_prompts
from docflow.database import repository
from docflow.database.models import Agent, AgentExecutionLog
from docflow.database.session import SessionMaker, get_session_maker, session_scope
from docflow.errors import AgentConfigurationError, ExternalServiceError
from docflow.llm.router import ModelRouter, get_router
from docflow.schemas import AgentExecutionJob, StepStatus


logger = logging.getLogger(__name__)


# =============================================================================
# State Definition
# =============================================================================

class RunnerState(TypedDict, total=False):
    job: AgentExecutionJob
    skipped: bool
    agent: Agent
    document_markdown: str
    context: str | None
    predecessor_ids: list[str]
    input_text: str
    system_prompt: str
    user_prompt: str
    output_text: str | None
    error: str | None
    duration_ms: int


@dataclass
class AgentRunResult:
    """Outcome of one agent job."""
    step_id: str
    skipped: bool = False
    succeeded: bool = False
    output_text: str | None = None
    error: str | None = None


# =============================================================================
# Runner
# =============================================================================

class AgentRunner:
    """Executes agent jobs pulled from the agent-execution queue."""

    def __init__(self, session_maker: SessionMaker | None = None, router: ModelRouter | None = None):
        self._session_maker = session_maker
        self._router = router
        self._graph = self._build().compile()

    def _session(self):
        return session_scope(self._session_maker or get_session_maker())

    @property
    def router(self) -> ModelRouter:
        return self._router or get_router()

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def load(self, state: RunnerState) -> RunnerState:
        job = state["job"]
        async with self._session() as db:
            step = await repository.get_step(db, job.step_id)
            if step.status != StepStatus.RUNNING.value:
                logger.info(f"[{job.execution_id}] Dropping job for step {step.id}: step is {step.status}")
                return {"skipped": True}
            execution = await repository.get_execution(db, job.execution_id)
            document = await repository.get_document(db, execution.document_id)
            agent = await repository.get_agent(db, job.agent_id)

        logger.info(f"[{job.execution_id}] Running agent '{agent.name}' for step {step.id}")
        return {
            "skipped": False,
            "agent": agent,
            "document_markdown": document.markdown_content or "",
            "context": execution.additional_context,
            "predecessor_ids": list(step.predecessor_ids),
        }

    async def gather_inputs(self, state: RunnerState) -> RunnerState:
        """Pick the input text: the document for roots, else a predecessor's output.

        With several predecessors the last completed one in (order, name)
        order wins, so the choice does not depend on completion timing.
        """
        predecessor_ids = set(state["predecessor_ids"])
        if not predecessor_ids:
            return {"input_text": state["document_markdown"]}

        job = state["job"]
        async with self._session() as db:
            rows = await repository.list_steps_with_agents(db, job.execution_id)

        outputs = [
            step.output_text for step, _ in rows
            if step.id in predecessor_ids
            and step.status == StepStatus.COMPLETED.value
            and step.output_text
        ]
        if not outputs:
            logger.warning(f"[{job.execution_id}] No predecessor output for step {job.step_id}; using the document")
            return {"input_text": state["document_markdown"]}
        return {"input_text": outputs[-1]}

    async def render_prompts(self, state: RunnerState) -> RunnerState:
        try:
            prompts = build_agent_prompts(state["agent"], state["input_text"], state.get("context"))
        except AgentConfigurationError as e:
            return {"error": e.message}
        return {"system_prompt": prompts.system, "user_prompt": prompts.user}

    async def call_agent(self, state: RunnerState) -> RunnerState:
        start_time = time.perf_counter()
        try:
            output = await self.router.complete(state["system_prompt"], state["user_prompt"])
        except ExternalServiceError as e:
            return {
                "error": e.message,
                "duration_ms": int((time.perf_counter() - start_time) * 1000),
            }
        return {
            "output_text": output,
            "error": None,
            "duration_ms": int((time.perf_counter() - start_time) * 1000),
        }

    async def record_log(self, state: RunnerState) -> RunnerState:
        job = state["job"]
        error = state.get("error")
        async with self._session() as db:
            db.add(AgentExecutionLog(
                agent_id=job.agent_id,
                execution_id=job.execution_id,
                step_id=job.step_id,
                system_prompt=state.get("system_prompt"),
                user_prompt=state.get("user_prompt"),
                input_text=state.get("input_text"),
                output_text=state.get("output_text"),
                duration_ms=state.get("duration_ms"),
                success=error is None,
                error_message=error,
            ))
        return {}

    # -------------------------------------------------------------------------
    # Routing
    # -------------------------------------------------------------------------

    @staticmethod
    def _after_load(state: RunnerState) -> Literal["gather_inputs", "end"]:
        return "end" if state.get("skipped") else "gather_inputs"

    @staticmethod
    def _after_render(state: RunnerState) -> Literal["call_agent", "record_log"]:
        return "record_log" if state.get("error") else "call_agent"

    def _build(self) -> StateGraph:
        workflow = StateGraph(RunnerState)

        workflow.add_node("load", self.load)
        workflow.add_node("gather_inputs", self.gather_inputs)
        workflow.add_node("render_prompts", self.render_prompts)
        workflow.add_node("call_agent", self.call_agent)
        workflow.add_node("record_log", self.record_log)

        workflow.set_entry_point("load")
        workflow.add_conditional_edges(
            "load",
            self._after_load,
            {"gather_inputs": "gather_inputs", "end": END},
        )
        workflow.add_edge("gather_inputs", "render_prompts")
        workflow.add_conditional_edges(
            "render_prompts",
            self._after_render,
            {"call_agent": "call_agent", "record_log": "record_log"},
        )
        workflow.add_edge("call_agent", "record_log")
        workflow.add_edge("record_log", END)

        return workflow

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def run(self, job: AgentExecutionJob) -> AgentRunResult:
        """Run the agent for one job and return its outcome."""
        state = await self._graph.ainvoke({"job": job})

        if state.get("skipped"):
            return AgentRunResult(step_id=job.step_id, skipped=True)

        error = state.get("error")
        if error:
            logger.warning(f"[{job.execution_id}] Step {job.step_id} failed: {error}")
            return AgentRunResult(step_id=job.step_id, error=error)

        return AgentRunResult(
            step_id=job.step_id,
            succeeded=True,
            output_text=state.get("output_text"),
        )
