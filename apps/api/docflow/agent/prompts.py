"""Prompt rendering for configured agents.

User prompt templates support three placeholders:
- {{markdown}}                    the step's input text
- {{context}}                     the run's additional context
- {{#context}} ... {{/context}}   a block kept only when context is given
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from docflow.database.models import Agent
from docflow.errors import AgentConfigurationError


# =============================================================================
# Templates
# =============================================================================

_MARKDOWN = re.compile(r"\{\{markdown\}\}")
_CONTEXT = re.compile(r"\{\{context\}\}")
_CONTEXT_BLOCK = re.compile(r"\{\{#context\}\}(.*?)\{\{/context\}\}", re.DOTALL)


def escape_template_value(value: str) -> str:
    """Escape braces so injected text cannot introduce placeholders."""
    return value.replace("{{", "\\{\\{").replace("}}", "\\}\\}")


def render_user_prompt(template: str, markdown: str, context: str | None = None) -> str:
    """Substitute placeholders in a user prompt template."""
    result = _MARKDOWN.sub(lambda _: escape_template_value(markdown), template)

    if context:
        safe_context = escape_template_value(context)
        result = _CONTEXT_BLOCK.sub(lambda m: m.group(1), result)
        result = _CONTEXT.sub(lambda _: safe_context, result)
    else:
        result = _CONTEXT_BLOCK.sub("", result)
        result = _CONTEXT.sub("", result)

    return result


# =============================================================================
# Agent prompts
# =============================================================================

@dataclass(frozen=True)
class AgentPrompts:
    system: str
    user: str


def build_agent_prompts(agent: Agent, markdown: str, context: str | None = None) -> AgentPrompts:
    """Render both prompts for an agent.

    Raises:
        AgentConfigurationError: the agent is inactive or a prompt is empty
    """
    if not agent.is_active:
        raise AgentConfigurationError(f"Agent '{agent.name}' is disabled")
    if not agent.system_prompt or not agent.system_prompt.strip():
        raise AgentConfigurationError(f"Agent '{agent.name}' has an empty system prompt")
    if not agent.user_prompt_template or not agent.user_prompt_template.strip():
        raise AgentConfigurationError(f"Agent '{agent.name}' has an empty user prompt template")

    return AgentPrompts(
        system=agent.system_prompt,
        user=render_user_prompt(agent.user_prompt_template, markdown, context),
    )
