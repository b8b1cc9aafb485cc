"""Tests for the LLM adapter and router."""

from __future__ import annotations

import json

import httpx
import pydantic
import pytest

from docflow.config import Settings
from docflow.errors import ExternalServiceError
from docflow.llm.base import LLMAdapter
from docflow.llm.openai_compat import OpenAICompatibleAdapter
from docflow.llm.router import ModelRouter
from docflow.schemas import LLMMessage, LLMResponse


class ScriptedAdapter(LLMAdapter):
    """Returns the scripted responses in order; None means an error response."""

    def __init__(self, name: str, replies: list[str | None]):
        self._name = name
        self.replies = list(replies)
        self.calls: list[list[LLMMessage]] = []

    @property
    def provider_name(self) -> str:
        return self._name

    async def chat_completion(self, messages, model=None, temperature=0.7, max_tokens=4096) -> LLMResponse:
        self.calls.append(messages)
        reply = self.replies.pop(0)
        if reply is None:
            return LLMResponse(content=None, model="m", finish_reason="error", raw_response={"error": "boom"})
        return LLMResponse(content=reply, model="m", finish_reason="stop")


class TestOpenAICompatibleAdapter:
    async def test_parses_completion(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "model": "gpt-test",
                "choices": [{"message": {"role": "assistant", "content": "Better CV"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 10, "completion_tokens": 3, "prompt_tokens_details": {"cached_tokens": 0}},
            })

        adapter = OpenAICompatibleAdapter(
            api_key="secret",
            base_url="https://llm.example/v1",
            default_model="gpt-test",
            transport=httpx.MockTransport(handler),
        )
        response = await adapter.chat_completion([LLMMessage(role="user", content="hi")], max_tokens=50)
        await adapter.close()

        assert response.content == "Better CV"
        assert response.finish_reason == "stop"
        assert seen["path"] == "/v1/chat/completions"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["model"] == "gpt-test"
        assert seen["body"]["max_tokens"] == 50
        assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]

    async def test_http_error_becomes_error_response(self):
        adapter = OpenAICompatibleAdapter(
            api_key="secret",
            base_url="https://llm.example/v1",
            default_model="gpt-test",
            transport=httpx.MockTransport(lambda request: httpx.Response(429, json={"error": "rate"})),
        )
        response = await adapter.chat_completion([LLMMessage(role="user", content="hi")])
        await adapter.close()

        assert response.content is None
        assert response.finish_reason == "error"
        assert response.raw_response["status_code"] == 429

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            OpenAICompatibleAdapter(api_key="", base_url="https://llm.example/v1", default_model="m")


class TestModelRouter:
    async def test_complete_sends_system_and_user(self, settings):
        primary = ScriptedAdapter("primary", ["done"])
        router = ModelRouter(primary=primary, settings=settings)

        assert await router.complete("system", "user") == "done"
        assert [(m.role, m.content) for m in primary.calls[0]] == [("system", "system"), ("user", "user")]

    async def test_retries_then_succeeds(self, settings):
        primary = ScriptedAdapter("primary", [None, None, "third time"])
        router = ModelRouter(primary=primary, settings=settings)

        assert await router.complete("s", "u") == "third time"
        assert len(primary.calls) == 3

    async def test_falls_back_after_retries(self, settings):
        primary = ScriptedAdapter("primary", [None, None, None])
        fallback = ScriptedAdapter("fallback", ["from fallback"])
        router = ModelRouter(primary=primary, fallback=fallback, settings=settings)

        assert await router.complete("s", "u") == "from fallback"
        assert len(primary.calls) == settings.llm_max_attempts

    async def test_empty_content_is_a_failure(self, settings):
        primary = ScriptedAdapter("primary", ["  ", "", "   "])
        router = ModelRouter(primary=primary, settings=settings)

        with pytest.raises(ExternalServiceError):
            await router.complete("s", "u")

    async def test_raises_when_everything_fails(self, settings):
        primary = ScriptedAdapter("primary", [None, None, None])
        fallback = ScriptedAdapter("fallback", [None])
        router = ModelRouter(primary=primary, fallback=fallback, settings=settings)

        with pytest.raises(ExternalServiceError) as exc_info:
            await router.complete("s", "u")
        assert exc_info.value.status_code == 502

    def test_at_least_one_attempt_is_required(self):
        with pytest.raises(pydantic.ValidationError):
            Settings(_env_file=None, llm_max_attempts=0)
