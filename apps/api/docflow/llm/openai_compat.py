"""Adapter for any OpenAI-compatible chat completions endpoint.

Works with OpenAI itself and with the many providers that mirror its
`/chat/completions` API (DeepSeek, Moonshot, vLLM, Ollama, ...).
"""

from __future__ import annotations

import logging

import httpx

from docflow.llm.base import LLMAdapter
from docflow.schemas import LLMMessage, LLMResponse


logger = logging.getLogger(__name__)


class OpenAICompatibleAdapter(LLMAdapter):
    """Chat completions over httpx."""

    def __init__(
        self,
        api_key: str,
        base_url: str,
        default_model: str,
        timeout: float = 180.0,
        name: str = "openai",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key:
            raise ValueError(f"API key not configured for provider '{name}'")

        self.base_url = base_url
        self.default_model = default_model
        self.timeout = timeout
        self._name = name

        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    @property
    def provider_name(self) -> str:
        return self._name

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ) -> LLMResponse:
        model = model or self.default_model
        payload = self._build_request(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
        )

        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            return LLMResponse(
                content=None,
                model=model,
                finish_reason="error",
                raw_response={"error": str(e), "status_code": e.response.status_code},
            )
        except (httpx.HTTPError, ValueError) as e:
            return LLMResponse(
                content=None,
                model=model,
                finish_reason="error",
                raw_response={"error": str(e)},
            )

        choices = data.get("choices") or [{}]
        choice = choices[0]
        message = choice.get("message") or {}

        return LLMResponse(
            content=message.get("content"),
            model=data.get("model", model),
            usage=data.get("usage") or {},
            finish_reason=choice.get("finish_reason"),
            raw_response=data,
        )

    async def close(self) -> None:
        await self._client.aclose()
