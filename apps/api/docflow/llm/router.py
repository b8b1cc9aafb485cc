"""LLM router with retry and fallback.

Strategy:
- Send every agent call to the primary provider
- Retry failed calls with exponential backoff, up to `llm_max_attempts`
- Then try the fallback provider once, if one is configured
"""

from __future__ import annotations

import asyncio
import logging

from docflow.config import Settings, get_settings
from docflow.errors import ExternalServiceError
from docflow.llm.base import LLMAdapter
from docflow.llm.openai_compat import OpenAICompatibleAdapter
from docflow.schemas import LLMMessage, LLMResponse


logger = logging.getLogger(__name__)


class ModelRouter:
    """Routes agent prompts to the configured providers."""

    def __init__(
        self,
        primary: LLMAdapter | None = None,
        fallback: LLMAdapter | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._primary = primary
        self._fallback = fallback

    def _get_primary(self) -> LLMAdapter:
        if self._primary is None:
            s = self._settings
            self._primary = OpenAICompatibleAdapter(
                api_key=s.llm_api_key,
                base_url=s.llm_base_url,
                default_model=s.llm_model,
                timeout=s.llm_timeout_seconds,
                name="primary",
            )
        return self._primary

    def _get_fallback(self) -> LLMAdapter | None:
        s = self._settings
        if self._fallback is None and s.llm_fallback_api_key and s.llm_fallback_base_url:
            self._fallback = OpenAICompatibleAdapter(
                api_key=s.llm_fallback_api_key,
                base_url=s.llm_fallback_base_url,
                default_model=s.llm_fallback_model or s.llm_model,
                timeout=s.llm_timeout_seconds,
                name="fallback",
            )
        return self._fallback

    async def chat_completion(self, messages: list[LLMMessage]) -> LLMResponse:
        """Route a chat completion with retry, then fallback.

        Returns the first response that carries content, or the last error
        response when every attempt failed.
        """
        s = self._settings
        primary = self._get_primary()
        response: LLMResponse | None = None

        for attempt in range(1, s.llm_max_attempts + 1):
            response = await primary.chat_completion(
                messages=messages,
                temperature=s.llm_temperature,
                max_tokens=s.llm_max_tokens,
            )
            if _has_content(response):
                return response
            logger.warning(
                f"{primary.provider_name} attempt {attempt}/{s.llm_max_attempts} failed: "
                f"{_describe(response)}"
            )
            if attempt < s.llm_max_attempts:
                await asyncio.sleep(s.llm_backoff_seconds * 2 ** (attempt - 1))

        fallback = self._get_fallback()
        if fallback is not None:
            logger.info(f"Falling back to {fallback.provider_name}")
            response = await fallback.chat_completion(
                messages=messages,
                temperature=s.llm_temperature,
                max_tokens=s.llm_max_tokens,
            )
        return response

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """Run one agent prompt and return the generated text.

        Raises:
            ExternalServiceError: no provider produced any text
        """
        response = await self.chat_completion([
            LLMMessage(role="system", content=system_prompt),
            LLMMessage(role="user", content=user_prompt),
        ])
        if not _has_content(response):
            raise ExternalServiceError(
                f"Language model returned no content ({_describe(response)})",
                details={"model": response.model},
            )
        return response.content

    async def close(self) -> None:
        for adapter in (self._primary, self._fallback):
            if adapter is not None:
                await adapter.close()


def _has_content(response: LLMResponse) -> bool:
    return response.finish_reason != "error" and bool(response.content and response.content.strip())


def _describe(response: LLMResponse) -> str:
    if response.raw_response and "error" in response.raw_response:
        return str(response.raw_response["error"])
    return f"finish_reason={response.finish_reason}"


# Singleton instance
_router: ModelRouter | None = None


def get_router() -> ModelRouter:
    """Get the global model router instance."""
    global _router
    if _router is None:
        _router = ModelRouter()
    return _router


async def close_router() -> None:
    global _router
    if _router is not None:
        await _router.close()
        _router = None
