"""
brain/openai_client.py — OpenAI-compatible Completion Client

Works with the official OpenAI endpoint and any OpenAI-compatible server
(LiteLLM proxy, vLLM, Ollama's /v1). Maps SDK exceptions onto the
FitCoach CompletionError hierarchy so the orchestrator never sees vendor
types.
"""

from __future__ import annotations

from typing import AsyncIterator, Optional

import httpx
import openai
from openai import AsyncOpenAI

from fitcoach.brain.completion import BaseCompletionClient
from fitcoach.exceptions import (
    CompletionConnectionError,
    CompletionError,
    CompletionRateLimitError,
)
from fitcoach.observability.logger import get_logger

log = get_logger(__name__)


def _map_error(e: Exception) -> CompletionError:
    if isinstance(e, openai.AuthenticationError):
        return CompletionConnectionError(str(e), status_code=401)
    if isinstance(e, openai.RateLimitError):
        retry_after = None
        response = getattr(e, "response", None)
        if response is not None:
            try:
                retry_after = float(response.headers.get("retry-after", ""))
            except ValueError:
                retry_after = None
        return CompletionRateLimitError(str(e), retry_after=retry_after)
    if isinstance(e, (openai.APIConnectionError, openai.APITimeoutError)):
        return CompletionConnectionError(str(e))
    if isinstance(e, openai.InternalServerError):
        return CompletionConnectionError(str(e), status_code=getattr(e, "status_code", None))
    return CompletionError(str(e), status_code=getattr(e, "status_code", None))


class OpenAICompletionClient(BaseCompletionClient):
    """Single-prompt chat completion against an OpenAI-compatible endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        base_url: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 1024,
        timeout_seconds: float = 30.0,
        system_prompt: Optional[str] = None,
        max_attempts: int = 3,
    ) -> None:
        super().__init__(max_attempts=max_attempts)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._system_prompt = system_prompt
        self._client = AsyncOpenAI(
            api_key=api_key or "not-needed",
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            max_retries=0,  # retries are owned by BaseCompletionClient
        )

    def _messages(self, prompt: str) -> list[dict]:
        messages: list[dict] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _complete(self, prompt: str) -> str:
        log.debug("openai.complete.start", model=self._model, prompt_chars=len(prompt))
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=self._messages(prompt),
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except openai.APIError as e:
            raise _map_error(e) from e

        content = response.choices[0].message.content or ""
        log.debug(
            "openai.complete.done",
            model=response.model,
            output_chars=len(content),
            output_tokens=response.usage.completion_tokens if response.usage else 0,
        )
        return content

    async def _stream(self, prompt: str) -> AsyncIterator[str]:
        try:
            stream = await self._client.chat.completions.create(
                model=self._model,
                messages=self._messages(prompt),
                temperature=self._temperature,
                max_tokens=self._max_tokens,
                stream=True,
            )
            async for event in stream:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if delta:
                    yield delta
        except openai.APIError as e:
            raise _map_error(e) from e

    async def health_check(self) -> bool:
        try:
            await self._client.models.list()
            return True
        except openai.APIError as e:
            log.warning("openai.health_check.failed", error=str(e), error_type=type(e).__name__)
            return False

    def __repr__(self) -> str:
        return f"<OpenAICompletionClient model={self._model}>"
