"""
brain/completion.py — Completion Service Boundary

The orchestration core never talks to a specific model vendor. Every
language-model call goes through BaseCompletionClient:

    complete(prompt)                                  -> str
    complete_streaming(prompt, on_chunk, cancel_token) -> str

Subclasses implement _complete() and _stream(); the base class owns the
cancellation contract (token checked between chunks, partial text carried
on CompletionCancelledError) and the retry on transient errors.
"""

from __future__ import annotations

import asyncio
import random
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Optional

from fitcoach.exceptions import (
    CompletionCancelledError,
    CompletionConnectionError,
    CompletionRateLimitError,
)
from fitcoach.observability.logger import get_logger

log = get_logger(__name__)

ChunkCallback = Callable[[str], None]


class CancelToken:
    """
    Cooperative cancellation flag for streaming turns.

    Wraps an asyncio.Event so a UI task can call cancel() while the
    orchestrator is between chunks.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def reset(self) -> None:
        self._event.clear()


class BaseCompletionClient(ABC):
    """
    Abstract base for completion-service clients.

    Subclasses must implement:
      - _complete(prompt) -> full text
      - _stream(prompt)   -> async iterator of text chunks
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
    ) -> None:
        self._max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._max_delay = max_delay

    @abstractmethod
    async def _complete(self, prompt: str) -> str:
        ...

    @abstractmethod
    def _stream(self, prompt: str) -> AsyncIterator[str]:
        ...

    async def complete(self, prompt: str) -> str:
        """Return the full completion for prompt, retrying transient errors."""
        last_error: Exception | None = None
        for attempt in range(self._max_attempts):
            try:
                return await self._complete(prompt)
            except (CompletionConnectionError, CompletionRateLimitError) as e:
                last_error = e
                if attempt == self._max_attempts - 1:
                    break
                if isinstance(e, CompletionRateLimitError) and e.retry_after:
                    delay = min(e.retry_after, self._max_delay)
                else:
                    jitter = random.uniform(0, 0.5)
                    delay = min(self._base_delay * (2 ** attempt) + jitter, self._max_delay)
                log.warning(
                    "completion.retrying",
                    attempt=attempt + 1,
                    max_attempts=self._max_attempts,
                    delay_s=round(delay, 2),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await asyncio.sleep(delay)
        assert last_error is not None
        raise last_error

    async def complete_streaming(
        self,
        prompt: str,
        on_chunk: ChunkCallback,
        cancel_token: Optional[CancelToken] = None,
    ) -> str:
        """
        Stream the completion, calling on_chunk for every piece of text.

        The token is checked before each chunk is emitted. On cancellation,
        raises CompletionCancelledError carrying the text emitted so far.
        """
        parts: list[str] = []
        stream = self._stream(prompt)
        try:
            async for chunk in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    log.info("completion.stream.cancelled", chars=sum(map(len, parts)))
                    raise CompletionCancelledError("".join(parts))
                if not chunk:
                    continue
                parts.append(chunk)
                on_chunk(chunk)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return "".join(parts)

    async def health_check(self) -> bool:
        return True

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
