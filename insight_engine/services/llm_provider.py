"""
LLM provider access for the analysis pipeline.

The orchestrator and the reconciler only see the ``LLMProvider`` interface:
one chat completion in, one text answer out. ``OpenAIProvider`` is the
production implementation (any OpenAI-compatible endpoint); tests inject
stubs.
"""
from __future__ import annotations

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Any, Optional

from openai import (
    AsyncOpenAI,
    RateLimitError,
    AuthenticationError,
    APIConnectionError,
    APITimeoutError,
)

# ─── Logger ──────────────────────────────────────────────────────────────────
logger = logging.getLogger(__name__)

# ─── Constants ───────────────────────────────────────────────────────────────
RETRY_BASE_DELAY_SEC: float = 1.0                 # base delay for exponential backoff
RETRY_MAX_DELAY_SEC: float  = 16.0                # cap on backoff delay

# Errors that are transient and worth retrying
_RETRYABLE_EXCEPTIONS: tuple[type[Exception], ...] = (
    RateLimitError,
    APIConnectionError,
    APITimeoutError,
    asyncio.TimeoutError,
)


# ─── Custom Exceptions ───────────────────────────────────────────────────────
class ProviderError(RuntimeError):
    """Raised when a completion fails after all retries are exhausted."""


class MissingAPIKeyError(EnvironmentError):
    """Raised when OPENAI_API_KEY is not configured."""


# ─── Interface ───────────────────────────────────────────────────────────────
class LLMProvider(ABC):
    @abstractmethod
    async def complete(
        self,
        system: str,
        user: str,
        *,
        model: str,
        json_output: bool = False,
    ) -> str:
        """Return the assistant's text answer ("" when the model said nothing)."""


# ─── OpenAI Implementation ───────────────────────────────────────────────────
class OpenAIProvider(LLMProvider):
    def __init__(
        self,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        timeout: float = 600.0,
        max_retries: int = 3,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self._client: Optional[AsyncOpenAI] = None

    @classmethod
    def from_settings(cls, settings) -> "OpenAIProvider":
        return cls(
            api_key=settings.OPENAI_API_KEY,
            base_url=settings.OPENAI_BASE_URL,
            timeout=settings.LLM_TIMEOUT_SECONDS,
            max_retries=settings.LLM_MAX_RETRIES,
        )

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise MissingAPIKeyError("OPENAI_API_KEY is not configured.")
            # retries are handled below, with jitter
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url or None,
                max_retries=0,
            )
        return self._client

    def _backoff(self, attempt: int) -> float:
        return min(
            RETRY_BASE_DELAY_SEC * (2 ** attempt) + random.uniform(0, 1),
            RETRY_MAX_DELAY_SEC,
        )

    async def complete(
        self,
        system: str,
        user: str,
        *,
        model: str,
        json_output: bool = False,
    ) -> str:
        """
        One chat completion with exponential backoff on transient errors.

        Authentication errors are raised immediately. After the last retry a
        ``ProviderError`` carries the final cause.
        """
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user",   "content": user},
            ],
        }
        if json_output:
            kwargs["response_format"] = {"type": "json_object"}

        client = self.client
        for attempt in range(self.max_retries + 1):
            try:
                logger.info(f"LLM call ({model}) attempt {attempt + 1}/{self.max_retries + 1}")
                response = await asyncio.wait_for(
                    client.chat.completions.create(**kwargs),
                    timeout=self.timeout,
                )
                if not response.choices:
                    raise ProviderError(f"{model} returned a response with no choices.")
                return response.choices[0].message.content or ""

            except AuthenticationError as e:
                logger.error(f"LLM authentication failed: {e}")
                raise

            except _RETRYABLE_EXCEPTIONS as e:
                if attempt >= self.max_retries:
                    logger.error(f"All {self.max_retries} retries exhausted. Last error: {e!r}")
                    raise ProviderError(
                        f"{model} failed after {self.max_retries} retries: {type(e).__name__}"
                    ) from e
                delay = self._backoff(attempt)
                logger.warning(
                    f"Transient error on attempt {attempt + 1} ({type(e).__name__}), "
                    f"retrying in {delay:.1f}s"
                )
                await asyncio.sleep(delay)

        raise ProviderError("Unexpected state in retry loop.")
