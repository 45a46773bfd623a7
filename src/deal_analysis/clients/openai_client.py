"""
OpenAI client for the LLM-backed analysis engines.

The client never retries: the SDK's own retries are switched off and every
failure is translated into the engine error hierarchy, so that rate limits,
timeouts and 5xx answers reach the resilience wrapper as TransientEngineError.
"""

import os
from typing import Any, TypeVar

import structlog
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    RateLimitError,
)
from pydantic import BaseModel

from ..config import config
from ..errors import (
    OpenAIError,
    OpenAIModelError,
    OpenAIRateLimitError,
    OpenAITimeoutError,
    OpenAIUnavailableError,
)

logger = structlog.get_logger(__name__)

T = TypeVar('T', bound=BaseModel)


def to_engine_error(exc: Exception, **context: Any) -> OpenAIError:
    """
    Translate an SDK (or transport) exception into an OpenAIError subclass.

    SDK exception types decide first; plain exceptions fall back on their
    message so proxies and test doubles map the same way.
    """
    context = {'error_type': type(exc).__name__, **context}

    if isinstance(exc, RateLimitError):
        return OpenAIRateLimitError(f'OpenAI rate limit exceeded: {exc}', context=context)
    if isinstance(exc, APIConnectionError):
        # APITimeoutError is a connection error too
        kind = 'timed out' if isinstance(exc, APITimeoutError) else 'connection failed'
        return OpenAITimeoutError(f'OpenAI request {kind}: {exc}', context=context)
    if isinstance(exc, APIStatusError):
        context['status_code'] = exc.status_code
        if exc.status_code >= 500:
            return OpenAIUnavailableError(f'OpenAI unavailable: {exc}', context=context)
        return OpenAIError(f'OpenAI API error: {exc}', context=context)

    text = str(exc).lower()
    if '429' in text or 'rate limit' in text:
        return OpenAIRateLimitError(f'OpenAI rate limit exceeded: {exc}', context=context)
    if 'timed out' in text or 'timeout' in text:
        return OpenAITimeoutError(f'OpenAI request timed out: {exc}', context=context)
    return OpenAIError(f'OpenAI API error: {exc}', context=context)


class OpenAIClient:
    """
    Async OpenAI client with structured output support.

    Configuration via environment variables:
    - OPENAI_API_KEY: Required API key
    - OPENAI_CHAT_MODEL: Chat model (default: gpt-4.1-mini)
    """

    def __init__(
        self,
        api_key: str | None = None,
        chat_model: str | None = None,
        timeout_seconds: float | None = None,
    ):
        self.api_key = api_key or os.getenv('OPENAI_API_KEY')
        if not self.api_key:
            raise ValueError('OPENAI_API_KEY environment variable is required')

        self.chat_model = chat_model or config.OPENAI_CHAT_MODEL
        timeout = timeout_seconds or (config.ENGINE_TIMEOUT_MS / 1000)
        self._client = AsyncOpenAI(api_key=self.api_key, timeout=timeout, max_retries=0)

    async def chat_completion(
        self,
        messages: list[dict[str, str]],
        model: str | None = None,
        temperature: float = 0.0,
        max_tokens: int | None = None,
    ) -> str:
        """Plain text completion; used for executive summaries."""
        try:
            response = await self._client.chat.completions.create(
                model=model or self.chat_model,
                messages=messages,  # type: ignore
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as exc:
            raise to_engine_error(exc, operation='chat_completion') from exc
        return response.choices[0].message.content or ''

    async def chat_completion_structured(
        self,
        messages: list[dict[str, str]],
        response_model: type[T],
        model: str | None = None,
        temperature: float = 0.0,
    ) -> T:
        """
        Completion parsed into response_model via native structured output.

        Raises:
            OpenAIModelError: The model refused or returned nothing parseable
            OpenAIError: Any other API failure (rate limits, timeouts and
                5xx as transient subclasses)
        """
        schema = response_model.__name__
        try:
            response = await self._client.beta.chat.completions.parse(
                model=model or self.chat_model,
                messages=messages,  # type: ignore
                response_format=response_model,
                temperature=temperature,
            )
        except Exception as exc:
            raise to_engine_error(
                exc, operation='chat_completion_structured', response_model=schema
            ) from exc

        message = response.choices[0].message
        if getattr(message, 'refusal', None):
            raise OpenAIModelError(
                f'OpenAI model refused request: {message.refusal}',
                context={'response_model': schema},
            )
        if message.parsed is None:
            raise OpenAIModelError(
                'Failed to parse structured response', context={'response_model': schema}
            )
        return message.parsed

    async def health_check(self) -> dict[str, bool | str]:
        """Retrieve the configured model to prove the key and network work."""
        try:
            await self._client.models.retrieve(self.chat_model)
        except Exception as e:
            logger.warning('openai_client.health_check_failed', error=str(e))
            return {'healthy': False, 'error': str(e)}
        return {'healthy': True, 'chat_model': self.chat_model}

    async def close(self):
        await self._client.close()
