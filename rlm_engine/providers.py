"""
Completion provider capability and vendor adapters.

The engine only needs two things from a provider: a non-streaming
``complete`` and a ``stream`` of raw vendor events (normalized later by
``stream_normalizer``). Adapters:
- Anthropic (Claude) via ``anthropic.AsyncAnthropic``
- OpenAI-compatible (OpenAI, xAI, DeepSeek) via ``openai.AsyncOpenAI``
- Google Gemini via ``google.genai``
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol, TypeVar, runtime_checkable

import anthropic
import openai
from dotenv import load_dotenv
from google import genai
from google.genai import types as genai_types

from .cancellation import CancellationToken
from .model_resolver import (
    PROVIDER_BASE_URLS,
    api_key_for_provider,
    normalize_provider,
)
from .types import (
    CallCancelledError,
    CallTimeoutError,
    CompletionResponse,
    ProviderError,
    ProviderOutcome,
)

logger = logging.getLogger(__name__)

# Auto-load .env from the working directory
_env_file = Path.cwd() / ".env"
if _env_file.exists():
    load_dotenv(_env_file)

Message = dict[str, str]
T = TypeVar("T")


@runtime_checkable
class CompletionProvider(Protocol):
    """What the engine needs from an AI backend."""

    name: str

    async def complete(
        self,
        model: str,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CompletionResponse:
        """Single non-streaming completion."""
        ...

    def stream(
        self,
        model: str,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[Any]:
        """Raw incremental vendor events."""
        ...


ProviderResolver = Callable[[str, str], CompletionProvider]


def _split_system(messages: list[Message]) -> tuple[str | None, list[Message]]:
    """Separate system messages (joined) from the conversation."""
    system_parts = [m["content"] for m in messages if m.get("role") == "system"]
    rest = [m for m in messages if m.get("role") != "system"]
    return ("\n\n".join(system_parts) if system_parts else None), rest


class AnthropicProvider:
    """Anthropic Claude API adapter."""

    name = "anthropic"

    def __init__(self, api_key: str, default_max_tokens: int = 4096):
        self.client = anthropic.AsyncAnthropic(api_key=api_key)
        self.default_max_tokens = default_max_tokens

    def _request_params(
        self,
        model: str,
        messages: list[Message],
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        system, conversation = _split_system(messages)
        params: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or self.default_max_tokens,
            "messages": conversation,
        }
        if system:
            params["system"] = system
        if temperature is not None:
            params["temperature"] = temperature
        return params

    async def complete(
        self,
        model: str,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CompletionResponse:
        response = await self.client.messages.create(
            **self._request_params(model, messages, temperature, max_tokens)
        )

        content = ""
        for block in response.content:
            if block.type == "text":
                content += block.text

        return CompletionResponse(
            content=content,
            tokens=response.usage.input_tokens + response.usage.output_tokens,
            finish_reason=response.stop_reason,
        )

    async def stream(
        self,
        model: str,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[Any]:
        params = self._request_params(model, messages, temperature, max_tokens)
        events = await self.client.messages.create(**params, stream=True)
        async for event in events:
            yield event


class OpenAICompatibleProvider:
    """OpenAI chat-completions adapter; also serves xAI and DeepSeek."""

    def __init__(self, api_key: str, name: str = "openai", base_url: str | None = None):
        self.name = name
        self.client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)

    @staticmethod
    def _token_param(model: str) -> str:
        # Reasoning-family models take max_completion_tokens instead of max_tokens
        if model.startswith(("gpt-5", "o1", "o3")):
            return "max_completion_tokens"
        return "max_tokens"

    def _request_params(
        self,
        model: str,
        messages: list[Message],
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"model": model, "messages": messages}
        if temperature is not None:
            params["temperature"] = temperature
        if max_tokens is not None:
            params[self._token_param(model)] = max_tokens
        return params

    async def complete(
        self,
        model: str,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CompletionResponse:
        response = await self.client.chat.completions.create(
            **self._request_params(model, messages, temperature, max_tokens)
        )

        return CompletionResponse(
            content=response.choices[0].message.content or "",
            tokens=response.usage.total_tokens if response.usage else 0,
            finish_reason=response.choices[0].finish_reason,
        )

    async def stream(
        self,
        model: str,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[Any]:
        chunks = await self.client.chat.completions.create(
            **self._request_params(model, messages, temperature, max_tokens),
            stream=True,
            stream_options={"include_usage": True},
        )
        async for chunk in chunks:
            yield chunk


class GeminiProvider:
    """Google Gemini adapter (google-genai SDK)."""

    name = "google"

    def __init__(self, api_key: str):
        self.client = genai.Client(api_key=api_key)

    @staticmethod
    def _build_request(
        messages: list[Message],
        temperature: float | None,
        max_tokens: int | None,
    ) -> tuple[list[genai_types.Content], genai_types.GenerateContentConfig]:
        system, conversation = _split_system(messages)
        contents = [
            genai_types.Content(
                role="model" if m["role"] == "assistant" else "user",
                parts=[genai_types.Part(text=m["content"])],
            )
            for m in conversation
        ]
        config = genai_types.GenerateContentConfig(
            system_instruction=system,
            temperature=temperature,
            max_output_tokens=max_tokens,
        )
        return contents, config

    async def complete(
        self,
        model: str,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> CompletionResponse:
        contents, config = self._build_request(messages, temperature, max_tokens)
        response = await self.client.aio.models.generate_content(
            model=model, contents=contents, config=config
        )

        usage = getattr(response, "usage_metadata", None)
        candidates = getattr(response, "candidates", None) or []
        finish_reason = candidates[0].finish_reason if candidates else None
        return CompletionResponse(
            content=response.text or "",
            tokens=(usage.total_token_count or 0) if usage else 0,
            finish_reason=str(finish_reason) if finish_reason is not None else None,
        )

    async def stream(
        self,
        model: str,
        messages: list[Message],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[Any]:
        contents, config = self._build_request(messages, temperature, max_tokens)
        chunks = await self.client.aio.models.generate_content_stream(
            model=model, contents=contents, config=config
        )
        async for chunk in chunks:
            yield chunk


def resolve_provider(
    model_id: str | None,
    provider: str | None,
    api_key: str | None = None,
) -> CompletionProvider:
    """
    Default resolver: build an adapter for a (model, provider) pair.

    Raises:
        ProviderError: If no API key is available for the provider
    """
    _ = model_id  # adapters are model-agnostic; the model is passed per call
    canonical = normalize_provider(provider)
    key = api_key_for_provider(canonical, api_key)
    if not key:
        raise ProviderError(f"No API key configured for provider {canonical!r}", canonical)

    if canonical == "anthropic":
        return AnthropicProvider(api_key=key)
    if canonical == "google":
        return GeminiProvider(api_key=key)
    return OpenAICompatibleProvider(
        api_key=key,
        name=canonical,
        base_url=PROVIDER_BASE_URLS.get(canonical),
    )


async def run_guarded(
    coro: Awaitable[T],
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
    provider_name: str | None = None,
) -> T:
    """
    Await ``coro`` racing a cancellation token and a timeout.

    Used for both completions and stream consumption. The awaited work is
    cancelled when either signal wins.

    Raises:
        CallCancelledError: The token was cancelled before or during the call
        CallTimeoutError: The call did not finish within ``timeout`` seconds
    """
    if cancel_token is not None and cancel_token.is_cancelled:
        if asyncio.iscoroutine(coro):
            coro.close()
        cancel_token.check()

    call = asyncio.ensure_future(coro)
    waiters: set[asyncio.Future[Any]] = {call}
    cancel_waiter: asyncio.Future[Any] | None = None
    if cancel_token is not None:
        cancel_waiter = asyncio.ensure_future(cancel_token.wait())
        waiters.add(cancel_waiter)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_waiter is not None:
            cancel_waiter.cancel()
        if not call.done():
            call.cancel()

    if call not in done:
        # Reap the cancelled call so its exception is retrieved
        await asyncio.gather(call, return_exceptions=True)
        if cancel_token is not None and cancel_token.is_cancelled:
            raise CallCancelledError(provider_name)
        raise CallTimeoutError(timeout, provider_name)

    return call.result()


async def call_provider(
    provider: CompletionProvider,
    model: str,
    messages: list[Message],
    temperature: float | None = None,
    max_tokens: int | None = None,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
) -> ProviderOutcome:
    """
    Run one completion under a cancellation token and timeout.

    Never raises for provider failures: errors, timeouts and cancellations
    come back as a failed ``ProviderOutcome``.
    """
    provider_name = getattr(provider, "name", "unknown")
    if cancel_token is not None and cancel_token.is_cancelled:
        return ProviderOutcome.failure("call cancelled", cancelled=True)

    try:
        response = await run_guarded(
            provider.complete(model, messages, temperature=temperature, max_tokens=max_tokens),
            cancel_token,
            timeout,
            provider_name,
        )
    except CallCancelledError as e:
        logger.warning(f"[{provider_name}] call to {model} cancelled")
        return ProviderOutcome.failure(e.reason, cancelled=True)
    except CallTimeoutError as e:
        logger.warning(f"[{provider_name}] call to {model} timed out after {timeout}s")
        return ProviderOutcome.failure(e.reason, timed_out=True)
    except Exception as e:
        logger.error(f"[{provider_name}] call to {model} failed: {e}")
        return ProviderOutcome.failure(str(e) or type(e).__name__)

    return ProviderOutcome.success(response)


__all__ = [
    "AnthropicProvider",
    "CompletionProvider",
    "GeminiProvider",
    "OpenAICompatibleProvider",
    "ProviderResolver",
    "call_provider",
    "resolve_provider",
    "run_guarded",
]
