"""
Stream normalization across provider formats.

Each provider family streams a different event shape:
- OpenAI-compatible (OpenAI, xAI, DeepSeek): ``choices[0].delta.content``
- Anthropic: typed events (``content_block_delta`` with text/thinking deltas)
- Gemini: response chunks exposing ``text``

All of them are mapped onto one ``NormalizedChunk``. ``StreamProcessor``
consumes the normalized sequence, batches status updates and returns the
accumulated answer and thinking text.
"""

from __future__ import annotations

import inspect
import logging
import math
import time
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from .config import StreamingConfig

logger = logging.getLogger(__name__)

StreamPhase = Literal[
    "thinking",
    "planning",
    "researching",
    "synthesizing",
    "streaming",
    "complete",
    "error",
]


@dataclass
class NormalizedChunk:
    """Provider-independent streaming chunk."""

    text: str
    is_thinking: bool = False
    token_count: int | None = None
    is_complete: bool = False
    stop_reason: str | None = None


@dataclass
class RLMProgress:
    """Progress of a multi-step streaming execution."""

    current_step: int
    total_steps: int
    step_description: str
    sub_queries: list[str] = field(default_factory=list)
    current_worker: int | None = None
    total_workers: int | None = None


@dataclass
class StreamStatus:
    """Status update delivered to streaming callers."""

    phase: StreamPhase
    current_text: str = ""
    thinking_content: str | None = None
    tokens_used: int = 0
    is_final: bool = False
    progress: RLMProgress | None = None
    error: str | None = None


@dataclass
class StreamResult:
    text: str
    thinking_text: str
    tokens_used: int


ChunkCallback = Callable[[str], Awaitable[None] | None]
StatusCallback = Callable[[StreamStatus], Awaitable[None] | None]


async def invoke_callback(callback: Callable[[Any], Any] | None, value: Any) -> None:
    """Call a sync or async callback."""
    if callback is None:
        return
    result = callback(value)
    if inspect.isawaitable(result):
        await result


def _get(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from an SDK object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _first(seq: Any) -> Any:
    if not seq:
        return None
    return seq[0]


# =============================================================================
# Per-provider mappings
# =============================================================================


def normalize_openai_chunk(chunk: Any) -> NormalizedChunk | None:
    """OpenAI-compatible delta format (OpenAI, xAI, DeepSeek)."""
    choice = _first(_get(chunk, "choices"))
    delta = _get(choice, "delta")
    text = _get(delta, "content") or ""
    thinking = _get(delta, "reasoning_content") or ""
    finish_reason = _get(choice, "finish_reason")
    usage = _get(chunk, "usage")
    token_count = _get(usage, "completion_tokens")

    # DeepSeek R1 reasoning channel
    if thinking:
        return NormalizedChunk(text=thinking, is_thinking=True)

    if text or finish_reason:
        return NormalizedChunk(
            text=text,
            token_count=token_count,
            is_complete=bool(finish_reason),
            stop_reason=finish_reason or None,
        )

    # Trailing usage-only chunk (stream_options.include_usage)
    if token_count:
        return NormalizedChunk(text="", token_count=token_count)
    return None


def normalize_anthropic_event(event: Any) -> NormalizedChunk | None:
    """Anthropic typed events, including extended-thinking deltas."""
    event_type = _get(event, "type")

    if event_type == "content_block_delta":
        delta = _get(event, "delta")
        delta_type = _get(delta, "type")
        if delta_type == "text_delta":
            return NormalizedChunk(text=_get(delta, "text") or "")
        if delta_type == "thinking_delta":
            return NormalizedChunk(text=_get(delta, "thinking") or "", is_thinking=True)
        return None

    if event_type == "content_block_start":
        block = _get(event, "content_block")
        if _get(block, "type") == "thinking":
            return NormalizedChunk(text="", is_thinking=True)
        return None

    if event_type == "message_delta":
        delta = _get(event, "delta")
        usage = _get(event, "usage")
        return NormalizedChunk(
            text="",
            token_count=_get(usage, "output_tokens"),
            is_complete=True,
            stop_reason=_get(delta, "stop_reason") or "end_turn",
        )

    if event_type == "message_stop":
        return NormalizedChunk(text="", is_complete=True, stop_reason="end_turn")

    return None


def _finish_reason_name(reason: Any) -> str | None:
    if reason is None:
        return None
    name = getattr(reason, "name", None) or str(reason)
    if name in ("", "FINISH_REASON_UNSPECIFIED"):
        return None
    return name


def normalize_gemini_chunk(chunk: Any) -> NormalizedChunk | None:
    """Gemini chunks; ``text`` may be a method or a property."""
    text_attr = _get(chunk, "text")
    text = text_attr() if callable(text_attr) else text_attr
    text = text or ""

    candidate = _first(_get(chunk, "candidates"))
    finish_reason = _finish_reason_name(
        _get(candidate, "finish_reason") or _get(candidate, "finishReason")
    )
    usage = _get(chunk, "usage_metadata")
    token_count = _get(usage, "candidates_token_count")

    if text or finish_reason:
        return NormalizedChunk(
            text=text,
            token_count=token_count if finish_reason else None,
            is_complete=finish_reason is not None,
            stop_reason=finish_reason,
        )
    return None


ChunkMapper = Callable[[Any], NormalizedChunk | None]

PROVIDER_MAPPERS: dict[str, ChunkMapper] = {
    "openai": normalize_openai_chunk,
    "gpt": normalize_openai_chunk,
    "xai": normalize_openai_chunk,
    "grok": normalize_openai_chunk,
    "deepseek": normalize_openai_chunk,
    "anthropic": normalize_anthropic_event,
    "claude": normalize_anthropic_event,
    "google": normalize_gemini_chunk,
    "gemini": normalize_gemini_chunk,
}


def mapper_for(provider: str) -> ChunkMapper:
    """Mapping function for a provider tag; unknown tags use the OpenAI shape."""
    mapper = PROVIDER_MAPPERS.get(provider.lower())
    if mapper is None:
        logger.warning(f"Unknown provider {provider!r}, attempting OpenAI stream format")
        return normalize_openai_chunk
    return mapper


def normalize_chunk(chunk: Any, provider: str) -> NormalizedChunk | None:
    """Normalize one raw event. Malformed events are logged and dropped."""
    return _safe_map(mapper_for(provider), chunk)


def _safe_map(mapper: ChunkMapper, chunk: Any) -> NormalizedChunk | None:
    try:
        return mapper(chunk)
    except Exception as e:
        logger.error(f"Error normalizing stream chunk: {e}")
        return None


async def normalize_stream(
    raw_stream: AsyncIterable[Any], provider: str
) -> AsyncIterator[NormalizedChunk]:
    """Yield normalized chunks, skipping events with nothing actionable."""
    mapper = mapper_for(provider)
    async for raw in raw_stream:
        normalized = _safe_map(mapper, raw)
        if normalized is not None:
            yield normalized


# =============================================================================
# Stream processing
# =============================================================================


class StreamProcessor:
    """
    Accumulates a normalized stream and reports status.

    Status sequence: ``thinking`` before any content, ``streaming`` from the
    first non-empty answer text on (batched by size or elapsed time), and
    exactly one final ``complete``.
    """

    def __init__(
        self,
        options: StreamingConfig | None = None,
        on_chunk: ChunkCallback | None = None,
        on_status: StatusCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.options = options or StreamingConfig()
        self.on_chunk = on_chunk
        self.on_status = on_status
        self._clock = clock
        self.current_text = ""
        self.thinking_text = ""
        self.reported_tokens = 0
        self._pending = ""
        self._last_update = 0.0
        self._streaming = False

    @property
    def tokens_used(self) -> int:
        if self.reported_tokens:
            return self.reported_tokens
        return math.ceil(len(self.current_text) / 4)

    async def process_stream(self, raw_stream: AsyncIterable[Any], provider: str) -> StreamResult:
        """
        Consume the whole stream.

        The stream is read to exhaustion so trailing usage-only events (sent
        after the finish event) still report the token count; text arriving
        after the terminal event is ignored.
        """
        await self._emit("thinking")
        self._last_update = self._clock()
        finished = False

        async for chunk in normalize_stream(raw_stream, provider):
            if chunk.token_count:
                self.reported_tokens = chunk.token_count
            if finished:
                continue

            if chunk.is_thinking:
                self.thinking_text += chunk.text
            elif chunk.text:
                self.current_text += chunk.text
                self._pending += chunk.text
                await invoke_callback(self.on_chunk, chunk.text)

            if not self._streaming and self.current_text:
                self._streaming = True
                await self._flush("streaming")
            elif not chunk.is_complete:
                await self._maybe_emit_batch()

            finished = chunk.is_complete

        await self._emit("complete", is_final=True)

        return StreamResult(
            text=self.current_text,
            thinking_text=self.thinking_text,
            tokens_used=self.tokens_used,
        )

    async def _maybe_emit_batch(self) -> None:
        if not self._pending:
            return
        now = self._clock()
        elapsed_ms = (now - self._last_update) * 1000
        if len(self._pending) >= self.options.batch_size or elapsed_ms >= self.options.update_interval_ms:
            await self._flush("streaming")

    async def _flush(self, phase: StreamPhase) -> None:
        await self._emit(phase)
        self._pending = ""
        self._last_update = self._clock()

    async def _emit(self, phase: StreamPhase, is_final: bool = False) -> None:
        if self.on_status is None:
            return
        await invoke_callback(
            self.on_status,
            StreamStatus(
                phase=phase,
                current_text=self.current_text,
                thinking_content=self.thinking_text or None,
                tokens_used=self.tokens_used,
                is_final=is_final,
            ),
        )


__all__ = [
    "NormalizedChunk",
    "RLMProgress",
    "StreamProcessor",
    "StreamResult",
    "StreamStatus",
    "invoke_callback",
    "normalize_chunk",
    "normalize_stream",
]
