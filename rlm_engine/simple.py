"""
Simple mode: distill the context and make a single completion call.
"""

from __future__ import annotations

import logging

from .cancellation import CancellationToken
from .config import RLMConfig, StreamingConfig
from .distillation import Distiller, distill_context
from .model_resolver import resolve_model_id
from .prompts import build_reasoning_prompt
from .providers import CompletionProvider, call_provider, run_guarded
from .stream_normalizer import ChunkCallback, StatusCallback, StreamProcessor
from .types import ContextBundle, RLMOutput

logger = logging.getLogger(__name__)

SIMPLE_TEMPERATURE = 0.7
# Share of the token budget given to context; the rest is left for the response
CONTEXT_BUDGET_SHARE = 0.7

SIMPLE_REASONING = "Direct response generated using distilled context (Simple RLM mode)."


def _error_output(message: str, config: RLMConfig, tokens_used: int = 0) -> RLMOutput:
    return RLMOutput.build(
        f"**Error during Simple RLM execution:**\n\n{message}",
        "simple",
        tokens_used=tokens_used,
        reasoning="Execution failed with an error." if config.enable_reasoning else None,
    )


def _prepare_messages(
    query: str,
    context: ContextBundle,
    config: RLMConfig,
    system_prompt: str | None,
    distiller: Distiller | None,
) -> list[dict[str, str]]:
    distill = distiller or distill_context
    distilled = distill(context, int(config.token_budget * CONTEXT_BUDGET_SHARE))
    return build_reasoning_prompt(system_prompt, distilled, query)


async def execute_simple(
    query: str,
    context: ContextBundle,
    config: RLMConfig,
    provider: CompletionProvider,
    system_prompt: str | None = None,
    distiller: Distiller | None = None,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
) -> RLMOutput:
    """One call, no decomposition. Failures become an error markdown output."""
    messages = _prepare_messages(query, context, config, system_prompt, distiller)

    outcome = await call_provider(
        provider,
        resolve_model_id(config.resolved_model),
        messages,
        temperature=SIMPLE_TEMPERATURE,
        cancel_token=cancel_token,
        timeout=timeout,
    )
    if not outcome.ok:
        logger.error(f"Simple execution failed: {outcome.error}")
        return _error_output(outcome.error or "unknown error", config)

    return RLMOutput.build(
        outcome.response.content,
        "simple",
        tokens_used=outcome.response.tokens,
        reasoning=SIMPLE_REASONING if config.enable_reasoning else None,
    )


async def execute_simple_streaming(
    query: str,
    context: ContextBundle,
    config: RLMConfig,
    provider: CompletionProvider,
    system_prompt: str | None = None,
    distiller: Distiller | None = None,
    streaming: StreamingConfig | None = None,
    on_chunk: ChunkCallback | None = None,
    on_status: StatusCallback | None = None,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
) -> RLMOutput:
    """Streaming Simple mode; streamed thinking becomes ``model`` reasoning."""
    messages = _prepare_messages(query, context, config, system_prompt, distiller)
    processor = StreamProcessor(
        options=streaming or config.streaming,
        on_chunk=on_chunk,
        on_status=on_status,
    )

    try:
        raw_stream = provider.stream(
            resolve_model_id(config.resolved_model),
            messages,
            temperature=SIMPLE_TEMPERATURE,
        )
        result = await run_guarded(
            processor.process_stream(raw_stream, provider.name),
            cancel_token,
            timeout,
            provider.name,
        )
    except Exception as e:
        logger.error(f"Streaming simple execution failed: {e}")
        return _error_output(str(e) or type(e).__name__, config, processor.tokens_used)

    reasoning = None
    reasoning_type = "proxy"
    if config.enable_reasoning:
        if result.thinking_text:
            reasoning, reasoning_type = result.thinking_text, "model"
        else:
            reasoning = SIMPLE_REASONING

    return RLMOutput.build(
        result.text,
        "simple",
        tokens_used=result.tokens_used,
        reasoning=reasoning,
        reasoning_type=reasoning_type,
    )


__all__ = ["execute_simple", "execute_simple_streaming"]
