"""
Aggregator: combines worker results into the final output.

Decision table:
- exactly one result: passed through verbatim
- nothing above the confidence floor: fixed "unable to answer" text
- otherwise: one synthesis call, with a deterministic concatenation
  fallback if that call fails
"""

from __future__ import annotations

import logging

from .cancellation import CancellationToken
from .config import RLMConfig, StreamingConfig
from .model_resolver import resolve_model_id
from .prompts import build_aggregator_messages
from .providers import CompletionProvider, call_provider, run_guarded
from .stream_normalizer import (
    ChunkCallback,
    StatusCallback,
    StreamProcessor,
    StreamStatus,
    invoke_callback,
)
from .types import RLMOutput, WorkerResult

logger = logging.getLogger(__name__)

AGGREGATOR_TEMPERATURE = 0.5
MIN_CONFIDENCE = 0.1


def _total_tokens(results: list[WorkerResult]) -> int:
    return sum(r.tokens_used for r in results)


def _cache_hits(results: list[WorkerResult]) -> int:
    return sum(1 for r in results if r.from_cache)


def _valid_sorted(results: list[WorkerResult]) -> list[WorkerResult]:
    valid = [r for r in results if r.confidence > MIN_CONFIDENCE]
    return sorted(valid, key=lambda r: r.confidence, reverse=True)


def build_reasoning_summary(results: list[WorkerResult]) -> str:
    avg = sum(r.confidence for r in results) / len(results) if results else 0.0
    return (
        f"Synthesized {len(results)} sub-queries. Average confidence: {avg:.2f}. "
        f"Cache hits: {_cache_hits(results)}."
    )


def single_result_output(result: WorkerResult, config: RLMConfig) -> RLMOutput:
    return RLMOutput.build(
        result.answer,
        "full",
        depth_used=1,
        sub_calls=1,
        cache_hits=1 if result.from_cache else 0,
        tokens_used=result.tokens_used,
        reasoning=(
            f"Direct answer from single sub-query. Confidence: {result.confidence}"
            if config.enable_reasoning
            else None
        ),
    )


def low_confidence_output(results: list[WorkerResult], config: RLMConfig) -> RLMOutput:
    markdown = (
        "**Unable to generate a complete response.**\n\n"
        f"The system attempted {len(results)} sub-queries but could not find sufficient information."
    )
    return RLMOutput.build(
        markdown,
        "full",
        depth_used=1,
        sub_calls=len(results),
        cache_hits=_cache_hits(results),
        tokens_used=_total_tokens(results),
        reasoning=(
            "All sub-queries returned low-confidence or error results."
            if config.enable_reasoning
            else None
        ),
    )


def fallback_output(results: list[WorkerResult], config: RLMConfig) -> RLMOutput:
    """Answers listed by descending confidence; used when synthesis fails."""
    ordered = sorted(results, key=lambda r: r.confidence, reverse=True)
    markdown = "\n\n---\n\n".join(f"### {r.source_query}\n\n{r.answer}" for r in ordered)
    return RLMOutput.build(
        markdown,
        "full",
        depth_used=1,
        sub_calls=len(results),
        cache_hits=_cache_hits(results),
        tokens_used=_total_tokens(results),
        reasoning=(
            "Fallback aggregation: answers listed sequentially by confidence."
            if config.enable_reasoning
            else None
        ),
    )


def _precomputed_output(results: list[WorkerResult], config: RLMConfig) -> RLMOutput | None:
    if len(results) == 1:
        return single_result_output(results[0], config)
    if not _valid_sorted(results):
        return low_confidence_output(results, config)
    return None


async def aggregate_results(
    results: list[WorkerResult],
    config: RLMConfig,
    original_query: str,
    provider: CompletionProvider,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
) -> RLMOutput:
    """Combine worker results into one output. Never raises."""
    precomputed = _precomputed_output(results, config)
    if precomputed is not None:
        return precomputed

    valid = _valid_sorted(results)
    outcome = await call_provider(
        provider,
        resolve_model_id(config.resolved_model),
        build_aggregator_messages(original_query, valid),
        temperature=AGGREGATOR_TEMPERATURE,
        cancel_token=cancel_token,
        timeout=timeout,
    )
    if not outcome.ok:
        logger.warning(f"Synthesis call failed, concatenating answers: {outcome.error}")
        return fallback_output(results, config)

    return RLMOutput.build(
        outcome.response.content,
        "full",
        depth_used=1,
        sub_calls=len(results),
        cache_hits=_cache_hits(results),
        tokens_used=_total_tokens(results) + outcome.response.tokens,
        reasoning=build_reasoning_summary(results) if config.enable_reasoning else None,
        reasoning_type="model",
    )


async def aggregate_results_streaming(
    results: list[WorkerResult],
    config: RLMConfig,
    original_query: str,
    provider: CompletionProvider,
    streaming: StreamingConfig | None = None,
    on_chunk: ChunkCallback | None = None,
    on_status: StatusCallback | None = None,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
) -> RLMOutput:
    """
    Streaming variant of ``aggregate_results``.

    The synthesis path streams through ``StreamProcessor``; the other
    branches report their precomputed text in a single ``streaming`` status.
    ``timeout`` bounds the whole stream, not each event.
    """
    precomputed = _precomputed_output(results, config)
    if precomputed is not None:
        await invoke_callback(
            on_status,
            StreamStatus(
                phase="streaming",
                current_text=precomputed.markdown,
                tokens_used=precomputed.metadata.tokens_used,
            ),
        )
        return precomputed

    valid = _valid_sorted(results)
    processor = StreamProcessor(
        options=streaming or config.streaming,
        on_chunk=on_chunk,
        on_status=on_status,
    )

    try:
        raw_stream = provider.stream(
            resolve_model_id(config.resolved_model),
            build_aggregator_messages(original_query, valid),
            temperature=AGGREGATOR_TEMPERATURE,
        )
        stream_result = await run_guarded(
            processor.process_stream(raw_stream, provider.name),
            cancel_token,
            timeout,
            provider.name,
        )
    except Exception as e:
        logger.error(f"Streaming synthesis failed, concatenating answers: {e}")
        await invoke_callback(
            on_status,
            StreamStatus(
                phase="error",
                tokens_used=_total_tokens(results),
                is_final=True,
                error=str(e),
            ),
        )
        return fallback_output(results, config)

    reasoning = None
    reasoning_type = "proxy"
    if config.enable_reasoning:
        if stream_result.thinking_text:
            reasoning, reasoning_type = stream_result.thinking_text, "model"
        else:
            reasoning = build_reasoning_summary(results)

    return RLMOutput.build(
        stream_result.text,
        "full",
        depth_used=1,
        sub_calls=len(results),
        cache_hits=_cache_hits(results),
        tokens_used=_total_tokens(results) + stream_result.tokens_used,
        reasoning=reasoning,
        reasoning_type=reasoning_type,
    )


__all__ = ["aggregate_results", "aggregate_results_streaming", "fallback_output"]
