"""
Worker: answers one focused sub-query against a distilled context.
"""

from __future__ import annotations

import logging
import re
from dataclasses import replace

from .cache import RLMCache
from .cancellation import CancellationToken
from .config import RLMConfig
from .distillation import Distiller, distill_context
from .model_resolver import resolve_model_id
from .prompts import build_worker_messages
from .providers import CompletionProvider, call_provider
from .types import ContextBundle, SubQueryProposal, WorkerResult

logger = logging.getLogger(__name__)

WORKER_TEMPERATURE = 0.5
DEFAULT_CONFIDENCE = 0.5
FINGERPRINT_PREFIX_CHARS = 100

_TRAILING_CONFIDENCE = re.compile(r"confidence[:\s]+([0-9]+(?:\.[0-9]+)?)", re.IGNORECASE)
_LEADING_NUMBER = re.compile(r"\s*(-?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)")


def _clamp_confidence(raw: str) -> float:
    """Leading number of ``raw`` clamped to [0, 1]; trailing text is ignored."""
    match = _LEADING_NUMBER.match(raw)
    if match is None:
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, float(match.group(1))))


def parse_worker_response(content: str) -> tuple[str, float]:
    """
    Extract (answer, confidence) from a worker response.

    Order: explicit ``ANSWER:``/``CONFIDENCE:`` lines, then a trailing
    ``confidence: N`` anywhere in free text (removed from the answer), then
    the raw text at the default confidence.
    """
    answer: str | None = None
    confidence = DEFAULT_CONFIDENCE
    saw_confidence_line = False

    for line in content.splitlines():
        stripped = line.strip()
        upper = stripped.upper()
        if upper.startswith("ANSWER:"):
            answer = stripped[7:].strip()
        elif upper.startswith("CONFIDENCE:"):
            saw_confidence_line = True
            confidence = _clamp_confidence(stripped[11:].strip())

    if answer is not None:
        return answer, confidence

    if saw_confidence_line:
        # Confidence line without an ANSWER: line; drop it from the text
        remaining = [
            line for line in content.splitlines() if not line.strip().upper().startswith("CONFIDENCE:")
        ]
        return "\n".join(remaining).strip(), confidence

    match = _TRAILING_CONFIDENCE.search(content)
    if match:
        stripped_answer = (content[: match.start()] + content[match.end() :]).strip()
        return stripped_answer, _clamp_confidence(match.group(1))

    return content, DEFAULT_CONFIDENCE


def worker_cache_key(cache: RLMCache, sub_query: str, context: ContextBundle) -> str:
    """Cache hash over the sub-query and a bounded context fingerprint."""
    return cache.generate_hash(sub_query, context.fingerprint(FINGERPRINT_PREFIX_CHARS))


def lookup_cached(cache: RLMCache, sub_query: str, context: ContextBundle) -> WorkerResult | None:
    """
    Cached answer for a sub-query, or None.

    A served result spent no tokens on this call, so ``tokens_used`` is 0.
    Lookup errors are logged and treated as a miss.
    """
    try:
        cached = cache.get(worker_cache_key(cache, sub_query, context))
    except Exception as e:
        logger.warning(f"Worker cache lookup failed, treating as miss: {e}")
        return None
    if cached is None:
        return None
    return replace(cached, tokens_used=0)


def worker_budget(config: RLMConfig) -> int:
    """Per-worker token share, leaving headroom for synthesis."""
    return config.token_budget // (config.max_child_calls + 1)


async def execute_worker(
    sub_query: SubQueryProposal,
    context: ContextBundle,
    config: RLMConfig,
    provider: CompletionProvider,
    cache: RLMCache | None = None,
    depth: int = 1,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
    distiller: Distiller | None = None,
) -> WorkerResult:
    """
    Answer one sub-query.

    Never raises: provider failures, timeouts and cancellations come back
    as a zero-confidence result, which is not cached.
    """
    if cache is not None:
        cached = lookup_cached(cache, sub_query.query, context)
        if cached is not None:
            logger.debug(f"Worker cache hit at depth {depth}: {sub_query.query[:60]}")
            return cached

    distill = distiller or distill_context
    distilled = distill(context, worker_budget(config))

    outcome = await call_provider(
        provider,
        resolve_model_id(config.resolved_model),
        build_worker_messages(sub_query.query, sub_query.rationale, distilled),
        temperature=WORKER_TEMPERATURE,
        cancel_token=cancel_token,
        timeout=timeout,
    )
    if not outcome.ok:
        logger.error(f"Worker failed at depth {depth}: {outcome.error}")
        return WorkerResult(
            answer=f"Unable to answer: {outcome.error}",
            confidence=0.0,
            source_query=sub_query.query,
            tokens_used=0,
        )

    answer, confidence = parse_worker_response(outcome.response.content)
    result = WorkerResult(
        answer=answer,
        confidence=confidence,
        source_query=sub_query.query,
        tokens_used=outcome.response.tokens,
    )

    if cache is not None:
        try:
            cache.set(worker_cache_key(cache, sub_query.query, context), result)
        except Exception as e:
            logger.warning(f"Worker cache write failed: {e}")

    return result


__all__ = [
    "execute_worker",
    "lookup_cached",
    "parse_worker_response",
    "worker_budget",
    "worker_cache_key",
]
