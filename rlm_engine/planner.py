"""
Planner: proposes sub-queries for a query and its context.

The planner never executes anything. It returns a proposal and the
orchestrator decides whether to act on it. Any failure (provider error,
malformed JSON) yields the conservative result that forces Simple mode.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from .cancellation import CancellationToken
from .config import RLMConfig
from .model_resolver import resolve_model_id
from .prompts import build_planner_messages
from .providers import CompletionProvider, call_provider
from .types import ContextBundle, PlannerResult, SubQueryProposal

logger = logging.getLogger(__name__)

PLANNER_TEMPERATURE = 0.3
MAX_PROPOSALS = 5
DEFAULT_PRIORITY = 3


def parse_json_response(content: str) -> Any:
    """
    Parse JSON that may be wrapped in a markdown code fence.

    Raises:
        json.JSONDecodeError: If the remaining text is not JSON
    """
    cleaned = content.strip()
    if cleaned.lower().startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return json.loads(cleaned.strip())


def _coerce_priority(value: Any) -> int:
    try:
        priority = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return DEFAULT_PRIORITY
    if priority == 0:
        return DEFAULT_PRIORITY
    return max(1, min(5, priority))


def normalize_planner_result(parsed: Any, tokens_used: int) -> PlannerResult:
    """
    Validate raw planner JSON.

    Keeps at most five proposals, defaults and clamps priorities, drops
    empty queries and sorts ascending by priority (stable).

    Raises:
        ValueError: If the payload is not a JSON object
    """
    if not isinstance(parsed, dict):
        raise ValueError(f"Planner output is not an object: {type(parsed).__name__}")

    proposals: list[SubQueryProposal] = []
    raw_queries = parsed.get("subQueries")
    if isinstance(raw_queries, list):
        for raw in raw_queries[:MAX_PROPOSALS]:
            if not isinstance(raw, dict):
                continue
            query = str(raw.get("query") or "").strip()
            if not query:
                continue
            proposals.append(
                SubQueryProposal(
                    query=query,
                    rationale=str(raw.get("rationale") or ""),
                    priority=_coerce_priority(raw.get("priority")),
                )
            )

    proposals.sort(key=lambda p: p.priority)

    direct_answer = parsed.get("directAnswer")
    return PlannerResult(
        needs_sub_queries=bool(parsed.get("needsSubQueries")) and len(proposals) > 0,
        sub_queries=proposals,
        can_answer_directly=bool(parsed.get("canAnswerDirectly")),
        direct_answer=direct_answer if isinstance(direct_answer, str) else None,
        tokens_used=tokens_used,
    )


async def run_planner(
    query: str,
    context: ContextBundle,
    config: RLMConfig,
    provider: CompletionProvider,
    cancel_token: CancellationToken | None = None,
    timeout: float | None = None,
) -> PlannerResult:
    """
    Ask the model whether the query needs decomposition.

    Never raises; failures return a result with both flags false.
    """
    outcome = await call_provider(
        provider,
        resolve_model_id(config.resolved_model),
        build_planner_messages(query, context),
        temperature=PLANNER_TEMPERATURE,
        cancel_token=cancel_token,
        timeout=timeout,
    )
    if not outcome.ok:
        logger.warning(f"Planner call failed, falling back to simple mode: {outcome.error}")
        return PlannerResult()

    try:
        parsed = parse_json_response(outcome.response.content)
        result = normalize_planner_result(parsed, outcome.response.tokens)
    except ValueError as e:
        # json.JSONDecodeError is a ValueError
        logger.warning(f"Planner returned unparseable output, falling back: {e}")
        return PlannerResult()

    logger.info(
        f"Planner: {len(result.sub_queries)} sub-queries, "
        f"direct={result.can_answer_directly}"
    )
    return result


__all__ = ["normalize_planner_result", "parse_json_response", "run_planner"]
