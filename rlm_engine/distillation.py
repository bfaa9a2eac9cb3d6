"""
Context distillation: shrink a context bundle to a token budget.

Three layers:
1. Ranking by role priority, then importance
2. Filtering: keep items while they fit (preserved roles may overshoot by
   a fixed overage)
3. Compression: long items that don't fit are truncated
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import replace

from .types import ContextBundle, ContextItem, estimate_tokens

logger = logging.getLogger(__name__)

ROLE_PRIORITY: dict[str, int] = {
    "instruction": 100,
    "constraint": 90,
    "critique": 80,
    "example": 70,
    "knowledge": 60,
    "history": 50,
    "evidence": 40,
    "context": 30,
}

DEFAULT_PRESERVE_ROLES = ("instruction", "constraint")
TRUNCATE_CHARS = 500
TRUNCATION_MARKER = "... [truncated for context efficiency]"

Distiller = Callable[[ContextBundle, int], ContextBundle]


def distill_context(
    context: ContextBundle,
    max_tokens: int = 4000,
    preserve_roles: Sequence[str] = DEFAULT_PRESERVE_ROLES,
    preserved_overage: int = 500,
) -> ContextBundle:
    """
    Distill ``context`` to roughly ``max_tokens``.

    Returns the bundle unchanged (with ``total_tokens`` filled in) when it
    already fits. Otherwise items are re-ordered by rank and the result is
    marked ``is_distilled``.
    """
    current = context.estimated_tokens
    if current <= max_tokens:
        return replace(context, total_tokens=current, is_distilled=False)

    ranked = sorted(
        context.items,
        key=lambda item: (-ROLE_PRIORITY.get(item.role_name, 0), -item.importance),
    )

    hard_cap = max_tokens + preserved_overage
    kept: list[ContextItem] = []
    token_count = 0

    for item in ranked:
        item_tokens = item.tokens

        if item.role_name in preserve_roles:
            if token_count + item_tokens <= hard_cap:
                kept.append(item)
                token_count += item_tokens
                if token_count > max_tokens:
                    logger.warning(
                        f"Preserved {item.role_name} item pushed context to {token_count} "
                        f"tokens (budget {max_tokens}, hard cap {hard_cap})"
                    )
            else:
                logger.warning(
                    f"Skipping preserved {item.role_name} item ({item_tokens} tokens): "
                    f"would exceed hard cap {hard_cap}"
                )
        elif token_count + item_tokens <= max_tokens:
            kept.append(item)
            token_count += item_tokens
        elif len(item.content) > TRUNCATE_CHARS:
            truncated = item.content[:TRUNCATE_CHARS] + TRUNCATION_MARKER
            truncated_tokens = estimate_tokens(truncated)
            if token_count + truncated_tokens <= max_tokens:
                kept.append(
                    replace(item, content=truncated, token_hint=None, is_summarized=True)
                )
                token_count += truncated_tokens

    logger.debug(f"Distilled {len(context)} items ({current} tokens) -> {len(kept)} ({token_count})")
    return ContextBundle(items=tuple(kept), total_tokens=token_count, is_distilled=True)


__all__ = ["Distiller", "ROLE_PRIORITY", "distill_context"]
