"""
Token and call budget tracking.

The manager only answers questions; callers decide what to do with a
``False`` and must check before calling ``consume``.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class BudgetState:
    """Snapshot of budget consumption."""

    tokens_used: int
    token_budget: int
    calls_made: int
    max_calls: int


class BudgetManager:
    """
    Tracks token and call consumption against fixed ceilings.

    One instance per execution; ``reset`` is called once at the start of
    every orchestrator run, never mid-flight.
    """

    def __init__(
        self,
        token_budget: int = 16000,
        max_calls: int = 20,
        summarize_threshold: int = 2000,
    ):
        """
        Initialize budget manager.

        Args:
            token_budget: Total tokens allowed for the execution
            max_calls: Total model calls allowed
            summarize_threshold: Slice size (tokens) above which a slice
                should be summarized before injection
        """
        self.token_budget = token_budget
        self.max_calls = max_calls
        self.summarize_threshold = summarize_threshold
        self.tokens_used = 0
        self.calls_made = 0

    def can_afford(self, estimated_tokens: int) -> bool:
        """True iff used + estimate stays within budget."""
        return self.tokens_used + estimated_tokens <= self.token_budget

    def can_make_call(self) -> bool:
        return self.calls_made < self.max_calls

    def consume(self, actual_tokens: int) -> None:
        """Record one call and its token cost. Never rejects."""
        self.tokens_used += actual_tokens
        self.calls_made += 1

    def remaining(self) -> tuple[int, int]:
        """Remaining (tokens, calls), floored at zero."""
        return (
            max(0, self.token_budget - self.tokens_used),
            max(0, self.max_calls - self.calls_made),
        )

    def should_summarize(self, slice_tokens: int) -> bool:
        """
        Whether a context slice should be summarized before use.

        True when the slice exceeds the fixed threshold or would eat more
        than half of what is left of the budget.
        """
        remaining = self.token_budget - self.tokens_used
        return slice_tokens > self.summarize_threshold or slice_tokens > remaining * 0.5

    def state(self) -> BudgetState:
        return BudgetState(
            tokens_used=self.tokens_used,
            token_budget=self.token_budget,
            calls_made=self.calls_made,
            max_calls=self.max_calls,
        )

    def reset(self) -> None:
        self.tokens_used = 0
        self.calls_made = 0


__all__ = ["BudgetManager", "BudgetState"]
