"""
Shared type definitions for the RLM engine.

Covers the context bundle consumed by one execution, the intermediate
planner/worker records, the cache entry shape and the RLMOutput contract
returned to callers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel

RLMMode = Literal["simple", "full"]


class ContextRole(str, Enum):
    """Role tag carried by a context item."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    CONTEXT = "context"
    INSTRUCTION = "instruction"
    CONSTRAINT = "constraint"
    KNOWLEDGE = "knowledge"
    EXAMPLE = "example"
    HISTORY = "history"
    EVIDENCE = "evidence"
    CRITIQUE = "critique"


def estimate_tokens(text: str) -> int:
    """Rough estimate: 4 chars per token, rounded up."""
    return math.ceil(len(text) / 4)


@dataclass(frozen=True)
class ContextItem:
    """A single role-tagged piece of context material."""

    role: str
    content: str
    token_hint: int | None = None
    importance: int = 3
    is_summarized: bool = False

    @property
    def tokens(self) -> int:
        """Token length, preferring the caller-supplied hint."""
        if self.token_hint is not None:
            return self.token_hint
        return estimate_tokens(self.content)

    @property
    def role_name(self) -> str:
        if isinstance(self.role, ContextRole):
            return self.role.value
        return str(self.role)


@dataclass(frozen=True)
class ContextBundle:
    """
    Ordered, immutable sequence of context items for one execution.

    Owned by the caller; the engine only reads it.
    """

    items: tuple[ContextItem, ...] = ()
    total_tokens: int | None = None
    is_distilled: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.items, tuple):
            object.__setattr__(self, "items", tuple(self.items))

    @classmethod
    def from_texts(cls, *texts: str, role: str = "context") -> ContextBundle:
        """Build a bundle from plain strings sharing one role."""
        return cls(items=tuple(ContextItem(role=role, content=t) for t in texts))

    @property
    def estimated_tokens(self) -> int:
        if self.total_tokens is not None:
            return self.total_tokens
        return sum(item.tokens for item in self.items)

    @property
    def total_chars(self) -> int:
        return sum(len(item.content) for item in self.items)

    def fingerprint(self, prefix_chars: int = 100) -> str:
        """
        Bounded representation of the bundle used for cache hashing.

        Each item contributes its first ``prefix_chars`` characters plus its
        full length, so equal-prefix contexts of different size don't collide.
        """
        return "|".join(f"{item.content[:prefix_chars]}|{len(item.content)}" for item in self.items)

    def __len__(self) -> int:
        return len(self.items)


@dataclass
class ExecutionState:
    """Mutable state for one orchestrator execution."""

    depth: int = 0
    child_call_count: int = 0
    tokens_used: int = 0
    cache_hits: int = 0
    stopped_early: bool = False
    stop_reason: str | None = None

    def mark_stopped(self, reason: str) -> None:
        self.stopped_early = True
        self.stop_reason = reason


@dataclass
class SubQueryProposal:
    """A focused question proposed by the planner."""

    query: str
    rationale: str = ""
    priority: int = 3


@dataclass
class PlannerResult:
    """Planner proposal; never executed by the planner itself."""

    needs_sub_queries: bool = False
    sub_queries: list[SubQueryProposal] = field(default_factory=list)
    can_answer_directly: bool = False
    direct_answer: str | None = None
    tokens_used: int = 0


@dataclass
class WorkerResult:
    """Answer to one sub-query."""

    answer: str
    confidence: float
    source_query: str
    tokens_used: int = 0
    from_cache: bool = False

    def as_cached(self) -> WorkerResult:
        """Copy marked as served from cache."""
        return replace(self, from_cache=True)


@dataclass
class CachedResult:
    """Cache entry wrapping a worker result."""

    result: WorkerResult
    timestamp: float
    hash: str


# =============================================================================
# Output contract
# =============================================================================


class OutputContent(BaseModel):
    markdown: str


class ReasoningSummary(BaseModel):
    summary: str
    type: Literal["model", "proxy"]


class OutputMetadata(BaseModel):
    mode: RLMMode
    depth_used: int = 0
    sub_calls: int = 0
    cache_hits: int = 0
    tokens_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "depthUsed": self.depth_used,
            "subCalls": self.sub_calls,
            "cacheHits": self.cache_hits,
            "tokensUsed": self.tokens_used,
        }


class RLMOutput(BaseModel):
    """
    The only artifact returned to external callers.

    ``to_dict`` produces the stable wire shape consumed by UI and API layers.
    """

    content: OutputContent
    reasoning: ReasoningSummary | None = None
    metadata: OutputMetadata | None = None

    @classmethod
    def build(
        cls,
        markdown: str,
        mode: RLMMode,
        *,
        depth_used: int = 0,
        sub_calls: int = 0,
        cache_hits: int = 0,
        tokens_used: int = 0,
        reasoning: str | None = None,
        reasoning_type: Literal["model", "proxy"] = "proxy",
    ) -> RLMOutput:
        return cls(
            content=OutputContent(markdown=markdown),
            reasoning=(
                ReasoningSummary(summary=reasoning, type=reasoning_type)
                if reasoning is not None
                else None
            ),
            metadata=OutputMetadata(
                mode=mode,
                depth_used=depth_used,
                sub_calls=sub_calls,
                cache_hits=cache_hits,
                tokens_used=tokens_used,
            ),
        )

    @property
    def markdown(self) -> str:
        return self.content.markdown

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"content": {"markdown": self.content.markdown}}
        if self.reasoning is not None:
            data["reasoning"] = {"summary": self.reasoning.summary, "type": self.reasoning.type}
        if self.metadata is not None:
            data["metadata"] = self.metadata.to_dict()
        return data


# =============================================================================
# Provider call outcomes
# =============================================================================


@dataclass
class CompletionResponse:
    """Non-streaming completion returned by a provider."""

    content: str
    tokens: int = 0
    finish_reason: str | None = None


@dataclass
class ProviderOutcome:
    """
    Result-style wrapper around one provider call.

    Exactly one of ``response`` / ``error`` is set. Components branch on
    ``ok`` instead of catching exceptions from the provider.
    """

    response: CompletionResponse | None = None
    error: str | None = None
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.response is not None and self.error is None

    @classmethod
    def success(cls, response: CompletionResponse) -> ProviderOutcome:
        return cls(response=response)

    @classmethod
    def failure(
        cls, error: str, *, timed_out: bool = False, cancelled: bool = False
    ) -> ProviderOutcome:
        return cls(error=error, timed_out=timed_out, cancelled=cancelled)


# =============================================================================
# Errors
# =============================================================================


class RLMError(Exception):
    """Base class for RLM engine errors."""

    pass


class ProviderError(RLMError):
    """A completion provider failed (network, vendor, timeout or cancellation)."""

    def __init__(self, reason: str, provider: str | None = None):
        self.reason = reason
        self.provider = provider
        prefix = f"[{provider}] " if provider else ""
        super().__init__(f"{prefix}{reason}")


class CallCancelledError(ProviderError):
    """An outbound call was cancelled by its cancellation token."""

    def __init__(self, provider: str | None = None):
        super().__init__("call cancelled", provider)


class CallTimeoutError(ProviderError):
    """An outbound call did not finish within its timeout."""

    def __init__(self, timeout: float | None, provider: str | None = None):
        self.timeout = timeout
        super().__init__(f"timed out after {timeout}s", provider)


class UnsafePatternError(RLMError, ValueError):
    """A split/filter pattern was rejected before compilation."""

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Unsafe pattern rejected ({reason}): {pattern[:50]!r}")


class ConfigError(RLMError, ValueError):
    """Configuration value is invalid."""

    pass
