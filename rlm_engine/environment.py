"""
Prompt environment: a large prompt treated as a programmable dataset.

The prompt is held outside the model and accessed through slicing, splitting,
keyword filtering and scoped sub-queries, so the model never receives the
whole prompt unless strictly necessary.

Operations:
- slice / head / tail / chunk / chunks: positional access
- split / split_by_sections: delimiter and section-marker splitting
- filter / find_section: keyword access
- query / query_all / map_reduce: model calls scoped to slices
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from .cache import RLMCache
from .cancellation import CancellationToken
from .config import EnvironmentConfig
from .model_resolver import resolve_model_id
from .providers import CompletionProvider, call_provider, resolve_provider
from .types import (
    ContextBundle,
    ContextItem,
    ProviderError,
    UnsafePatternError,
    WorkerResult,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

MAX_PATTERN_LENGTH = 200

# A quantified group whose body is itself quantified: (a+)+, (a*)*, (.*){2,}
_NESTED_QUANTIFIER = re.compile(r"\([^()]*(?:[+*]|\{\d*,?\d*\})[^()]*\)\s*(?:[+*]|\{\d*,?\d*\})")

QUERY_TEMPERATURE = 0.3


def validate_pattern(pattern: str | re.Pattern[str]) -> re.Pattern[str]:
    """
    Compile a caller-supplied split/filter pattern after safety checks.

    Raises:
        UnsafePatternError: Pattern is too long or has nested quantifiers
    """
    if isinstance(pattern, re.Pattern):
        source = pattern.pattern
    else:
        source = pattern

    if len(source) > MAX_PATTERN_LENGTH:
        raise UnsafePatternError(source, f"longer than {MAX_PATTERN_LENGTH} characters")
    if _NESTED_QUANTIFIER.search(source):
        raise UnsafePatternError(source, "nested quantifier")

    if isinstance(pattern, re.Pattern):
        return pattern
    try:
        return re.compile(source)
    except re.error as e:
        raise UnsafePatternError(source, f"invalid regex: {e}") from e


@dataclass
class PromptSlice:
    """A contiguous region of the prompt with its offsets."""

    content: str
    start_index: int
    end_index: int
    section_name: str | None = None
    chunk_index: int | None = None
    total_chunks: int | None = None

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self.content)


@dataclass
class QueryResult:
    answer: str
    source_slice: PromptSlice
    tokens: int
    from_cache: bool = False


@dataclass
class MapReduceResult:
    results: list[QueryResult]
    aggregated: str
    tokens_used: int = 0
    cache_hits: int = 0


@dataclass
class EnvironmentSummary:
    prompt_length: int
    estimated_tokens: int
    slices_created: int
    variables_set: int


QUERY_SYSTEM_TEMPLATE = """You are analyzing a portion of a larger document. Answer questions based ONLY on the provided content.

{slice_info}CONTENT:
\"\"\"
{content}
\"\"\"

Answer concisely and accurately."""


class PromptEnvironment:
    """
    A prompt held as external memory, accessed piecewise.

    The provider is resolved lazily from ``config.model_id`` and
    ``config.provider`` when none is injected.
    """

    def __init__(
        self,
        prompt: str,
        config: EnvironmentConfig | None = None,
        provider: CompletionProvider | None = None,
        cache: RLMCache | None = None,
        timeout: float | None = None,
    ):
        self._prompt = prompt
        self.config = config or EnvironmentConfig()
        self._provider = provider
        self.cache = cache
        self.timeout = timeout
        self._variables: dict[str, Any] = {}
        self._slice_history: list[PromptSlice] = []

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def length(self) -> int:
        return len(self._prompt)

    @property
    def estimated_tokens(self) -> int:
        return estimate_tokens(self._prompt)

    @property
    def raw(self) -> str:
        """Full prompt; use sparingly."""
        return self._prompt

    @property
    def provider(self) -> CompletionProvider:
        if self._provider is None:
            self._provider = resolve_provider(self.config.model_id, self.config.provider)
        return self._provider

    # -------------------------------------------------------------------------
    # Positional access
    # -------------------------------------------------------------------------

    def slice(self, start: int, end: int | None = None) -> PromptSlice:
        """Equivalent to ``prompt[start:end]``, with offsets clamped to the prompt."""
        start = max(0, min(start, self.length))
        end = self.length if end is None else max(start, min(end, self.length))
        result = PromptSlice(content=self._prompt[start:end], start_index=start, end_index=end)
        self._slice_history.append(result)
        return result

    def head(self, chars: int) -> PromptSlice:
        return self.slice(0, chars)

    def tail(self, chars: int) -> PromptSlice:
        return self.slice(max(0, self.length - chars))

    def chunk(self, index: int, chunk_size: int | None = None) -> PromptSlice:
        """The ``index``-th fixed-size chunk (0-based)."""
        size = chunk_size or self.config.default_chunk_size
        if size <= 0:
            raise ValueError(f"chunk_size must be positive, got {size}")
        start = index * size
        result = self.slice(start, start + size)
        result.chunk_index = index
        result.total_chunks = -(-self.length // size)
        return result

    def chunks(self, chunk_size: int | None = None) -> list[PromptSlice]:
        """All fixed-size chunks in order; empty for an empty prompt."""
        size = chunk_size or self.config.default_chunk_size
        if size <= 0:
            raise ValueError(f"chunk_size must be positive, got {size}")
        total = -(-self.length // size)
        return [self.chunk(i, size) for i in range(total)]

    # -------------------------------------------------------------------------
    # Splitting
    # -------------------------------------------------------------------------

    def split(self, delimiter: str | re.Pattern[str]) -> list[PromptSlice]:
        """
        Split on a literal string or a compiled pattern.

        Every part keeps its true offsets into the prompt.
        """
        if isinstance(delimiter, re.Pattern):
            compiled = validate_pattern(delimiter)
        else:
            if not delimiter:
                raise ValueError("delimiter must be non-empty")
            compiled = re.compile(re.escape(delimiter))

        bounds: list[tuple[int, int]] = []
        cursor = 0
        for match in compiled.finditer(self._prompt):
            if match.end() == match.start():
                continue
            bounds.append((cursor, match.start()))
            cursor = match.end()
        bounds.append((cursor, self.length))

        return [
            PromptSlice(
                content=self._prompt[start:end],
                start_index=start,
                end_index=end,
                section_name=f"Part {i + 1}",
                chunk_index=i,
                total_chunks=len(bounds),
            )
            for i, (start, end) in enumerate(bounds)
        ]

    def split_by_sections(self, pattern: str | re.Pattern[str]) -> list[PromptSlice]:
        """
        Split at section markers such as ``Chapter \\d+``.

        Each section runs from its marker to the next one; text before the
        first marker is not included.
        """
        compiled = validate_pattern(pattern)
        matches = list(compiled.finditer(self._prompt))
        slices = []
        for i, match in enumerate(matches):
            start = match.start()
            end = matches[i + 1].start() if i + 1 < len(matches) else self.length
            slices.append(
                PromptSlice(
                    content=self._prompt[start:end],
                    start_index=start,
                    end_index=end,
                    section_name=match.group(0),
                    chunk_index=i,
                    total_chunks=len(matches),
                )
            )
        return slices

    # -------------------------------------------------------------------------
    # Keyword access
    # -------------------------------------------------------------------------

    def filter(self, keyword: str, context_chars: int = 500) -> list[PromptSlice]:
        """Windows of ``context_chars`` around each case-insensitive keyword hit."""
        if not keyword:
            return []
        compiled = re.compile(re.escape(keyword), re.IGNORECASE)
        slices = []
        for i, match in enumerate(compiled.finditer(self._prompt)):
            start = max(0, match.start() - context_chars)
            end = min(self.length, match.end() + context_chars)
            slices.append(
                PromptSlice(
                    content=self._prompt[start:end],
                    start_index=start,
                    end_index=end,
                    section_name=f'Match {i + 1}: "{keyword}"',
                )
            )
        return slices

    def find_section(
        self,
        keyword: str,
        section_pattern: str | re.Pattern[str] = r"\n\n+",
    ) -> PromptSlice | None:
        """The section (paragraph by default) holding the first keyword hit."""
        index = self._prompt.find(keyword)
        if index == -1:
            return None

        pattern = section_pattern
        if isinstance(pattern, str):
            pattern = validate_pattern(pattern)
        for section in self.split(pattern):
            if section.start_index <= index <= section.end_index:
                return section
        return None

    # -------------------------------------------------------------------------
    # Model queries
    # -------------------------------------------------------------------------

    def _slice_fingerprint(self, target: PromptSlice) -> str:
        """Offsets and length first, so equal-prefix slices hash apart."""
        return (
            f"{target.start_index}-{target.end_index}:{len(target.content)}:"
            f"{target.content[: self.config.cache_prefix_chars]}"
        )

    def _cache_lookup(self, query_hash: str) -> WorkerResult | None:
        try:
            return self.cache.get(query_hash) if self.cache is not None else None
        except Exception as e:
            logger.warning(f"Cache lookup failed, treating as miss: {e}")
            return None

    def _cache_store(self, query_hash: str, result: WorkerResult) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(query_hash, result)
        except Exception as e:
            logger.warning(f"Cache write failed: {e}")

    async def query(
        self,
        query_template: str,
        slice: PromptSlice | None = None,
        skip_cache: bool = False,
        cancel_token: CancellationToken | None = None,
    ) -> QueryResult:
        """
        Ask the model about one slice, instructing it to use only that content.

        Defaults to the first ``max_slice_tokens`` worth of characters.

        Raises:
            ProviderError: If the model call fails
        """
        target = slice if slice is not None else self.slice(0, self.config.max_slice_tokens * 4)

        use_cache = self.config.enable_cache and self.cache is not None
        query_hash = None
        if use_cache:
            query_hash = self.cache.generate_hash(query_template, self._slice_fingerprint(target))
            if not skip_cache:
                cached = self._cache_lookup(query_hash)
                if cached is not None:
                    return QueryResult(
                        answer=cached.answer, source_slice=target, tokens=0, from_cache=True
                    )

        slice_info = f"Section: {target.section_name}\n" if target.section_name else ""
        system_prompt = QUERY_SYSTEM_TEMPLATE.format(slice_info=slice_info, content=target.content)

        provider = self.provider
        outcome = await call_provider(
            provider,
            resolve_model_id(self.config.model_id),
            [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": query_template},
            ],
            temperature=QUERY_TEMPERATURE,
            cancel_token=cancel_token,
            timeout=self.timeout,
        )
        if not outcome.ok:
            raise ProviderError(outcome.error or "unknown error", getattr(provider, "name", None))

        response = outcome.response
        if query_hash is not None:
            self._cache_store(
                query_hash,
                WorkerResult(
                    answer=response.content,
                    confidence=1.0,
                    source_query=query_template,
                    tokens_used=response.tokens,
                ),
            )

        return QueryResult(answer=response.content, source_slice=target, tokens=response.tokens)

    async def query_all(
        self,
        query_template: str,
        slices: list[PromptSlice],
        concurrency: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> list[QueryResult]:
        """Query every slice with bounded concurrency; results keep slice order."""
        limit = concurrency or self.config.query_concurrency
        semaphore = asyncio.Semaphore(max(1, limit))

        async def run(target: PromptSlice) -> QueryResult:
            async with semaphore:
                return await self.query(query_template, target, cancel_token=cancel_token)

        return list(await asyncio.gather(*(run(s) for s in slices)))

    async def map_reduce(
        self,
        map_query: str,
        reduce_query: str,
        slices: list[PromptSlice] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> MapReduceResult:
        """Query every slice, then answer ``reduce_query`` over the labelled answers."""
        targets = slices if slices is not None else self.chunks()

        results = await self.query_all(map_query, targets, cancel_token=cancel_token)

        combined = "\n\n".join(f"[Result {i + 1}]: {r.answer}" for i, r in enumerate(results))
        reduce_slice = PromptSlice(
            content=combined,
            start_index=0,
            end_index=len(combined),
            section_name="Aggregated Results",
        )
        reduced = await self.query(reduce_query, reduce_slice, cancel_token=cancel_token)

        every = [*results, reduced]
        return MapReduceResult(
            results=results,
            aggregated=reduced.answer,
            tokens_used=sum(r.tokens for r in every),
            cache_hits=sum(1 for r in every if r.from_cache),
        )

    # -------------------------------------------------------------------------
    # Variables
    # -------------------------------------------------------------------------

    def set_var(self, name: str, value: Any) -> None:
        self._variables[name] = value

    def get_var(self, name: str, default: Any = None) -> Any:
        return self._variables.get(name, default)

    def all_vars(self) -> dict[str, Any]:
        return dict(self._variables)

    def summary(self) -> EnvironmentSummary:
        return EnvironmentSummary(
            prompt_length=self.length,
            estimated_tokens=self.estimated_tokens,
            slices_created=len(self._slice_history),
            variables_set=len(self._variables),
        )


def create_environment(
    prompt: str,
    config: EnvironmentConfig | None = None,
    provider: CompletionProvider | None = None,
    cache: RLMCache | None = None,
) -> PromptEnvironment:
    return PromptEnvironment(prompt, config, provider=provider, cache=cache)


def render_context(items: Iterable[ContextItem | dict[str, Any]]) -> str:
    """Render items as ``[ROLE i]\\ncontent`` blocks separated by rules."""
    blocks = []
    for i, item in enumerate(items):
        if isinstance(item, ContextItem):
            role, content = item.role_name, item.content
        else:
            role, content = item.get("role") or "context", item.get("content", "")
        blocks.append(f"[{str(role).upper()} {i + 1}]\n{content}")
    return "\n\n---\n\n".join(blocks)


def create_environment_from_context(
    context: ContextBundle | Iterable[ContextItem | dict[str, Any]],
    config: EnvironmentConfig | None = None,
    provider: CompletionProvider | None = None,
    cache: RLMCache | None = None,
) -> PromptEnvironment:
    """Build an environment over a whole context bundle."""
    items = context.items if isinstance(context, ContextBundle) else context
    return PromptEnvironment(render_context(items), config, provider=provider, cache=cache)


__all__ = [
    "MapReduceResult",
    "PromptEnvironment",
    "PromptSlice",
    "QueryResult",
    "create_environment",
    "create_environment_from_context",
    "validate_pattern",
]
