"""
Unit tests for the prompt environment.
"""

import asyncio
import re
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from conftest import FakeProvider

from rlm_engine.cache import RLMCache
from rlm_engine.config import EnvironmentConfig
from rlm_engine.environment import (
    PromptEnvironment,
    PromptSlice,
    create_environment,
    create_environment_from_context,
    render_context,
)
from rlm_engine.types import (
    CompletionResponse,
    ContextBundle,
    ContextItem,
    ProviderError,
    UnsafePatternError,
)


class TestPositionalAccess:
    """Tests for slice/head/tail/chunk."""

    def test_slice_offsets(self):
        env = PromptEnvironment("0123456789")
        s = env.slice(2, 5)

        assert s.content == "234"
        assert (s.start_index, s.end_index) == (2, 5)

    def test_slice_clamps(self):
        env = PromptEnvironment("abc")
        assert env.slice(-5, 100).content == "abc"
        assert env.slice(10).content == ""
        assert env.slice(2, 1).content == ""

    def test_head_tail(self):
        env = PromptEnvironment("abcdef")
        assert env.head(2).content == "ab"
        assert env.tail(2).content == "ef"
        assert env.tail(2).start_index == 4

    def test_chunk(self):
        env = PromptEnvironment("a" * 25)
        c = env.chunk(2, 10)

        assert c.content == "a" * 5
        assert c.chunk_index == 2
        assert c.total_chunks == 3

    def test_chunks_cover_prompt(self):
        prompt = "".join(chr(97 + i % 26) for i in range(95))
        chunks = PromptEnvironment(prompt).chunks(10)

        assert len(chunks) == 10
        assert "".join(c.content for c in chunks) == prompt
        assert all(c.total_chunks == 10 for c in chunks)

    def test_chunks_empty_prompt(self):
        assert PromptEnvironment("").chunks(10) == []

    def test_chunks_invalid_size(self):
        with pytest.raises(ValueError):
            PromptEnvironment("abc").chunks(0)

    def test_default_chunk_size(self):
        env = PromptEnvironment("x" * 4500)
        assert len(env.chunks()) == 3

    def test_properties(self):
        env = PromptEnvironment("x" * 10)
        assert env.length == 10
        assert env.estimated_tokens == 3
        assert env.raw == "x" * 10


class TestSplitting:
    """Tests for split and split_by_sections."""

    def test_split_literal(self):
        parts = PromptEnvironment("a--b--c").split("--")

        assert [p.content for p in parts] == ["a", "b", "c"]
        assert [p.start_index for p in parts] == [0, 3, 6]
        assert parts[1].section_name == "Part 2"

    def test_split_literal_is_not_regex(self):
        parts = PromptEnvironment("a.b").split(".")
        assert [p.content for p in parts] == ["a", "b"]

    def test_split_offsets_match_content(self):
        prompt = "one\n\ntwo\n\n\nthree"
        env = PromptEnvironment(prompt)
        for part in env.split(re.compile(r"\n\n+")):
            assert prompt[part.start_index : part.end_index] == part.content

    def test_split_empty_delimiter(self):
        with pytest.raises(ValueError):
            PromptEnvironment("abc").split("")

    def test_split_unsafe_pattern(self):
        with pytest.raises(UnsafePatternError):
            PromptEnvironment("aaaa").split(re.compile(r"(a+)+"))

    def test_split_by_sections(self):
        prompt = "Intro\nChapter 1\nfirst\nChapter 2\nsecond"
        sections = PromptEnvironment(prompt).split_by_sections(r"Chapter \d+")

        assert [s.section_name for s in sections] == ["Chapter 1", "Chapter 2"]
        assert sections[0].content == "Chapter 1\nfirst\n"
        assert sections[1].content == "Chapter 2\nsecond"

    def test_split_by_sections_unsafe(self):
        with pytest.raises(UnsafePatternError):
            PromptEnvironment("x").split_by_sections(r"(\w*)*")


class TestKeywordAccess:
    """Tests for filter and find_section."""

    def test_filter_case_insensitive(self):
        env = PromptEnvironment("Revenue grew. Later, REVENUE fell.")
        matches = env.filter("revenue", context_chars=3)

        assert len(matches) == 2
        assert matches[0].section_name == 'Match 1: "revenue"'
        assert "Revenue" in matches[0].content

    def test_filter_escapes_keyword(self):
        env = PromptEnvironment("cost (USD) is 5")
        assert len(env.filter("(USD)")) == 1

    def test_filter_empty_keyword(self):
        assert PromptEnvironment("abc").filter("") == []

    def test_find_section(self):
        prompt = "first para\n\nsecond has the needle\n\nthird"
        section = PromptEnvironment(prompt).find_section("needle")
        assert section.content == "second has the needle"

    def test_find_section_missing(self):
        assert PromptEnvironment("abc").find_section("zzz") is None


class TestQueries:
    """Tests for model queries over slices."""

    @pytest.mark.asyncio
    async def test_query_scoped_to_slice(self):
        provider = FakeProvider(["42"])
        env = PromptEnvironment("The answer is 42.", provider=provider)

        result = await env.query("What is the answer?", env.slice(0, 17))

        assert result.answer == "42"
        assert result.tokens == 10
        system = provider.calls[0]["messages"][0]["content"]
        assert "The answer is 42." in system
        assert "ONLY" in system
        assert provider.calls[0]["temperature"] == 0.3

    @pytest.mark.asyncio
    async def test_query_section_info(self):
        provider = FakeProvider(["ok"])
        env = PromptEnvironment("text", provider=provider)

        await env.query("q", PromptSlice("text", 0, 4, section_name="Chapter 1"))
        assert "Section: Chapter 1" in provider.calls[0]["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_query_default_slice(self):
        provider = FakeProvider(["ok"])
        env = PromptEnvironment("x" * 20000, EnvironmentConfig(max_slice_tokens=100), provider=provider)

        result = await env.query("q")
        assert result.source_slice.end_index == 400

    @pytest.mark.asyncio
    async def test_query_cached(self):
        provider = FakeProvider(["first"])
        env = PromptEnvironment("some text", provider=provider, cache=RLMCache())

        first = await env.query("q", env.slice(0))
        second = await env.query("q", env.slice(0))

        assert first.from_cache is False
        assert second.from_cache is True
        assert second.answer == "first"
        assert second.tokens == 0
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_query_skip_cache(self):
        provider = FakeProvider(["one", "two"])
        env = PromptEnvironment("text", provider=provider, cache=RLMCache())

        await env.query("q", env.slice(0))
        result = await env.query("q", env.slice(0), skip_cache=True)
        assert result.answer == "two"

    @pytest.mark.asyncio
    async def test_query_cache_disabled(self):
        provider = FakeProvider(["one", "two"])
        env = PromptEnvironment(
            "text", EnvironmentConfig(enable_cache=False), provider=provider, cache=RLMCache()
        )

        await env.query("q", env.slice(0))
        await env.query("q", env.slice(0))
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_query_failure_raises(self):
        env = PromptEnvironment("text", provider=FakeProvider([RuntimeError("boom")]))

        with pytest.raises(ProviderError, match="boom"):
            await env.query("q")

    @pytest.mark.asyncio
    async def test_broken_cache_is_a_miss(self):
        class BrokenCache(RLMCache):
            def get(self, query_hash):
                raise RuntimeError("disk gone")

        provider = FakeProvider(["fresh"])
        env = PromptEnvironment("text", provider=provider, cache=BrokenCache())

        result = await env.query("q")
        assert result.answer == "fresh"

    @pytest.mark.asyncio
    async def test_query_all_keeps_order(self):
        provider = FakeProvider(["a", "b", "c"])
        env = PromptEnvironment("abc", provider=provider)

        results = await env.query_all("q", env.chunks(1), concurrency=1)
        assert [r.answer for r in results] == ["a", "b", "c"]
        assert [r.source_slice.content for r in results] == ["a", "b", "c"]


    @pytest.mark.asyncio
    @pytest.mark.parametrize("concurrency,expected_peak", [(3, 3), (1, 1)])
    async def test_query_all_bounds_calls_in_flight(self, concurrency, expected_peak):
        class CountingProvider(FakeProvider):
            def __init__(self):
                super().__init__()
                self.in_flight = 0
                self.peak = 0

            async def complete(self, model, messages, temperature=None, max_tokens=None):
                self.in_flight += 1
                self.peak = max(self.peak, self.in_flight)
                await asyncio.sleep(0.01)
                self.in_flight -= 1
                return CompletionResponse(content="ok", tokens=1)

        provider = CountingProvider()
        env = PromptEnvironment("abcdefgh", provider=provider)

        results = await env.query_all("q", env.chunks(1), concurrency=concurrency)

        assert len(results) == 8
        assert provider.peak == expected_peak

    @pytest.mark.asyncio
    async def test_equal_prefix_slices_cached_separately(self):
        cache = RLMCache()
        provider = FakeProvider(["first", "second"])
        env = PromptEnvironment("H" * 300 + "A" + "H" * 300 + "B", provider=provider, cache=cache)

        results = await env.query_all("q", env.chunks(301), concurrency=1)

        assert [r.answer for r in results] == ["first", "second"]
        assert not any(r.from_cache for r in results)
    @pytest.mark.asyncio
    async def test_map_reduce(self):
        provider = FakeProvider(["one", "two", "final"])
        env = PromptEnvironment("ab", provider=provider)

        result = await env.map_reduce("Summarize", "Combine", env.chunks(1))

        assert result.aggregated == "final"
        assert len(result.results) == 2
        assert result.tokens_used == 30
        reduce_system = provider.calls[2]["messages"][0]["content"]
        assert "[Result 1]: one" in reduce_system
        assert "[Result 2]: two" in reduce_system
        assert "Aggregated Results" in reduce_system

    @pytest.mark.asyncio
    async def test_map_reduce_counts_cache_hits(self):
        cache = RLMCache()
        provider = FakeProvider(["one", "final", "final-2"])
        env = PromptEnvironment("a", provider=provider, cache=cache)

        await env.map_reduce("Summarize", "Combine")
        result = await env.map_reduce("Summarize", "Combine")

        # map answer and reduce answer both come from cache the second time
        assert result.cache_hits == 2
        assert result.tokens_used == 0


class TestVariablesAndSummary:
    """Tests for named variables and the summary."""

    def test_variables(self):
        env = PromptEnvironment("x")
        env.set_var("facts", [1, 2])

        assert env.get_var("facts") == [1, 2]
        assert env.get_var("missing", "d") == "d"
        assert env.all_vars() == {"facts": [1, 2]}

    def test_summary_counts_slices(self):
        env = PromptEnvironment("x" * 100)
        env.head(10)
        env.tail(10)
        env.set_var("a", 1)

        summary = env.summary()
        assert summary.prompt_length == 100
        assert summary.estimated_tokens == 25
        assert summary.slices_created == 2
        assert summary.variables_set == 1


class TestConstruction:
    """Tests for environment factories."""

    def test_render_context(self):
        rendered = render_context(
            [
                ContextItem(role="instruction", content="Be exact."),
                {"role": "evidence", "content": "It rained."},
            ]
        )
        assert rendered == "[INSTRUCTION 1]\nBe exact.\n\n---\n\n[EVIDENCE 2]\nIt rained."

    def test_from_bundle(self):
        bundle = ContextBundle.from_texts("a", "b")
        env = create_environment_from_context(bundle)
        assert env.raw == "[CONTEXT 1]\na\n\n---\n\n[CONTEXT 2]\nb"

    def test_create_environment(self):
        provider = FakeProvider()
        env = create_environment("abc", provider=provider)
        assert env.provider is provider

    def test_lazy_provider_resolution(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        env = PromptEnvironment("abc")

        with pytest.raises(ProviderError):
            env.provider

