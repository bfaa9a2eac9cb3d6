"""
Unit tests for types module.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from rlm_engine.types import (
    CallCancelledError,
    CompletionResponse,
    ConfigError,
    ContextBundle,
    ContextItem,
    ContextRole,
    ExecutionState,
    ProviderError,
    ProviderOutcome,
    RLMError,
    RLMOutput,
    UnsafePatternError,
    WorkerResult,
    estimate_tokens,
)


class TestEstimateTokens:
    """Tests for the 4-chars-per-token heuristic."""

    def test_empty(self):
        assert estimate_tokens("") == 0

    def test_rounds_up(self):
        assert estimate_tokens("abc") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_large(self):
        assert estimate_tokens("x" * 40_000) == 10_000


class TestContextItem:
    """Tests for ContextItem."""

    def test_tokens_prefers_hint(self):
        item = ContextItem(role="context", content="x" * 100, token_hint=7)
        assert item.tokens == 7

    def test_tokens_estimated(self):
        item = ContextItem(role="context", content="x" * 100)
        assert item.tokens == 25

    def test_role_name_from_enum(self):
        item = ContextItem(role=ContextRole.INSTRUCTION, content="do it")
        assert item.role_name == "instruction"

    def test_frozen(self):
        item = ContextItem(role="context", content="a")
        with pytest.raises(AttributeError):
            item.content = "b"


class TestContextBundle:
    """Tests for ContextBundle."""

    def test_items_become_tuple(self):
        bundle = ContextBundle(items=[ContextItem(role="context", content="a")])
        assert isinstance(bundle.items, tuple)
        assert len(bundle) == 1

    def test_estimated_tokens_uses_total_hint(self):
        bundle = ContextBundle.from_texts("x" * 400, "y" * 400)
        assert bundle.estimated_tokens == 200
        hinted = ContextBundle(items=bundle.items, total_tokens=42)
        assert hinted.estimated_tokens == 42

    def test_total_chars(self):
        bundle = ContextBundle.from_texts("abc", "de")
        assert bundle.total_chars == 5

    def test_fingerprint_bounded(self):
        bundle = ContextBundle.from_texts("a" * 500)
        fp = bundle.fingerprint(100)
        assert fp == "a" * 100 + "|500"

    def test_fingerprint_distinguishes_lengths(self):
        """Same prefix, different lengths -> different fingerprints."""
        short = ContextBundle.from_texts("a" * 150)
        long = ContextBundle.from_texts("a" * 151)
        assert short.fingerprint() != long.fingerprint()

    def test_fingerprint_joins_items(self):
        bundle = ContextBundle.from_texts("one", "two")
        assert bundle.fingerprint() == "one|3|two|3"


class TestExecutionState:
    """Tests for ExecutionState."""

    def test_defaults(self):
        state = ExecutionState()
        assert state.depth == 0
        assert state.child_call_count == 0
        assert state.stopped_early is False
        assert state.stop_reason is None

    def test_mark_stopped(self):
        state = ExecutionState()
        state.mark_stopped("budget")
        assert state.stopped_early is True
        assert state.stop_reason == "budget"


class TestWorkerResult:
    """Tests for WorkerResult."""

    def test_as_cached_copies(self):
        result = WorkerResult(answer="42", confidence=0.8, source_query="q", tokens_used=5)
        cached = result.as_cached()
        assert cached.from_cache is True
        assert result.from_cache is False
        assert cached.answer == "42"
        assert cached.tokens_used == 5


class TestRLMOutput:
    """Tests for the output contract."""

    def test_to_dict_camel_case(self):
        output = RLMOutput.build(
            "# Answer",
            "full",
            depth_used=1,
            sub_calls=2,
            cache_hits=1,
            tokens_used=300,
            reasoning="why",
            reasoning_type="model",
        )
        assert output.to_dict() == {
            "content": {"markdown": "# Answer"},
            "reasoning": {"summary": "why", "type": "model"},
            "metadata": {
                "mode": "full",
                "depthUsed": 1,
                "subCalls": 2,
                "cacheHits": 1,
                "tokensUsed": 300,
            },
        }

    def test_reasoning_omitted_when_absent(self):
        output = RLMOutput.build("text", "simple")
        data = output.to_dict()
        assert "reasoning" not in data
        assert data["metadata"]["mode"] == "simple"
        assert output.markdown == "text"

    def test_invalid_mode_rejected(self):
        with pytest.raises(ValueError):
            RLMOutput.build("text", "turbo")


class TestProviderOutcome:
    """Tests for result-style provider outcomes."""

    def test_success(self):
        outcome = ProviderOutcome.success(CompletionResponse(content="hi", tokens=3))
        assert outcome.ok
        assert outcome.response.content == "hi"

    def test_failure_flags(self):
        outcome = ProviderOutcome.failure("slow", timed_out=True)
        assert not outcome.ok
        assert outcome.timed_out
        assert not outcome.cancelled


class TestErrors:
    """Tests for the error hierarchy."""

    def test_provider_error_message(self):
        error = ProviderError("rate limited", "openai")
        assert isinstance(error, RLMError)
        assert str(error) == "[openai] rate limited"
        assert error.reason == "rate limited"

    def test_cancelled_is_provider_error(self):
        assert isinstance(CallCancelledError(), ProviderError)

    def test_unsafe_pattern_is_value_error(self):
        error = UnsafePatternError("(a+)+", "nested quantifier")
        assert isinstance(error, ValueError)
        assert "nested quantifier" in str(error)

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)
