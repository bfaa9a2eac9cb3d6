"""
Pytest configuration and fixtures for rlm-engine tests.
"""

import asyncio
import json
import sys
from collections import deque
from pathlib import Path

import pytest

# Add project root to path so we can import the package without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from rlm_engine.cache import RLMCache
from rlm_engine.config import RLMConfig
from rlm_engine.types import CompletionResponse, ContextBundle, ContextItem


class FakeProvider:
    """
    Scripted completion provider.

    ``responses`` are consumed in order by ``complete``; each entry is a
    string (content, 10 tokens), a CompletionResponse, an exception to
    raise, or an async callable returning one of those. ``streams`` are
    consumed by ``stream``; each is a list of raw events (exceptions in the
    list are raised mid-stream).
    """

    def __init__(self, responses=None, streams=None, name="openai", default_tokens=10):
        self.name = name
        self.responses = deque(responses or [])
        self.streams = deque(streams or [])
        self.default_tokens = default_tokens
        self.calls = []
        self.stream_calls = []

    def queue(self, *responses):
        self.responses.extend(responses)
        return self

    async def complete(self, model, messages, temperature=None, max_tokens=None):
        self.calls.append(
            {"model": model, "messages": messages, "temperature": temperature}
        )
        if not self.responses:
            raise RuntimeError("FakeProvider has no queued responses")
        item = self.responses.popleft()
        if callable(item) and not isinstance(item, type):
            item = await item()
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            return CompletionResponse(content=item, tokens=self.default_tokens)
        return item

    async def stream(self, model, messages, temperature=None, max_tokens=None):
        self.stream_calls.append(
            {"model": model, "messages": messages, "temperature": temperature}
        )
        if not self.streams:
            raise RuntimeError("FakeProvider has no queued streams")
        for event in self.streams.popleft():
            if isinstance(event, BaseException):
                raise event
            yield event


class HangingStreamProvider(FakeProvider):
    """Streams one text chunk, then never sends another event."""

    async def stream(self, model, messages, temperature=None, max_tokens=None):
        self.stream_calls.append(
            {"model": model, "messages": messages, "temperature": temperature}
        )
        yield openai_chunk("partial")
        await asyncio.Event().wait()


def planner_json(*queries, direct_answer=None, needs=True):
    """Planner response proposing ``queries`` (str or (query, priority))."""
    sub_queries = []
    for q in queries:
        if isinstance(q, tuple):
            sub_queries.append({"query": q[0], "rationale": "needed", "priority": q[1]})
        else:
            sub_queries.append({"query": q, "rationale": "needed", "priority": 3})
    return json.dumps(
        {
            "needsSubQueries": needs and bool(sub_queries),
            "subQueries": sub_queries,
            "canAnswerDirectly": direct_answer is not None,
            "directAnswer": direct_answer,
        }
    )


def worker_answer(answer, confidence):
    return f"ANSWER: {answer}\nCONFIDENCE: {confidence}"


def openai_chunk(content=None, finish_reason=None, reasoning=None):
    delta = {}
    if content is not None:
        delta["content"] = content
    if reasoning is not None:
        delta["reasoning_content"] = reasoning
    return {"choices": [{"delta": delta, "finish_reason": finish_reason}]}


@pytest.fixture
def fake_provider():
    """Provide an empty scripted provider."""
    return FakeProvider()


@pytest.fixture
def cache():
    """Provide a fresh result cache."""
    return RLMCache()


@pytest.fixture
def default_config():
    """Provide the default execution config."""
    return RLMConfig()


@pytest.fixture
def full_config():
    """Provide a Full-mode config with reasoning enabled."""
    return RLMConfig(mode="full", enable_reasoning=True)


@pytest.fixture
def small_context():
    """Provide a ~50-token context."""
    return ContextBundle(items=(ContextItem(role="context", content="Paris is in France. " * 10),))


@pytest.fixture
def multi_item_context():
    """Provide a context with several role-tagged items."""
    return ContextBundle(
        items=(
            ContextItem(role="instruction", content="Answer using the reports only.", importance=5),
            ContextItem(role="knowledge", content="Q1 revenue was 10M. " * 20, importance=4),
            ContextItem(role="evidence", content="Q2 revenue was 12M. " * 20, importance=3),
            ContextItem(role="history", content="Earlier we discussed costs. " * 10, importance=2),
        )
    )


@pytest.fixture
def large_context():
    """Provide a ~10,000-token context."""
    return ContextBundle(items=(ContextItem(role="context", content="x" * 40_000),))


# Markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "hypothesis: property-based tests"
    )
    config.addinivalue_line(
        "markers", "security: pattern safety tests"
    )
