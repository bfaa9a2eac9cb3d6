"""
Unit tests for model and provider resolution.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from rlm_engine.model_resolver import (
    api_key_for_provider,
    normalize_provider,
    provider_for_model,
    resolve_model_id,
)


class TestNormalizeProvider:
    """Tests for provider alias normalization."""

    @pytest.mark.parametrize(
        "alias,expected",
        [
            ("claude", "anthropic"),
            ("Anthropic", "anthropic"),
            ("gpt", "openai"),
            ("gemini", "google"),
            ("grok", "xai"),
            ("deepseek", "deepseek"),
        ],
    )
    def test_aliases(self, alias, expected):
        assert normalize_provider(alias) == expected

    def test_empty_defaults_to_openai(self):
        assert normalize_provider(None) == "openai"
        assert normalize_provider("") == "openai"

    def test_unknown_warns(self, caplog):
        assert normalize_provider("mystery") == "openai"
        assert "Unknown provider" in caplog.text


class TestModelResolution:
    """Tests for model id mapping."""

    def test_registry_alias(self):
        assert resolve_model_id("sonnet") == "claude-sonnet-4-20250514"

    def test_unknown_passes_through(self):
        assert resolve_model_id("my-custom-model") == "my-custom-model"

    def test_default(self):
        assert resolve_model_id(None) == "gpt-4o"

    @pytest.mark.parametrize(
        "model_id,expected",
        [
            ("haiku", "anthropic"),
            ("claude-3-opus", "anthropic"),
            ("gemini-1.5-pro", "google"),
            ("grok-2", "xai"),
            ("deepseek-coder", "deepseek"),
            ("gpt-4.1", "openai"),
            (None, "openai"),
        ],
    )
    def test_provider_for_model(self, model_id, expected):
        assert provider_for_model(model_id) == expected


class TestApiKeys:
    """Tests for API key lookup."""

    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")
        assert api_key_for_provider("openai", "explicit") == "explicit"

    def test_env_lookup(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant")
        assert api_key_for_provider("claude") == "sk-ant"

    def test_google_env_name(self, monkeypatch):
        monkeypatch.setenv("GOOGLE_AI_API_KEY", "g-key")
        assert api_key_for_provider("gemini") == "g-key"

    def test_missing_is_empty(self, monkeypatch):
        monkeypatch.delenv("XAI_API_KEY", raising=False)
        assert api_key_for_provider("xai") == ""
