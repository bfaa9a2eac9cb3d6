"""
Model and provider resolution.

Maps user-facing model ids to provider API ids, provider aliases to the
canonical provider tag, and provider tags to their API-key variables.
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"
DEFAULT_PROVIDER = "openai"

# Provider aliases -> canonical provider tag
PROVIDER_ALIASES: dict[str, str] = {
    "claude": "anthropic",
    "anthropic": "anthropic",
    "gpt": "openai",
    "openai": "openai",
    "gemini": "google",
    "google": "google",
    "grok": "xai",
    "xai": "xai",
    "deepseek": "deepseek",
}

# Canonical provider tag -> API key environment variable
PROVIDER_API_KEY_ENV: dict[str, str] = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "google": "GOOGLE_AI_API_KEY",
    "xai": "XAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
}

# OpenAI-compatible endpoints
PROVIDER_BASE_URLS: dict[str, str] = {
    "xai": "https://api.x.ai/v1",
    "deepseek": "https://api.deepseek.com",
}

# User-facing id -> (provider, API model id)
MODEL_REGISTRY: dict[str, tuple[str, str]] = {
    # Anthropic models
    "opus": ("anthropic", "claude-opus-4-5-20251101"),
    "sonnet": ("anthropic", "claude-sonnet-4-20250514"),
    "haiku": ("anthropic", "claude-haiku-4-5-20251001"),
    "claude-opus-4-5": ("anthropic", "claude-opus-4-5-20251101"),
    "claude-sonnet-4": ("anthropic", "claude-sonnet-4-20250514"),
    "claude-haiku-4-5": ("anthropic", "claude-haiku-4-5-20251001"),
    # OpenAI models
    "gpt-4o": ("openai", "gpt-4o"),
    "gpt-4o-mini": ("openai", "gpt-4o-mini"),
    "o3-mini": ("openai", "o3-mini"),
    # Google models
    "gemini-2.5-flash": ("google", "gemini-2.5-flash"),
    "gemini-2.5-pro": ("google", "gemini-2.5-pro"),
    # xAI / DeepSeek
    "grok-3": ("xai", "grok-3"),
    "deepseek-chat": ("deepseek", "deepseek-chat"),
    "deepseek-reasoner": ("deepseek", "deepseek-reasoner"),
}


def normalize_provider(provider: str | None) -> str:
    """Canonical provider tag for any alias; unknown values fall back to openai."""
    if not provider:
        return DEFAULT_PROVIDER
    normalized = PROVIDER_ALIASES.get(provider.lower())
    if normalized is None:
        logger.warning(f"Unknown provider {provider!r}, defaulting to {DEFAULT_PROVIDER}")
        return DEFAULT_PROVIDER
    return normalized


def resolve_model_id(model_id: str | None) -> str:
    """Provider API model id for a user-facing id; unknown ids pass through."""
    if not model_id:
        return DEFAULT_MODEL
    if model_id in MODEL_REGISTRY:
        return MODEL_REGISTRY[model_id][1]
    return model_id


def provider_for_model(model_id: str | None) -> str:
    """Guess the provider tag from a model id."""
    if not model_id:
        return DEFAULT_PROVIDER
    if model_id in MODEL_REGISTRY:
        return MODEL_REGISTRY[model_id][0]
    if model_id.startswith("claude"):
        return "anthropic"
    if model_id.startswith("gemini"):
        return "google"
    if model_id.startswith("grok"):
        return "xai"
    if model_id.startswith("deepseek"):
        return "deepseek"
    return DEFAULT_PROVIDER


def api_key_for_provider(provider: str | None, fallback_api_key: str | None = None) -> str:
    """API key for a provider: explicit key first, then its environment variable."""
    if fallback_api_key:
        return fallback_api_key
    canonical = normalize_provider(provider)
    env_var = PROVIDER_API_KEY_ENV.get(canonical, f"{canonical.upper()}_API_KEY")
    return os.environ.get(env_var, "")


__all__ = [
    "MODEL_REGISTRY",
    "PROVIDER_ALIASES",
    "PROVIDER_API_KEY_ENV",
    "PROVIDER_BASE_URLS",
    "api_key_for_provider",
    "normalize_provider",
    "provider_for_model",
    "resolve_model_id",
]
