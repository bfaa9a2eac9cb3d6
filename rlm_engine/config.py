"""
Configuration management for the RLM engine.

Depth and child-call ceilings are non-negotiable: they are clamped on
construction (and again after loading from disk) regardless of input.
"""

import json
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

from .model_resolver import provider_for_model
from .types import ConfigError

logger = logging.getLogger(__name__)

# Hard ceilings
MAX_DEPTH = 3
MAX_CHILD_CALLS = 5

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "rlm-engine" / "config.json"

ModeSetting = Literal["simple", "full", "auto"]


@dataclass
class StreamingConfig:
    """Batching for streamed status callbacks."""

    batch_size: int = 50  # chars
    update_interval_ms: float = 100


@dataclass
class EnvironmentConfig:
    """Configuration for the prompt environment."""

    max_slice_tokens: int = 4000
    default_chunk_size: int = 2000
    enable_cache: bool = True
    model_id: str = "gpt-4o"
    provider: str = "openai"
    query_concurrency: int = 3
    cache_prefix_chars: int = 200


@dataclass
class RLMConfig:
    """
    Execution configuration for one orchestrator.

    Modes:
    - "simple": single completion call, no decomposition (default)
    - "full": planner -> workers -> aggregator
    - "auto": orchestrator picks by context size and query length
    """

    mode: ModeSetting = "simple"
    max_depth: int = MAX_DEPTH
    max_child_calls: int = MAX_CHILD_CALLS
    token_budget: int = 16000
    enable_cache: bool = True
    enable_reasoning: bool = False
    model_id: str | None = None
    provider: str | None = None
    streaming: StreamingConfig = field(default_factory=StreamingConfig)
    environment: EnvironmentConfig = field(default_factory=EnvironmentConfig)

    def __post_init__(self) -> None:
        if self.mode not in ("simple", "full", "auto"):
            raise ConfigError(f"Unknown mode: {self.mode!r}")
        if self.token_budget < 0:
            raise ConfigError(f"token_budget must be non-negative, got {self.token_budget}")
        requested = (self.max_depth, self.max_child_calls)
        self.max_depth = max(0, min(self.max_depth, MAX_DEPTH))
        self.max_child_calls = max(0, min(self.max_child_calls, MAX_CHILD_CALLS))
        if requested != (self.max_depth, self.max_child_calls):
            logger.debug(
                f"Clamped depth/child calls {requested} -> "
                f"({self.max_depth}, {self.max_child_calls})"
            )

    @property
    def resolved_model(self) -> str:
        return self.model_id or "gpt-4o"

    @property
    def resolved_provider(self) -> str:
        """Explicit provider, else the one the model id belongs to."""
        return self.provider or provider_for_model(self.model_id)

    @classmethod
    def from_overrides(cls, base: "RLMConfig | None" = None, **overrides: Any) -> "RLMConfig":
        """Merge partial overrides onto ``base`` (or defaults); ceilings re-clamped."""
        data = asdict(base) if base is not None else {}
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls._from_dict(data)

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> "RLMConfig":
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}

        streaming = kwargs.pop("streaming", None)
        environment = kwargs.pop("environment", None)
        if isinstance(streaming, dict):
            streaming = StreamingConfig(**streaming)
        if isinstance(environment, dict):
            environment = EnvironmentConfig(**environment)

        return cls(
            **kwargs,
            streaming=streaming or StreamingConfig(),
            environment=environment or EnvironmentConfig(),
        )

    @classmethod
    def load(cls, path: Path | None = None) -> "RLMConfig":
        """Load configuration from file."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        # Backward compatibility: camelCase keys
        renames = {
            "maxDepth": "max_depth",
            "maxChildCalls": "max_child_calls",
            "tokenBudget": "token_budget",
            "enableCache": "enable_cache",
            "enableReasoning": "enable_reasoning",
            "modelId": "model_id",
        }
        for old, new in renames.items():
            if old in data and new not in data:
                data[new] = data.pop(old)

        return cls._from_dict(data)

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)


# Default configuration instance
default_config = RLMConfig()
