"""
RLM Engine: recursive query orchestration over large contexts.

Answers a query over a context bundle with either one model call (Simple
mode) or a bounded decomposition (Full mode: planner -> workers ->
aggregator). Includes:
- Hard ceilings on depth, child calls and tokens
- TTL + LRU result cache
- Stream normalization across OpenAI-compatible, Anthropic and Gemini APIs
- A prompt environment for map-reduce over oversized contexts
"""

__version__ = "0.1.0"

# Orchestration
from .orchestrator import (
    RLMOrchestrator,
    execute_rlm,
    execute_rlm_streaming,
)

# Components
from .aggregator import aggregate_results, aggregate_results_streaming
from .budget import BudgetManager, BudgetState
from .cache import RLMCache
from .cancellation import CancellationToken
from .distillation import distill_context
from .planner import run_planner
from .simple import execute_simple, execute_simple_streaming
from .worker import execute_worker

# Configuration
from .config import (
    MAX_CHILD_CALLS,
    MAX_DEPTH,
    EnvironmentConfig,
    RLMConfig,
    StreamingConfig,
    default_config,
)

# Prompt environment
from .environment import (
    PromptEnvironment,
    PromptSlice,
    QueryResult,
    create_environment,
    create_environment_from_context,
    validate_pattern,
)

# Providers and streaming
from .providers import (
    AnthropicProvider,
    CompletionProvider,
    GeminiProvider,
    OpenAICompatibleProvider,
    call_provider,
    resolve_provider,
    run_guarded,
)
from .stream_normalizer import (
    NormalizedChunk,
    RLMProgress,
    StreamProcessor,
    StreamStatus,
    normalize_chunk,
    normalize_stream,
)

# Types
from .types import (
    CallCancelledError,
    CallTimeoutError,
    CompletionResponse,
    ConfigError,
    ContextBundle,
    ContextItem,
    ExecutionState,
    PlannerResult,
    ProviderError,
    ProviderOutcome,
    RLMError,
    RLMOutput,
    SubQueryProposal,
    UnsafePatternError,
    WorkerResult,
)

__all__ = [
    "__version__",
    # Orchestration
    "RLMOrchestrator",
    "execute_rlm",
    "execute_rlm_streaming",
    # Components
    "BudgetManager",
    "BudgetState",
    "CancellationToken",
    "RLMCache",
    "aggregate_results",
    "aggregate_results_streaming",
    "distill_context",
    "execute_simple",
    "execute_simple_streaming",
    "execute_worker",
    "run_planner",
    # Configuration
    "MAX_CHILD_CALLS",
    "MAX_DEPTH",
    "EnvironmentConfig",
    "RLMConfig",
    "StreamingConfig",
    "default_config",
    # Prompt environment
    "PromptEnvironment",
    "PromptSlice",
    "QueryResult",
    "create_environment",
    "create_environment_from_context",
    "validate_pattern",
    # Providers and streaming
    "AnthropicProvider",
    "CompletionProvider",
    "GeminiProvider",
    "OpenAICompatibleProvider",
    "call_provider",
    "resolve_provider",
    "run_guarded",
    "NormalizedChunk",
    "RLMProgress",
    "StreamProcessor",
    "StreamStatus",
    "normalize_chunk",
    "normalize_stream",
    # Types
    "CallCancelledError",
    "CallTimeoutError",
    "CompletionResponse",
    "ConfigError",
    "ContextBundle",
    "ContextItem",
    "ExecutionState",
    "PlannerResult",
    "ProviderError",
    "ProviderOutcome",
    "RLMError",
    "RLMOutput",
    "SubQueryProposal",
    "UnsafePatternError",
    "WorkerResult",
]
