"""
RLM orchestrator: the authoritative controller.

Controls all recursion, caching and budget. The model only proposes
decomposition; the orchestrator decides whether to execute it.

Flow:
1. Receive query + context
2. Select mode (simple vs full)
3. Simple: one distilled call
4. Full: planner -> workers -> aggregator, under depth/call/token ceilings
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import replace
from pathlib import Path
from typing import Any, Literal

from .aggregator import aggregate_results, aggregate_results_streaming
from .budget import BudgetManager
from .cache import RLMCache
from .cancellation import CancellationToken
from .config import MAX_CHILD_CALLS, MAX_DEPTH, RLMConfig, StreamingConfig
from .distillation import Distiller
from .environment import PromptEnvironment, create_environment_from_context
from .planner import run_planner
from .providers import CompletionProvider, ProviderResolver, resolve_provider
from .simple import execute_simple, execute_simple_streaming
from .stream_normalizer import (
    ChunkCallback,
    RLMProgress,
    StatusCallback,
    StreamStatus,
    invoke_callback,
)
from .types import (
    ContextBundle,
    ContextItem,
    ExecutionState,
    PlannerResult,
    RLMMode,
    RLMOutput,
    SubQueryProposal,
    WorkerResult,
    estimate_tokens,
)
from .worker import execute_worker, lookup_cached, worker_budget

logger = logging.getLogger(__name__)

# Mode heuristics
SIMPLE_CONTEXT_TOKENS = 2000
SIMPLE_QUERY_CHARS = 200
SIMPLE_MAX_ITEMS = 2

# Early stop once one answer is decisive
HIGH_CONFIDENCE = 0.95

# Environment execution
ENVIRONMENT_SIMPLE_TOKENS = 2000
ENVIRONMENT_CHUNK_CHARS = 4000

Transition = Literal[
    "idle",
    "mode-selected",
    "simple-execute",
    "planning",
    "dispatching-workers",
    "aggregating",
    "done",
]

ProgressHook = Callable[[int, SubQueryProposal, list[SubQueryProposal]], Awaitable[None]]


def unable_to_answer_output(attempted: int, mode: RLMMode = "full", tokens_used: int = 0) -> RLMOutput:
    """The worst case ever surfaced to a caller."""
    return RLMOutput.build(
        "**Unable to generate a complete response.**\n\n"
        f"The system attempted {attempted} sub-queries but could not find sufficient information.",
        mode,
        sub_calls=attempted,
        tokens_used=tokens_used,
    )


class RLMOrchestrator:
    """
    Query orchestrator with hard depth, call and token ceilings.

    One instance may serve many ``execute`` calls sequentially; state and
    budget are reset at the start of each call. The cache is shared and
    injected; pass the same ``RLMCache`` to several orchestrators to share
    results across them.
    """

    def __init__(
        self,
        config: RLMConfig | None = None,
        provider: CompletionProvider | None = None,
        cache: RLMCache | None = None,
        provider_resolver: ProviderResolver | None = None,
        system_prompt: str | None = None,
        distiller: Distiller | None = None,
        call_timeout: float | None = None,
    ):
        """
        Initialize orchestrator.

        Args:
            config: Execution configuration (defaults if None); ceilings are
                clamped by ``RLMConfig`` itself
            provider: Completion provider; resolved from config if None
            cache: Shared result cache; caching is off when None
            provider_resolver: Builds a provider from (model_id, provider)
            system_prompt: Base system prompt for Simple mode
            distiller: Context distiller (defaults to ``distill_context``)
            call_timeout: Per-call timeout in seconds
        """
        self.config = config or RLMConfig()
        self._provider = provider
        self.cache = cache if self.config.enable_cache else None
        self.provider_resolver = provider_resolver or resolve_provider
        self.system_prompt = system_prompt
        self.distiller = distiller
        self.call_timeout = call_timeout

        self.budget = BudgetManager(self.config.token_budget, MAX_CHILD_CALLS * MAX_DEPTH)
        self._state = ExecutionState()
        self._transitions: list[Transition] = ["idle"]
        self._environment: PromptEnvironment | None = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ExecutionState:
        """Copy of the last execution's state."""
        return replace(self._state)

    @property
    def environment(self) -> PromptEnvironment | None:
        return self._environment

    @property
    def transitions(self) -> list[Transition]:
        return list(self._transitions)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _get_provider(self) -> CompletionProvider:
        if self._provider is None:
            self._provider = self.provider_resolver(
                self.config.resolved_model, self.config.resolved_provider
            )
        return self._provider

    def _reset(self) -> None:
        self._state = ExecutionState()
        self._transitions = ["idle"]
        self.budget.reset()

    def _enter(self, transition: Transition) -> None:
        self._transitions.append(transition)

    def select_mode(self, query: str, context: ContextBundle) -> RLMMode:
        """Explicit ``simple``/``full`` wins; ``auto`` picks by size."""
        if self.config.mode in ("simple", "full"):
            return self.config.mode
        if context.estimated_tokens < SIMPLE_CONTEXT_TOKENS and len(query) < SIMPLE_QUERY_CHARS:
            return "simple"
        if len(context.items) <= SIMPLE_MAX_ITEMS:
            return "simple"
        return "full"

    def _record(self, result: WorkerResult) -> None:
        self.budget.consume(result.tokens_used)
        self._state.tokens_used += result.tokens_used
        self._state.child_call_count += 1
        if result.from_cache:
            self._state.cache_hits += 1

    def _lookup_cached(self, proposal: SubQueryProposal, context: ContextBundle) -> WorkerResult | None:
        if self.cache is None:
            return None
        return lookup_cached(self.cache, proposal.query, context)

    def _guard_full(self, query: str) -> str | None:
        """Stop reason if a Full-mode run must degrade to Simple."""
        if self._state.depth >= self.config.max_depth:
            return "max_depth"
        if not self.budget.can_make_call() or not self.budget.can_afford(estimate_tokens(query)):
            return "budget"
        return None

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute(
        self,
        query: str,
        context: ContextBundle,
        cancel_token: CancellationToken | None = None,
    ) -> RLMOutput:
        """
        Answer ``query`` over ``context``.

        Never raises: unexpected internal errors become the fixed
        "unable to generate" output.
        """
        self._reset()
        mode = self.select_mode(query, context)
        self._enter("mode-selected")
        logger.info(f"Mode: {mode}, context items: {len(context.items)}")

        try:
            if mode == "simple":
                output = await self._execute_simple(query, context, cancel_token)
            else:
                output = await self._execute_full(query, context, cancel_token)
        except Exception as e:
            logger.exception(f"Execution failed: {e}")
            output = unable_to_answer_output(
                self._state.child_call_count, mode, self._state.tokens_used
            )

        self._enter("done")
        return output

    async def _execute_simple(
        self,
        query: str,
        context: ContextBundle,
        cancel_token: CancellationToken | None = None,
    ) -> RLMOutput:
        self._enter("simple-execute")
        output = await execute_simple(
            query,
            context,
            self.config,
            self._get_provider(),
            system_prompt=self.system_prompt,
            distiller=self.distiller,
            cancel_token=cancel_token,
            timeout=self.call_timeout,
        )
        tokens = output.metadata.tokens_used if output.metadata else 0
        self.budget.consume(tokens)
        self._state.tokens_used += tokens
        if output.metadata is not None:
            output.metadata.tokens_used = self._state.tokens_used
        return output

    async def _plan(
        self,
        query: str,
        context: ContextBundle,
        cancel_token: CancellationToken | None,
    ) -> PlannerResult:
        self._enter("planning")
        planner_result = await run_planner(
            query,
            context,
            self.config,
            self._get_provider(),
            cancel_token=cancel_token,
            timeout=self.call_timeout,
        )
        self.budget.consume(planner_result.tokens_used)
        self._state.tokens_used += planner_result.tokens_used
        return planner_result

    def _direct_answer_output(self, answer: str) -> RLMOutput:
        return RLMOutput.build(
            answer,
            "full",
            depth_used=self._state.depth,
            tokens_used=self._state.tokens_used,
            reasoning=(
                "Planner answered directly from the available context."
                if self.config.enable_reasoning
                else None
            ),
        )

    async def _dispatch_workers(
        self,
        proposals: list[SubQueryProposal],
        context: ContextBundle,
        cancel_token: CancellationToken | None,
        on_progress: ProgressHook | None = None,
    ) -> list[WorkerResult]:
        """Run proposals in priority order under the budget guard."""
        self._enter("dispatching-workers")
        per_worker = worker_budget(self.config)
        results: list[WorkerResult] = []

        for i, proposal in enumerate(proposals):
            if not self.budget.can_make_call() or not self.budget.can_afford(per_worker):
                self._state.mark_stopped("budget")
                logger.info(f"Budget exhausted after {len(results)} sub-queries")
                break

            if on_progress is not None:
                await on_progress(i, proposal, proposals)

            cached = self._lookup_cached(proposal, context)
            if cached is not None:
                self._state.cache_hits += 1
                results.append(cached)
                continue

            result = await execute_worker(
                proposal,
                context,
                self.config,
                self._get_provider(),
                cache=self.cache,
                depth=self._state.depth,
                cancel_token=cancel_token,
                timeout=self.call_timeout,
                distiller=self.distiller,
            )
            self._record(result)
            results.append(result)

            if result.confidence >= HIGH_CONFIDENCE:
                self._state.mark_stopped("high_confidence")
                logger.info(f"High-confidence answer ({result.confidence}), stopping early")
                break

        return results

    def _stamp(self, output: RLMOutput, results: list[WorkerResult]) -> RLMOutput:
        """Fold synthesis tokens into the run totals and stamp final metadata."""
        if output.metadata is None:
            return output
        synthesis_tokens = max(0, output.metadata.tokens_used - sum(r.tokens_used for r in results))
        if synthesis_tokens:
            self.budget.consume(synthesis_tokens)
            self._state.tokens_used += synthesis_tokens
        output.metadata.depth_used = self._state.depth
        output.metadata.cache_hits = self._state.cache_hits
        output.metadata.tokens_used = self._state.tokens_used
        return output

    async def _execute_full(
        self,
        query: str,
        context: ContextBundle,
        cancel_token: CancellationToken | None = None,
    ) -> RLMOutput:
        stop_reason = self._guard_full(query)
        if stop_reason is not None:
            self._state.mark_stopped(stop_reason)
            logger.info(f"Full mode unavailable ({stop_reason}), using simple mode")
            return await self._execute_simple(query, context, cancel_token)

        planner_result = await self._plan(query, context, cancel_token)

        if planner_result.can_answer_directly and planner_result.direct_answer:
            return self._direct_answer_output(planner_result.direct_answer)

        if not planner_result.needs_sub_queries or not planner_result.sub_queries:
            return await self._execute_simple(query, context, cancel_token)

        self._state.depth += 1
        proposals = planner_result.sub_queries[: min(self.config.max_child_calls, MAX_CHILD_CALLS)]
        results = await self._dispatch_workers(proposals, context, cancel_token)

        self._enter("aggregating")
        output = await aggregate_results(
            results,
            self.config,
            query,
            self._get_provider(),
            cancel_token=cancel_token,
            timeout=self.call_timeout,
        )
        return self._stamp(output, results)

    async def execute_with_environment(
        self,
        query: str,
        context: ContextBundle,
        cancel_token: CancellationToken | None = None,
    ) -> RLMOutput:
        """
        Answer over an oversized context with map-reduce on fixed chunks.

        Small contexts go straight to Simple mode. When the map-reduce needs
        more calls than the run's call ceiling allows, or on any failure, it
        falls back to ``execute``.
        """
        self._reset()
        env_config = replace(
            self.config.environment,
            model_id=self.config.resolved_model,
            provider=self.config.resolved_provider,
            enable_cache=self.config.enable_cache,
        )

        try:
            self._environment = create_environment_from_context(
                context, env_config, provider=self._get_provider(), cache=self.cache
            )
            self._environment.timeout = self.call_timeout
            summary = self._environment.summary()
            logger.info(f"Environment: {summary.estimated_tokens} tokens")

            if summary.estimated_tokens < ENVIRONMENT_SIMPLE_TOKENS:
                self._enter("mode-selected")
                output = await self._execute_simple(query, context, cancel_token)
                self._enter("done")
                return output

            chunks = self._environment.chunks(ENVIRONMENT_CHUNK_CHARS)
            needed_calls = len(chunks) + 1
            _, calls_left = self.budget.remaining()
            if needed_calls > calls_left or not self.budget.can_afford(estimate_tokens(query)):
                logger.info(
                    f"Map-reduce needs {needed_calls} calls, {calls_left} allowed; using execute"
                )
                return await self.execute(query, context, cancel_token)

            logger.info(f"Map-reduce over {len(chunks)} chunks")
            self._enter("mode-selected")
            self._enter("dispatching-workers")
            mapped = await self._environment.map_reduce(
                query,
                f'Based on the partial answers, provide a final answer to: "{query}"',
                chunks,
                cancel_token=cancel_token,
            )
        except Exception as e:
            logger.error(f"Environment execution failed, falling back: {e}")
            return await self.execute(query, context, cancel_token)

        self._state.depth = 1
        self._state.tokens_used = mapped.tokens_used
        self._state.child_call_count = len(mapped.results)
        self._state.cache_hits = mapped.cache_hits
        map_tokens = 0
        for result in mapped.results:
            self.budget.consume(result.tokens)
            map_tokens += result.tokens
        self.budget.consume(mapped.tokens_used - map_tokens)
        self._enter("done")

        return RLMOutput.build(
            mapped.aggregated,
            "full",
            depth_used=1,
            sub_calls=self._state.child_call_count,
            cache_hits=self._state.cache_hits,
            tokens_used=self._state.tokens_used,
            reasoning=(
                f"Map-reduce over {len(chunks)} chunks." if self.config.enable_reasoning else None
            ),
            reasoning_type="model",
        )

    async def execute_streaming(
        self,
        query: str,
        context: ContextBundle,
        streaming: StreamingConfig | None = None,
        on_chunk: ChunkCallback | None = None,
        on_status: StatusCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> RLMOutput:
        """
        Streaming execution for both modes.

        Full-mode phases: planning -> researching (per-worker progress) ->
        synthesizing -> streamed synthesis -> complete.
        """
        self._reset()
        streaming = streaming or self.config.streaming
        mode = self.select_mode(query, context)
        self._enter("mode-selected")
        logger.info(f"Streaming mode: {mode}, context items: {len(context.items)}")

        async def emit(phase: str, **fields: Any) -> None:
            fields.setdefault("tokens_used", self._state.tokens_used)
            await invoke_callback(on_status, StreamStatus(phase=phase, **fields))

        async def simple_streaming() -> RLMOutput:
            self._enter("simple-execute")
            output = await execute_simple_streaming(
                query,
                context,
                self.config,
                self._get_provider(),
                system_prompt=self.system_prompt,
                distiller=self.distiller,
                streaming=streaming,
                on_chunk=on_chunk,
                on_status=on_status,
                cancel_token=cancel_token,
                timeout=self.call_timeout,
            )
            self._state.tokens_used += output.metadata.tokens_used if output.metadata else 0
            return output

        try:
            if mode == "simple":
                output = await simple_streaming()
                self._enter("done")
                return output

            stop_reason = self._guard_full(query)
            if stop_reason is not None:
                self._state.mark_stopped(stop_reason)
                output = await simple_streaming()
                self._enter("done")
                return output

            await emit(
                "planning",
                progress=RLMProgress(1, 3, "Analyzing query and planning approach..."),
            )
            planner_result = await self._plan(query, context, cancel_token)

            if planner_result.can_answer_directly and planner_result.direct_answer:
                answer = planner_result.direct_answer
                await emit("streaming", current_text=answer)
                await emit("complete", current_text=answer, is_final=True)
                self._enter("done")
                return self._direct_answer_output(answer)

            if not planner_result.needs_sub_queries or not planner_result.sub_queries:
                output = await simple_streaming()
                self._enter("done")
                return output

            self._state.depth += 1
            proposals = planner_result.sub_queries[: min(self.config.max_child_calls, MAX_CHILD_CALLS)]
            questions = [p.query for p in proposals]

            await emit(
                "researching",
                progress=RLMProgress(
                    2,
                    3,
                    f"Processing {len(proposals)} sub-queries...",
                    sub_queries=questions,
                    current_worker=0,
                    total_workers=len(proposals),
                ),
            )

            async def on_progress(
                i: int, proposal: SubQueryProposal, all_proposals: list[SubQueryProposal]
            ) -> None:
                await emit(
                    "researching",
                    progress=RLMProgress(
                        2,
                        3,
                        f'Researching: "{proposal.query[:50]}..."',
                        sub_queries=questions,
                        current_worker=i + 1,
                        total_workers=len(all_proposals),
                    ),
                )

            results = await self._dispatch_workers(proposals, context, cancel_token, on_progress)

            self._enter("aggregating")
            await emit("synthesizing", progress=RLMProgress(3, 3, "Synthesizing final response..."))
            output = await aggregate_results_streaming(
                results,
                self.config,
                query,
                self._get_provider(),
                streaming=streaming,
                on_chunk=on_chunk,
                on_status=on_status,
                cancel_token=cancel_token,
                timeout=self.call_timeout,
            )
            output = self._stamp(output, results)
            await emit(
                "complete",
                current_text=output.markdown,
                tokens_used=self._state.tokens_used,
                is_final=True,
            )
            self._enter("done")
            return output

        except Exception as e:
            logger.exception(f"Streaming execution failed: {e}")
            await emit("error", is_final=True, error=str(e))
            self._enter("done")
            return RLMOutput.build(
                f"**Error during RLM execution:**\n\n{e}",
                mode,
                sub_calls=self._state.child_call_count,
                cache_hits=self._state.cache_hits,
                tokens_used=self._state.tokens_used,
            )


# =============================================================================
# Convenience entry points
# =============================================================================


async def execute_rlm(
    query: str,
    context: ContextBundle,
    use_environment: bool = False,
    cancel_token: CancellationToken | None = None,
    **kwargs: Any,
) -> RLMOutput:
    """One-off execution; ``kwargs`` go to ``RLMOrchestrator``."""
    orchestrator = RLMOrchestrator(**kwargs)
    if use_environment:
        return await orchestrator.execute_with_environment(query, context, cancel_token)
    return await orchestrator.execute(query, context, cancel_token)


async def execute_rlm_streaming(
    query: str,
    context: ContextBundle,
    streaming: StreamingConfig | None = None,
    on_chunk: ChunkCallback | None = None,
    on_status: StatusCallback | None = None,
    cancel_token: CancellationToken | None = None,
    **kwargs: Any,
) -> RLMOutput:
    """One-off streaming execution; ``kwargs`` go to ``RLMOrchestrator``."""
    orchestrator = RLMOrchestrator(**kwargs)
    return await orchestrator.execute_streaming(
        query,
        context,
        streaming=streaming,
        on_chunk=on_chunk,
        on_status=on_status,
        cancel_token=cancel_token,
    )


# =============================================================================
# CLI
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rlm-engine",
        description="Answer a query over context files with the RLM orchestrator",
    )
    parser.add_argument("--query", required=True, help="Query to process")
    parser.add_argument(
        "--context-file",
        action="append",
        default=[],
        type=Path,
        help="File to include as a context item (repeatable)",
    )
    parser.add_argument("--mode", choices=["simple", "full", "auto"], help="Execution mode")
    parser.add_argument("--model", help="Model id (e.g. gpt-4o, sonnet, gemini-2.5-flash)")
    parser.add_argument("--provider", help="Provider (openai, anthropic, google, xai, deepseek)")
    parser.add_argument("--budget", type=int, help="Token budget")
    parser.add_argument("--reasoning", action="store_true", help="Include a reasoning summary")
    parser.add_argument(
        "--environment",
        action="store_true",
        help="Use map-reduce over the context instead of planning",
    )
    parser.add_argument("--config", type=Path, help="Path to config JSON")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def load_context_files(paths: list[Path]) -> ContextBundle:
    items = [ContextItem(role="context", content=path.read_text()) for path in paths]
    return ContextBundle(items=tuple(items))


async def _run_cli(args: argparse.Namespace) -> RLMOutput:
    base = RLMConfig.load(args.config)
    config = RLMConfig.from_overrides(
        base,
        mode=args.mode,
        model_id=args.model,
        provider=args.provider,
        token_budget=args.budget,
        enable_reasoning=True if args.reasoning else None,
    )
    context = load_context_files(args.context_file)
    orchestrator = RLMOrchestrator(config, cache=RLMCache())

    if args.environment:
        return await orchestrator.execute_with_environment(args.query, context)
    return await orchestrator.execute(args.query, context)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        output = asyncio.run(_run_cli(args))
    except (OSError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(output.markdown)
    data = output.to_dict()
    if "reasoning" in data:
        print(f"\n> {data['reasoning']['summary']}")
    print("\n" + json.dumps(data.get("metadata", {}), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
