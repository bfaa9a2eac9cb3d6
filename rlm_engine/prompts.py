"""
Fixed system instructions and message builders for every model call.
"""

from __future__ import annotations

from .types import ContextBundle, WorkerResult

DEFAULT_SYSTEM_PROMPT = "You are an AI model operating inside a structured reasoning graph."

PLANNER_SYSTEM_PROMPT = """You are a planner in a Recursive Language Model (RLM) system.
Your task: Analyze the query and context, determine if sub-queries are needed.

RULES:
1. If you can answer confidently with the given context, set canAnswerDirectly = true
2. If information is missing or ambiguous, propose focused sub-queries
3. Propose at most 5 sub-queries
4. Each sub-query should target SPECIFIC missing information
5. Do NOT answer the main question - only identify what's needed

You MUST respond with valid JSON in this exact format:
{
  "needsSubQueries": boolean,
  "subQueries": [
    { "query": "specific focused question", "rationale": "why this is needed", "priority": 1 }
  ],
  "canAnswerDirectly": boolean,
  "directAnswer": "only if canAnswerDirectly is true"
}

Priority scale: 1 = highest priority, 5 = lowest priority"""

WORKER_SYSTEM_PROMPT = """You are a focused worker in a Recursive Language Model (RLM) system.
Your task: Answer the specific question using ONLY the provided context.

RULES:
1. Be concise and direct
2. Only use information from the provided context
3. If the context doesn't contain the answer, say so clearly
4. End your response with a confidence score from 0 to 1

Format your response as:
ANSWER: [your answer]
CONFIDENCE: [0.0 to 1.0]"""

AGGREGATOR_SYSTEM_PROMPT = """You are an aggregator in a Recursive Language Model (RLM) system.
Your task: Synthesize multiple sub-answers into a cohesive final response.

RULES:
1. Combine the sub-answers logically
2. Resolve any contradictions by favoring higher-confidence answers
3. Produce a well-structured markdown response
4. Be concise but complete
5. Do NOT add information not present in the sub-answers"""

OUTPUT_FORMAT_INSTRUCTION = (
    "OUTPUT FORMAT: Respond in Markdown. Use headings, lists, code blocks, and "
    "formatting as appropriate. Do not mix reasoning with the final answer; if you "
    "expose thinking, keep it separate from the main response."
)

DISTILLED_NOTE = (
    "\n(Note: The following context has been distilled for efficiency, "
    "focusing on the most relevant information.)"
)

PROCEED_MESSAGE = "Proceed with the task based on the context provided above."

PLANNER_ITEM_PREVIEW_CHARS = 500


def build_reasoning_prompt(
    system_prompt: str | None,
    context: ContextBundle,
    user_input: str,
) -> list[dict[str, str]]:
    """System message carrying the (distilled) context, then the user's query."""
    base = system_prompt or DEFAULT_SYSTEM_PROMPT
    marker = DISTILLED_NOTE if context.is_distilled else ""

    items = "\n".join(
        f'\n- {item.role_name.upper()} (Importance: {item.importance}/5):\n  """\n  {item.content}\n  """'
        for item in context.items
    )
    system_content = f"{base}{marker}\n\n{OUTPUT_FORMAT_INSTRUCTION}\n\nCONTEXT (DISTILLED):\n{items}\n"

    messages = [{"role": "system", "content": system_content.strip()}]
    if user_input:
        messages.append({"role": "user", "content": user_input})
    elif context.items:
        messages.append({"role": "user", "content": PROCEED_MESSAGE})
    return messages


def build_planner_messages(query: str, context: ContextBundle) -> list[dict[str, str]]:
    summary = "\n\n".join(
        f"[{i + 1}] {item.role_name.upper()}: "
        f"{item.content[:PLANNER_ITEM_PREVIEW_CHARS]}"
        f"{'...' if len(item.content) > PLANNER_ITEM_PREVIEW_CHARS else ''}"
        for i, item in enumerate(context.items)
    )
    total = context.total_tokens if context.total_tokens is not None else "unknown"
    user_prompt = (
        f"QUERY: {query}\n\n"
        f"AVAILABLE CONTEXT ({len(context.items)} items, {total} tokens):\n"
        f"{summary}\n\n"
        "Analyze this query and context. Respond with JSON only."
    )
    return [
        {"role": "system", "content": PLANNER_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


def build_worker_messages(query: str, rationale: str, context: ContextBundle) -> list[dict[str, str]]:
    context_str = "\n\n---\n\n".join(
        f"[{i + 1}] {item.role_name.upper()}:\n{item.content}"
        for i, item in enumerate(context.items)
    )
    user_prompt = (
        f"QUESTION: {query}\n\n"
        f"RATIONALE: {rationale}\n\n"
        f"CONTEXT:\n{context_str}\n\n"
        "Answer the question based on the context above."
    )
    return [
        {"role": "system", "content": WORKER_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


def build_aggregator_messages(
    original_query: str, valid_results: list[WorkerResult]
) -> list[dict[str, str]]:
    """``valid_results`` must already be sorted by descending confidence."""
    sub_answers = "\n\n---\n\n".join(
        f"[{i + 1}] Question: {r.source_query}\nAnswer: {r.answer}\nConfidence: {r.confidence}"
        for i, r in enumerate(valid_results)
    )
    user_prompt = (
        f"ORIGINAL QUERY: {original_query}\n\n"
        f"SUB-ANSWERS ({len(valid_results)} total):\n"
        f"{sub_answers}\n\n"
        "Synthesize these sub-answers into a cohesive markdown response for the original query."
    )
    return [
        {"role": "system", "content": AGGREGATOR_SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]
