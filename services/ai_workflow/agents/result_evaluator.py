"""
result_evaluator.py
AI agent judging whether query results answer the user's request, and whether to retry.
"""

import copy
import logging
from typing import List, Dict, Any, Optional
from services.ai_workflow.data_model import (
    Intent, IntentScope, Complexity, QueryResults, Evaluation, RetryStrategy,
    DataQuality, Relevance, Completeness, coerce_enum, coerce_confidence, coerce_str_list
)
from services.ai_workflow.utils.openai_utils import OpenAIClient
from services.ai_workflow.utils.common_utils import parse_tool_arguments, format_work_items_for_prompt
from services.constants import OPENAI_EVALUATION_MODEL, EVALUATION_TEMPERATURE, MAX_RETRY_ATTEMPTS

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def quick_evaluation(intent: Intent, results: QueryResults) -> Optional[Evaluation]:
    """Evaluations that don't need the completion service."""

    # Nothing worked
    if results.total_queries > 0 and results.failed_queries == results.total_queries:
        return Evaluation(
            data_quality=DataQuality.POOR,
            relevance=Relevance.LOW,
            completeness=Completeness.INCOMPLETE,
            needs_additional=True,
            confidence=0.1,
            additional_queries=["Retry the failed queries with simplified filters"],
            warnings=[r.error for r in results.results if r.error],
            reasoning="All queries failed",
        )

    # The requested item doesn't exist or isn't visible
    if intent.scope == IntentScope.ISSUE and not results.work_items:
        return Evaluation(
            data_quality=DataQuality.POOR,
            relevance=Relevance.LOW,
            completeness=Completeness.INCOMPLETE,
            needs_additional=False,
            confidence=0.8,
            warnings=[f"Work item #{intent.issue_id} was not found or access is denied"
                      if intent.issue_id is not None else "The requested work item was not found or access is denied"],
            reasoning="Work item not found",
        )

    # A simple request that came back clean
    if intent.complexity == Complexity.SIMPLE and results.work_items and results.failed_queries == 0:
        return Evaluation(
            data_quality=DataQuality.GOOD,
            relevance=Relevance.HIGH,
            completeness=Completeness.COMPLETE,
            needs_additional=False,
            confidence=0.9,
            insights=[f"Found {len(results.work_items)} work items"],
            reasoning="Simple query returned results without failures",
        )

    return None


def fallback_evaluation(results: QueryResults) -> Evaluation:
    """Assume partial success when there is anything to show."""
    has_data = bool(results.work_items) or any(r.success and r.data for r in results.results)
    if has_data:
        return Evaluation(
            data_quality=DataQuality.FAIR,
            relevance=Relevance.MEDIUM,
            completeness=Completeness.PARTIAL,
            needs_additional=False,
            confidence=0.5,
            reasoning="Fallback evaluation",
        )
    return Evaluation(
        data_quality=DataQuality.POOR,
        relevance=Relevance.LOW,
        completeness=Completeness.INCOMPLETE,
        needs_additional=False,
        confidence=0.3,
        reasoning="Fallback evaluation, no data returned",
    )


def should_retry(evaluation: Evaluation, attempt_number: int, max_retries: int = MAX_RETRY_ATTEMPTS) -> bool:
    if attempt_number >= max_retries:
        return False
    return (
        evaluation.data_quality == DataQuality.POOR
        or evaluation.completeness == Completeness.INCOMPLETE
        or (evaluation.needs_additional and bool(evaluation.additional_queries))
        or evaluation.confidence < 0.3
    )


def generate_retry_strategy(evaluation: Evaluation, intent: Intent) -> RetryStrategy:
    """
    Loosen the most restrictive filter instead of re-running the same plan.
    Filters are dropped one per retry: states, then the date range, then tags.
    """
    additional = list(evaluation.additional_queries) if evaluation.needs_additional else []

    if evaluation.data_quality != DataQuality.POOR and evaluation.completeness != Completeness.INCOMPLETE:
        return RetryStrategy(additional_queries=additional, reason="Request additional data")

    adjusted = copy.deepcopy(intent)
    if adjusted.states:
        reason = f"Dropped state filter {adjusted.states}"
        adjusted.states = []
    elif adjusted.date_range:
        reason = "Dropped date range filter"
        adjusted.date_range = None
    elif adjusted.tags and adjusted.scope != IntentScope.TAG:
        reason = f"Dropped tag filter {adjusted.tags}"
        adjusted.tags = []
    else:
        return RetryStrategy(additional_queries=additional,
                             reason="No filter left to relax" if not additional else "Request additional data")

    logger.info(f"Retry strategy: {reason}")
    return RetryStrategy(adjusted_intent=adjusted, additional_queries=additional, reason=reason)


def get_evaluator_tools() -> List[Dict[str, Any]]:
    """Tool schema for result evaluation."""
    return [
        {
            "type": "function",
            "function": {
                "name": "evaluate_results",
                "description": "Judge how well the fetched work items answer the user's request.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "data_quality": {"type": "string", "enum": [q.value for q in DataQuality]},
                        "relevance": {"type": "string", "enum": [r.value for r in Relevance]},
                        "completeness": {"type": "string", "enum": [c.value for c in Completeness]},
                        "needs_additional": {"type": "boolean"},
                        "additional_queries": {
                            "type": "array",
                            "items": {"type": "string"},
                            "description": "Short descriptions of extra data that would complete the answer"
                        },
                        "insights": {"type": "array", "items": {"type": "string"}},
                        "warnings": {"type": "array", "items": {"type": "string"}},
                        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                        "reasoning": {"type": "string"}
                    },
                    "required": ["data_quality", "relevance", "completeness", "needs_additional", "confidence"],
                    "additionalProperties": False
                }
            }
        }
    ]


def get_evaluator_system_prompt(intent: Intent, results: QueryResults) -> str:
    """System prompt for the result evaluator."""
    failures = "\n".join(f"- {r.query_id}: {r.error}" for r in results.results if not r.success) or "None"
    return f"""
You are the Result Evaluator. Judge whether the data below answers the user's request.

User request:
{intent.original_query}

Intent: {intent.type.value} / {intent.scope.value} / {intent.complexity.value}

Queries: {results.total_queries} run, {results.successful_queries} succeeded, {results.failed_queries} failed
Failures:
{failures}

Work items ({len(results.work_items)}):
{format_work_items_for_prompt(results.work_items)}

Rubric:
- data_quality: EXCELLENT (complete, accurate), GOOD (usable), FAIR (gaps), POOR (unusable or empty)
- relevance: how directly the items relate to the request
- completeness: COMPLETE, PARTIAL or INCOMPLETE
- needs_additional: true only if a different query would clearly help; list it in additional_queries
- confidence: 0.0 to 1.0
"""


def evaluate_results(intent: Intent, results: QueryResults, completion: OpenAIClient) -> Evaluation:
    """Evaluate results: quick evaluation, then completion service, then fallback."""
    evaluation = quick_evaluation(intent, results)
    if evaluation is not None:
        return evaluation

    try:
        response = completion.call_openai(
            get_evaluator_system_prompt(intent, results),
            "",  # no extra user message, context is all in system prompt
            get_evaluator_tools(),
            tool_choice={"type": "function", "function": {"name": "evaluate_results"}},
            model=OPENAI_EVALUATION_MODEL,
            temperature=EVALUATION_TEMPERATURE,
        )
        parsed = _parse_evaluator_response(response)
        if parsed:
            return parsed
    except Exception:
        logger.exception("Error in evaluate_results")

    return fallback_evaluation(results)


def _parse_evaluator_response(response: Any) -> Optional[Evaluation]:
    args = parse_tool_arguments(response)
    if not args:
        return None

    return Evaluation(
        data_quality=coerce_enum(DataQuality, args.get("data_quality"), DataQuality.FAIR),
        relevance=coerce_enum(Relevance, args.get("relevance"), Relevance.MEDIUM),
        completeness=coerce_enum(Completeness, args.get("completeness"), Completeness.PARTIAL),
        needs_additional=bool(args.get("needs_additional", False)),
        confidence=coerce_confidence(args.get("confidence"), 0.5),
        additional_queries=coerce_str_list(args.get("additional_queries")),
        insights=coerce_str_list(args.get("insights")),
        warnings=coerce_str_list(args.get("warnings")),
        reasoning=str(args.get("reasoning", "")),
    )
