"""
decision_maker.py
AI agent deciding whether a request needs Azure DevOps data, and which kind.
"""

import logging
from typing import List, Dict, Any, Optional
from services.ai_workflow.data_model import (
    Intent, IntentType, IntentScope, Complexity, Decision, QueryKind, coerce_enum
)
from services.ai_workflow.utils.openai_utils import OpenAIClient
from services.ai_workflow.utils.common_utils import parse_tool_arguments, sanitize_cache_key
from services.constants import OPENAI_DECISION_MODEL, DECISION_TEMPERATURE

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def quick_decision(intent: Intent) -> Optional[Decision]:
    """Decisions that never need the completion service."""

    # General knowledge question
    if intent.type == IntentType.QUESTION and intent.scope == IntentScope.GLOBAL and not intent.data_required:
        return Decision(
            requires_ado=False,
            queries_needed=set(),
            can_use_cache=False,
            estimated_complexity=1,
            reasoning="General question, no work item data needed",
        )

    # Single work item lookup
    if intent.scope == IntentScope.ISSUE and intent.issue_id is not None:
        return Decision(
            requires_ado=True,
            queries_needed={QueryKind.WIQL},
            can_use_cache=True,
            cache_key=sanitize_cache_key(f"issue:{intent.issue_id}"),
            estimated_complexity=2,
            reasoning=f"Single lookup of work item #{intent.issue_id}",
        )

    # One user's items
    if intent.scope == IntentScope.USER and intent.complexity == Complexity.SIMPLE and intent.user_identifier:
        states = ",".join(sorted(intent.states)) or "default"
        return Decision(
            requires_ado=True,
            queries_needed={QueryKind.WIQL},
            can_use_cache=True,
            cache_key=sanitize_cache_key(f"user:{intent.user_identifier}:{states}"),
            estimated_complexity=3,
            reasoning=f"Work items for user {intent.user_identifier}",
        )

    return None


def fallback_decision(intent: Intent) -> Decision:
    """Conservative decision: assume data is needed unless it's plainly a question without data."""
    requires_ado = intent.data_required or intent.type != IntentType.QUESTION

    analysis = []
    if intent.type == IntentType.ANALYSIS:
        analysis.append("status_distribution")
    if intent.scope == IntentScope.SPRINT:
        analysis.extend(["velocity", "blockers"])

    return Decision(
        requires_ado=requires_ado,
        queries_needed={QueryKind.WIQL} if requires_ado else set(),
        analysis_required=analysis,
        can_use_cache=True,
        estimated_complexity=3 if intent.complexity == Complexity.SIMPLE else 7,
        reasoning="Fallback decision",
    )


def get_decision_tools() -> List[Dict[str, Any]]:
    """Tool schema for the fetch decision."""
    return [
        {
            "type": "function",
            "function": {
                "name": "make_fetch_decision",
                "description": "Decide whether Azure DevOps data must be fetched to answer the request.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "requires_ado": {"type": "boolean"},
                        "queries_needed": {
                            "type": "array",
                            "items": {"type": "string", "enum": [k.value for k in QueryKind]},
                            "description": "WIQL for work items, METADATA for users/states/types/tags/projects/teams/sprints lists, REST for saved queries."
                        },
                        "analysis_required": {"type": "array", "items": {"type": "string"}},
                        "can_use_cache": {"type": "boolean"},
                        "estimated_complexity": {"type": "integer", "minimum": 1, "maximum": 10},
                        "reasoning": {"type": "string"}
                    },
                    "required": ["requires_ado", "queries_needed", "can_use_cache", "estimated_complexity", "reasoning"],
                    "additionalProperties": False
                }
            }
        }
    ]


def get_decision_system_prompt(intent: Intent, context_summary: str, recent_similar: bool) -> str:
    """System prompt for the decision maker."""
    return f"""
You are the Decision Maker. Decide whether answering the request needs Azure DevOps data.

Intent:
- type: {intent.type.value}
- scope: {intent.scope.value}
- entities: {', '.join(intent.entities) or 'none'}
- data_required (classifier's view): {intent.data_required}
- complexity: {intent.complexity.value}

Rules:
- General knowledge questions need no data (requires_ado=false, queries_needed=[]).
- Listing users, states, types, tags, projects, teams or sprints needs METADATA.
- Saved queries need REST. Everything about work items needs WIQL.
- estimated_complexity is 1 (single lookup) to 10 (multi-query analysis).
- A similar question was {"" if recent_similar else "not "}asked in the last few minutes; cached results are fine in that case.

{context_summary}
"""


def decide_fetch(
    intent: Intent,
    completion: OpenAIClient,
    context_summary: str = "",
    recent_similar: bool = False,
) -> Decision:
    """Decide the fetch strategy: quick decision, then completion service, then fallback."""
    decision = quick_decision(intent)
    if decision is None:
        decision = _decide_with_llm(intent, completion, context_summary, recent_similar) or fallback_decision(intent)

    if recent_similar:
        decision.can_use_cache = True
    return decision


def _decide_with_llm(intent: Intent, completion: OpenAIClient, context_summary: str,
                     recent_similar: bool) -> Optional[Decision]:
    try:
        response = completion.call_openai(
            get_decision_system_prompt(intent, context_summary, recent_similar),
            intent.original_query,
            get_decision_tools(),
            tool_choice={"type": "function", "function": {"name": "make_fetch_decision"}},
            model=OPENAI_DECISION_MODEL,
            temperature=DECISION_TEMPERATURE,
        )
        return _parse_decision_response(response)
    except Exception as e:
        logger.error(f"Error in decision maker: {e}", exc_info=True)
        return None


def _parse_decision_response(response: Any) -> Optional[Decision]:
    args = parse_tool_arguments(response)
    if not args or not isinstance(args.get("requires_ado"), bool):
        return None

    kinds = set()
    for raw in args.get("queries_needed") or []:
        kind = coerce_enum(QueryKind, raw, None)
        if kind is not None:
            kinds.add(kind)

    requires_ado = args["requires_ado"]
    if requires_ado and not kinds:
        kinds.add(QueryKind.WIQL)

    try:
        complexity = int(args.get("estimated_complexity", 5))
    except (TypeError, ValueError):
        complexity = 5

    analysis = args.get("analysis_required")
    return Decision(
        requires_ado=requires_ado,
        queries_needed=kinds if requires_ado else set(),
        analysis_required=[str(a) for a in analysis] if isinstance(analysis, list) else [],
        can_use_cache=bool(args.get("can_use_cache", True)),
        estimated_complexity=max(1, min(complexity, 10)),
        reasoning=str(args.get("reasoning", "")),
    )
