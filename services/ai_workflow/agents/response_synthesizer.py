"""
response_synthesizer.py
AI agent writing the final answer from evaluated query results.
"""

import re
import logging
from typing import List, Dict, Any, Optional
from services.ai_workflow.data_model import (
    Intent, IntentScope, Evaluation, QueryResults, QueryKind, OrchestratedResponse,
    ResponseMetadata, AnalysisResult, Visualization, VisualizationType, coerce_enum, coerce_str_list
)
from services.ai_workflow.utils.openai_utils import OpenAIClient
from services.ai_workflow.utils.common_utils import (
    get_message_content, parse_json_content, format_work_items_for_prompt
)
from services.ai_workflow.utils.visualization_utils import build_visualization, generate_auto_visualizations
from services.constants import (
    OPENAI_SYNTHESIS_MODEL, SYNTHESIS_TEMPERATURE, GENERAL_ANSWER_TEMPERATURE,
    MAX_VISUALIZATIONS, MAX_SUGGESTIONS
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DATA_SOURCE = "Azure DevOps"

GENERAL_SUGGESTIONS = [
    "Show me my active work items",
    "What sprints are available?",
    "List all projects",
]

HELP_SUGGESTIONS = [
    "Show me my assigned items",
    "List all users",
    "What work item types are available?",
]

# Follow-ups the pipeline can actually run. A suggestion must match one of these...
EXECUTABLE_SUGGESTION_PATTERNS = [
    re.compile(r"^show (me )?(my |all )*((active|assigned|new|closed|resolved|blocked|open|unassigned|high priority|critical) )*"
               r"(work )?(items|bugs|tasks|user stories|stories|features|epics)\b"),
    re.compile(r"^list (all )?(the )?(projects|sprints|users|teams|tags|states|work item types|types|saved queries|queries)\b"),
    re.compile(r"^(what|which) (sprints|projects|users|teams|tags|states|work item types|types|saved queries) (are|exist)"),
    re.compile(r"^show (me )?(item|work item|bug|task|story) #?\d+"),
    re.compile(r"^what('s| is) in (the )?(current )?sprint"),
    re.compile(r"^show (me )?(items|work items|bugs|tasks) (assigned to|created by|tagged|with tag|in state|of type|in sprint|under area) "),
    re.compile(r"^show (me )?(items|work items) by (state|type|priority)\b"),
    re.compile(r"^/(sprint|current-sprint|assigned_to|created_by|state|type|tag|board|team|project|item)\b"),
]

# ...and none of these: aggregates and cross-sprint questions have no query behind them
UNSUPPORTED_SUGGESTION_PATTERNS = [
    re.compile(r"\bhow many\b"),
    re.compile(r"\bcount\b"),
    re.compile(r"\bcompar"),
    re.compile(r"\b(across|between) (all )?sprints\b"),
    re.compile(r"\bvelocity\b"),
    re.compile(r"\btrends?\b"),
    re.compile(r"\bforecast"),
    re.compile(r"\baverage\b"),
    re.compile(r"\bburndown\b"),
]

SCOPE_SUGGESTIONS = {
    IntentScope.USER: ["Show high priority items", "Show active bugs", "Show items by state"],
    IntentScope.SPRINT: ["Show blocked items", "What's in the current sprint?", "List all sprints"],
    IntentScope.PROJECT: ["Show all bugs", "List all sprints", "List all teams"],
    IntentScope.ISSUE: ["Show my active items", "Show active bugs", "List all sprints"],
}
DEFAULT_SUGGESTIONS = ["Show my active items", "List all sprints", "What users are available?"]

SYNTHESIS_SYSTEM_PROMPT = """
You are the Response Synthesizer for an Azure DevOps assistant.
You answer the user's question using ONLY the work items provided. Never invent items, counts or people.

Respond with a JSON object only:
{
  "summary": "markdown answer, 1-3 short paragraphs, cite items as #id",
  "analysis": {
    "title": "...",
    "summary": "...",
    "metrics": [{"label": "...", "value": "..."}],
    "insights": ["..."],
    "risks": ["..."],
    "recommendations": ["..."]
  },
  "suggestions": ["follow-up request", "..."],
  "visualizations": [{"type": "status_pie", "title": "..."}]
}

"analysis" is only needed for ANALYSIS or SUMMARY requests; omit it otherwise.

Follow-up suggestions must be requests the assistant can run, phrased like:
- "Show active bugs", "Show items assigned to <name>", "Show item #<id>"
- "List all sprints", "What users are available?", "What's in the current sprint?"
Never suggest counts ("how many..."), comparisons, trends, velocity or cross-sprint questions.

Visualization types: status_pie, priority_distribution, burndown, team_comparison, timeline, blockers.
"""


def is_executable_suggestion(suggestion: str) -> bool:
    text = suggestion.strip().lower()
    if not text:
        return False
    if any(p.search(text) for p in UNSUPPORTED_SUGGESTION_PATTERNS):
        return False
    return any(p.match(text) for p in EXECUTABLE_SUGGESTION_PATTERNS)


def filter_suggestions(suggestions: List[str], intent: Intent) -> List[str]:
    """Keep executable suggestions; fall back to the canned ones for the scope."""
    kept = []
    for suggestion in suggestions:
        if is_executable_suggestion(suggestion) and suggestion.strip() not in kept:
            kept.append(suggestion.strip())
        else:
            logger.info(f"Dropping non-executable suggestion: {suggestion}")
    return kept[:MAX_SUGGESTIONS] if kept else default_suggestions(intent)


def default_suggestions(intent: Intent) -> List[str]:
    return list(SCOPE_SUGGESTIONS.get(intent.scope, DEFAULT_SUGGESTIONS))[:MAX_SUGGESTIONS]


def fallback_summary(intent: Intent, results: QueryResults) -> str:
    count = len(results.work_items)
    plural = "s" if count != 1 else ""

    if intent.scope == IntentScope.ISSUE and intent.issue_id is not None:
        return f"Found work item #{intent.issue_id}." if count else f"Work item #{intent.issue_id} not found."
    if count == 0:
        return "No work items found matching your query."
    if intent.scope == IntentScope.USER and intent.user_identifier:
        return f"Found {count} work item{plural} for {intent.user_identifier}."
    if intent.scope == IntentScope.SPRINT and intent.sprint_identifier:
        return f"Found {count} work item{plural} in {intent.sprint_identifier}."
    return f"Found {count} work item{plural} matching your query."


def _metadata(results: QueryResults, evaluation: Evaluation, sources: List[str]) -> ResponseMetadata:
    return ResponseMetadata(
        queries_executed=results.total_queries,
        confidence=evaluation.confidence,
        processing_time=results.total_duration,
        cache_hit=results.cache_hits > 0,
        data_sources=sources,
    )


def build_fallback_response(intent: Intent, evaluation: Evaluation, results: QueryResults) -> OrchestratedResponse:
    """Deterministic response built from the raw data only."""
    return OrchestratedResponse(
        success=True,
        summary=fallback_summary(intent, results),
        raw_data=results.work_items,
        suggestions=default_suggestions(intent),
        visualizations=generate_auto_visualizations(intent, results.work_items),
        metadata=_metadata(results, evaluation, [DATA_SOURCE]),
    )


def synthesize_general_answer(intent: Intent, completion: OpenAIClient) -> OrchestratedResponse:
    """Answer a general question about Azure DevOps without touching any data."""
    response = completion.call_openai(
        "You are a helpful assistant that answers questions about Azure DevOps concepts and terminology. "
        "Be concise but thorough.",
        intent.original_query,
        model=OPENAI_SYNTHESIS_MODEL,
        temperature=GENERAL_ANSWER_TEMPERATURE,
        max_tokens=800,
    )
    answer = get_message_content(response)
    if answer:
        return OrchestratedResponse(
            success=True,
            summary=answer.strip(),
            suggestions=list(GENERAL_SUGGESTIONS),
            metadata=ResponseMetadata(queries_executed=0, confidence=0.9, data_sources=["General Knowledge"]),
        )

    return OrchestratedResponse(
        success=True,
        summary="I can help you explore Azure DevOps data. Try asking about specific work items, sprints, users, or projects.",
        suggestions=list(HELP_SUGGESTIONS),
        metadata=ResponseMetadata(queries_executed=0, confidence=0.5),
    )


def is_metadata_listing(results: QueryResults) -> bool:
    """True when every successful query was a listing (metadata or REST), not a work item search."""
    successful = [r for r in results.results if r.success]
    return bool(successful) and all(r.kind in (QueryKind.METADATA, QueryKind.REST) for r in successful)


def _format_listing_entry(entry: Dict[str, Any]) -> str:
    name = entry.get("name") or entry.get("id")
    extra = entry.get("path") or entry.get("unique_name") or entry.get("description")
    if entry.get("time_frame") == "current":
        return f"- **{name}** (current)" + (f" - {extra}" if extra else "")
    return f"- {name}" + (f" - {extra}" if extra and extra != name else "")


def synthesize_metadata_listing(intent: Intent, results: QueryResults,
                                evaluation: Optional[Evaluation] = None) -> OrchestratedResponse:
    """Format metadata listings directly; no completion call needed."""
    sections = []
    for result in results.results:
        if not result.success:
            continue
        entries = result.data if isinstance(result.data, list) else []
        label = result.query_id.replace("list_", "").replace("get_", "").replace("_", " ")
        if not entries:
            sections.append(f"No {label} found.")
            continue
        lines = [_format_listing_entry(e) for e in entries if isinstance(e, dict)]
        sections.append(f"Found {len(lines)} {label}:\n" + "\n".join(lines))

    metadata = ResponseMetadata(
        queries_executed=results.total_queries,
        confidence=evaluation.confidence if evaluation else 0.9,
        processing_time=results.total_duration,
        cache_hit=results.cache_hits > 0,
        data_sources=[DATA_SOURCE],
    )
    return OrchestratedResponse(
        success=True,
        summary="\n\n".join(sections) or "Nothing to list.",
        raw_data=[],
        suggestions=default_suggestions(intent),
        metadata=metadata,
    )


def build_synthesis_prompt(intent: Intent, evaluation: Evaluation, results: QueryResults,
                           context_summary: str = "") -> str:
    insights = "\n".join(f"- {i}" for i in evaluation.insights) or "None"
    warnings = "\n".join(f"- {w}" for w in evaluation.warnings) or "None"
    return f"""
User request: {intent.original_query}
Intent: {intent.type.value} / {intent.scope.value}

Evaluation: quality {evaluation.data_quality.value}, completeness {evaluation.completeness.value}, confidence {evaluation.confidence:.2f}
Insights:
{insights}
Warnings:
{warnings}

Work items ({len(results.work_items)} total):
{format_work_items_for_prompt(results.work_items)}

{context_summary}
"""


def _parse_analysis(raw: Any) -> Optional[AnalysisResult]:
    if not isinstance(raw, dict):
        return None
    metrics = raw.get("metrics")
    return AnalysisResult(
        title=str(raw.get("title") or "Analysis"),
        summary=str(raw.get("summary") or ""),
        metrics=[m for m in metrics if isinstance(m, dict)] if isinstance(metrics, list) else [],
        insights=coerce_str_list(raw.get("insights")),
        risks=coerce_str_list(raw.get("risks")),
        recommendations=coerce_str_list(raw.get("recommendations")),
    )


def _parse_visualizations(raw: Any, intent: Intent, results: QueryResults) -> List[Visualization]:
    """Accept only known types, and recompute their data from the work items."""
    if not isinstance(raw, list):
        return generate_auto_visualizations(intent, results.work_items)

    visualizations = []
    for entry in raw:
        raw_type = entry.get("type") if isinstance(entry, dict) else entry
        viz_type = coerce_enum(VisualizationType, raw_type, None)
        if viz_type is None or viz_type == VisualizationType.VELOCITY:
            continue
        if any(v.type == viz_type for v in visualizations):
            continue
        viz = build_visualization(viz_type, results.work_items)
        if viz is not None:
            if isinstance(entry, dict) and entry.get("title"):
                viz.title = str(entry["title"])
            visualizations.append(viz)

    return visualizations[:MAX_VISUALIZATIONS] or generate_auto_visualizations(intent, results.work_items)


def synthesize_response(
    intent: Intent,
    evaluation: Evaluation,
    results: QueryResults,
    completion: OpenAIClient,
    context_summary: str = "",
) -> OrchestratedResponse:
    """Synthesize the answer. Any failure ends in the deterministic fallback."""
    if not intent.data_required and results.total_queries == 0:
        return synthesize_general_answer(intent, completion)

    if is_metadata_listing(results):
        return synthesize_metadata_listing(intent, results, evaluation)

    try:
        response = completion.call_openai(
            SYNTHESIS_SYSTEM_PROMPT,
            build_synthesis_prompt(intent, evaluation, results, context_summary),
            model=OPENAI_SYNTHESIS_MODEL,
            temperature=SYNTHESIS_TEMPERATURE,
            max_tokens=3000,
            response_format={"type": "json_object"},
        )
        parsed = parse_json_content(get_message_content(response))
        if not parsed or not isinstance(parsed.get("summary"), str) or not parsed["summary"].strip():
            logger.warning("Synthesis output unusable, using fallback response")
            return build_fallback_response(intent, evaluation, results)

        suggestions = parsed.get("suggestions")
        return OrchestratedResponse(
            success=True,
            summary=parsed["summary"].strip(),
            raw_data=results.work_items,
            suggestions=filter_suggestions(coerce_str_list(suggestions), intent),
            analysis=_parse_analysis(parsed.get("analysis")),
            visualizations=_parse_visualizations(parsed.get("visualizations"), intent, results),
            metadata=_metadata(results, evaluation, [DATA_SOURCE]),
        )
    except Exception as e:
        logger.error(f"Error synthesizing response: {e}", exc_info=True)
        return build_fallback_response(intent, evaluation, results)


# :::::: Streaming synthesis :::::: #

STREAM_SYSTEM_PROMPT = """
You are an Azure DevOps assistant. Answer the user's question in markdown using ONLY the work items provided.
Cite items as #id. Never invent items, counts or people.

If the provided items cannot answer the question, call the search_work_items tool once with a WIQL query
that selects [System.Id] and ends with ORDER BY. Use UNDER (never CONTAINS) for [System.IterationPath]
and [System.AreaPath].
"""


def get_stream_tools() -> List[Dict[str, Any]]:
    """Tool the model may call mid-generation to fetch more work items."""
    return [
        {
            "type": "function",
            "function": {
                "name": "search_work_items",
                "description": "Run a WIQL query against Azure DevOps and return the matching work items.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "wiql": {"type": "string", "description": "Complete WIQL query"},
                        "purpose": {"type": "string", "description": "Why this data is needed"}
                    },
                    "required": ["wiql"],
                    "additionalProperties": False
                }
            }
        }
    ]


def build_stream_messages(intent: Intent, evaluation: Evaluation, results: QueryResults,
                          context_summary: str = "") -> List[Dict[str, Any]]:
    return [
        {"role": "system", "content": STREAM_SYSTEM_PROMPT},
        {"role": "user", "content": build_synthesis_prompt(intent, evaluation, results, context_summary)},
    ]
