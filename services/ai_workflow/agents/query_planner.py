"""
query_planner.py
AI agent that turns an Intent into an ordered plan of WIQL, REST and metadata queries.

Common requests are served by deterministic templates. Anything else is drafted
by the completion service, and every drafted WIQL query goes back through
validate_query / fix_query before it is allowed into the plan.
"""

import re
import logging
from datetime import date
from typing import List, Dict, Any, Optional
from services.ai_workflow.data_model import (
    Intent, IntentScope, Decision, QueryKind, QueryPlan, PlannedQuery, coerce_enum
)
from services.ai_workflow.utils.openai_utils import OpenAIClient
from services.ai_workflow.utils.common_utils import (
    get_message_content, parse_json_content, hash_query
)
from services.ai_workflow.utils.wiql_utils import (
    HIERARCHICAL_FIELDS, DEFAULT_ORDER_BY, DEFAULT_EXCLUDED_STATES,
    escape_literal, in_list, build_wiql,
)
from services.ado.rest_client import REST_PATHS
from services.constants import (
    ADO_PROJECT, ADO_METADATA_KINDS, ADO_WORK_ITEM_FIELDS,
    OPENAI_PLANNING_MODEL, PLANNING_TEMPERATURE,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

VALIDATION_RULES = [
    "System.IterationPath must use UNDER or = (never CONTAINS)",
    "System.AreaPath must use UNDER or = (never CONTAINS)",
    "SELECT must include [System.Id]",
    "Every query must have an ORDER BY clause",
]

CREATED_BY_PHRASES = ["/created_by", "opened by", "created by", "authored by", "submitted by"]

# "list all projects", "what sprints are available?", ...
LISTING_RE = re.compile(
    r"^\s*(list|show(\s+me)?|what|which|get)(\s+all|\s+the)?(\s+available)?\s+"
    r"(users|people|states|types|work item types|tags|projects|teams|sprints|iterations)\b",
    re.IGNORECASE,
)

LISTING_WORDS = {
    "users": "users",
    "people": "users",
    "states": "states",
    "work item types": "types",
    "types": "types",
    "tags": "tags",
    "projects": "projects",
    "teams": "teams",
    "sprints": "sprints",
    "iterations": "sprints",
}

_HIERARCHY_CONTAINS_RE = re.compile(
    r"\[(" + "|".join(re.escape(f) for f in HIERARCHICAL_FIELDS) + r")\]\s+(NOT\s+)?CONTAINS(\s+WORDS)?",
    re.IGNORECASE,
)


# :::::: Validation :::::: #

def validate_query(wiql: str) -> List[str]:
    """List the rule violations of a WIQL query. Never modifies it."""
    errors = []

    for match in _HIERARCHY_CONTAINS_RE.finditer(wiql):
        errors.append(
            f"CONTAINS cannot be used with {match.group(1)}. Use UNDER or = instead."
        )

    if not re.search(r"\[System\.Id\]", wiql, re.IGNORECASE):
        errors.append("Query should include [System.Id] in SELECT clause")

    if not re.search(r"\bORDER\s+BY\b", wiql, re.IGNORECASE):
        errors.append("Query should include ORDER BY clause for consistent results")

    return errors


def fix_query(wiql: str) -> str:
    """
    Apply the safe rewrites:
    - CONTAINS on a hierarchical path field -> UNDER (the path literal is kept as is)
    - missing [System.Id] in the SELECT list -> added
    - missing ORDER BY -> ORDER BY [System.ChangedDate] DESC
    """
    fixed = _HIERARCHY_CONTAINS_RE.sub(
        lambda m: f"[{m.group(1)}] {'NOT UNDER' if m.group(2) else 'UNDER'}",
        wiql.strip(),
    )

    if not re.search(r"\[System\.Id\]", fixed, re.IGNORECASE):
        fixed = re.sub(r"^\s*SELECT\s+", "SELECT [System.Id], ", fixed, count=1, flags=re.IGNORECASE)

    if not re.search(r"\bORDER\s+BY\b", fixed, re.IGNORECASE):
        fixed = f"{fixed} {DEFAULT_ORDER_BY}"

    return fixed


# :::::: Identifier resolution :::::: #

def _project_name(intent: Intent, default_project: str) -> str:
    return intent.project_identifier or default_project


def resolve_sprint_condition(sprint_identifier: str, sprints: Optional[List[Dict[str, Any]]],
                             project: str) -> str:
    """
    Condition on the iteration path for a sprint name or path.
    Metadata is used when available (exact path, then fuzzy name/path match);
    otherwise the path is built literally as Project\\Sprint.
    """
    identifier = sprint_identifier.strip()
    lower = identifier.lower()

    if lower in ("current", "current sprint", "@currentiteration"):
        for sprint in sprints or []:
            if str(sprint.get("time_frame", "")).lower() == "current" and sprint.get("path"):
                return f"[System.IterationPath] UNDER {escape_literal(sprint['path'])}"
        return "[System.IterationPath] = @CurrentIteration"

    is_full_path = "\\" in identifier
    path = identifier if is_full_path else f"{project}\\{identifier}"

    for sprint in sprints or []:
        name = str(sprint.get("name") or "").lower()
        sprint_path = str(sprint.get("path") or "")
        if is_full_path:
            if sprint_path.lower() == lower:
                path = sprint_path
                break
        elif lower in name or lower in sprint_path.lower():
            if sprint_path:
                path = sprint_path
                logger.info(f"Using sprint path from metadata: {path}")
                break

    return f"[System.IterationPath] UNDER {escape_literal(path)}"


def _area_condition(identifier: str, project: str) -> str:
    path = identifier if "\\" in identifier else f"{project}\\{identifier}"
    return f"[System.AreaPath] UNDER {escape_literal(path)}"


def _listing_kind(intent: Intent) -> Optional[str]:
    match = LISTING_RE.match(intent.original_query or "")
    if not match:
        return None
    return LISTING_WORDS[match.group(5).lower()]


def _is_created_by_query(intent: Intent) -> bool:
    lower = (intent.original_query or "").lower()
    return any(phrase in lower for phrase in CREATED_BY_PHRASES)


def _state_type_conditions(intent: Intent) -> List[str]:
    conditions = []
    if intent.states:
        conditions.append(f"[System.State] IN {in_list(intent.states)}")
    if intent.types:
        conditions.append(f"[System.WorkItemType] IN {in_list(intent.types)}")
    return conditions


# :::::: Templates :::::: #

def _wiql_query(query_id: str, wiql: str, purpose: str) -> PlannedQuery:
    return PlannedQuery(
        id=query_id,
        kind=QueryKind.WIQL,
        query_body=wiql,
        fields=list(ADO_WORK_ITEM_FIELDS),
        purpose=purpose,
        priority=1,
        optional=False,
    )


def _single_query_plan(query: PlannedQuery, decision: Optional[Decision], success_criteria: str) -> QueryPlan:
    return QueryPlan(
        plan_id=_plan_id([query], decision),
        queries=[query],
        validation_rules=list(VALIDATION_RULES),
        success_criteria=success_criteria,
    )


def _plan_id(queries: List[PlannedQuery], decision: Optional[Decision]) -> str:
    """Stable across identical requests, so cache keys built from it are too."""
    if decision is not None and decision.cache_key:
        return decision.cache_key
    return "plan_" + hash_query("|".join(f"{q.id}:{q.kind.value}:{q.query_body}" for q in queries))


def build_simple_plan(intent: Intent, decision: Optional[Decision] = None,
                      metadata: Optional[Dict[str, Any]] = None,
                      default_project: str = ADO_PROJECT) -> Optional[QueryPlan]:
    """Deterministic plans for the common request shapes. None when no template applies."""
    project = _project_name(intent, default_project)
    sprints = (metadata or {}).get("sprints")
    scope = intent.scope

    # Single work item
    if scope == IntentScope.ISSUE and intent.issue_id is not None:
        wiql = build_wiql([f"[System.Id] = {int(intent.issue_id)}"])
        return _single_query_plan(
            _wiql_query("issue_lookup", wiql, f"Get work item #{intent.issue_id}"),
            decision, "Work item found",
        )

    # Metadata listings
    kind = _listing_kind(intent)
    if kind is not None and not (intent.user_identifier or intent.issue_id is not None):
        query = PlannedQuery(id=f"list_{kind}", kind=QueryKind.METADATA, query_body=kind,
                             purpose=f"List available {kind}")
        return _single_query_plan(query, decision, f"List of {kind} returned")

    # Saved queries
    if scope == IntentScope.QUERY:
        query = PlannedQuery(id="get_queries", kind=QueryKind.REST, query_body="/queries",
                             purpose="List saved queries")
        return _single_query_plan(query, decision, "Saved queries returned")

    # Sprint / iteration contents
    if scope in (IntentScope.SPRINT, IntentScope.ITERATION, IntentScope.PROJECT) and intent.sprint_identifier:
        conditions = [resolve_sprint_condition(intent.sprint_identifier, sprints, project)]
        conditions.extend(_state_type_conditions(intent))
        return _single_query_plan(
            _wiql_query("sprint_items", build_wiql(conditions), f"Work items in {intent.sprint_identifier}"),
            decision, "Sprint work items returned",
        )

    # One person's work
    if scope in (IntentScope.USER, IntentScope.ASSIGNEE, IntentScope.CREATOR) and intent.user_identifier:
        user = escape_literal(intent.user_identifier)
        order_by = DEFAULT_ORDER_BY

        if scope == IntentScope.CREATOR or (scope == IntentScope.USER and _is_created_by_query(intent)):
            query_id = "creator_items" if scope == IntentScope.CREATOR else "user_items"
            conditions = [f"[System.CreatedBy] CONTAINS {user}"]
            if scope == IntentScope.CREATOR:
                order_by = "ORDER BY [System.CreatedDate] DESC"
                if intent.date_range and intent.date_range.start:
                    conditions.append(f"[System.CreatedDate] >= {escape_literal(intent.date_range.start)}")
            purpose = f"Work items created by {intent.user_identifier}"
        else:
            query_id = "assignee_items" if scope == IntentScope.ASSIGNEE else "user_items"
            conditions = [f"[System.AssignedTo] CONTAINS {user}"]
            purpose = f"Work items assigned to {intent.user_identifier}"

        if intent.states:
            conditions.append(f"[System.State] IN {in_list(intent.states)}")
        elif scope == IntentScope.USER:
            conditions.append(f"[System.State] NOT IN {in_list(DEFAULT_EXCLUDED_STATES)}")
        if intent.types:
            conditions.append(f"[System.WorkItemType] IN {in_list(intent.types)}")

        return _single_query_plan(
            _wiql_query(query_id, build_wiql(conditions, order_by), purpose),
            decision, "User work items returned",
        )

    if scope == IntentScope.STATE and intent.states:
        return _single_query_plan(
            _wiql_query("state_items", build_wiql(_state_type_conditions(intent)),
                        f"Work items in state {', '.join(intent.states)}"),
            decision, "Work items in the requested states returned",
        )

    if scope == IntentScope.TYPE and intent.types:
        conditions = [f"[System.WorkItemType] IN {in_list(intent.types)}"]
        if intent.states:
            conditions.append(f"[System.State] IN {in_list(intent.states)}")
        return _single_query_plan(
            _wiql_query("type_items", build_wiql(conditions), f"Work items of type {', '.join(intent.types)}"),
            decision, "Work items of the requested types returned",
        )

    if scope == IntentScope.TAG and intent.tags:
        tag_conditions = " OR ".join(f"[System.Tags] CONTAINS {escape_literal(t)}" for t in intent.tags)
        return _single_query_plan(
            _wiql_query("tag_items", build_wiql([f"({tag_conditions})"]), f"Work items tagged {', '.join(intent.tags)}"),
            decision, "Tagged work items returned",
        )

    if scope == IntentScope.TITLE and intent.entities:
        term = " ".join(intent.entities)
        return _single_query_plan(
            _wiql_query("title_search", build_wiql([f"[System.Title] CONTAINS {escape_literal(term)}"]),
                        f"Work items with '{term}' in the title"),
            decision, "Matching work items returned",
        )

    if scope == IntentScope.DESCRIPTION and intent.entities:
        term = " ".join(intent.entities)
        return _single_query_plan(
            _wiql_query("description_search", build_wiql([f"[System.Description] CONTAINS {escape_literal(term)}"]),
                        f"Work items with '{term}' in the description"),
            decision, "Matching work items returned",
        )

    area = intent.board_identifier or intent.team_identifier
    if scope in (IntentScope.AREA, IntentScope.BOARD, IntentScope.TEAM) and area:
        conditions = [_area_condition(area, project)]
        conditions.extend(_state_type_conditions(intent))
        return _single_query_plan(
            _wiql_query("area_items", build_wiql(conditions), f"Work items under area {area}"),
            decision, "Area work items returned",
        )

    return None


def build_fallback_plan(intent: Intent, decision: Optional[Decision] = None,
                        default_project: str = ADO_PROJECT) -> QueryPlan:
    """One query built straight from the intent's slots."""
    kinds = decision.queries_needed if decision is not None else set()
    project = _project_name(intent, default_project)
    queries: List[PlannedQuery] = []

    if QueryKind.WIQL in kinds or not kinds:
        conditions = []
        if intent.issue_id is not None:
            conditions.append(f"[System.Id] = {int(intent.issue_id)}")
        elif intent.user_identifier:
            field = "System.CreatedBy" if _is_created_by_query(intent) or intent.scope == IntentScope.CREATOR else "System.AssignedTo"
            conditions.append(f"[{field}] CONTAINS {escape_literal(intent.user_identifier)}")
        elif intent.sprint_identifier:
            conditions.append(resolve_sprint_condition(intent.sprint_identifier, None, project))
        elif intent.team_identifier or intent.board_identifier:
            conditions.append(_area_condition(intent.team_identifier or intent.board_identifier, project))

        if intent.project_identifier:
            conditions.append(f"[System.TeamProject] = {escape_literal(intent.project_identifier)}")
        conditions.extend(_state_type_conditions(intent))
        if intent.tags:
            tag_conditions = " OR ".join(f"[System.Tags] CONTAINS {escape_literal(t)}" for t in intent.tags)
            conditions.append(f"({tag_conditions})")
        if intent.scope == IntentScope.TITLE and intent.entities:
            conditions.append(f"[System.Title] CONTAINS {escape_literal(' '.join(intent.entities))}")
        if intent.date_range and intent.date_range.start:
            conditions.append(f"[System.ChangedDate] >= {escape_literal(intent.date_range.start)}")
        if not conditions:
            conditions.append("[System.TeamProject] = @project")

        queries.append(_wiql_query("main_query", build_wiql(conditions), "Fetch work items based on intent"))
    elif QueryKind.METADATA in kinds:
        kind = _listing_kind(intent) or "projects"
        queries.append(PlannedQuery(id=f"list_{kind}", kind=QueryKind.METADATA, query_body=kind,
                                    purpose=f"List available {kind}"))
    elif QueryKind.REST in kinds:
        queries.append(PlannedQuery(id="get_queries", kind=QueryKind.REST, query_body="/queries",
                                    purpose="List saved queries"))

    return QueryPlan(
        plan_id=_plan_id(queries, decision),
        queries=queries,
        validation_rules=list(VALIDATION_RULES),
        success_criteria="Query executes without errors",
        is_fallback=True,
    )


# :::::: LLM drafting :::::: #

def get_planner_system_prompt(metadata: Optional[Dict[str, Any]], default_project: str) -> str:
    """System prompt for the query planner."""
    sprint_lines = "Unknown"
    sprints = (metadata or {}).get("sprints")
    if sprints:
        sprint_lines = "\n".join(f"- {s.get('name')}: {s.get('path')}" for s in sprints[:30])

    return f"""
You are the Query Planner for Azure DevOps. You write WIQL queries that fulfil a user's intent.

Respond with a JSON object only:
{{
  "queries": [
    {{
      "id": "short_snake_case_id",
      "kind": "WIQL" | "METADATA" | "REST",
      "query": "WIQL text, or metadata kind, or REST path",
      "purpose": "why this query is needed",
      "depends_on": ["ids of earlier queries"],
      "priority": 1,
      "optional": false
    }}
  ],
  "success_criteria": "what a good result looks like"
}}

WIQL rules:
- Always start with SELECT [System.Id] FROM WorkItems
- Always end with ORDER BY [System.ChangedDate] DESC (or another date field)
- [System.IterationPath] and [System.AreaPath] are hierarchical: use UNDER or =, NEVER CONTAINS
- Use IN ('A', 'B') for lists, CONTAINS for text fields, @Me, @Today - N and @CurrentIteration macros are allowed
- Quote string values with single quotes
- Useful fields: System.Title, System.State, System.WorkItemType, System.AssignedTo, System.CreatedBy,
  System.CreatedDate, System.ChangedDate, System.Tags, System.IterationPath, System.AreaPath,
  Microsoft.VSTS.Common.Priority, Microsoft.VSTS.Scheduling.StoryPoints

METADATA kinds: {', '.join(ADO_METADATA_KINDS)}
REST paths: {', '.join(sorted(REST_PATHS))}

Keep plans small: one query unless the request truly needs more. depends_on may only name queries with
equal or lower priority.

Default project: {default_project or 'unknown'}
Today's date: {date.today().isoformat()}
Known sprints:
{sprint_lines}
"""


def _build_planner_user_prompt(intent: Intent, decision: Optional[Decision], hints: Optional[List[str]]) -> str:
    lines = [
        f"User request: {intent.original_query}",
        f"Intent type: {intent.type.value}, scope: {intent.scope.value}, complexity: {intent.complexity.value}",
    ]
    slots = {
        "sprint": intent.sprint_identifier,
        "user": intent.user_identifier,
        "issue id": intent.issue_id,
        "project": intent.project_identifier,
        "team": intent.team_identifier,
        "board": intent.board_identifier,
        "states": ", ".join(intent.states),
        "types": ", ".join(intent.types),
        "tags": ", ".join(intent.tags),
        "entities": ", ".join(intent.entities),
    }
    if intent.date_range:
        slots["date range"] = f"{intent.date_range.start or '...'} to {intent.date_range.end or '...'}"
    lines.extend(f"{name}: {value}" for name, value in slots.items() if value not in (None, ""))

    if decision is not None:
        lines.append(f"Query kinds needed: {', '.join(sorted(k.value for k in decision.queries_needed)) or 'WIQL'}")
        if decision.analysis_required:
            lines.append(f"Analysis required: {', '.join(decision.analysis_required)}")
    if hints:
        lines.append("The previous attempt came back short. Consider: " + "; ".join(hints))
    return "\n".join(lines)


def _sanitize_planned_queries(raw_queries: Any) -> List[PlannedQuery]:
    """Coerce drafted queries; WIQL is validated and fixed, anything unusable is dropped."""
    if not isinstance(raw_queries, list):
        return []

    queries: List[PlannedQuery] = []
    seen_ids = set()
    for index, raw in enumerate(raw_queries):
        if not isinstance(raw, dict):
            continue
        body = str(raw.get("query") or raw.get("query_body") or "").strip()
        if not body:
            continue

        kind = coerce_enum(QueryKind, raw.get("kind") or raw.get("type"), QueryKind.WIQL)
        if kind == QueryKind.WIQL:
            if validate_query(body):
                body = fix_query(body)
            remaining = validate_query(body)
            if remaining:
                logger.warning(f"Dropping drafted query that can't be fixed: {remaining}")
                continue
        elif kind == QueryKind.METADATA:
            body = body.lower()
            if body not in ADO_METADATA_KINDS:
                logger.warning(f"Dropping unknown metadata kind: {body}")
                continue
        elif body not in REST_PATHS:
            logger.warning(f"Dropping unsupported REST path: {body}")
            continue

        query_id = re.sub(r"[^a-zA-Z0-9_]", "_", str(raw.get("id") or f"query_{index + 1}"))
        while query_id in seen_ids:
            query_id = f"{query_id}_{index + 1}"
        seen_ids.add(query_id)

        try:
            priority = int(raw.get("priority", index + 1))
        except (TypeError, ValueError):
            priority = index + 1

        depends_on = raw.get("depends_on") or []
        queries.append(PlannedQuery(
            id=query_id,
            kind=kind,
            query_body=body,
            fields=list(ADO_WORK_ITEM_FIELDS) if kind == QueryKind.WIQL else [],
            purpose=str(raw.get("purpose", "")),
            depends_on={str(d) for d in depends_on} if isinstance(depends_on, list) else set(),
            priority=priority,
            optional=bool(raw.get("optional", False)),
        ))

    # Dependencies may only point at queries that run no later than the dependent one
    priorities = {q.id: q.priority for q in queries}
    for query in queries:
        invalid = {d for d in query.depends_on if d not in priorities or priorities[d] > query.priority or d == query.id}
        if invalid:
            logger.warning(f"Dropping invalid dependencies {sorted(invalid)} of {query.id}")
            query.depends_on -= invalid

    return queries


def _draft_plan_with_llm(intent: Intent, decision: Optional[Decision], completion: OpenAIClient,
                         metadata: Optional[Dict[str, Any]], hints: Optional[List[str]],
                         default_project: str) -> Optional[QueryPlan]:
    try:
        response = completion.call_openai(
            get_planner_system_prompt(metadata, default_project),
            _build_planner_user_prompt(intent, decision, hints),
            model=OPENAI_PLANNING_MODEL,
            temperature=PLANNING_TEMPERATURE,
            max_tokens=2000,
            response_format={"type": "json_object"},
        )
        parsed = parse_json_content(get_message_content(response))
        if not parsed:
            return None

        queries = _sanitize_planned_queries(parsed.get("queries"))
        if not queries:
            return None

        return QueryPlan(
            plan_id=_plan_id(queries, decision),
            queries=queries,
            validation_rules=list(VALIDATION_RULES),
            success_criteria=str(parsed.get("success_criteria") or "Query executes without errors"),
        )
    except Exception as e:
        logger.error(f"Error in query planner: {e}", exc_info=True)
        return None


def plan_queries(
    intent: Intent,
    decision: Optional[Decision],
    completion: OpenAIClient,
    metadata: Optional[Dict[str, Any]] = None,
    hints: Optional[List[str]] = None,
    default_project: str = ADO_PROJECT,
) -> QueryPlan:
    """
    Templates first, then an LLM draft, then the deterministic fallback plan.
    Hints from the evaluator skip the templates, which would only repeat the last plan.
    """
    plan = None if hints else build_simple_plan(intent, decision, metadata, default_project)
    if plan is not None:
        logger.info(f"Using template plan: {[q.id for q in plan.queries]}")
        return plan

    plan = _draft_plan_with_llm(intent, decision, completion, metadata, hints, default_project)
    if plan is not None:
        return plan

    logger.info("Falling back to intent-derived plan")
    return build_fallback_plan(intent, decision, default_project)
