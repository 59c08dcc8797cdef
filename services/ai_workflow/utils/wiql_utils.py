"""
wiql_utils.py
Helpers for building and filtering WIQL queries.
"""

import re
from typing import List, Optional
from services.ai_workflow.data_model import GlobalFilters

# Fields whose values form a tree; only UNDER or = work on them
HIERARCHICAL_FIELDS = ["System.IterationPath", "System.AreaPath"]

DEFAULT_ORDER_BY = "ORDER BY [System.ChangedDate] DESC"

# States left out by default when listing a person's work
DEFAULT_EXCLUDED_STATES = ["Closed", "Removed"]

_ORDER_BY_RE = re.compile(r"\s+ORDER\s+BY\s+", re.IGNORECASE)


def escape_literal(value: str) -> str:
    """Quote a value as a WIQL string literal."""
    return "'" + str(value).replace("'", "''") + "'"


def in_list(values: List[str]) -> str:
    return "(" + ", ".join(escape_literal(v) for v in values) + ")"


def build_wiql(conditions: List[str], order_by: str = DEFAULT_ORDER_BY) -> str:
    wiql = "SELECT [System.Id] FROM WorkItems"
    if conditions:
        wiql += " WHERE " + " AND ".join(conditions)
    return f"{wiql} {order_by}"


def _split_order_by(wiql: str):
    match = _ORDER_BY_RE.search(wiql)
    if not match:
        return wiql.strip(), ""
    return wiql[:match.start()].strip(), wiql[match.start():].strip()


def filter_conditions(filters: Optional[GlobalFilters]) -> List[str]:
    if not filters:
        return []

    conditions = []
    if filters.ignore_closed:
        conditions.append("[System.State] <> 'Closed'")
    if filters.ignore_states:
        conditions.append(f"[System.State] NOT IN {in_list(filters.ignore_states)}")
    if filters.ignore_created_by:
        conditions.append(f"[System.CreatedBy] NOT IN {in_list(filters.ignore_created_by)}")
    if filters.only_my_tickets:
        if filters.current_user:
            conditions.append(f"[System.AssignedTo] = {escape_literal(filters.current_user)}")
        else:
            conditions.append("[System.AssignedTo] = @Me")
    if filters.ignore_older_than_days:
        conditions.append(f"[System.ChangedDate] >= @Today - {int(filters.ignore_older_than_days)}")
    if filters.project_name:
        conditions.append(f"[System.TeamProject] = {escape_literal(filters.project_name)}")
    return conditions


def apply_filters_to_query(wiql: str, filters: Optional[GlobalFilters]) -> str:
    """AND the global filter conditions into a WIQL query, before its ORDER BY clause."""
    conditions = filter_conditions(filters)
    if not conditions:
        return wiql

    body, order_by = _split_order_by(wiql)
    extra = " AND ".join(conditions)
    if re.search(r"\bWHERE\b", body, re.IGNORECASE):
        head, _, where = re.split(r"(\bWHERE\b)", body, maxsplit=1, flags=re.IGNORECASE)
        body = f"{head.rstrip()} WHERE ({where.strip()}) AND {extra}"
    else:
        body = f"{body} WHERE {extra}"

    return f"{body} {order_by}".strip()
