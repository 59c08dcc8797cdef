import time

import pytest

from services.ai_workflow.data_model import (
    WorkItem, GlobalFilters, Intent, IntentType, IntentScope, VisualizationType
)
from services.ai_workflow.utils.common_utils import (
    Deadline, hash_query, sanitize_cache_key, filters_fingerprint, build_query_cache_key,
    parse_json_content, format_work_items_for_prompt
)
from services.ai_workflow.utils.wiql_utils import apply_filters_to_query, escape_literal, build_wiql
from services.ai_workflow.utils.visualization_utils import build_visualization, generate_auto_visualizations
from services.errors import PipelineTimeoutError


# :::::: common_utils :::::: #

def test_hash_query_is_stable_base36():
    assert hash_query("") == "0"
    assert hash_query("a") == "2p"
    assert hash_query("ab") == "2e9"
    assert hash_query("SELECT [System.Id] FROM WorkItems") == hash_query("SELECT [System.Id] FROM WorkItems")


def test_cache_keys_are_sanitized():
    assert sanitize_cache_key("user:Jane Doe:Active,Resolved") == "user:jane_doe:active_resolved"
    key = build_query_cache_key("user:jane", "user_items", "WIQL", "SELECT 1", None)
    assert key.startswith("ado:query:user:jane:user_items:wiql:")
    assert key.endswith(":nofilters")


def test_filters_fingerprint_is_order_independent():
    a = GlobalFilters(ignore_states=["Closed", "Removed"], ignore_closed=True)
    b = GlobalFilters(ignore_states=["Removed", "Closed"], ignore_closed=True)
    assert filters_fingerprint(a) == filters_fingerprint(b) == "ignoreclosed:ignorestates=Closed,Removed"
    assert filters_fingerprint(GlobalFilters()) == "nofilters"
    # The current user only matters when it filters
    assert filters_fingerprint(GlobalFilters(current_user="jane")) == "nofilters"


def test_parse_json_content():
    assert parse_json_content('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_content("[1, 2]") is None
    assert parse_json_content("nope") is None
    assert parse_json_content(None) is None


def test_format_work_items_for_prompt():
    items = [WorkItem(id=i, title=f"T{i}", type="Bug", state="Active", priority=2) for i in range(3)]
    text = format_work_items_for_prompt(items, limit=2)
    assert text.splitlines()[0] == "- #0: T0 [Active] (Bug, P2) assigned to Unassigned"
    assert text.splitlines()[-1] == "... and 1 more"


def test_deadline():
    deadline = Deadline(10)
    # Never below the floor, even with almost nothing left
    assert deadline.call_timeout(15.0) == 0.1
    time.sleep(0.02)
    assert deadline.expired() is True
    with pytest.raises(PipelineTimeoutError, match="before Query Planning"):
        deadline.check("Query Planning")

    assert Deadline(60000).call_timeout(15.0) == 15.0


# :::::: wiql_utils :::::: #

def test_filters_are_inserted_before_order_by():
    wiql = "SELECT [System.Id] FROM WorkItems WHERE [System.State] = 'Active' OR [System.State] = 'New' ORDER BY [System.Id]"
    filtered = apply_filters_to_query(wiql, GlobalFilters(ignore_closed=True, ignore_older_than_days=30))
    assert filtered == (
        "SELECT [System.Id] FROM WorkItems WHERE ([System.State] = 'Active' OR [System.State] = 'New') "
        "AND [System.State] <> 'Closed' AND [System.ChangedDate] >= @Today - 30 ORDER BY [System.Id]"
    )


def test_filters_without_where_clause():
    filtered = apply_filters_to_query("SELECT [System.Id] FROM WorkItems", GlobalFilters(only_my_tickets=True))
    assert filtered == "SELECT [System.Id] FROM WorkItems WHERE [System.AssignedTo] = @Me"
    assert apply_filters_to_query("SELECT [System.Id] FROM WorkItems", None) == "SELECT [System.Id] FROM WorkItems"


def test_build_wiql_escapes():
    assert escape_literal("O'Brien") == "'O''Brien'"
    assert build_wiql([]) == "SELECT [System.Id] FROM WorkItems ORDER BY [System.ChangedDate] DESC"


# :::::: visualization_utils :::::: #

ITEMS = [
    WorkItem(id=1, title="A", state="Active", priority=1, assigned_to="Jane", created_date="2025-01-10T09:00:00Z"),
    WorkItem(id=2, title="B", state="Closed", priority=2, assigned_to="John", created_date="2025-01-10T12:00:00Z"),
    WorkItem(id=3, title="C", state="Blocked", priority=2, created_date="2025-01-11T09:00:00Z"),
]


def test_status_and_priority_charts():
    status = build_visualization(VisualizationType.STATUS_PIE, ITEMS)
    assert status.data == {"Active": 1, "Closed": 1, "Blocked": 1}
    assert status.figure["data"][0]["type"] == "pie"

    priority = build_visualization(VisualizationType.PRIORITY_DISTRIBUTION, ITEMS)
    assert priority.data == {"P1": 1, "P2": 2}


def test_burndown_team_timeline_blockers():
    burndown = build_visualization(VisualizationType.BURNDOWN, ITEMS)
    assert burndown.data == {"completed": 1, "remaining": 2, "total": 3, "percentage": 33}

    team = build_visualization(VisualizationType.TEAM_COMPARISON, ITEMS)
    assert team.data == {"Jane": 1, "John": 1, "Unassigned": 1}

    timeline = build_visualization(VisualizationType.TIMELINE, ITEMS)
    assert timeline.data == {"2025-01-10": 2, "2025-01-11": 1}

    blockers = build_visualization(VisualizationType.BLOCKERS, ITEMS)
    assert blockers.data == {"#3": "C"}


def test_velocity_and_empty_data_are_never_built():
    assert build_visualization(VisualizationType.VELOCITY, ITEMS) is None
    assert build_visualization(VisualizationType.STATUS_PIE, []) is None


def test_auto_visualizations_for_sprint_analysis():
    intent = Intent(type=IntentType.ANALYSIS, scope=IntentScope.SPRINT)
    types = [v.type for v in generate_auto_visualizations(intent, ITEMS)]
    assert types == [VisualizationType.STATUS_PIE, VisualizationType.PRIORITY_DISTRIBUTION, VisualizationType.BURNDOWN]

    single_priority = [WorkItem(id=1, state="Active", priority=2)]
    types = [v.type for v in generate_auto_visualizations(Intent(type=IntentType.COMMAND, scope=IntentScope.USER), single_priority)]
    assert types == [VisualizationType.STATUS_PIE]
