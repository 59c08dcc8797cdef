from conftest import tool_response

from services.ai_workflow.agents.decision_maker import decide_fetch, quick_decision, fallback_decision
from services.ai_workflow.data_model import Intent, IntentType, IntentScope, Complexity, QueryKind


def test_general_question_needs_no_data():
    intent = Intent(type=IntentType.QUESTION, scope=IntentScope.GLOBAL, data_required=False)
    decision = quick_decision(intent)
    assert decision.requires_ado is False
    assert decision.queries_needed == set()


def test_issue_lookup_has_stable_cache_key():
    intent = Intent(type=IntentType.QUESTION, scope=IntentScope.ISSUE, issue_id=12345)
    decision = quick_decision(intent)
    assert decision.requires_ado is True
    assert decision.queries_needed == {QueryKind.WIQL}
    assert decision.cache_key == "issue:12345"


def test_user_decision_key_includes_sorted_states():
    intent = Intent(type=IntentType.COMMAND, scope=IntentScope.USER, user_identifier="Jane Doe",
                    states=["Resolved", "Active"], complexity=Complexity.SIMPLE)
    decision = quick_decision(intent)
    assert decision.cache_key == "user:jane_doe:active_resolved"

    intent.states = []
    assert quick_decision(intent).cache_key == "user:jane_doe:default"


def test_no_quick_decision_for_analysis():
    intent = Intent(type=IntentType.ANALYSIS, scope=IntentScope.SPRINT, complexity=Complexity.ANALYTICAL)
    assert quick_decision(intent) is None


def test_llm_decision(completion, fake_openai):
    fake_openai.script("make_fetch_decision", tool_response("make_fetch_decision", {
        "requires_ado": True,
        "queries_needed": ["WIQL", "METADATA", "BOGUS"],
        "analysis_required": ["blockers"],
        "can_use_cache": False,
        "estimated_complexity": 42,
    }))
    intent = Intent(type=IntentType.ANALYSIS, scope=IntentScope.SPRINT, sprint_identifier="current")

    decision = decide_fetch(intent, completion)

    assert decision.queries_needed == {QueryKind.WIQL, QueryKind.METADATA}
    assert decision.analysis_required == ["blockers"]
    assert decision.can_use_cache is False
    assert decision.estimated_complexity == 10


def test_recent_similar_query_allows_cache(completion, fake_openai):
    fake_openai.script("make_fetch_decision", tool_response("make_fetch_decision", {
        "requires_ado": True, "queries_needed": ["WIQL"], "can_use_cache": False,
    }))
    intent = Intent(type=IntentType.ANALYSIS, scope=IntentScope.PROJECT)

    decision = decide_fetch(intent, completion, recent_similar=True)

    assert decision.can_use_cache is True


def test_fallback_when_completion_fails(completion):
    intent = Intent(type=IntentType.ANALYSIS, scope=IntentScope.SPRINT, complexity=Complexity.ANALYTICAL)

    decision = decide_fetch(intent, completion)

    assert decision == fallback_decision(intent)
    assert decision.requires_ado is True
    assert "status_distribution" in decision.analysis_required
