import pytest
from conftest import content_response, json_response

from services.ai_workflow.agents.response_synthesizer import (
    is_executable_suggestion, filter_suggestions, synthesize_response, synthesize_general_answer,
    build_fallback_response, HELP_SUGGESTIONS, SCOPE_SUGGESTIONS
)
from services.ai_workflow.data_model import (
    Intent, IntentType, IntentScope, Complexity, QueryResults, QueryResult, QueryKind, WorkItem,
    Evaluation, DataQuality, Relevance, Completeness, VisualizationType
)

EVALUATION = Evaluation(data_quality=DataQuality.GOOD, relevance=Relevance.HIGH,
                        completeness=Completeness.COMPLETE, confidence=0.85)


def _work_results():
    items = [
        WorkItem(id=1, title="Login fails", type="Bug", state="Active", priority=1, assigned_to="Jane Doe"),
        WorkItem(id=2, title="Add SSO", type="User Story", state="New", priority=2, assigned_to="John Smith"),
        WorkItem(id=3, title="Fix header", type="Bug", state="Blocked", priority=2, assigned_to="Jane Doe"),
    ]
    return QueryResults(
        results=[QueryResult(query_id="sprint_items", kind=QueryKind.WIQL, success=True,
                             data=[i.to_dict() for i in items])],
        work_items=items,
        total_queries=1,
        successful_queries=1,
    )


def _sprint_intent():
    return Intent(type=IntentType.ANALYSIS, scope=IntentScope.SPRINT, sprint_identifier="Sprint 5",
                  complexity=Complexity.ANALYTICAL, original_query="How is Sprint 5 going?")


@pytest.mark.parametrize("suggestion, expected", [
    ("Show active bugs", True),
    ("Show me my assigned items", True),
    ("List all sprints", True),
    ("What users are available?", True),
    ("Show item #123", True),
    ("Show items assigned to Jane Doe", True),
    ("/sprint Sprint 6", True),
    ("How many bugs are open?", False),
    ("Compare Sprint 4 and Sprint 5", False),
    ("Show velocity trends across sprints", False),
    ("What is the average cycle time?", False),
    ("", False),
])
def test_executable_suggestions(suggestion, expected):
    assert is_executable_suggestion(suggestion) is expected


def test_filter_dedupes_and_falls_back_to_scope_defaults():
    intent = _sprint_intent()
    assert filter_suggestions(["Show active bugs", " Show active bugs ", "How many bugs?"], intent) == ["Show active bugs"]
    assert filter_suggestions(["Show the velocity trend"], intent) == SCOPE_SUGGESTIONS[IntentScope.SPRINT]


def test_synthesized_response(completion, fake_openai):
    fake_openai.script("Response Synthesizer", json_response({
        "summary": "Sprint 5 has one blocked bug (#3).",
        "analysis": {"title": "Sprint 5 health", "insights": ["#3 is blocked"], "metrics": [{"label": "Items", "value": 3}, "junk"]},
        "suggestions": ["Show blocked items", "How many bugs are left?"],
        "visualizations": [{"type": "velocity"}, {"type": "status_pie", "title": "Status"}, "status_pie", {"type": "sparkline"}],
    }))

    response = synthesize_response(_sprint_intent(), EVALUATION, _work_results(), completion)

    assert response.success is True
    assert response.summary == "Sprint 5 has one blocked bug (#3)."
    assert response.suggestions == ["Show blocked items"]
    assert response.analysis.title == "Sprint 5 health"
    assert response.analysis.metrics == [{"label": "Items", "value": 3}]
    assert [v.type for v in response.visualizations] == [VisualizationType.STATUS_PIE]
    # Chart data is recomputed from the items, not taken from the model
    assert response.visualizations[0].data == {"Active": 1, "New": 1, "Blocked": 1}
    assert response.visualizations[0].title == "Status"
    assert response.metadata.confidence == 0.85
    assert response.metadata.data_sources == ["Azure DevOps"]
    assert [w.id for w in response.raw_data] == [1, 2, 3]


def test_malformed_output_uses_fallback(completion, fake_openai):
    fake_openai.script("Response Synthesizer", content_response("Sure! Here's your answer: {not json"))

    response = synthesize_response(_sprint_intent(), EVALUATION, _work_results(), completion)

    assert response.success is True
    assert response.summary == "Found 3 work items in Sprint 5."
    assert VisualizationType.STATUS_PIE in [v.type for v in response.visualizations]
    assert response.suggestions == SCOPE_SUGGESTIONS[IntentScope.SPRINT]


def test_fallback_response_for_missing_issue():
    intent = Intent(type=IntentType.QUESTION, scope=IntentScope.ISSUE, issue_id=12345)
    response = build_fallback_response(intent, EVALUATION, QueryResults(total_queries=1, successful_queries=1))
    assert response.summary == "Work item #12345 not found."
    assert response.visualizations == []


def test_metadata_listing_needs_no_completion(completion, fake_openai):
    results = QueryResults(
        results=[QueryResult(query_id="list_sprints", kind=QueryKind.METADATA, success=True, data=[
            {"id": "1", "name": "Sprint 4", "path": "Contoso\\Sprint 4", "time_frame": "past"},
            {"id": "2", "name": "Sprint 5", "path": "Contoso\\Sprint 5", "time_frame": "current"},
        ])],
        total_queries=1,
        successful_queries=1,
    )
    intent = Intent(type=IntentType.QUESTION, scope=IntentScope.GLOBAL, original_query="What sprints are available?")

    response = synthesize_response(intent, EVALUATION, results, completion)

    assert fake_openai.calls == []
    assert response.summary.startswith("Found 2 sprints:")
    assert "- **Sprint 5** (current) - Contoso\\Sprint 5" in response.summary
    assert response.raw_data == []


def test_general_answer(completion, fake_openai):
    fake_openai.script("Azure DevOps concepts", content_response("  A user story describes a feature from the user's view.  "))
    intent = Intent(type=IntentType.QUESTION, scope=IntentScope.GLOBAL, data_required=False,
                    original_query="What is a user story?")

    response = synthesize_response(intent, EVALUATION, QueryResults(), completion)

    assert response.summary == "A user story describes a feature from the user's view."
    assert response.metadata.confidence == 0.9
    assert response.metadata.data_sources == ["General Knowledge"]
    assert response.metadata.queries_executed == 0


def test_general_answer_failure_returns_help(completion):
    intent = Intent(type=IntentType.QUESTION, scope=IntentScope.GLOBAL, data_required=False,
                    original_query="What is a user story?")

    response = synthesize_general_answer(intent, completion)

    assert response.success is True
    assert response.summary.startswith("I can help you explore Azure DevOps data.")
    assert response.suggestions == HELP_SUGGESTIONS
    assert response.metadata.confidence == 0.5
