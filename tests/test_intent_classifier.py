from conftest import tool_response

from services.ai_workflow.agents.intent_classifier import (
    classify_intent, parse_slash_command, heuristic_intent, is_slash_command
)
from services.ai_workflow.data_model import IntentType, IntentScope, Complexity, RecentEntities


def test_slash_command_fast_path_skips_completion(completion, fake_openai):
    intent = classify_intent("/assigned_to jane@contoso.com", completion)

    assert intent.type == IntentType.COMMAND
    assert intent.scope == IntentScope.USER
    assert intent.user_identifier == "jane@contoso.com"
    assert intent.confidence == 1.0
    assert fake_openai.calls == []


def test_slash_sprint_defaults_to_current():
    intent = parse_slash_command("/sprint")
    assert intent.scope == IntentScope.SPRINT
    assert intent.sprint_identifier == "current"


def test_slash_state_splits_values():
    intent = parse_slash_command("/state Active, Resolved")
    assert intent.scope == IntentScope.STATE
    assert intent.states == ["Active", "Resolved"]


def test_unknown_or_incomplete_slash_commands_are_not_parsed():
    assert parse_slash_command("/frobnicate now") is None
    assert parse_slash_command("/assigned_to") is None
    assert parse_slash_command("/item abc") is None
    assert is_slash_command("  /tag urgent")


def test_llm_classification(completion, fake_openai):
    fake_openai.script("classify_intent", tool_response("classify_intent", {
        "type": "QUESTION",
        "scope": "ISSUE",
        "issue_id": 12345,
        "entities": ["12345"],
        "data_required": True,
        "complexity": "SIMPLE",
        "confidence": 0.92,
    }))

    intent = classify_intent("What's the status of 12345?", completion)

    assert intent.scope == IntentScope.ISSUE
    assert intent.issue_id == 12345
    assert intent.confidence == 0.92
    assert intent.original_query == "What's the status of 12345?"


def test_llm_output_is_coerced(completion, fake_openai):
    fake_openai.script("classify_intent", tool_response("classify_intent", {
        "type": "SOMETHING_ELSE",
        "scope": "ISSUE",
        "confidence": 7,
    }))

    intent = classify_intent("tell me about that bug", completion)

    assert intent.type == IntentType.COMMAND
    # ISSUE without an id is unusable
    assert intent.scope == IntentScope.GLOBAL
    assert intent.confidence == 1.0


def test_recent_entities_reach_the_prompt(completion, fake_openai):
    fake_openai.script("classify_intent", tool_response("classify_intent", {
        "type": "COMMAND", "scope": "USER", "user_identifier": "Jane Doe", "confidence": 0.8,
    }))

    classify_intent("show her bugs", completion, RecentEntities(users=["Jane Doe"], last_mentioned_user="Jane Doe"))

    system_prompt = fake_openai.calls[0]["messages"][0]["content"]
    assert "Last mentioned user: Jane Doe" in system_prompt


def test_falls_back_to_heuristic_when_completion_fails(completion):
    intent = classify_intent("show active bugs in sprint 5", completion)

    assert intent.scope == IntentScope.SPRINT
    assert intent.sprint_identifier == "Sprint 5"
    assert intent.states == ["Active"]
    assert intent.types == ["Bug"]
    assert intent.confidence == 0.5


def test_heuristic_general_question_needs_no_data():
    intent = heuristic_intent("What is a user story?")
    assert intent.type == IntentType.QUESTION
    assert intent.scope == IntentScope.GLOBAL
    assert intent.data_required is False


def test_heuristic_issue_and_analysis():
    intent = heuristic_intent("why is 4521 still open")
    assert intent.scope == IntentScope.ISSUE
    assert intent.issue_id == 4521
    assert intent.type == IntentType.ANALYSIS
    assert intent.complexity == Complexity.ANALYTICAL


def test_heuristic_concrete_scope_forces_data():
    intent = heuristic_intent("what is in sprint 7?")
    assert intent.scope == IntentScope.SPRINT
    assert intent.data_required is True
