from conftest import json_response, content_response

from services.ai_workflow.agents.answer_validator import quick_validate, validate_answer, format_data_context
from services.ai_workflow.data_model import WorkItem

ITEMS = [
    WorkItem(id=1, title="Login fails", state="Active", assigned_to="Jane Doe"),
    WorkItem(id=2, title="Add SSO", state="New"),
]


def test_quick_validate_passes_consistent_answers():
    assert quick_validate("Found 2 work items: #1 and #2.", ITEMS).needs_validation is False
    assert quick_validate("Jane is working on #1.", ITEMS).needs_validation is False


def test_quick_validate_flags_nothing_found():
    check = quick_validate("No work items matched your query.", ITEMS)
    assert check.needs_validation is True
    assert "2 work items" in check.reason


def test_quick_validate_flags_wrong_count():
    check = quick_validate("There are 5 items in the sprint.", ITEMS)
    assert check.needs_validation is True
    assert "states 5" in check.reason


def test_quick_validate_without_data():
    assert quick_validate("No items found.", []).needs_validation is False


def test_format_data_context():
    text = format_data_context(ITEMS)
    assert "- #1: Login fails [Active] (Jane Doe)" in text
    assert "- #2: Add SSO [New] (Unassigned)" in text
    assert format_data_context(ITEMS, limit=1).endswith("... and 1 more")


def test_validate_answer_returns_correction(completion, fake_openai):
    fake_openai.script("Answer Validator", json_response({
        "isAccurate": False,
        "correctedResponse": "There are 2 items in the sprint.",
        "issues": ["Stated 5 items, data has 2"],
    }))

    result = validate_answer("How many items?", "There are 5 items in the sprint.", ITEMS, completion,
                             hint="Answer states 5 items but the data has 2")

    assert result.is_accurate is False
    assert result.corrected_response == "There are 2 items in the sprint."
    assert result.issues == ["Stated 5 items, data has 2"]
    call = fake_openai.calls[0]
    assert "A quick check already flagged" in call["messages"][0]["content"]
    assert call["messages"][1]["content"] == "Answer to check:\nThere are 5 items in the sprint."


def test_validate_answer_fails_open(completion, fake_openai):
    # No service at all
    assert validate_answer("q", "a", ITEMS, completion).is_accurate is True

    # Unparseable reply
    fake_openai.script("Answer Validator", content_response("looks fine to me"))
    result = validate_answer("q", "a", ITEMS, completion)
    assert result.is_accurate is True
    assert result.corrected_response is None
