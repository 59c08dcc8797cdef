import re
import logging
from typing import List, Any, Optional
from services.ai_workflow.data_model import WorkItem, QuickCheckResult, ValidationResult, coerce_str_list
from services.ai_workflow.utils.openai_utils import OpenAIClient
from services.ai_workflow.utils.common_utils import get_message_content, parse_json_content
from services.constants import OPENAI_VALIDATION_MODEL, VALIDATION_TEMPERATURE, PROMPT_MAX_WORK_ITEMS

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

_NOTHING_FOUND_RE = re.compile(r"\bno\s+(work\s+)?items?\b|\bnothing\s+found\b|\b0\s+(work\s+)?items?\b", re.IGNORECASE)
_STATED_COUNT_RE = re.compile(r"\b(\d+)\s+(work\s+)?items?\b", re.IGNORECASE)


def quick_validate(answer: str, work_items: List[WorkItem]) -> QuickCheckResult:
    """Cheap checks that decide whether the answer is worth a cross-check."""
    if not work_items:
        return QuickCheckResult(needs_validation=False)

    if _NOTHING_FOUND_RE.search(answer):
        return QuickCheckResult(
            needs_validation=True,
            reason=f"Answer says nothing was found but {len(work_items)} work items were returned",
        )

    for match in _STATED_COUNT_RE.finditer(answer):
        stated = int(match.group(1))
        if stated != len(work_items):
            return QuickCheckResult(
                needs_validation=True,
                reason=f"Answer states {stated} items but the data has {len(work_items)}",
            )

    return QuickCheckResult(needs_validation=False)


def format_data_context(work_items: List[WorkItem], limit: int = PROMPT_MAX_WORK_ITEMS) -> str:
    """- #id: title [state] (assignee), one line per item."""
    if not work_items:
        return "No work items."
    lines = [
        f"- #{item.id}: {item.title} [{item.state}] ({item.assigned_to or 'Unassigned'})"
        for item in work_items[:limit]
    ]
    if len(work_items) > limit:
        lines.append(f"... and {len(work_items) - limit} more")
    return "\n".join(lines)


def get_validator_system_prompt(user_query: str, work_items: List[WorkItem], hint: Optional[str]) -> str:
    """
    Get the system prompt for the answer validator.
    """
    known_issue = f"\nA quick check already flagged: {hint}\n" if hint else ""
    return f"""
You are the Answer Validator. Check an assistant's answer against the data it was given.

User question:
{user_query}

Data ({len(work_items)} work items):
{format_data_context(work_items)}
{known_issue}
Rules:
- The answer is accurate if every count, id, state and person it mentions agrees with the data.
- If it is not accurate, rewrite it so that it is, keeping the same tone and format.
- List each discrepancy you found in issues.

Respond with a JSON object only:
{{"isAccurate": true|false, "correctedResponse": "..." or null, "issues": ["..."]}}
"""


def validate_answer(
    user_query: str,
    answer: str,
    work_items: List[WorkItem],
    completion: OpenAIClient,
    hint: Optional[str] = None,
) -> ValidationResult:
    """Cross-check the answer with the completion service. Fails open."""
    try:
        response = completion.call_openai(
            get_validator_system_prompt(user_query, work_items, hint),
            f"Answer to check:\n{answer}",
            model=OPENAI_VALIDATION_MODEL,
            temperature=VALIDATION_TEMPERATURE,
            max_tokens=2000,
            response_format={"type": "json_object"},
        )
        parsed = _parse_validator_response(response)
        if parsed:
            return parsed
    except Exception:
        logger.exception("Error in validate_answer")

    return ValidationResult(is_accurate=True)


def _parse_validator_response(response: Any) -> Optional[ValidationResult]:
    parsed = parse_json_content(get_message_content(response))
    if parsed is None or "isAccurate" not in parsed:
        return None

    corrected = parsed.get("correctedResponse")
    is_accurate = parsed.get("isAccurate") is not False
    return ValidationResult(
        is_accurate=is_accurate,
        corrected_response=corrected.strip() if isinstance(corrected, str) and corrected.strip() else None,
        issues=coerce_str_list(parsed.get("issues")),
    )
