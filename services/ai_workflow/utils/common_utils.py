import json
import re
import time
import logging
from typing import List, Dict, Any, Optional
from services.ai_workflow.data_model import WorkItem, GlobalFilters
from services.constants import CACHE_NAMESPACE, PROMPT_MAX_WORK_ITEMS
from services.errors import PipelineTimeoutError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

_BASE36_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


class Deadline:
    """Time budget for one pipeline run."""

    def __init__(self, timeout_ms: int):
        self.timeout_ms = timeout_ms
        self.expires_at = time.monotonic() + timeout_ms / 1000.0

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self.expires_at - time.monotonic())

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def check(self, phase: str) -> None:
        if self.expired():
            raise PipelineTimeoutError(f"Timed out after {self.timeout_ms}ms before {phase}")

    def call_timeout(self, ceiling: float) -> float:
        """Timeout for a single network call: the per-call ceiling or what is left, whichever is smaller."""
        return max(0.1, min(ceiling, self.remaining()))


def elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


def sanitize_cache_key(key: str) -> str:
    """Keep cache keys to [a-z0-9:_-]."""
    return re.sub(r"[^a-zA-Z0-9:_-]", "_", key).lower()


def _to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36_DIGITS[rem])
    return "".join(reversed(digits))


def hash_query(text: str) -> str:
    """
    32-bit rolling hash ((h << 5) - h + c) of a query body, in base 36.
    Not cryptographic: a collision costs a stale cache hit, nothing more.
    """
    h = 0
    for ch in text:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _to_base36(abs(h))


def filters_fingerprint(filters: Optional[GlobalFilters]) -> str:
    """Canonical string for the filters that change query results."""
    if not filters:
        return "nofilters"

    parts = []
    if filters.ignore_closed:
        parts.append("ignoreclosed")
    if filters.ignore_states:
        parts.append("ignorestates=" + ",".join(sorted(filters.ignore_states)))
    if filters.ignore_created_by:
        parts.append("ignorecreatedby=" + ",".join(sorted(filters.ignore_created_by)))
    if filters.only_my_tickets:
        parts.append("onlymine")
    if filters.ignore_older_than_days:
        parts.append(f"maxage={filters.ignore_older_than_days}")
    if filters.current_user and filters.only_my_tickets:
        parts.append(f"user={filters.current_user}")
    if filters.project_name:
        parts.append(f"project={filters.project_name}")

    return ":".join(parts) if parts else "nofilters"


def build_query_cache_key(base_key: str, query_id: str, kind: str, query_body: str,
                          filters: Optional[GlobalFilters]) -> str:
    raw = f"{CACHE_NAMESPACE}:query:{base_key}:{query_id}:{kind}:{hash_query(query_body)}:{filters_fingerprint(filters)}"
    return sanitize_cache_key(raw)


def parse_json_content(content: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse a JSON object out of an LLM message, tolerating ```json fences.
    Returns None when there is no JSON object to be had.
    """
    if not content:
        return None

    text = content.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?", "", text).strip()
        if text.endswith("```"):
            text = text[:-3].strip()

    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None

    return parsed if isinstance(parsed, dict) else None


def parse_tool_arguments(response: Any) -> Optional[Dict[str, Any]]:
    """Arguments of the first tool call in an OpenAI response, or None."""
    if response is None:
        return None
    try:
        tool_calls = response.choices[0].message.tool_calls or []
    except (AttributeError, IndexError):
        return None
    if not tool_calls:
        return None

    try:
        args = json.loads(tool_calls[0].function.arguments)
    except (json.JSONDecodeError, TypeError):
        logger.warning("Tool call arguments are not valid JSON")
        return None
    return args if isinstance(args, dict) else None


def get_message_content(response: Any) -> Optional[str]:
    if response is None:
        return None
    try:
        return response.choices[0].message.content
    except (AttributeError, IndexError):
        return None


def format_work_items_for_prompt(work_items: List[WorkItem], limit: int = PROMPT_MAX_WORK_ITEMS) -> str:
    """
    Render work items one per line for prompts:
    - #123: Title [State] (Type, P2) assigned to Name
    """
    if not work_items:
        return "No work items."

    lines = []
    for item in work_items[:limit]:
        assignee = item.assigned_to or "Unassigned"
        lines.append(
            f"- #{item.id}: {item.title} [{item.state}] ({item.type}, P{item.priority}) assigned to {assignee}"
        )
    if len(work_items) > limit:
        lines.append(f"... and {len(work_items) - limit} more")
    return "\n".join(lines)
