"""
intent_classifier.py
AI agent that turns a user's message into a structured Intent.
"""

import re
import logging
from typing import List, Dict, Any, Optional
from services.ai_workflow.data_model import (
    Intent, IntentType, IntentScope, Complexity, RecentEntities, coerce_confidence
)
from services.ai_workflow.utils.openai_utils import OpenAIClient
from services.ai_workflow.utils.common_utils import parse_tool_arguments
from services.constants import OPENAI_INTENT_MODEL, INTENT_TEMPERATURE

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Slash command -> (scope, slot filled by its parameter)
SLASH_COMMANDS = {
    "sprint": (IntentScope.SPRINT, "sprint_identifier"),
    "current-sprint": (IntentScope.SPRINT, "sprint_identifier"),
    "assigned_to": (IntentScope.USER, "user_identifier"),
    "created_by": (IntentScope.USER, "user_identifier"),
    "state": (IntentScope.STATE, "states"),
    "type": (IntentScope.TYPE, "types"),
    "tag": (IntentScope.TAG, "tags"),
    "board": (IntentScope.BOARD, "board_identifier"),
    "team": (IntentScope.TEAM, "team_identifier"),
    "project": (IntentScope.PROJECT, "project_identifier"),
    "item": (IntentScope.ISSUE, "issue_id"),
}

KNOWN_STATES = {
    "active": "Active",
    "new": "New",
    "closed": "Closed",
    "resolved": "Resolved",
    "removed": "Removed",
}

KNOWN_TYPES = {
    "bug": "Bug",
    "bugs": "Bug",
    "task": "Task",
    "tasks": "Task",
    "user story": "User Story",
    "user stories": "User Story",
    "feature": "Feature",
    "features": "Feature",
    "epic": "Epic",
    "epics": "Epic",
}

GENERAL_KNOWLEDGE_PHRASES = ["what is", "how do", "can you", "help"]


def is_slash_command(text: str) -> bool:
    return text.strip().startswith("/")


def parse_slash_command(text: str) -> Optional[Intent]:
    """
    Fast path for command syntax such as `/state Active` or `/assigned_to jane@contoso.com`.
    Never calls the completion service.
    """
    stripped = text.strip()
    match = re.match(r"^/([\w-]+)\s*(.*)$", stripped)
    if not match:
        return None

    command = match.group(1).lower()
    param = match.group(2).strip()
    if command not in SLASH_COMMANDS:
        return None

    scope, slot = SLASH_COMMANDS[command]
    intent = Intent(
        type=IntentType.COMMAND,
        scope=scope,
        entities=[param] if param else [],
        data_required=True,
        complexity=Complexity.SIMPLE,
        confidence=1.0,
        original_query=stripped,
    )

    if slot == "sprint_identifier":
        intent.sprint_identifier = param or "current"
    elif slot == "issue_id":
        digits = re.search(r"\d+", param)
        if not digits:
            return None
        intent.issue_id = int(digits.group(0))
    elif slot in ("states", "types", "tags"):
        if not param:
            return None
        setattr(intent, slot, [p.strip() for p in param.split(",") if p.strip()])
    else:
        if not param:
            return None
        setattr(intent, slot, param)

    return intent


def heuristic_intent(user_query: str) -> Intent:
    """Keyword classification used whenever the completion service can't be used."""
    text = user_query.strip()
    lower = text.lower()

    intent_type = IntentType.COMMAND
    complexity = Complexity.SIMPLE
    if re.match(r"^(what|how|why|who|when|which)\b", lower) or "?" in lower:
        intent_type = IntentType.QUESTION
    if re.search(r"\b(why|analy[sz]e|compare)\b", lower):
        intent_type = IntentType.ANALYSIS
        complexity = Complexity.ANALYTICAL
    elif "summar" in lower or "overview" in lower:
        intent_type = IntentType.SUMMARY
        complexity = Complexity.MULTI_STEP

    data_required = not any(phrase in lower for phrase in GENERAL_KNOWLEDGE_PHRASES)

    intent = Intent(
        type=intent_type,
        scope=IntentScope.GLOBAL,
        entities=[],
        data_required=data_required,
        complexity=complexity,
        confidence=0.5,
        original_query=text,
    )

    digits = re.search(r"\b\d+\b", lower)
    if "sprint" in lower:
        intent.scope = IntentScope.SPRINT
        sprint = re.search(r"sprint\s+([\w.-]+)", text, re.IGNORECASE)
        if sprint and sprint.group(1).lower() not in ("items", "work", "status"):
            intent.sprint_identifier = f"Sprint {sprint.group(1)}"
        else:
            intent.sprint_identifier = "current"
    elif digits:
        intent.scope = IntentScope.ISSUE
        intent.issue_id = int(digits.group(0))
        intent.entities.append(digits.group(0))
    elif "project" in lower:
        intent.scope = IntentScope.PROJECT
    elif "team" in lower:
        intent.scope = IntentScope.TEAM

    # Work item states and types named in the text
    for word, state in KNOWN_STATES.items():
        if re.search(rf"\b{word}\b", lower) and state not in intent.states:
            intent.states.append(state)
    for phrase, item_type in KNOWN_TYPES.items():
        if re.search(rf"\b{phrase}\b", lower) and item_type not in intent.types:
            intent.types.append(item_type)

    if intent.scope == IntentScope.GLOBAL and data_required:
        if intent.states:
            intent.scope = IntentScope.STATE
        elif intent.types:
            intent.scope = IntentScope.TYPE

    # A concrete sprint, item or project always needs data, however it was phrased
    if intent.scope != IntentScope.GLOBAL:
        intent.data_required = True

    return intent


def get_intent_tools() -> List[Dict[str, Any]]:
    """Tool schema for intent classification."""
    return [
        {
            "type": "function",
            "function": {
                "name": "classify_intent",
                "description": "Classify a user's request about Azure DevOps work items.",
                "parameters": {
                    "type": "object",
                    "properties": {
                        "type": {
                            "type": "string",
                            "enum": [t.value for t in IntentType],
                            "description": "QUESTION asks for information, COMMAND asks to list/show, ANALYSIS asks for reasoning over data, SUMMARY asks for an overview."
                        },
                        "scope": {
                            "type": "string",
                            "enum": [s.value for s in IntentScope],
                            "description": "The single main subject of the request."
                        },
                        "entities": {"type": "array", "items": {"type": "string"}},
                        "data_required": {
                            "type": "boolean",
                            "description": "False only for general questions answerable without Azure DevOps data."
                        },
                        "complexity": {"type": "string", "enum": [c.value for c in Complexity]},
                        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
                        "sprint_identifier": {"type": "string"},
                        "user_identifier": {"type": "string"},
                        "issue_id": {"type": "integer"},
                        "project_identifier": {"type": "string"},
                        "team_identifier": {"type": "string"},
                        "board_identifier": {"type": "string"},
                        "date_range": {
                            "type": "object",
                            "properties": {
                                "start": {"type": "string", "description": "YYYY-MM-DD"},
                                "end": {"type": "string", "description": "YYYY-MM-DD"}
                            }
                        },
                        "tags": {"type": "array", "items": {"type": "string"}},
                        "states": {"type": "array", "items": {"type": "string"}},
                        "types": {"type": "array", "items": {"type": "string"}}
                    },
                    "required": ["type", "scope", "entities", "data_required", "complexity", "confidence"],
                    "additionalProperties": False
                }
            }
        }
    ]


def get_intent_system_prompt(recent_entities: Optional[RecentEntities] = None, conversation_summary: str = "") -> str:
    """System prompt for the intent classifier."""
    hints = "None"
    if recent_entities:
        hint_lines = []
        if recent_entities.last_mentioned_user:
            hint_lines.append(f"- Last mentioned user: {recent_entities.last_mentioned_user}")
        if recent_entities.projects:
            hint_lines.append(f"- Recent projects: {', '.join(recent_entities.projects)}")
        if recent_entities.sprints:
            hint_lines.append(f"- Recent sprints: {', '.join(recent_entities.sprints)}")
        if recent_entities.teams:
            hint_lines.append(f"- Recent teams: {', '.join(recent_entities.teams)}")
        hints = "\n".join(hint_lines) or "None"

    return f"""
You are the Intent Classifier for an Azure DevOps assistant.
You turn a user's message into a structured intent by calling classify_intent.

Rules:
1. Pick exactly one scope. Use GLOBAL when nothing more specific applies.
2. Use ISSUE with issue_id when the user refers to one work item number.
3. Use USER with user_identifier for "items assigned to X" or "what is X working on".
   Use CREATOR for "created/opened/submitted by X" and ASSIGNEE for explicit assignee filters.
4. Put state names (Active, New, Closed, Resolved...) in states and work item types (Bug, Task, User Story...) in types.
5. data_required is false only for general questions about Azure DevOps concepts ("what is a sprint?").
6. Pronouns ("she", "he", "they", "their") refer to the last mentioned user below, when there is one.
7. complexity: SIMPLE for one lookup, MULTI_STEP for several lookups, ANALYTICAL for reasoning over the data.

Examples:
"show me active bugs" -> COMMAND, STATE, states=["Active"], types=["Bug"]
"what is #1234 about?" -> QUESTION, ISSUE, issue_id=1234
"what is jane working on?" -> QUESTION, USER, user_identifier="jane"
"what is a user story?" -> QUESTION, GLOBAL, data_required=false

Recently mentioned entities:
{hints}

{conversation_summary}
"""


def classify_intent(
    user_query: str,
    completion: OpenAIClient,
    recent_entities: Optional[RecentEntities] = None,
    conversation_summary: str = "",
) -> Intent:
    """
    Classify the user's query. Slash commands take the fast path; otherwise the
    completion service is asked, and the keyword heuristic covers any failure.
    """
    command_intent = parse_slash_command(user_query) if is_slash_command(user_query) else None
    if command_intent:
        return command_intent

    intent = _classify_with_llm(user_query, completion, recent_entities, conversation_summary)
    if intent is None:
        logger.info("Falling back to heuristic intent classification")
        return heuristic_intent(user_query)
    return intent


def _classify_with_llm(
    user_query: str,
    completion: OpenAIClient,
    recent_entities: Optional[RecentEntities],
    conversation_summary: str,
) -> Optional[Intent]:
    try:
        response = completion.call_openai(
            get_intent_system_prompt(recent_entities, conversation_summary),
            user_query,
            get_intent_tools(),
            tool_choice={"type": "function", "function": {"name": "classify_intent"}},
            model=OPENAI_INTENT_MODEL,
            temperature=INTENT_TEMPERATURE,
        )
        return _parse_intent_response(response, user_query)
    except Exception as e:
        logger.error(f"Error in intent classifier: {e}", exc_info=True)
        return None


def _parse_intent_response(response: Any, user_query: str) -> Optional[Intent]:
    args = parse_tool_arguments(response)
    if not args:
        return None

    intent = Intent.from_dict(args, original_query=user_query)
    intent.original_query = user_query
    intent.confidence = coerce_confidence(args.get("confidence"), 0.5)

    # An ISSUE scope is only usable with an id
    if intent.scope == IntentScope.ISSUE and intent.issue_id is None:
        intent.scope = IntentScope.GLOBAL
    return intent
