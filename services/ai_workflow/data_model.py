"""
data_model.py
Data models for work item query analysis and processing.
"""

import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import List, Dict, Any, Optional, Set

class IntentType(str, Enum):
    QUESTION = "QUESTION"
    COMMAND = "COMMAND"
    ANALYSIS = "ANALYSIS"
    SUMMARY = "SUMMARY"

class IntentScope(str, Enum):
    SPRINT = "SPRINT"
    USER = "USER"
    PROJECT = "PROJECT"
    ISSUE = "ISSUE"
    TEAM = "TEAM"
    BOARD = "BOARD"
    QUERY = "QUERY"             # saved query
    STATE = "STATE"
    TYPE = "TYPE"
    TAG = "TAG"
    PRIORITY = "PRIORITY"
    TITLE = "TITLE"
    DESCRIPTION = "DESCRIPTION"
    DATE_RANGE = "DATE_RANGE"
    ASSIGNEE = "ASSIGNEE"
    CREATOR = "CREATOR"
    ITERATION = "ITERATION"
    AREA = "AREA"
    RELATION = "RELATION"
    GLOBAL = "GLOBAL"

class Complexity(str, Enum):
    SIMPLE = "SIMPLE"
    MULTI_STEP = "MULTI_STEP"
    ANALYTICAL = "ANALYTICAL"

class QueryKind(str, Enum):
    WIQL = "WIQL"
    REST = "REST"
    METADATA = "METADATA"

class DataQuality(str, Enum):
    POOR = "POOR"
    FAIR = "FAIR"
    GOOD = "GOOD"
    EXCELLENT = "EXCELLENT"

class Relevance(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

class Completeness(str, Enum):
    INCOMPLETE = "INCOMPLETE"
    PARTIAL = "PARTIAL"
    COMPLETE = "COMPLETE"

class VisualizationType(str, Enum):
    BURNDOWN = "burndown"
    VELOCITY = "velocity"
    STATUS_PIE = "status_pie"
    PRIORITY_DISTRIBUTION = "priority_distribution"
    TEAM_COMPARISON = "team_comparison"
    TIMELINE = "timeline"
    BLOCKERS = "blockers"


def coerce_enum(enum_cls, value: Any, default):
    """Return the enum member matching value (by value or name), or default."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        candidate = value.strip()
        for member in enum_cls:
            if candidate == member.value or candidate.upper() == member.name:
                return member
    return default

def coerce_confidence(value: Any, default: float = 0.5) -> float:
    """Clamp a confidence into [0, 1]; anything non-numeric becomes the default."""
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(conf):
        return default
    return max(0.0, min(conf, 1.0))

def coerce_str_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v is not None and str(v).strip()]

def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None

def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip().lstrip("#"))
    except (TypeError, ValueError):
        return None


@dataclass
class DateRange:
    start: Optional[str] = None
    end: Optional[str] = None

@dataclass
class Intent:
    """Structured classification of one user utterance."""
    type: IntentType
    scope: IntentScope
    entities: List[str] = field(default_factory=list)
    data_required: bool = True
    complexity: Complexity = Complexity.SIMPLE
    confidence: float = 0.5
    original_query: str = ""
    sprint_identifier: Optional[str] = None
    user_identifier: Optional[str] = None
    issue_id: Optional[int] = None
    project_identifier: Optional[str] = None
    date_range: Optional[DateRange] = None
    team_identifier: Optional[str] = None
    board_identifier: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    states: List[str] = field(default_factory=list)
    types: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], original_query: str = "") -> "Intent":
        """Build an Intent from untrusted input, defaulting every field that doesn't fit."""
        data = data if isinstance(data, dict) else {}

        date_range = None
        raw_range = data.get("date_range")
        if isinstance(raw_range, dict) and (raw_range.get("start") or raw_range.get("end")):
            date_range = DateRange(
                start=_optional_str(raw_range.get("start")),
                end=_optional_str(raw_range.get("end")),
            )

        data_required = data.get("data_required", True)
        if not isinstance(data_required, bool):
            data_required = str(data_required).lower() not in ("false", "0", "no")

        return cls(
            type=coerce_enum(IntentType, data.get("type"), IntentType.COMMAND),
            scope=coerce_enum(IntentScope, data.get("scope"), IntentScope.GLOBAL),
            entities=coerce_str_list(data.get("entities")),
            data_required=data_required,
            complexity=coerce_enum(Complexity, data.get("complexity"), Complexity.SIMPLE),
            confidence=coerce_confidence(data.get("confidence"), 0.5),
            original_query=str(data.get("original_query") or original_query),
            sprint_identifier=_optional_str(data.get("sprint_identifier")),
            user_identifier=_optional_str(data.get("user_identifier")),
            issue_id=_optional_int(data.get("issue_id")),
            project_identifier=_optional_str(data.get("project_identifier")),
            date_range=date_range,
            team_identifier=_optional_str(data.get("team_identifier")),
            board_identifier=_optional_str(data.get("board_identifier")),
            tags=coerce_str_list(data.get("tags")),
            states=coerce_str_list(data.get("states")),
            types=coerce_str_list(data.get("types")),
        )

@dataclass
class Decision:
    """Whether external data is needed and which kinds of queries."""
    requires_ado: bool
    queries_needed: Set[QueryKind] = field(default_factory=set)
    analysis_required: List[str] = field(default_factory=list)
    can_use_cache: bool = True
    cache_key: Optional[str] = None
    estimated_complexity: int = 1
    reasoning: str = ""             # diagnostic only

@dataclass
class PlannedQuery:
    id: str
    kind: QueryKind
    query_body: str                 # WIQL text, REST path or metadata kind
    fields: List[str] = field(default_factory=list)
    purpose: str = ""
    depends_on: Set[str] = field(default_factory=set)
    priority: int = 1
    optional: bool = False

@dataclass
class QueryPlan:
    plan_id: str
    queries: List[PlannedQuery] = field(default_factory=list)
    validation_rules: List[str] = field(default_factory=list)
    success_criteria: str = ""
    is_fallback: bool = False

@dataclass
class WorkItem:
    """Normalized work item record."""
    id: int
    title: str = ""
    type: str = ""
    state: str = ""
    assigned_to: Optional[str] = None
    created_by: Optional[str] = None
    created_date: Optional[str] = None
    changed_date: Optional[str] = None
    priority: int = 3
    tags: List[str] = field(default_factory=list)
    iteration_path: Optional[str] = None
    area_path: Optional[str] = None
    story_points: Optional[float] = None
    project: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkItem":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_ado(cls, raw: Dict[str, Any]) -> "WorkItem":
        """Map a raw Azure DevOps work item record. The only place ADO field names are read."""
        fields = raw.get("fields", {}) or {}

        def _identity(value: Any) -> Optional[str]:
            if isinstance(value, dict):
                return value.get("displayName") or value.get("uniqueName")
            return _optional_str(value)

        raw_tags = fields.get("System.Tags") or ""
        tags = [t.strip() for t in raw_tags.split(";") if t.strip()]

        priority = _optional_int(fields.get("Microsoft.VSTS.Common.Priority"))
        story_points = fields.get("Microsoft.VSTS.Scheduling.StoryPoints")

        return cls(
            id=int(raw.get("id", fields.get("System.Id", 0))),
            title=fields.get("System.Title", "") or "",
            type=fields.get("System.WorkItemType", "") or "",
            state=fields.get("System.State", "") or "",
            assigned_to=_identity(fields.get("System.AssignedTo")),
            created_by=_identity(fields.get("System.CreatedBy")),
            created_date=fields.get("System.CreatedDate"),
            changed_date=fields.get("System.ChangedDate"),
            priority=priority if priority is not None else 3,
            tags=tags,
            iteration_path=fields.get("System.IterationPath"),
            area_path=fields.get("System.AreaPath"),
            story_points=float(story_points) if story_points is not None else None,
            project=fields.get("System.TeamProject"),
        )

@dataclass
class QueryResult:
    query_id: str
    kind: QueryKind
    success: bool
    data: Any = None
    error: Optional[str] = None
    duration: float = 0.0           # milliseconds
    cached: bool = False
    cache_key: Optional[str] = None

@dataclass
class QueryResults:
    results: List[QueryResult] = field(default_factory=list)
    work_items: List[WorkItem] = field(default_factory=list)
    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    cache_hits: int = 0
    total_duration: float = 0.0

@dataclass
class Evaluation:
    data_quality: DataQuality
    relevance: Relevance
    completeness: Completeness
    needs_additional: bool = False
    confidence: float = 0.5
    additional_queries: List[str] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    reasoning: str = ""

@dataclass
class RetryStrategy:
    adjusted_intent: Optional[Intent] = None
    additional_queries: List[str] = field(default_factory=list)
    reason: str = ""

    @property
    def is_productive(self) -> bool:
        """A retry only makes sense when it changes something."""
        return self.adjusted_intent is not None or bool(self.additional_queries)

@dataclass
class Visualization:
    type: VisualizationType
    title: str
    data: Dict[str, Any]
    figure: Optional[Dict[str, Any]] = None     # plotly figure dict

@dataclass
class AnalysisResult:
    title: str = "Analysis"
    summary: str = ""
    metrics: List[Dict[str, Any]] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)
    risks: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

@dataclass
class PhaseMetric:
    phase: str
    duration: float                 # milliseconds
    success: bool
    error: Optional[str] = None

@dataclass
class ResponseMetadata:
    queries_executed: int = 0
    confidence: float = 0.0
    processing_time: float = 0.0    # milliseconds
    cache_hit: bool = False
    data_sources: List[str] = field(default_factory=list)
    attempts: int = 1
    conversation_id: Optional[str] = None
    validation_issues: List[str] = field(default_factory=list)
    phases: List[PhaseMetric] = field(default_factory=list)

@dataclass
class OrchestratedResponse:
    """Final answer to the user's query."""
    success: bool
    summary: str
    raw_data: List[WorkItem] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    analysis: Optional[AnalysisResult] = None
    visualizations: List[Visualization] = field(default_factory=list)
    metadata: ResponseMetadata = field(default_factory=ResponseMetadata)
    error: Optional[str] = None
    error_code: Optional[str] = None

@dataclass
class GlobalFilters:
    ignore_closed: bool = False
    ignore_states: List[str] = field(default_factory=list)
    ignore_created_by: List[str] = field(default_factory=list)
    only_my_tickets: bool = False
    ignore_older_than_days: Optional[int] = None
    current_user: Optional[str] = None
    project_name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["GlobalFilters"]:
        if not data:
            return None
        return cls(
            ignore_closed=bool(data.get("ignore_closed", False)),
            ignore_states=coerce_str_list(data.get("ignore_states")),
            ignore_created_by=coerce_str_list(data.get("ignore_created_by")),
            only_my_tickets=bool(data.get("only_my_tickets", False)),
            ignore_older_than_days=_optional_int(data.get("ignore_older_than_days")),
            current_user=_optional_str(data.get("current_user")),
            project_name=_optional_str(data.get("project_name")),
        )

@dataclass
class ProcessOptions:
    skip_cache: bool = False
    timeout_ms: int = 30000

@dataclass
class ConversationTurn:
    id: str
    timestamp: str                  # ISO format
    user_query: str
    intent: Intent
    response: str
    work_items: Optional[List[WorkItem]] = None
    confidence: float = 0.0
    processing_time: float = 0.0    # milliseconds
    cache_hit: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "user_query": self.user_query,
            "intent": self.intent.to_dict(),
            "response": self.response,
            "work_items": [w.to_dict() for w in self.work_items] if self.work_items is not None else None,
            "confidence": self.confidence,
            "processing_time": self.processing_time,
            "cache_hit": self.cache_hit,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        work_items = data.get("work_items")
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            user_query=data.get("user_query", ""),
            intent=Intent.from_dict(data.get("intent") or {}),
            response=data.get("response", ""),
            work_items=[WorkItem.from_dict(w) for w in work_items] if work_items is not None else None,
            confidence=float(data.get("confidence", 0.0)),
            processing_time=float(data.get("processing_time", 0.0)),
            cache_hit=bool(data.get("cache_hit", False)),
        )

@dataclass
class ConversationContext:
    conversation_id: str
    user_id: str
    turns: List[ConversationTurn] = field(default_factory=list)
    global_filters: Optional[GlobalFilters] = None
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "turns": [t.to_dict() for t in self.turns],
            "global_filters": self.global_filters.to_dict() if self.global_filters else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationContext":
        return cls(
            conversation_id=data["conversation_id"],
            user_id=data["user_id"],
            turns=[ConversationTurn.from_dict(t) for t in data.get("turns", [])],
            global_filters=GlobalFilters.from_dict(data.get("global_filters")),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
        )

@dataclass
class RecentEntities:
    projects: List[str] = field(default_factory=list)
    users: List[str] = field(default_factory=list)
    sprints: List[str] = field(default_factory=list)
    teams: List[str] = field(default_factory=list)
    last_mentioned_user: Optional[str] = None

@dataclass
class QuickCheckResult:
    needs_validation: bool
    reason: Optional[str] = None

@dataclass
class ValidationResult:
    is_accurate: bool
    corrected_response: Optional[str] = None
    issues: List[str] = field(default_factory=list)

@dataclass
class StreamEvent:
    type: str                       # token | tool_use | verifying | correction | done | error
    content: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
