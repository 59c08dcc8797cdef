"""
context_manager.py
Conversation history for the orchestrator: the last few turns of each conversation,
kept in the durable cache with an in-process fallback.
"""

import copy
import time
import uuid
import logging
import threading
from datetime import datetime, timedelta
from typing import List, Dict, Any, Optional, Tuple
from services.cache import CacheStore
from services.errors import ConversationNotFoundError, ConversationOwnershipError
from services.ai_workflow.data_model import (
    ConversationContext, ConversationTurn, Intent, OrchestratedResponse, WorkItem,
    GlobalFilters, RecentEntities
)
from services.constants import (
    CACHE_NAMESPACE, CONTEXT_MAX_TURNS, CONTEXT_TTL_SECONDS, CONTEXT_RECENT_TURNS,
    CONTEXT_MAX_WORK_ITEMS_PER_TURN, SIMILAR_QUERY_WINDOW_MINUTES
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now().isoformat()


def _dedupe_keep_last(values: List[str], limit: int = 10) -> List[str]:
    """Unique values in order of last mention, most recent last."""
    seen = {}
    for i, value in enumerate(values):
        seen[value] = i
    return [v for v, _ in sorted(seen.items(), key=lambda kv: kv[1])][-limit:]


class ContextManager:
    """
    Keeps the last `max_turns` turns of every conversation.

    Contexts are stored as whole values under ado:context:{conversation_id}.
    When the durable store refuses a write, the context is held in a
    lock-guarded local map with the same TTL. Reads prefer that local copy
    until a later write reaches the durable store again.
    """

    def __init__(self, cache: CacheStore, max_turns: int = CONTEXT_MAX_TURNS,
                 ttl_seconds: int = CONTEXT_TTL_SECONDS):
        self.cache = cache
        self.max_turns = max_turns
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        # conversation_id -> (context dict, expires_at)
        self._local: Dict[str, Tuple[Dict[str, Any], float]] = {}

    # :::::: Storage :::::: #

    def _key(self, conversation_id: str) -> str:
        return f"{CACHE_NAMESPACE}:context:{conversation_id}"

    def _save(self, context: ConversationContext) -> None:
        data = context.to_dict()
        saved = self.cache.set(self._key(context.conversation_id), data, self.ttl_seconds)

        with self._lock:
            now = time.time()
            for conversation_id in [cid for cid, (_, expires_at) in self._local.items() if expires_at <= now]:
                del self._local[conversation_id]

            if saved:
                self._local.pop(context.conversation_id, None)
                return
            self._local[context.conversation_id] = (copy.deepcopy(data), now + self.ttl_seconds)
        logger.warning(f"Durable cache unavailable, keeping conversation {context.conversation_id} in process")

    def _load_local(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            item = self._local.get(conversation_id)
            if item is None:
                return None
            data, expires_at = item
            if expires_at <= time.time():
                del self._local[conversation_id]
                return None
            return copy.deepcopy(data)

    # :::::: Lifecycle :::::: #

    def create_context(self, user_id: str, filters: Optional[GlobalFilters] = None,
                       conversation_id: Optional[str] = None) -> ConversationContext:
        now = _now_iso()
        context = ConversationContext(
            conversation_id=conversation_id or str(uuid.uuid4()),
            user_id=user_id,
            turns=[],
            global_filters=filters,
            created_at=now,
            updated_at=now,
        )
        self._save(context)
        logger.info(f"Created conversation {context.conversation_id} for user {user_id}")
        return context

    def get_context(self, conversation_id: str) -> Optional[ConversationContext]:
        # A local copy only exists while it is newer than the durable one
        data = self._load_local(conversation_id)
        if data is None:
            data = self.cache.get(self._key(conversation_id))
        if data is None:
            return None

        try:
            return ConversationContext.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Stored context {conversation_id} is unreadable: {e}", exc_info=True)
            return None

    def require_context(self, conversation_id: str) -> ConversationContext:
        context = self.get_context(conversation_id)
        if context is None:
            raise ConversationNotFoundError(conversation_id)
        return context

    def get_or_create_context(self, conversation_id: Optional[str], user_id: str,
                              filters: Optional[GlobalFilters] = None) -> ConversationContext:
        """
        Resume a conversation or start one. An unknown id starts a new conversation
        under that id; a known id owned by someone else is refused.
        """
        if conversation_id:
            existing = self.get_context(conversation_id)
            if existing is not None:
                if existing.user_id != user_id:
                    raise ConversationOwnershipError(conversation_id)
                if filters is not None and filters != existing.global_filters:
                    existing.global_filters = filters
                    existing.updated_at = _now_iso()
                    self._save(existing)
                return existing
        return self.create_context(user_id, filters, conversation_id)

    def add_turn(
        self,
        conversation_id: str,
        user_query: str,
        intent: Intent,
        response: OrchestratedResponse,
        work_items: Optional[List[WorkItem]] = None,
    ) -> ConversationContext:
        context = self.require_context(conversation_id)

        turn = ConversationTurn(
            id=str(uuid.uuid4()),
            timestamp=_now_iso(),
            user_query=user_query,
            intent=intent,
            response=response.summary,
            work_items=list(work_items[:CONTEXT_MAX_WORK_ITEMS_PER_TURN]) if work_items is not None else None,
            confidence=response.metadata.confidence,
            processing_time=response.metadata.processing_time,
            cache_hit=response.metadata.cache_hit,
        )
        context.turns.append(turn)
        if len(context.turns) > self.max_turns:
            context.turns = context.turns[-self.max_turns:]
        context.updated_at = turn.timestamp

        self._save(context)
        return context

    def update_filters(self, conversation_id: str, filters: Optional[GlobalFilters]) -> ConversationContext:
        context = self.require_context(conversation_id)
        context.global_filters = filters
        context.updated_at = _now_iso()
        self._save(context)
        return context

    def prune_context(self, conversation_id: str, keep_turns: int = CONTEXT_RECENT_TURNS) -> ConversationContext:
        context = self.require_context(conversation_id)
        if len(context.turns) > keep_turns:
            context.turns = context.turns[-keep_turns:] if keep_turns > 0 else []
            context.updated_at = _now_iso()
            self._save(context)
        return context

    def delete_context(self, conversation_id: str) -> None:
        self.cache.delete(self._key(conversation_id))
        with self._lock:
            self._local.pop(conversation_id, None)
        logger.info(f"Deleted conversation {conversation_id}")

    # :::::: Reading history :::::: #

    def get_recent_turns(self, context: ConversationContext, count: int = CONTEXT_RECENT_TURNS) -> List[ConversationTurn]:
        if count <= 0:
            return []
        return context.turns[-count:]

    def get_recent_work_items(self, context: ConversationContext, max_items: int = 50) -> List[WorkItem]:
        """Work items from the most recent turns first, unique by id."""
        items: List[WorkItem] = []
        seen_ids = set()
        for turn in reversed(context.turns):
            for item in turn.work_items or []:
                if len(items) >= max_items:
                    return items
                if item.id not in seen_ids:
                    seen_ids.add(item.id)
                    items.append(item)
        return items

    def find_similar_queries(self, context: ConversationContext, intent: Intent) -> List[ConversationTurn]:
        return [t for t in context.turns if t.intent.type == intent.type and t.intent.scope == intent.scope]

    def has_recent_similar_query(self, context: ConversationContext, intent: Intent,
                                 within_minutes: int = SIMILAR_QUERY_WINDOW_MINUTES) -> bool:
        cutoff = datetime.now() - timedelta(minutes=within_minutes)
        for turn in context.turns:
            try:
                asked_at = datetime.fromisoformat(turn.timestamp)
            except ValueError:
                continue
            if asked_at < cutoff:
                continue
            if (
                turn.intent.type == intent.type
                and turn.intent.scope == intent.scope
                and turn.intent.issue_id == intent.issue_id
                and turn.intent.user_identifier == intent.user_identifier
                and turn.intent.sprint_identifier == intent.sprint_identifier
            ):
                return True
        return False

    def get_recent_entities(self, context: ConversationContext, max_turns: int = 5) -> RecentEntities:
        """Entities mentioned in recent turns, used to resolve pronouns like "his" or "that sprint"."""
        projects, users, sprints, teams = [], [], [], []
        last_user = None

        for turn in self.get_recent_turns(context, max_turns):
            intent = turn.intent
            if intent.project_identifier:
                projects.append(intent.project_identifier)
            if intent.user_identifier:
                users.append(intent.user_identifier)
                last_user = intent.user_identifier
            if intent.sprint_identifier:
                sprints.append(intent.sprint_identifier)
            if intent.team_identifier:
                teams.append(intent.team_identifier)
            for item in (turn.work_items or [])[:10]:
                if item.project:
                    projects.append(item.project)

        return RecentEntities(
            projects=_dedupe_keep_last(projects),
            users=_dedupe_keep_last(users),
            sprints=_dedupe_keep_last(sprints),
            teams=_dedupe_keep_last(teams),
            last_mentioned_user=last_user,
        )

    def get_conversation_summary(self, context: ConversationContext) -> str:
        if not context.turns:
            return "New conversation - no previous context."

        recent = self.get_recent_turns(context, 5)
        lines = [
            f'Turn {i}: User asked "{turn.user_query}" ({turn.intent.type.value}, {turn.intent.scope.value})'
            for i, turn in enumerate(recent, start=1)
        ]
        return f"Conversation history (last {len(recent)} turns):\n" + "\n".join(lines)

    def get_stats(self, context: ConversationContext) -> Dict[str, Any]:
        total_turns = len(context.turns)
        if total_turns == 0:
            return {"total_turns": 0, "total_work_items": 0, "avg_response_time": 0.0, "cache_hit_rate": 0.0}

        return {
            "total_turns": total_turns,
            "total_work_items": sum(len(t.work_items or []) for t in context.turns),
            "avg_response_time": sum(t.processing_time for t in context.turns) / total_turns,
            "cache_hit_rate": sum(1 for t in context.turns if t.cache_hit) / total_turns,
        }

    def export_context(self, context: ConversationContext) -> Dict[str, Any]:
        """Flat view of a conversation for debugging."""
        return {
            "conversation_id": context.conversation_id,
            "user_id": context.user_id,
            "turn_count": len(context.turns),
            "created_at": context.created_at,
            "updated_at": context.updated_at,
            "filters": context.global_filters.to_dict() if context.global_filters else None,
            "turns": [
                {
                    "id": turn.id,
                    "timestamp": turn.timestamp,
                    "query": turn.user_query,
                    "intent_type": turn.intent.type.value,
                    "intent_scope": turn.intent.scope.value,
                    "work_item_count": len(turn.work_items or []),
                    "confidence": turn.confidence,
                }
                for turn in context.turns
            ],
        }
