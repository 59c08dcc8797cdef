from datetime import datetime, timedelta

import pytest
from conftest import BrokenCache

from services.cache import MemoryCache

from services.ai_workflow.context_manager import ContextManager
from services.ai_workflow.data_model import (
    Intent, IntentType, IntentScope, OrchestratedResponse, ResponseMetadata, WorkItem, GlobalFilters
)
from services.errors import ConversationNotFoundError, ConversationOwnershipError


def _response(summary="ok", confidence=0.8, processing_time=100.0, cache_hit=False):
    return OrchestratedResponse(
        success=True,
        summary=summary,
        metadata=ResponseMetadata(confidence=confidence, processing_time=processing_time, cache_hit=cache_hit),
    )


def _user_intent(name="Jane Doe"):
    return Intent(type=IntentType.COMMAND, scope=IntentScope.USER, user_identifier=name)


@pytest.fixture
def manager(cache):
    return ContextManager(cache)


def test_history_keeps_the_last_ten_turns(manager):
    context = manager.create_context("user-1")

    for i in range(12):
        manager.add_turn(context.conversation_id, f"query {i}", _user_intent(), _response(f"answer {i}"))

    stored = manager.require_context(context.conversation_id)
    assert len(stored.turns) == 10
    assert stored.turns[0].user_query == "query 2"
    assert stored.turns[-1].response == "answer 11"


def test_turn_work_items_are_capped(manager):
    context = manager.create_context("user-1")
    items = [WorkItem(id=i) for i in range(60)]

    manager.add_turn(context.conversation_id, "q", _user_intent(), _response(), items)

    assert len(manager.require_context(context.conversation_id).turns[0].work_items) == 50


def test_falls_back_to_local_store_when_cache_refuses_writes():
    manager = ContextManager(BrokenCache())
    context = manager.create_context("user-1")

    manager.add_turn(context.conversation_id, "q", _user_intent(), _response())

    stored = manager.get_context(context.conversation_id)
    assert stored is not None
    assert len(stored.turns) == 1


def test_local_fallback_expires():
    manager = ContextManager(BrokenCache(), ttl_seconds=0)
    context = manager.create_context("user-1")
    assert manager.get_context(context.conversation_id) is None


class FlakyCache(MemoryCache):
    """Refuses the next `failures` writes, then works again."""

    def __init__(self):
        super().__init__()
        self.failures = 0

    def set(self, key, value, ttl_seconds):
        if self.failures:
            self.failures -= 1
            return False
        return super().set(key, value, ttl_seconds)


def test_turn_written_during_an_outage_survives_recovery():
    cache = FlakyCache()
    manager = ContextManager(cache)
    context = manager.create_context("user-1")
    conversation_id = context.conversation_id
    manager.add_turn(conversation_id, "q1", _user_intent(), _response())
    manager.add_turn(conversation_id, "q2", _user_intent(), _response())

    cache.failures = 1
    manager.add_turn(conversation_id, "q3", _user_intent(), _response())
    assert [t.user_query for t in manager.get_context(conversation_id).turns] == ["q1", "q2", "q3"]

    manager.add_turn(conversation_id, "q4", _user_intent(), _response())

    assert [t.user_query for t in manager.get_context(conversation_id).turns] == ["q1", "q2", "q3", "q4"]
    assert [t["user_query"] for t in cache.get(f"ado:context:{conversation_id}")["turns"]] == ["q1", "q2", "q3", "q4"]
    assert manager._local == {}


def test_expired_local_contexts_are_swept_on_save():
    manager = ContextManager(BrokenCache(), ttl_seconds=0)
    for _ in range(3):
        manager.create_context("user-1")

    assert len(manager._local) == 1


def test_get_or_create(manager):
    created = manager.get_or_create_context(None, "user-1")
    assert manager.get_or_create_context(created.conversation_id, "user-1").conversation_id == created.conversation_id

    # Unknown ids start a conversation under that id
    named = manager.get_or_create_context("conv-42", "user-1")
    assert named.conversation_id == "conv-42"
    assert named.turns == []


def test_get_or_create_refuses_another_users_conversation(manager):
    context = manager.create_context("user-1")
    with pytest.raises(ConversationOwnershipError):
        manager.get_or_create_context(context.conversation_id, "user-2")


def test_get_or_create_updates_changed_filters(manager):
    context = manager.create_context("user-1")
    filters = GlobalFilters(ignore_closed=True)

    manager.get_or_create_context(context.conversation_id, "user-1", filters)

    assert manager.require_context(context.conversation_id).global_filters == filters


def test_missing_conversation_raises(manager):
    with pytest.raises(ConversationNotFoundError):
        manager.add_turn("nope", "q", _user_intent(), _response())
    with pytest.raises(ConversationNotFoundError):
        manager.update_filters("nope", None)


def test_recent_similar_query(manager):
    context = manager.create_context("user-1")
    manager.add_turn(context.conversation_id, "Jane's items", _user_intent("Jane Doe"), _response())
    context = manager.require_context(context.conversation_id)

    assert manager.has_recent_similar_query(context, _user_intent("Jane Doe")) is True
    assert manager.has_recent_similar_query(context, _user_intent("John Smith")) is False
    assert len(manager.find_similar_queries(context, _user_intent("John Smith"))) == 1

    context.turns[0].timestamp = (datetime.now() - timedelta(minutes=10)).isoformat()
    assert manager.has_recent_similar_query(context, _user_intent("Jane Doe")) is False


def test_recent_entities(manager):
    context = manager.create_context("user-1")
    cid = context.conversation_id
    manager.add_turn(cid, "q1", _user_intent("Jane Doe"), _response())
    manager.add_turn(cid, "q2", Intent(type=IntentType.COMMAND, scope=IntentScope.SPRINT, sprint_identifier="Sprint 5"),
                     _response(), [WorkItem(id=1, project="Contoso")])
    manager.add_turn(cid, "q3", _user_intent("John Smith"), _response())
    manager.add_turn(cid, "q4", _user_intent("Jane Doe"), _response())

    entities = manager.get_recent_entities(manager.require_context(cid))

    assert entities.users == ["John Smith", "Jane Doe"]
    assert entities.sprints == ["Sprint 5"]
    assert entities.projects == ["Contoso"]
    assert entities.last_mentioned_user == "Jane Doe"


def test_summary_and_stats(manager):
    context = manager.create_context("user-1")
    assert manager.get_conversation_summary(context) == "New conversation - no previous context."
    assert manager.get_stats(context)["total_turns"] == 0

    manager.add_turn(context.conversation_id, "Jane's items", _user_intent(), _response(processing_time=100.0),
                     [WorkItem(id=1), WorkItem(id=2)])
    manager.add_turn(context.conversation_id, "again", _user_intent(), _response(processing_time=300.0, cache_hit=True),
                     [WorkItem(id=1)])
    context = manager.require_context(context.conversation_id)

    summary = manager.get_conversation_summary(context)
    assert summary.startswith("Conversation history (last 2 turns):")
    assert 'Turn 1: User asked "Jane\'s items" (COMMAND, USER)' in summary

    stats = manager.get_stats(context)
    assert stats == {"total_turns": 2, "total_work_items": 3, "avg_response_time": 200.0, "cache_hit_rate": 0.5}
    assert [w.id for w in manager.get_recent_work_items(context)] == [1, 2]


def test_prune_and_delete(manager):
    context = manager.create_context("user-1")
    for i in range(9):
        manager.add_turn(context.conversation_id, f"q{i}", _user_intent(), _response())

    pruned = manager.prune_context(context.conversation_id)
    assert [t.user_query for t in pruned.turns] == [f"q{i}" for i in range(2, 9)]

    manager.delete_context(context.conversation_id)
    assert manager.get_context(context.conversation_id) is None
