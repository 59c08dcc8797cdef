import json
import copy
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest
from openai import OpenAIError

from services.ado import AdoClient
from services.cache import MemoryCache
from services.errors import AdoApiError
from services.logs import clear_logs
from services.ai_workflow.utils.openai_utils import OpenAIClient


# :::::: OpenAI responses :::::: #

def tool_response(name: str, arguments: Dict[str, Any]):
    call = SimpleNamespace(
        id="call_1",
        type="function",
        function=SimpleNamespace(name=name, arguments=json.dumps(arguments)),
    )
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=None, tool_calls=[call]))])


def content_response(text: str):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=text, tool_calls=None))])


def json_response(payload: Dict[str, Any]):
    return content_response(json.dumps(payload))


class FakeStream:
    """Iterable of chat completion chunks that remembers whether it was closed."""

    def __init__(self, chunks: List[Any]):
        self.chunks = chunks
        self.closed = False

    def __iter__(self):
        for chunk in self.chunks:
            if self.closed:
                return
            yield chunk

    def close(self):
        self.closed = True


def stream_response(tokens=(), tool_call: Optional[Dict[str, Any]] = None) -> FakeStream:
    chunks = []
    for token in tokens:
        delta = SimpleNamespace(content=token, tool_calls=None)
        chunks.append(SimpleNamespace(choices=[SimpleNamespace(delta=delta)]))
    if tool_call is not None:
        arguments = json.dumps(tool_call["arguments"])
        # Arguments arrive split across two chunks
        for i, part in enumerate((arguments[:5], arguments[5:])):
            call = SimpleNamespace(
                index=0,
                id="call_stream" if i == 0 else None,
                function=SimpleNamespace(name=tool_call["name"] if i == 0 else None, arguments=part),
            )
            chunks.append(SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=None, tool_calls=[call]))]))
    return FakeStream(chunks)


class FakeOpenAI:
    """
    Stands in for openai.OpenAI. Responses are scripted under a key:
    - the forced tool name (classify_intent, make_fetch_decision, evaluate_results)
    - "stream" for streaming calls
    - otherwise any substring of the system prompt (e.g. "Query Planner", "Response Synthesizer")
    Each key serves its responses in order and repeats the last one.
    Unscripted calls raise OpenAIError, like an unreachable service.
    """

    def __init__(self):
        self.scripts: Dict[str, List[Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=SimpleNamespace(create=self._create))

    def script(self, key: str, *responses: Any) -> "FakeOpenAI":
        self.scripts.setdefault(key, []).extend(responses)
        return self

    def calls_for(self, key: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["key"] == key]

    def _key_for(self, kwargs: Dict[str, Any]) -> Optional[str]:
        if kwargs.get("stream"):
            return "stream"
        tool_choice = kwargs.get("tool_choice")
        if isinstance(tool_choice, dict):
            return tool_choice["function"]["name"]
        system_prompt = kwargs["messages"][0]["content"]
        for key in self.scripts:
            if key != "stream" and key in system_prompt:
                return key
        return None

    def _create(self, **kwargs):
        key = self._key_for(kwargs)
        self.calls.append({"key": key, **kwargs})
        responses = self.scripts.get(key) if key else None
        if not responses:
            raise OpenAIError(f"No scripted response for {key}")
        return responses.pop(0) if len(responses) > 1 else responses[0]


# :::::: Azure DevOps :::::: #

def ado_item(item_id: int, title: str = "Item", state: str = "Active", item_type: str = "Bug",
             assigned_to: Optional[str] = "Jane Doe", priority: int = 2, tags: str = "",
             iteration_path: str = "Contoso\\Sprint 5") -> Dict[str, Any]:
    return {
        "id": item_id,
        "fields": {
            "System.Id": item_id,
            "System.Title": title,
            "System.WorkItemType": item_type,
            "System.State": state,
            "System.AssignedTo": {"displayName": assigned_to, "uniqueName": f"{assigned_to}@contoso.com"} if assigned_to else None,
            "System.CreatedBy": {"displayName": "John Smith"},
            "System.CreatedDate": "2025-01-10T09:00:00Z",
            "System.ChangedDate": "2025-01-12T09:00:00Z",
            "System.Tags": tags,
            "System.IterationPath": iteration_path,
            "System.AreaPath": "Contoso\\Web",
            "System.TeamProject": "Contoso",
            "Microsoft.VSTS.Common.Priority": priority,
        },
    }


class FakeAdoClient(AdoClient):
    """
    In-memory work-tracking system. `search_results` maps a substring of the WIQL
    to the raw items returned; anything else returns `default_items`.
    """

    def __init__(self, default_items=None, search_results=None, metadata=None, fail_when=None):
        self.default_items = default_items or []
        self.search_results = search_results or {}
        self.metadata = metadata or {}
        self.fail_when = fail_when or []
        self.search_calls: List[str] = []
        self.metadata_calls: List[str] = []
        self.rest_calls: List[str] = []

    def search_items(self, wiql, timeout=None):
        self.search_calls.append(wiql)
        if any(marker in wiql for marker in self.fail_when):
            raise AdoApiError("POST wit/wiql returned 400: bad query", 400)
        for marker, items in self.search_results.items():
            if marker in wiql:
                return copy.deepcopy(items)
        return copy.deepcopy(self.default_items)

    def get_item(self, item_id, timeout=None):
        for item in self.default_items:
            if item["id"] == item_id:
                return copy.deepcopy(item)
        return None

    def list_metadata(self, kind, timeout=None):
        self.metadata_calls.append(kind)
        if kind not in self.metadata:
            raise AdoApiError(f"GET {kind} returned 500: unavailable", 500)
        return copy.deepcopy(self.metadata[kind])

    def rest_get(self, path, timeout=None):
        self.rest_calls.append(path)
        return self.list_metadata(path.strip("/"), timeout)


class BrokenCache(MemoryCache):
    """A durable store that refuses every write and has nothing stored."""

    def set(self, key, value, ttl_seconds):
        return False

    def is_available(self):
        return False


# :::::: Fixtures :::::: #

@pytest.fixture(autouse=True)
def _clear_pipeline_logs():
    clear_logs()
    yield
    clear_logs()


@pytest.fixture
def fake_openai():
    return FakeOpenAI()


@pytest.fixture
def completion(fake_openai):
    return OpenAIClient(client=fake_openai, retries=1, backoff=0)


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def fake_ado():
    return FakeAdoClient()
