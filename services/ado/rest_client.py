# ------------------------------
# Module: rest_client.py
# Description: Azure DevOps REST API client
# ------------------------------

import os
import logging
from pathlib import Path
from typing import Optional, List, Dict, Any
from urllib.parse import quote
import requests
from dotenv import load_dotenv
from services.constants import (
    ADO_BASE_URL,
    ADO_API_VERSION,
    ADO_MAX_IDS_PER_REQUEST,
    ADO_MAX_RESULTS,
    ADO_WORK_ITEM_FIELDS,
    ADO_REQUEST_TIMEOUT_SECONDS,
)
from services.errors import AdoApiError

from .base import AdoClient

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# REST listing paths the pipeline may ask for, and the metadata kind that serves them
REST_PATHS = {
    "/queries": "queries",
    "/iterations": "sprints",
    "/sprints": "sprints",
    "/teams": "teams",
    "/users": "users",
    "/projects": "projects",
}


class AdoRestClient(AdoClient):

    def __init__(self, organization: str = None, project: str = None, team: str = None,
                 pat: str = None, session: Optional[requests.Session] = None):
        # Ensure environment variables are loaded
        project_root = Path(__file__).parent.parent.parent
        load_dotenv(project_root / '.env')

        self.organization = organization or os.getenv("ADO_ORGANIZATION")
        self.project = project or os.getenv("ADO_PROJECT")
        self.team = team or os.getenv("ADO_TEAM") or (f"{self.project} Team" if self.project else None)
        pat = pat or os.getenv("ADO_PAT")

        # Check required settings
        missing_vars = [name for name, value in (
            ("ADO_ORGANIZATION", self.organization),
            ("ADO_PROJECT", self.project),
            ("ADO_PAT", pat),
        ) if not value]
        if missing_vars:
            raise ValueError(f"Missing required Azure DevOps environment variables: {', '.join(missing_vars)}")

        self.base_url = f"{ADO_BASE_URL.rstrip('/')}/{quote(self.organization)}"
        self.session = session or requests.Session()
        # Basic auth with an empty user name and the PAT as password
        self.session.auth = ("", pat)
        self.session.headers.update({"Accept": "application/json"})
        logger.info(f"Azure DevOps client ready for organization: {self.organization}, project: {self.project}")

    # :::::: HTTP helpers :::::: #

    def _project_url(self, suffix: str) -> str:
        return f"{self.base_url}/{quote(self.project)}/_apis/{suffix}"

    def _request(self, method: str, url: str, timeout: Optional[float] = None,
                 params: Optional[Dict[str, Any]] = None, json_body: Any = None,
                 allow_404: bool = False) -> Optional[Dict[str, Any]]:
        params = dict(params or {})
        params.setdefault("api-version", ADO_API_VERSION)
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json_body,
                timeout=timeout or ADO_REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise AdoApiError(f"{method} {url} failed: {e}") from e

        if allow_404 and response.status_code == 404:
            return None
        if response.status_code >= 400:
            message = response.text[:300]
            raise AdoApiError(f"{method} {url} returned {response.status_code}: {message}", response.status_code)
        return response.json()

    def _get_values(self, url: str, timeout: Optional[float] = None,
                    params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        data = self._request("GET", url, timeout=timeout, params=params) or {}
        return data.get("value", [])

    # :::::: Work items :::::: #

    def search_items(self, wiql: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        data = self._request(
            "POST",
            self._project_url("wit/wiql"),
            timeout=timeout,
            params={"$top": ADO_MAX_RESULTS},
            json_body={"query": wiql},
        ) or {}
        ids = [ref["id"] for ref in data.get("workItems", [])][:ADO_MAX_RESULTS]
        if not ids:
            return []
        return self._get_items_by_ids(ids, timeout)

    def _get_items_by_ids(self, ids: List[int], timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        records: Dict[int, Dict[str, Any]] = {}
        for start in range(0, len(ids), ADO_MAX_IDS_PER_REQUEST):
            batch = ids[start:start + ADO_MAX_IDS_PER_REQUEST]
            values = self._get_values(
                self._project_url("wit/workitems"),
                timeout=timeout,
                params={"ids": ",".join(str(i) for i in batch), "fields": ",".join(ADO_WORK_ITEM_FIELDS)},
            )
            for record in values:
                records[record["id"]] = record

        # Keep the WIQL ordering
        return [records[i] for i in ids if i in records]

    def get_item(self, item_id: int, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        return self._request(
            "GET",
            self._project_url(f"wit/workitems/{int(item_id)}"),
            timeout=timeout,
            allow_404=True,
        )

    # :::::: Metadata :::::: #

    def list_metadata(self, kind: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        kind = kind.lower()
        if kind == "projects":
            values = self._get_values(f"{self.base_url}/_apis/projects", timeout, params={"$top": 100})
            return [{"id": p["id"], "name": p["name"], "description": p.get("description")} for p in values]

        if kind == "teams":
            values = self._get_values(f"{self.base_url}/_apis/projects/{quote(self.project)}/teams", timeout)
            return [{"id": t["id"], "name": t["name"], "project": self.project} for t in values]

        if kind == "users":
            return self._list_users(timeout)

        if kind in ("states", "types"):
            work_item_types = self._get_values(self._project_url("wit/workitemtypes"), timeout)
            if kind == "types":
                return [{"id": t["name"], "name": t["name"]} for t in work_item_types]
            names = []
            for t in work_item_types:
                for state in t.get("states", []) or []:
                    if state.get("name") and state["name"] not in names:
                        names.append(state["name"])
            return [{"id": name, "name": name} for name in names]

        if kind == "tags":
            values = self._get_values(self._project_url("wit/tags"), timeout, params={"api-version": "7.1-preview.1"})
            return [{"id": t.get("id", t["name"]), "name": t["name"]} for t in values]

        if kind == "sprints":
            url = f"{self.base_url}/{quote(self.project)}/{quote(self.team)}/_apis/work/teamsettings/iterations"
            values = self._get_values(url, timeout)
            return [{
                "id": s["id"],
                "name": s["name"],
                "path": s.get("path"),
                "start_date": (s.get("attributes") or {}).get("startDate"),
                "finish_date": (s.get("attributes") or {}).get("finishDate"),
                "time_frame": (s.get("attributes") or {}).get("timeFrame"),
            } for s in values]

        if kind == "queries":
            values = self._get_values(self._project_url("wit/queries"), timeout, params={"$depth": 2})
            return self._flatten_queries(values)

        raise ValueError(f"Unknown metadata kind: {kind}")

    def _list_users(self, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        users: Dict[str, Dict[str, Any]] = {}
        for team in self.list_metadata("teams", timeout):
            members = self._get_values(
                f"{self.base_url}/_apis/projects/{quote(self.project)}/teams/{team['id']}/members",
                timeout,
            )
            for member in members:
                identity = member.get("identity", member)
                unique_name = identity.get("uniqueName") or identity.get("displayName")
                if unique_name and unique_name not in users:
                    users[unique_name] = {
                        "id": identity.get("id", unique_name),
                        "name": identity.get("displayName", unique_name),
                        "unique_name": unique_name,
                    }
        return sorted(users.values(), key=lambda u: u["name"].lower())

    def _flatten_queries(self, nodes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        queries = []
        for node in nodes:
            if node.get("isFolder"):
                queries.extend(self._flatten_queries(node.get("children", []) or []))
            else:
                queries.append({"id": node["id"], "name": node["name"], "path": node.get("path"), "wiql": node.get("wiql")})
        return queries

    def rest_get(self, path: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        kind = REST_PATHS.get(path.rstrip("/") or path)
        if kind is None:
            raise ValueError(f"Unsupported REST path: {path}")
        return self.list_metadata(kind, timeout)
