# services/ado/base.py
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any

class AdoClient(ABC):
    """Abstract base class that defines the interface for work-tracking system clients.

    Every method takes an optional per-call timeout in seconds.
    """

    @abstractmethod
    def search_items(self, wiql: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Run a WIQL query and return the raw work item records, in query order."""
        pass

    @abstractmethod
    def get_item(self, item_id: int, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Return one raw work item record, or None when it doesn't exist."""
        pass

    @abstractmethod
    def list_metadata(self, kind: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """List projects, teams, users, states, types, tags or sprints as {id, name, ...} records."""
        pass

    @abstractmethod
    def rest_get(self, path: str, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
        """Fetch a listing resource by path, e.g. '/queries' or '/iterations'."""
        pass
