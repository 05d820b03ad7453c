"""
In-process datastore.

Holds every persisted entity (policies, audit reports, templates, cloud
connections and resources, deployment credentials, deployments, encrypted
state). Accessors are coroutines so callers treat every read and write as a
suspension point, the same as they would with a database driver.

Objects are deep-copied on the way in and on the way out: a caller mutating
what it got back never changes stored data without an explicit put().
"""
import asyncio
import copy
from typing import Any, Callable, Dict, List, Optional, Tuple


COLLECTIONS = (
    "policies",
    "templates",
    "connections",
    "credentials",
    "deployments",
    "states",
)


class InMemoryStore:
    """Keyed collections plus an append-only report log."""

    def __init__(self):
        self._collections: Dict[str, Dict[str, Any]] = {name: {} for name in COLLECTIONS}
        self._reports: List[Any] = []
        self._cloud_resources: Dict[Tuple[str, str], Any] = {}
        self._lock = asyncio.Lock()

    def _bucket(self, collection: str) -> Dict[str, Any]:
        if collection not in self._collections:
            raise KeyError(f"Unknown collection: {collection}")
        return self._collections[collection]

    async def get(self, collection: str, key: str) -> Optional[Any]:
        item = self._bucket(collection).get(key)
        return copy.deepcopy(item) if item is not None else None

    async def put(self, collection: str, key: str, item: Any) -> None:
        async with self._lock:
            self._bucket(collection)[key] = copy.deepcopy(item)

    async def delete(self, collection: str, key: str) -> bool:
        async with self._lock:
            return self._bucket(collection).pop(key, None) is not None

    async def list(self, collection: str, predicate: Optional[Callable[[Any], bool]] = None) -> List[Any]:
        """Items in insertion order, optionally filtered."""
        items = list(self._bucket(collection).values())
        if predicate is not None:
            items = [item for item in items if predicate(item)]
        return copy.deepcopy(items)

    # --- Audit reports (append-only) -------------------------------------

    async def append_report(self, report: Any) -> None:
        async with self._lock:
            self._reports.append(copy.deepcopy(report))

    async def list_reports(self, template_id: str) -> List[Any]:
        """Reports for a template, newest first."""
        matching = [report for report in self._reports if report.template_id == template_id]
        matching.sort(key=lambda report: report.created_at, reverse=True)
        return copy.deepcopy(matching)

    # --- Cloud resources, keyed by (connection_id, resource_id) ----------

    async def upsert_cloud_resource(self, resource: Any) -> bool:
        """Insert or replace a discovered resource. Returns True if it was new."""
        key = (resource.connection_id, resource.resource_id)
        async with self._lock:
            created = key not in self._cloud_resources
            self._cloud_resources[key] = copy.deepcopy(resource)
        return created

    async def list_cloud_resources(self, connection_id: str, resource_type: Optional[str] = None) -> List[Any]:
        items = [
            resource for (owner, _), resource in self._cloud_resources.items()
            if owner == connection_id and (resource_type is None or resource.resource_type == resource_type)
        ]
        return copy.deepcopy(items)

    async def delete_cloud_resources(self, connection_id: str) -> int:
        async with self._lock:
            keys = [key for key in self._cloud_resources if key[0] == connection_id]
            for key in keys:
                del self._cloud_resources[key]
        return len(keys)


# Global singleton instance
_store: Optional[InMemoryStore] = None


def get_store() -> InMemoryStore:
    """
    Get the global store instance.

    Returns:
        InMemoryStore instance
    """
    global _store
    if _store is None:
        _store = InMemoryStore()
    return _store


def reset_store() -> InMemoryStore:
    """Replace the global store with an empty one."""
    global _store
    _store = InMemoryStore()
    return _store
