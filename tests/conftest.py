"""Pytest configuration and fixtures."""

import copy
from typing import Any, Dict, List, Optional

import pytest

from backend import TableBackend
from errors import ConflictError, NotFoundError
from models import Declaration, DesiredState, ResourceKey
from store import DeclarationStore

FINALIZER = "bigquerytables.mahdi.dev/finalizer"
DEFAULT_PROJECT = "p"


def make_object(
    name: str = "orders",
    namespace: str = "default",
    spec: Optional[Dict[str, Any]] = None,
    finalizers: Optional[List[str]] = None,
    deleting: bool = False,
    resource_version: str = "1",
    generation: int = 1,
    status: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build an unstructured BigQueryTable object."""
    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "resourceVersion": resource_version,
        "generation": generation,
    }
    if finalizers is not None:
        metadata["finalizers"] = list(finalizers)
    if deleting:
        metadata["deletionTimestamp"] = "2024-01-01T00:00:00Z"

    obj: Dict[str, Any] = {
        "apiVersion": "mahdi.dev/v1",
        "kind": "BigQueryTable",
        "metadata": metadata,
        "spec": {"dataset": "sales"} if spec is None else spec,
    }
    if status is not None:
        obj["status"] = status
    return obj


class FakeStore(DeclarationStore):
    """In-memory store emulating the API server's optimistic concurrency."""

    def __init__(self, trace: List[tuple]):
        self.trace = trace
        self.objects: Dict[ResourceKey, Dict[str, Any]] = {}
        self.pending_conflicts = 0
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    def put(self, obj: Dict[str, Any]) -> ResourceKey:
        obj = copy.deepcopy(obj)
        obj["metadata"]["resourceVersion"] = self._next_version()
        key = ResourceKey(obj["metadata"]["namespace"], obj["metadata"]["name"])
        self.objects[key] = obj
        return key

    def request_deletion(self, key: ResourceKey) -> None:
        """What the API server does on a user delete."""
        obj = self.objects[key]
        if not obj["metadata"].get("finalizers"):
            del self.objects[key]
            return
        obj["metadata"]["deletionTimestamp"] = "2024-01-02T00:00:00Z"
        obj["metadata"]["resourceVersion"] = self._next_version()

    def finalizers(self, key: ResourceKey) -> List[str]:
        return list(self.objects[key]["metadata"].get("finalizers") or [])

    async def get(self, key: ResourceKey) -> Optional[Declaration]:
        self.trace.append(("get", str(key)))
        obj = self.objects.get(key)
        return Declaration.from_object(obj) if obj is not None else None

    async def update(self, declaration: Declaration) -> Declaration:
        key = declaration.key
        self.trace.append(("update", str(key), declaration.metadata.finalizers))
        if self.pending_conflicts:
            self.pending_conflicts -= 1
            raise ConflictError(f"update {key} conflicted")

        current = self.objects.get(key)
        if current is None:
            raise NotFoundError(f"{key} no longer exists")
        if current["metadata"]["resourceVersion"] != (
            declaration.metadata.resource_version
        ):
            raise ConflictError(f"update {key} conflicted")

        obj = copy.deepcopy(declaration.raw)
        obj["metadata"]["resourceVersion"] = self._next_version()
        if obj["metadata"].get("deletionTimestamp") and not obj["metadata"].get(
            "finalizers"
        ):
            del self.objects[key]
        else:
            self.objects[key] = obj
        return Declaration.from_object(obj)

    async def list(self):
        self.trace.append(("list",))
        return (
            [Declaration.from_object(o) for o in self.objects.values()],
            str(self._version),
        )

    async def patch_status(self, key: ResourceKey, status: Dict[str, Any]) -> bool:
        self.trace.append(("patch_status", str(key)))
        obj = self.objects.get(key)
        if obj is None:
            return False
        obj.setdefault("status", {}).update(copy.deepcopy(status))
        obj["metadata"]["resourceVersion"] = self._next_version()
        return True


class FakeBackend(TableBackend):
    """In-memory table backend recording every call."""

    def __init__(self, trace: List[tuple]):
        self.trace = trace
        self.tables = set()
        self.errors: Dict[str, List[Exception]] = {}

    def fail_next(self, operation: str, error: Exception) -> None:
        self.errors.setdefault(operation, []).append(error)

    def _maybe_fail(self, operation: str) -> None:
        pending = self.errors.get(operation)
        if pending:
            raise pending.pop(0)

    async def exists(self, desired: DesiredState) -> bool:
        self.trace.append(("exists", desired.table_id))
        self._maybe_fail("exists")
        return desired.table_id in self.tables

    async def create_if_absent(self, desired: DesiredState) -> None:
        self.trace.append(("create", desired.table_id))
        self._maybe_fail("create")
        self.tables.add(desired.table_id)

    async def delete_if_present(self, desired: DesiredState) -> None:
        self.trace.append(("delete", desired.table_id))
        self._maybe_fail("delete")
        self.tables.discard(desired.table_id)


@pytest.fixture
def trace():
    """Shared, ordered record of store and backend calls."""
    return []


@pytest.fixture
def store(trace):
    return FakeStore(trace)


@pytest.fixture
def backend(trace):
    return FakeBackend(trace)


@pytest.fixture
def sample_object():
    """Sample BigQueryTable object for testing."""
    return make_object()
