"""
Core types for BigQueryTable declarations.

Declarations are parsed from the unstructured objects returned by the
Kubernetes API. They are treated as immutable values; changes are made by
building a new Declaration and handing it to the store.
"""

import copy
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from errors import MalformedObjectError


@dataclass(frozen=True)
class ResourceKey:
    """Identity of a declaration: unique per resource kind."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class TableSpec:
    """User-authored desired state, exactly as declared."""

    project: Optional[str] = None
    dataset: Optional[str] = None
    table_name: Optional[str] = None

    @classmethod
    def from_dict(cls, spec: Dict[str, Any]) -> "TableSpec":
        return cls(
            project=spec.get("project"),
            dataset=spec.get("dataset"),
            table_name=spec.get("tableName"),
        )


@dataclass(frozen=True)
class DeclarationMetadata:
    """The metadata fields the reconciler reads or writes."""

    finalizers: Tuple[str, ...] = ()
    deletion_timestamp: Optional[str] = None
    resource_version: Optional[str] = None
    generation: int = 0

    @property
    def deletion_requested(self) -> bool:
        return self.deletion_timestamp is not None


@dataclass(frozen=True)
class Declaration:
    """A BigQueryTable custom resource."""

    key: ResourceKey
    spec: TableSpec
    metadata: DeclarationMetadata
    status: Dict[str, Any] = field(default_factory=dict, compare=False)
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def name(self) -> str:
        return self.key.name

    @property
    def namespace(self) -> str:
        return self.key.namespace

    @property
    def raw_spec(self) -> Dict[str, Any]:
        spec = self.raw.get("spec")
        return spec if isinstance(spec, dict) else {}

    @classmethod
    def from_object(cls, obj: Any) -> "Declaration":
        """
        Parse an unstructured custom resource object.

        Args:
            obj: Object dict as returned by the CustomObjectsApi

        Returns:
            A Declaration holding a private copy of the object

        Raises:
            MalformedObjectError: If the object lacks metadata or a name
        """
        if not isinstance(obj, dict):
            raise MalformedObjectError(
                f"Expected an object dict, got {type(obj).__name__}"
            )

        metadata = obj.get("metadata")
        if not isinstance(metadata, dict):
            raise MalformedObjectError("Object has no metadata")

        name = metadata.get("name")
        if not name or not isinstance(name, str):
            raise MalformedObjectError("Object metadata has no name")

        spec = obj.get("spec") or {}
        if not isinstance(spec, dict):
            raise MalformedObjectError(f"Object {name} has a non-object spec")

        finalizers = metadata.get("finalizers") or []
        if not isinstance(finalizers, list):
            raise MalformedObjectError(f"Object {name} has non-list finalizers")

        status = obj.get("status")

        return cls(
            key=ResourceKey(namespace=metadata.get("namespace") or "", name=name),
            spec=TableSpec.from_dict(spec),
            metadata=DeclarationMetadata(
                finalizers=tuple(finalizers),
                deletion_timestamp=metadata.get("deletionTimestamp"),
                resource_version=metadata.get("resourceVersion"),
                generation=metadata.get("generation") or 0,
            ),
            status=status if isinstance(status, dict) else {},
            raw=copy.deepcopy(obj),
        )

    def with_finalizers(self, finalizers: Tuple[str, ...]) -> "Declaration":
        """Return a copy of this declaration carrying the given finalizers."""
        raw = copy.deepcopy(self.raw)
        raw.setdefault("metadata", {})["finalizers"] = list(finalizers)
        return replace(
            self,
            metadata=replace(self.metadata, finalizers=tuple(finalizers)),
            raw=raw,
        )


@dataclass(frozen=True)
class DesiredState:
    """Defaulted identity of the external table."""

    project: str
    dataset: str
    table_name: str

    @property
    def table_id(self) -> str:
        return f"{self.project}.{self.dataset}.{self.table_name}"


class ReconcileAction(Enum):
    """What a reconcile pass did."""

    FINALIZER_ADDED = "finalizer_added"
    CREATED = "created"
    IN_SYNC = "in_sync"
    DELETED = "deleted"
    ALREADY_FINALIZED = "already_finalized"
    NOT_FOUND = "not_found"


@dataclass
class ReconcileResult:
    """Result from a successful reconcile pass."""

    action: ReconcileAction
    declaration: Optional[Declaration] = None
    desired: Optional[DesiredState] = None
    message: str = ""
