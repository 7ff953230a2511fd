"""
Reconcile events - wake-up signals from the watch stream.

An event only names the declaration that may have changed. The reconciler
never acts on its type or payload; it re-reads the declaration instead.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from errors import MalformedObjectError
from models import ResourceKey


class EventType(Enum):
    """Types of watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    BOOKMARK = "BOOKMARK"
    ERROR = "ERROR"


@dataclass(frozen=True)
class ReconcileEvent:
    """Event emitted when a declaration may have changed."""

    event_type: EventType
    key: ResourceKey
    resource_version: Optional[str] = None

    @classmethod
    def from_object(cls, event_type: EventType, obj: Any) -> "ReconcileEvent":
        """
        Build an event for an unstructured object.

        Raises:
            MalformedObjectError: If the object has no usable metadata
        """
        if not isinstance(obj, dict):
            raise MalformedObjectError(
                f"Expected an object dict, got {type(obj).__name__}"
            )
        metadata = obj.get("metadata")
        if not isinstance(metadata, dict):
            raise MalformedObjectError("Event object has no metadata")
        name = metadata.get("name")
        if not name or not isinstance(name, str):
            raise MalformedObjectError("Event object has no name")

        return cls(
            event_type=event_type,
            key=ResourceKey(namespace=metadata.get("namespace") or "", name=name),
            resource_version=metadata.get("resourceVersion"),
        )

    @classmethod
    def from_watch_event(cls, raw: Dict[str, Any]) -> "ReconcileEvent":
        """
        Parse a raw event yielded by ``kubernetes.watch.Watch.stream``.

        Raises:
            MalformedObjectError: If the event type is unknown or the object
                is malformed
        """
        if not isinstance(raw, dict):
            raise MalformedObjectError(
                f"Expected an event dict, got {type(raw).__name__}"
            )
        try:
            event_type = EventType(raw.get("type"))
        except ValueError:
            raise MalformedObjectError(f"Unknown event type {raw.get('type')!r}")

        obj = raw.get("raw_object", raw.get("object"))
        if event_type == EventType.ERROR:
            raise MalformedObjectError(f"Watch error event: {obj}")
        if event_type == EventType.BOOKMARK:
            metadata = obj.get("metadata") if isinstance(obj, dict) else None
            if not isinstance(metadata, dict):
                raise MalformedObjectError("Bookmark event has no metadata")
            return cls(
                event_type=event_type,
                key=ResourceKey(namespace="", name=""),
                resource_version=metadata.get("resourceVersion"),
            )
        return cls.from_object(event_type, obj)
