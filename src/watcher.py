"""
Event Source - list-then-watch over BigQueryTable objects.

Produces an unbounded stream of ReconcileEvents. The initial list replays
ADDED for every existing object; afterwards the watch resumes from the
latest resourceVersion bookmark and relists when the bookmark expires.
Delivery is at-least-once: duplicates and replays are expected.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException

from errors import MalformedObjectError
from events import EventType, ReconcileEvent

logger = logging.getLogger(__name__)

HTTP_GONE = 410


class _BookmarkExpired(Exception):
    """The watch resourceVersion is too old; a relist is required."""


class KubernetesEventSource:
    """Watches BigQueryTable objects through the CustomObjectsApi."""

    def __init__(
        self,
        api: client.CustomObjectsApi,
        group: str,
        version: str,
        plural: str,
        namespace: str = "",
        watch_timeout: int = 300,
        retry_delay: float = 5.0,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ):
        self.api = api
        self.group = group
        self.version = version
        self.plural = plural
        self.namespace = namespace
        self.watch_timeout = watch_timeout
        self.retry_delay = retry_delay
        self._watch_factory = watch_factory
        self._watch: Optional[watch.Watch] = None
        self.running = False
        self.resource_version: Optional[str] = None

    def _list_call(self) -> Tuple[Callable[..., Any], Tuple[Any, ...]]:
        if self.namespace:
            return (
                self.api.list_namespaced_custom_object,
                (self.group, self.version, self.namespace, self.plural),
            )
        return (
            self.api.list_cluster_custom_object,
            (self.group, self.version, self.plural),
        )

    async def _list(self) -> Tuple[List[ReconcileEvent], Optional[str]]:
        """List all objects, returning ADDED events and the list bookmark."""
        fn, args = self._list_call()
        result: Dict[str, Any] = await asyncio.to_thread(fn, *args)

        events = []
        for item in result.get("items") or []:
            try:
                events.append(ReconcileEvent.from_object(EventType.ADDED, item))
            except MalformedObjectError as e:
                logger.warning(f"Skipping malformed {self.plural} item: {e}")

        resource_version = (result.get("metadata") or {}).get("resourceVersion")
        logger.info(
            f"Listed {len(events)} {self.plural} at resourceVersion {resource_version}"
        )
        return events, resource_version

    async def _watch_from(self, resource_version: str) -> AsyncIterator[ReconcileEvent]:
        """Watch from a bookmark until the server closes the stream."""
        fn, args = self._list_call()
        w = self._watch_factory()
        self._watch = w
        stream = w.stream(
            fn,
            *args,
            resource_version=resource_version,
            timeout_seconds=self.watch_timeout,
            allow_watch_bookmarks=True,
        )
        try:
            while self.running:
                raw = await asyncio.to_thread(next, stream, None)
                if raw is None:
                    return

                if isinstance(raw, dict) and raw.get("type") == EventType.ERROR.value:
                    obj = raw.get("raw_object") or raw.get("object") or {}
                    if isinstance(obj, dict) and obj.get("code") == HTTP_GONE:
                        raise _BookmarkExpired()

                try:
                    event = ReconcileEvent.from_watch_event(raw)
                except MalformedObjectError as e:
                    logger.warning(f"Skipping malformed watch event: {e}")
                    continue

                yield event
        finally:
            w.stop()
            self._watch = None

    async def events(self) -> AsyncIterator[ReconcileEvent]:
        """
        Yield events until stop() is called.

        API and transport errors are logged and the watch is restarted;
        they never end the stream.
        """
        self.running = True
        while self.running:
            try:
                if self.resource_version is None:
                    listed, self.resource_version = await self._list()
                    for event in listed:
                        yield event
                    if self.resource_version is None:
                        raise ValueError("list response carried no resourceVersion")

                async for event in self._watch_from(self.resource_version):
                    if event.resource_version:
                        self.resource_version = event.resource_version
                    if event.event_type == EventType.BOOKMARK:
                        continue
                    yield event

            except _BookmarkExpired:
                logger.info("Watch bookmark expired, relisting")
                self.resource_version = None
            except ApiException as e:
                if e.status == HTTP_GONE:
                    logger.info("Watch bookmark expired, relisting")
                    self.resource_version = None
                    continue
                logger.warning(
                    f"Watch failed ({e.status} {e.reason}), "
                    f"retrying in {self.retry_delay}s"
                )
                await asyncio.sleep(self.retry_delay)
            except Exception as e:
                logger.warning(
                    f"Watch error: {e}, retrying in {self.retry_delay}s",
                    exc_info=True,
                )
                await asyncio.sleep(self.retry_delay)

    def stop(self) -> None:
        """Stop the event stream."""
        self.running = False
        if self._watch is not None:
            self._watch.stop()
