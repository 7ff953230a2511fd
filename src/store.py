"""
Declaration Store - BigQueryTable objects in the Kubernetes control plane.

The API server owns the authoritative record. Updates use optimistic
concurrency on metadata.resourceVersion; a stale version surfaces as
ConflictError.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from errors import ConflictError, MalformedObjectError, NotFoundError, StoreError
from models import Declaration, ResourceKey

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DeclarationStore(ABC):
    """Abstract access to declarations."""

    @abstractmethod
    async def get(self, key: ResourceKey) -> Optional[Declaration]:
        """
        Read the current declaration.

        Returns:
            The declaration, or None if it does not exist
        """
        pass

    @abstractmethod
    async def update(self, declaration: Declaration) -> Declaration:
        """
        Replace the declaration, guarded by its resourceVersion.

        Returns:
            The declaration as stored after the update

        Raises:
            ConflictError: If the resourceVersion is stale
            NotFoundError: If the declaration no longer exists
            StoreError: On any other failure
        """
        pass

    @abstractmethod
    async def list(self) -> Tuple[List[Declaration], Optional[str]]:
        """
        List all declarations.

        Returns:
            Tuple of (declarations, list resourceVersion)
        """
        pass

    @abstractmethod
    async def patch_status(self, key: ResourceKey, status: Dict[str, Any]) -> bool:
        """
        Merge the given fields into the status subresource.

        Returns:
            True if patched, False if the declaration no longer exists
        """
        pass


class KubernetesDeclarationStore(DeclarationStore):
    """DeclarationStore backed by the CustomObjectsApi."""

    def __init__(
        self,
        api: client.CustomObjectsApi,
        group: str,
        version: str,
        plural: str,
        namespace: str = "",
        request_timeout: float = 30.0,
    ):
        self.api = api
        self.group = group
        self.version = version
        self.plural = plural
        self.namespace = namespace
        self.request_timeout = request_timeout

    async def _call(self, description: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except ApiException:
            raise
        except Exception as e:
            raise StoreError(f"{description} failed: {e}") from e

    async def get(self, key: ResourceKey) -> Optional[Declaration]:
        try:
            obj = await self._call(
                f"get {key}",
                lambda: self.api.get_namespaced_custom_object(
                    self.group,
                    self.version,
                    key.namespace,
                    self.plural,
                    key.name,
                    _request_timeout=self.request_timeout,
                ),
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise StoreError(f"get {key} failed: {e.status} {e.reason}") from e

        try:
            return Declaration.from_object(obj)
        except MalformedObjectError as e:
            raise StoreError(f"get {key} returned a malformed object: {e}") from e

    async def update(self, declaration: Declaration) -> Declaration:
        key = declaration.key
        try:
            obj = await self._call(
                f"update {key}",
                lambda: self.api.replace_namespaced_custom_object(
                    self.group,
                    self.version,
                    key.namespace,
                    self.plural,
                    key.name,
                    declaration.raw,
                    _request_timeout=self.request_timeout,
                ),
            )
        except ApiException as e:
            if e.status == 409:
                raise ConflictError(
                    f"update {key} conflicted at resourceVersion "
                    f"{declaration.metadata.resource_version}"
                ) from e
            if e.status == 404:
                raise NotFoundError(f"{key} no longer exists") from e
            raise StoreError(f"update {key} failed: {e.status} {e.reason}") from e

        return Declaration.from_object(obj)

    async def list(self) -> Tuple[List[Declaration], Optional[str]]:
        try:
            if self.namespace:
                result = await self._call(
                    "list",
                    lambda: self.api.list_namespaced_custom_object(
                        self.group,
                        self.version,
                        self.namespace,
                        self.plural,
                        _request_timeout=self.request_timeout,
                    ),
                )
            else:
                result = await self._call(
                    "list",
                    lambda: self.api.list_cluster_custom_object(
                        self.group,
                        self.version,
                        self.plural,
                        _request_timeout=self.request_timeout,
                    ),
                )
        except ApiException as e:
            raise StoreError(f"list failed: {e.status} {e.reason}") from e

        declarations = []
        for item in result.get("items") or []:
            try:
                declarations.append(Declaration.from_object(item))
            except MalformedObjectError as e:
                logger.warning(f"Skipping malformed {self.plural} item: {e}")

        resource_version = (result.get("metadata") or {}).get("resourceVersion")
        return declarations, resource_version

    async def patch_status(self, key: ResourceKey, status: Dict[str, Any]) -> bool:
        try:
            await self._call(
                f"patch status {key}",
                lambda: self.api.patch_namespaced_custom_object_status(
                    self.group,
                    self.version,
                    key.namespace,
                    self.plural,
                    key.name,
                    {"status": status},
                    _request_timeout=self.request_timeout,
                ),
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise StoreError(
                f"patch status {key} failed: {e.status} {e.reason}"
            ) from e
        return True
