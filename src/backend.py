"""
Table Backend - Adapter for the external BigQuery table.

Backends perform three idempotent operations and carry no policy: the
reconciler decides when to call them.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, TypeVar

import requests
from google.api_core import exceptions as gexc
from google.auth import exceptions as auth_exceptions
from google.cloud import bigquery

from errors import BackendError, PermanentBackendError, TransientBackendError
from models import DesiredState

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Columns are fixed; they are not configurable from the declaration.
TABLE_SCHEMA = [
    bigquery.SchemaField("id", "STRING"),
    bigquery.SchemaField("created_at", "TIMESTAMP"),
]

_TRANSIENT_REASONS = {"rateLimitExceeded", "backendError", "internalError"}


class TableBackend(ABC):
    """
    Abstract base class for table backends.

    All operations must be idempotent: creating an existing table and
    deleting an absent table both succeed.
    """

    @abstractmethod
    async def exists(self, desired: DesiredState) -> bool:
        """Return True if the table exists."""
        pass

    @abstractmethod
    async def create_if_absent(self, desired: DesiredState) -> None:
        """Create the table; an existing table is success."""
        pass

    @abstractmethod
    async def delete_if_present(self, desired: DesiredState) -> None:
        """Delete the table; an absent table is success."""
        pass

    def close(self) -> None:
        """Release any clients held by the backend."""


def classify_google_error(error: Exception, operation: str) -> BackendError:
    """
    Map a Google client exception to the backend error taxonomy.

    Args:
        error: Exception raised by the BigQuery client
        operation: Short description used in the error message

    Returns:
        A TransientBackendError or PermanentBackendError wrapping the cause
    """
    message = f"{operation} failed: {error}"

    if isinstance(
        error,
        (
            gexc.TooManyRequests,
            gexc.ServerError,
            gexc.RetryError,
            auth_exceptions.TransportError,
            requests.exceptions.RequestException,
            ConnectionError,
            TimeoutError,
        ),
    ):
        return TransientBackendError(message)

    if isinstance(error, gexc.Forbidden):
        reasons = {e.get("reason") for e in (error.errors or []) if isinstance(e, dict)}
        if reasons & _TRANSIENT_REASONS:
            return TransientBackendError(message)

    if isinstance(error, gexc.GoogleAPICallError):
        code = error.code
        if isinstance(code, int) and code >= 500:
            return TransientBackendError(message)

    return PermanentBackendError(message)


class BigQueryTableBackend(TableBackend):
    """
    TableBackend backed by google-cloud-bigquery.

    The BigQuery client is blocking, so each call runs in a worker thread.
    One client is kept per project.
    """

    def __init__(
        self,
        location: Optional[str] = None,
        request_timeout: float = 30.0,
        client_factory: Optional[Callable[[str], bigquery.Client]] = None,
    ):
        self.location = location
        self.request_timeout = request_timeout
        self._client_factory = client_factory or self._default_client
        # Bounds the whole call including client-side retries, not one request.
        self._retry = bigquery.DEFAULT_RETRY.with_deadline(request_timeout)
        self._clients: Dict[str, bigquery.Client] = {}
        self._lock = threading.Lock()

    def _default_client(self, project: str) -> bigquery.Client:
        return bigquery.Client(project=project, location=self.location)

    def _client(self, project: str) -> bigquery.Client:
        with self._lock:
            client = self._clients.get(project)
            if client is None:
                client = self._client_factory(project)
                self._clients[project] = client
            return client

    async def _run(self, project: str, fn: Callable[[bigquery.Client], T]) -> T:
        """
        Run a client call in a worker thread.

        A thread cannot be interrupted, so when the caller is cancelled the
        call is awaited to completion before the cancellation propagates.
        """
        future = asyncio.ensure_future(
            asyncio.to_thread(lambda: fn(self._client(project)))
        )
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            if not future.done():
                logger.warning(
                    "BigQuery call cancelled, waiting for the worker thread to finish"
                )
                await asyncio.wait([future])
            if not future.cancelled():
                future.exception()
            raise

    async def _call(
        self, operation: str, project: str, fn: Callable[[bigquery.Client], T]
    ) -> T:
        try:
            return await self._run(project, fn)
        except gexc.NotFound:
            raise
        except auth_exceptions.DefaultCredentialsError as e:
            raise PermanentBackendError(f"{operation} failed: {e}") from e
        except Exception as e:
            raise classify_google_error(e, operation) from e

    async def exists(self, desired: DesiredState) -> bool:
        try:
            await self._call(
                f"get table {desired.table_id}",
                desired.project,
                lambda client: client.get_table(
                    desired.table_id, retry=self._retry, timeout=self.request_timeout
                ),
            )
        except gexc.NotFound:
            return False
        return True

    async def create_if_absent(self, desired: DesiredState) -> None:
        table = bigquery.Table(desired.table_id, schema=TABLE_SCHEMA)
        try:
            await self._call(
                f"create table {desired.table_id}",
                desired.project,
                lambda client: client.create_table(
                    table,
                    exists_ok=True,
                    retry=self._retry,
                    timeout=self.request_timeout,
                ),
            )
        except gexc.NotFound as e:
            # The dataset itself is missing; datasets are not managed here.
            raise PermanentBackendError(
                f"create table {desired.table_id} failed: {e}"
            ) from e
        logger.info(f"Created BigQuery table {desired.table_id}")

    async def delete_if_present(self, desired: DesiredState) -> None:
        try:
            await self._call(
                f"delete table {desired.table_id}",
                desired.project,
                lambda client: client.delete_table(
                    desired.table_id,
                    not_found_ok=True,
                    retry=self._retry,
                    timeout=self.request_timeout,
                ),
            )
        except gexc.NotFound:
            # Dataset already gone, so is the table.
            pass
        logger.info(f"Deleted BigQuery table {desired.table_id} (if present)")

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            try:
                client.close()
            except Exception as e:
                logger.warning(f"Error closing BigQuery client: {e}")
