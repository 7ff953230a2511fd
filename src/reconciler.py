"""
Reconciler - drives one BigQuery table toward its declaration.

Decisions are made from a fresh read of the declaration on every pass,
never from the event that triggered it, so duplicated, replayed and
reordered events are harmless. The decision depends on two facts:

    finalizer  deleting   action
    ---------  --------   ------------------------------------------------
    no         no         add the finalizer and persist; nothing else
    yes        no         create the table if it is absent
    yes        yes        delete the table, then remove the finalizer
    no         yes        nothing, cleanup already acknowledged

The finalizer is persisted before any table is created and removed only
after the delete has succeeded, so the table can never outlive its record.
"""

import logging
from typing import Optional

from backend import TableBackend
from desired_state import extract_desired_state
from errors import ConflictError, NotFoundError
from finalizers import add_finalizer, has_finalizer, remove_finalizer
from models import (
    Declaration,
    ReconcileAction,
    ReconcileResult,
    ResourceKey,
)
from store import DeclarationStore

logger = logging.getLogger(__name__)


class Reconciler:
    """Reconciles BigQueryTable declarations one key at a time."""

    def __init__(
        self,
        store: DeclarationStore,
        backend: TableBackend,
        finalizer: str,
        default_project: Optional[str] = None,
        conflict_retries: int = 3,
    ):
        self.store = store
        self.backend = backend
        self.finalizer = finalizer
        self.default_project = default_project
        self.conflict_retries = conflict_retries

    async def reconcile(self, key: ResourceKey) -> ReconcileResult:
        """
        Run one reconciliation pass for a key.

        A stale-version conflict re-reads the declaration and re-runs the
        whole decision, up to conflict_retries times.

        Raises:
            ReconcileError: Subclass describing why the pass failed
        """
        attempt = 0
        while True:
            declaration = await self.store.get(key)
            try:
                result = await self._reconcile_declaration(key, declaration)
            except ConflictError:
                if attempt >= self.conflict_retries:
                    raise
                attempt += 1
                logger.info(
                    f"Conflict updating {key}, re-reading "
                    f"(attempt {attempt}/{self.conflict_retries})"
                )
                continue

            logger.info(f"Reconciled {key}: {result.action.value}")
            return result

    async def _reconcile_declaration(
        self, key: ResourceKey, declaration: Optional[Declaration]
    ) -> ReconcileResult:
        if declaration is None:
            # The finalizer kept the record alive until cleanup was done.
            return ReconcileResult(
                action=ReconcileAction.NOT_FOUND,
                message="Declaration not found, nothing to do",
            )

        guarded = has_finalizer(declaration.metadata.finalizers, self.finalizer)
        deleting = declaration.metadata.deletion_requested

        if not guarded and deleting:
            return ReconcileResult(
                action=ReconcileAction.ALREADY_FINALIZED,
                declaration=declaration,
                message="Cleanup already completed",
            )

        if not guarded:
            # Table creation waits for the next pass, once the finalizer is durable.
            updated = declaration.with_finalizers(
                add_finalizer(declaration.metadata.finalizers, self.finalizer)
            )
            stored = await self._persist(updated)
            if stored is None:
                return ReconcileResult(
                    action=ReconcileAction.NOT_FOUND,
                    message="Declaration disappeared before the finalizer was added",
                )
            return ReconcileResult(
                action=ReconcileAction.FINALIZER_ADDED,
                declaration=stored,
                message="Finalizer added",
            )

        desired = extract_desired_state(declaration, self.default_project)

        if deleting:
            await self.backend.delete_if_present(desired)
            logger.info(f"Table {desired.table_id} absent, releasing {key}")

            updated = declaration.with_finalizers(
                remove_finalizer(declaration.metadata.finalizers, self.finalizer)
            )
            stored = await self._persist(updated)
            return ReconcileResult(
                action=ReconcileAction.DELETED,
                declaration=stored,
                desired=desired,
                message=f"Table {desired.table_id} deleted",
            )

        if await self.backend.exists(desired):
            return ReconcileResult(
                action=ReconcileAction.IN_SYNC,
                declaration=declaration,
                desired=desired,
                message=f"Table {desired.table_id} exists",
            )

        await self.backend.create_if_absent(desired)
        return ReconcileResult(
            action=ReconcileAction.CREATED,
            declaration=declaration,
            desired=desired,
            message=f"Table {desired.table_id} created",
        )

    async def _persist(self, declaration: Declaration) -> Optional[Declaration]:
        """Write the declaration; None if it was removed in the meantime."""
        try:
            return await self.store.update(declaration)
        except NotFoundError:
            logger.info(f"{declaration.key} was removed before it could be updated")
            return None
