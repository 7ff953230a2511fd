"""
BigQueryTable Controller - Main reconciliation loop.

Similar to Kubernetes controllers: a dispatcher turns watch events into
keys on a work queue and a bounded pool of workers reconciles them. The
queue serializes work per key, so one declaration is never reconciled by
two workers at the same time.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import ControllerConfig
from errors import ReconcileError, ReconcileTimeoutError
from models import Declaration, ReconcileAction, ReconcileResult, ResourceKey
from reconciler import Reconciler
from store import DeclarationStore
from watcher import KubernetesEventSource
from workqueue import WorkQueue

logger = logging.getLogger(__name__)

READY_CONDITION = "Ready"

# Results that leave no object (or no owned object) to report on.
_SILENT_ACTIONS = {
    ReconcileAction.FINALIZER_ADDED,
    ReconcileAction.DELETED,
    ReconcileAction.ALREADY_FINALIZED,
    ReconcileAction.NOT_FOUND,
}


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _find_condition(
    status: Dict[str, Any], condition_type: str
) -> Optional[Dict[str, Any]]:
    for condition in status.get("conditions") or []:
        if isinstance(condition, dict) and condition.get("type") == condition_type:
            return condition
    return None


class Controller:
    """
    Main controller that implements the reconciliation loop.

    Consumes the event source, queues keys, and runs reconcile passes with
    a deadline. Failures are requeued with backoff or parked until the
    declaration changes, depending on whether they are retryable.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        event_source: KubernetesEventSource,
        store: DeclarationStore,
        config: Optional[ControllerConfig] = None,
        queue: Optional[WorkQueue] = None,
    ):
        self.reconciler = reconciler
        self.event_source = event_source
        self.store = store
        self.config = config or ControllerConfig()
        self.queue: WorkQueue = queue or WorkQueue(
            base_delay=self.config.backoff_base_delay,
            max_delay=self.config.backoff_max_delay,
            jitter_factor=self.config.backoff_jitter_factor,
        )
        self.running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the dispatcher, the resync loop and the worker pool."""
        logger.info(
            f"Starting BigQueryTable controller "
            f"({self.config.max_concurrent_reconciles} workers)"
        )
        self.running = True
        self._shutdown_event.clear()

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        ]
        self._tasks.append(asyncio.create_task(self._dispatch_loop()))
        if self.config.resync_interval > 0:
            self._tasks.append(asyncio.create_task(self._resync_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Controller tasks cancelled")

    async def stop(self):
        """Stop the controller gracefully."""
        logger.info("Stopping BigQueryTable controller")
        self.running = False
        self._shutdown_event.set()
        self.event_source.stop()
        self.queue.shutdown()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._tasks = []

    def _enqueue(self, key: ResourceKey):
        # A failed key is retried when its backoff expires. Our own status
        # write on failure also produces an event for it.
        if self.queue.is_backing_off(key):
            logger.debug(f"Skipping event for {key}, retry already scheduled")
            return
        self.queue.add(key)

    async def _dispatch_loop(self):
        """Turn events into queued keys. Event kinds are not interpreted."""
        while self.running:
            try:
                async for event in self.event_source.events():
                    if not self.running:
                        return
                    logger.debug(f"Event {event.event_type.value} for {event.key}")
                    self._enqueue(event.key)
                return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in dispatch loop: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _resync_loop(self):
        """Periodically queue every declaration to catch missed events and drift."""
        while self.running:
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(), timeout=self.config.resync_interval
                )
                return
            except asyncio.TimeoutError:
                pass

            try:
                declarations, _ = await self.store.list()
                for declaration in declarations:
                    self._enqueue(declaration.key)
                logger.info(f"Resync queued {len(declarations)} declarations")
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)

    async def _worker(self, worker_id: int):
        """Process keys until the queue shuts down."""
        while True:
            key = await self.queue.get()
            if key is None:
                logger.debug(f"Worker {worker_id} exiting")
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: ResourceKey) -> Optional[ReconcileResult]:
        """
        Run one reconcile pass for a key and route its outcome.

        Never raises: every failure is logged, reported and requeued or
        parked.
        """
        start_time = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self.reconciler.reconcile(key), timeout=self.config.reconcile_timeout
            )
        except asyncio.TimeoutError:
            await self._handle_failure(
                key,
                ReconcileTimeoutError(
                    f"reconcile exceeded {self.config.reconcile_timeout}s"
                ),
            )
            return None
        except ReconcileError as e:
            await self._handle_failure(key, e)
            return None
        except Exception as e:
            logger.error(f"Unexpected error reconciling {key}: {e}", exc_info=True)
            await self._handle_failure(key, ReconcileError(str(e)))
            return None

        self.queue.forget(key)
        duration = time.monotonic() - start_time
        logger.debug(f"Reconcile of {key} took {duration:.2f}s")

        if result.action == ReconcileAction.FINALIZER_ADDED:
            # Tables are created on the next pass.
            self.queue.add(key)

        if result.action not in _SILENT_ACTIONS:
            await self._report_status(
                key,
                result.declaration,
                ready=True,
                reason="Reconciled",
                message=result.message,
                table_id=result.desired.table_id if result.desired else None,
            )
        return result

    async def _handle_failure(self, key: ResourceKey, error: ReconcileError):
        if error.retryable:
            delay = self.queue.add_rate_limited(key)
            logger.warning(
                f"Failed to reconcile {key} ({error.reason}): {error}; "
                f"retry {self.queue.num_requeues(key)} in {delay:.1f}s"
            )
        else:
            self.queue.forget(key)
            logger.error(
                f"Reconcile of {key} blocked ({error.reason}): {error}; "
                f"waiting for the declaration to change"
            )

        await self._report_status(
            key, None, ready=False, reason=error.reason, message=str(error)
        )

    async def _report_status(
        self,
        key: ResourceKey,
        declaration: Optional[Declaration],
        ready: bool,
        reason: str,
        message: str,
        table_id: Optional[str] = None,
    ):
        """Write the Ready condition, only when it changed."""
        if not self.config.report_status:
            return

        try:
            if declaration is None:
                declaration = await self.store.get(key)
                if declaration is None:
                    return

            generation = declaration.metadata.generation
            status_value = "True" if ready else "False"
            current = _find_condition(declaration.status, READY_CONDITION)
            if (
                current is not None
                and current.get("status") == status_value
                and current.get("reason") == reason
                and current.get("message") == message
                and current.get("observedGeneration") == generation
                and (table_id is None or declaration.status.get("tableId") == table_id)
            ):
                return

            transition_time = _now()
            if current is not None and current.get("status") == status_value:
                transition_time = current.get("lastTransitionTime") or transition_time

            status: Dict[str, Any] = {
                "observedGeneration": generation,
                "conditions": [
                    {
                        "type": READY_CONDITION,
                        "status": status_value,
                        "reason": reason,
                        "message": message,
                        "lastTransitionTime": transition_time,
                        "observedGeneration": generation,
                    }
                ],
            }
            if table_id:
                status["tableId"] = table_id

            await self.store.patch_status(key, status)
        except Exception as e:
            logger.warning(f"Could not update status of {key}: {e}")

    def trigger_reconciliation(self, key: ResourceKey):
        """Manually trigger reconciliation for a specific declaration."""
        logger.info(f"Manually triggering reconciliation for {key}")
        self.queue.add(key)
