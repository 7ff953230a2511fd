"""
Error taxonomy for reconciliation.

Every failure a reconcile pass can raise derives from ReconcileError. The
``retryable`` flag tells the controller whether to requeue the key with
backoff or to park it until the declaration changes.
"""


class ReconcileError(Exception):
    """Base class for reconciliation failures."""

    retryable = True
    reason = "ReconcileError"


class NotFoundError(ReconcileError):
    """The declaration does not exist in the store."""

    reason = "NotFound"


class ConflictError(ReconcileError):
    """An update carried a stale resourceVersion."""

    reason = "Conflict"


class StoreError(ReconcileError):
    """The control plane rejected or failed a request."""

    reason = "StoreError"


class ConfigError(ReconcileError):
    """The declaration is missing or carries invalid required fields."""

    retryable = False
    reason = "ConfigError"


class BackendError(ReconcileError):
    """The table backend failed."""

    reason = "BackendError"


class TransientBackendError(BackendError):
    """Network, rate-limit or server-side failure; safe to retry."""

    reason = "BackendUnavailable"


class PermanentBackendError(BackendError):
    """The backend refused the request; retrying will not help."""

    retryable = False
    reason = "BackendRejected"


class ReconcileTimeoutError(ReconcileError):
    """A reconcile pass exceeded its deadline."""

    reason = "Timeout"


class MalformedObjectError(ValueError):
    """A watch event or stored object did not have the expected shape."""
