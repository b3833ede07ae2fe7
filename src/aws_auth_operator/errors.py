"""Error taxonomy for the AWS Auth Operator.

Every failure inside a reconciliation is converted into one of these
classes at the client boundary. The reconciler maps the class to a
requeue decision and a status condition.
"""

from __future__ import annotations

from .constants import (
    REASON_CLOUD_ERROR,
    REASON_CONFIGURATION_ERROR,
    REASON_INVALID_SPEC,
    REASON_STORE_ERROR,
    REASON_THROTTLED,
)


class OperatorError(Exception):
    """Base class for all operator errors."""

    #: Whether retrying after a backoff can be expected to help.
    retryable = False
    #: Condition reason reported on the Binding.
    reason = "Error"


class ValidationError(OperatorError):
    """The Binding spec is malformed. Fixed only by a spec change."""

    reason = REASON_INVALID_SPEC


class ConfigurationError(OperatorError):
    """Operator or cluster configuration prevents progress."""

    reason = REASON_CONFIGURATION_ERROR


class NotFoundError(OperatorError):
    """The remote object does not exist."""

    reason = "NotFound"


class CloudError(OperatorError):
    """An AWS API call failed."""

    reason = REASON_CLOUD_ERROR

    def __init__(self, message: str, code: str | None = None, operation: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.operation = operation


class TransientCloudError(CloudError):
    """Throttling, service unavailability or network failure."""

    retryable = True
    reason = REASON_THROTTLED


class PermanentCloudError(CloudError):
    """Access denied, malformed document or another non-retryable failure."""


class StoreError(OperatorError):
    """A Kubernetes API call failed."""

    reason = REASON_STORE_ERROR


class TransientStoreError(StoreError):
    """Kubernetes API failure that may succeed on retry."""

    retryable = True


class ConflictError(TransientStoreError):
    """Optimistic concurrency precondition failed; refetch and recompute."""

    reason = "Conflict"


class FatalBootstrapError(OperatorError):
    """Startup cannot proceed; the process must exit non-zero."""

    reason = "BootstrapFailed"
