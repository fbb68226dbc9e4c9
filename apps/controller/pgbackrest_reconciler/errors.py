"""Error taxonomy for pgBackRest reconciliation.

Every error raised by a reconcile sub-step derives from ``BackrestError`` so
the cycle driver can fold it into the requeue decision without aborting the
remaining sub-steps.
"""

from __future__ import annotations

from kubernetes.client.rest import ApiException


class BackrestError(Exception):
    """Base class for all reconciliation errors."""


class StoreError(BackrestError):
    """A store call failed (transport, server or optimistic-concurrency error).

    Always retryable via requeue.
    """

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class NotFoundError(StoreError):
    """The requested resource does not exist."""


class ConflictError(StoreError):
    """Stale write or create of an already existing resource."""


class ValidationError(BackrestError):
    """A desired object or the cluster spec was rejected as invalid."""


class ConsistencyError(BackrestError):
    """Expected exactly one matching object but observed zero or many.

    Signals a stale observation cache; retried on the next cycle.
    """


class ExternalCommandError(BackrestError):
    """The pgBackRest command run inside a container failed."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr


class ConfigPropagationPending(BackrestError):
    """The container does not yet see the current configuration hash.

    Not a failure: the caller schedules a delayed retry and records no event.
    """


class AggregateError(BackrestError):
    """Several independent failures collected across a loop."""

    def __init__(self, errors: list[Exception]):
        self.errors = list(errors)
        if len(self.errors) == 1:
            message = str(self.errors[0])
        else:
            message = "[" + ", ".join(str(err) for err in self.errors) + "]"
        super().__init__(message)


def aggregate(errors: list[Exception]) -> AggregateError | None:
    """Combine collected errors, returning None when there are none."""
    if not errors:
        return None
    return AggregateError(errors)


def from_api_exception(exc: ApiException, action: str) -> StoreError | ValidationError:
    """Translate a Kubernetes ``ApiException`` into the reconcile taxonomy.

    Args:
        exc: Exception raised by the Kubernetes client
        action: Short description of the failed call (used in the message)

    Returns:
        The matching error instance (not raised)
    """
    status = getattr(exc, 'status', None)
    reason = getattr(exc, 'reason', None) or str(exc)
    message = f"{action}: {status} {reason}"

    if status == 404:
        return NotFoundError(message, status=status)
    if status == 409:
        return ConflictError(message, status=status)
    if status in (400, 422):
        return ValidationError(message)
    return StoreError(message, status=status)


class CycleCancelled(Exception):
    """The reconcile cycle was stopped before all sub-steps ran.

    Not a ``BackrestError``, so per-step handlers let it through.
    """
