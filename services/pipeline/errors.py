"""
Failure taxonomy for the write pipeline.

Every failure the Processor sees is sorted into one of two buckets:
fatal (dead-letter now, retrying cannot help) or transient (retry with
backoff until the attempt budget runs out). `failure_kind` is the tag
written onto DLQ entries so operators can tell the two apart.
"""
from __future__ import annotations


class PipelineError(Exception):
    failure_kind = "PipelineError"


class PayloadValidationError(PipelineError):
    """Malformed, unversioned or schema-violating payload. Never retried."""
    failure_kind = "ValidationError"


class MutationRejectedError(PayloadValidationError):
    """
    The persistence layer refused the mutation for a business reason
    (e.g. updating a restaurant that does not exist). Retrying will not
    change the answer, so it is handled like a validation failure.
    """


class TransientInfraError(PipelineError):
    """Timeouts, throttling, connection resets. Retried per backoff policy."""
    failure_kind = "TransientInfraError"


class PersistenceUnavailableError(TransientInfraError):
    pass


class EventBusUnavailableError(TransientInfraError):
    pass


class QueueUnavailableError(TransientInfraError):
    pass


class LedgerClaimConflict(TransientInfraError):
    """Another worker holds a live claim on the same request_id."""

    def __init__(self, request_id: str, claimed_at: float):
        self.request_id = request_id
        self.claimed_at = claimed_at
        super().__init__(f"Request {request_id!r} is already being applied by another worker")


class TerminalRetryExhaustion(PipelineError):
    """Attempt bound reached. The last underlying error is preserved."""
    failure_kind = "TerminalRetryExhaustion"

    def __init__(self, attempts: int, last_error: str):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


class SubscriberDeliveryFailure(PipelineError):
    """
    A subscriber NACKed, timed out or raised. Scoped to that subscriber:
    the originating mutation already committed and is unaffected.
    """
    failure_kind = "SubscriberDeliveryFailure"

    def __init__(self, subscription_id: str, reason: str):
        self.subscription_id = subscription_id
        self.reason = reason
        super().__init__(f"Delivery to {subscription_id!r} failed: {reason}")


def describe(exc: BaseException) -> str:
    """Compact `Type: message` string stored as last_error."""
    return f"{type(exc).__name__}: {exc}"[:1000]
