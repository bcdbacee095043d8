"""
Billing error taxonomy.

Route handlers map these to HTTP responses; services raise them and never
swallow storage or payment provider failures.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for entitlement and billing failures."""


class ConfigurationError(BillingError):
    """Unknown plan or price id, missing secret. Fatal, never retried."""


class ValidationError(BillingError):
    """Malformed request from the caller."""


class AlreadyInitializedError(BillingError):
    """Another writer opened the ledger row first; re-read and continue."""

    def __init__(self, user_id: str, period_start=None):
        self.user_id = user_id
        self.period_start = period_start
        super().__init__(f"Usage ledger already initialized for user {user_id}")


class StaleEventError(BillingError):
    """Webhook event superseded by a later one that was already applied."""

    def __init__(self, event_id: str, reason: str):
        self.event_id = event_id
        self.reason = reason
        super().__init__(f"Stale event {event_id}: {reason}")


class ExternalServiceError(BillingError):
    """Payment provider or storage failure."""

    def __init__(self, message: str, service: str = "payments", retryable: bool = True):
        self.service = service
        self.retryable = retryable
        super().__init__(message)


class StorageUnavailable(ExternalServiceError):
    def __init__(self, message: str):
        super().__init__(message, service="storage", retryable=True)


class InvariantViolation(BillingError):
    """Ledger state that must never exist, e.g. a negative counter."""


class InvalidSignature(BillingError):
    """Webhook signature did not verify. Not our event."""


class ProcessingFailed(BillingError):
    """Webhook handler failed after the event was recorded."""

    def __init__(self, event_id: str, error: str, retryable: bool = True):
        self.event_id = event_id
        self.error = error
        self.retryable = retryable
        super().__init__(f"Processing failed for event {event_id}: {error}")


class QuotaExhaustedError(BillingError):
    """Recorder found neither base quota nor overage left."""

    def __init__(self, user_id: str, model_class: str, row_id: Optional[str] = None):
        self.user_id = user_id
        self.model_class = model_class
        self.row_id = row_id
        super().__init__(f"No {model_class} quota left for user {user_id}")
