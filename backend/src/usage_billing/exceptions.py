"""Billing error taxonomy.

Every error carries the HTTP status and machine-readable code it maps to, so the
API layer can render it without a lookup table of its own.
"""


class BillingError(Exception):
    """Base class for all billing engine errors."""

    status_code = 500
    code = "billing_error"
    remediation: str | None = None

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context


class ValidationError(BillingError, ValueError):
    """Input rejected before any mutation took place."""

    status_code = 400
    code = "validation_error"
    remediation = "Check the request values against the API documentation"


class NotFoundError(BillingError):
    """A referenced user, subscription, plan or record does not exist."""

    status_code = 404
    code = "not_found"
    remediation = "Verify the identifier exists"


class SignatureVerificationError(BillingError):
    """Webhook signature missing or not matching the payload."""

    status_code = 403
    code = "invalid_signature"

    def __init__(self, message: str, missing: bool = False, **context):
        super().__init__(message, **context)
        self.missing = missing
        if missing:
            self.status_code = 401
            self.code = "missing_signature"


class ConcurrencyConflict(BillingError):
    """Lock or serialization failure; the whole operation is safe to retry."""

    status_code = 409
    code = "concurrency_conflict"
    remediation = "Retry the request"


class InsufficientContextError(BillingError):
    """An operation referenced state that was never established."""

    status_code = 409
    code = "insufficient_context"


class InsufficientBalanceError(BillingError):
    """Account balance is below what a billable action requires."""

    status_code = 402
    code = "insufficient_balance"
    remediation = "Top up the account balance and retry"


class ExternalProviderError(BillingError):
    """Payment provider timed out or returned a server error."""

    status_code = 502
    code = "external_provider_error"
    remediation = "Retry with backoff"

    def __init__(self, message: str, retryable: bool = True, **context):
        super().__init__(message, **context)
        self.retryable = retryable
