"""
Error taxonomy for the payment facilitator.

Every error carries a stable HTTP status code and a machine-readable
``reason``. Messages are safe to show to clients; ledger internals are
logged where they occur and never attached to these exceptions.
"""
from typing import Optional


class FacilitatorError(Exception):
    """Base error for facilitator failures."""

    status_code = 500
    reason = "internal_error"

    def __init__(self, message: str, reason: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if reason is not None:
            self.reason = reason

    def to_dict(self) -> dict:
        return {"error": self.message, "reason": self.reason}


class ValidationError(FacilitatorError):
    """Malformed create/verify input. Not retryable."""

    status_code = 400
    reason = "invalid_request"


class NotFoundError(FacilitatorError):
    """Unknown payment id."""

    status_code = 404
    reason = "payment_not_found"

    def __init__(self, payment_id: str):
        super().__init__(f"Payment request '{payment_id}' not found")
        self.payment_id = payment_id


class ExpiredError(FacilitatorError):
    """Deadline passed; the client must create a new request."""

    status_code = 402
    reason = "payment_expired"

    def __init__(self, payment_id: str):
        super().__init__(f"Payment request '{payment_id}' has expired")
        self.payment_id = payment_id


class VerificationFailedError(FacilitatorError):
    """
    Ledger data contradicts the request terms. Terminal for this id.

    ``reason`` names the first check that failed; ``detail`` is for
    server-side diagnostics only.
    """

    status_code = 402

    def __init__(self, reason: str, detail: Optional[str] = None):
        super().__init__("Payment verification failed", reason=reason)
        self.detail = detail


class ConflictError(FacilitatorError):
    """The request was already settled with a different reference."""

    status_code = 409
    reason = "settlement_conflict"

    def __init__(self, payment_id: str):
        super().__init__(
            f"Payment request '{payment_id}' was already settled with a different signature"
        )
        self.payment_id = payment_id


class ChainQueryError(FacilitatorError):
    """Transient ledger adapter fault. Retryable with backoff."""

    status_code = 503
    reason = "ledger_unavailable"

    def __init__(self, message: str = "Ledger temporarily unavailable"):
        super().__init__(message)


class RateLimitError(FacilitatorError):
    """Caller exceeded request-creation or verification quotas."""

    status_code = 429
    reason = "rate_limited"

    def __init__(self, message: str, stats: Optional[dict] = None):
        super().__init__(message)
        self.stats = stats or {}
