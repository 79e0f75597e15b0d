"""
Payment facilitator core.

Key components:
- models: PaymentRequest and SettlementDetails records
- store: PaymentRequestStore with compare-and-swap status transitions
- verification: VerificationEngine and the amount tolerance policy
- service: FacilitatorService, the API used by HTTP endpoints and middleware
- errors: error taxonomy mapped to HTTP status codes
"""
from app.facilitator.errors import FacilitatorError
from app.facilitator.models import PaymentRequest, PaymentStatus
from app.facilitator.service import FacilitatorService

__all__ = ["FacilitatorError", "FacilitatorService", "PaymentRequest", "PaymentStatus"]
