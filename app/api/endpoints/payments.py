# app/api/endpoints/payments.py
from fastapi import APIRouter, Depends, Path, Request, status
import logging

from app.api.models.payment import (
    PaymentRecordResponse,
    PaymentRequestCreate,
    PaymentRequestCreated,
    PaymentVerifyRequest,
    PaymentVerifyResponse,
)
from app.facilitator.errors import FacilitatorError, RateLimitError
from app.facilitator.models import format_amount
from app.facilitator.service import FacilitatorService
from app.x402 import audit
from app.x402.middleware import get_client_ip
from app.x402.ratelimit import OPERATION_CREATE, OPERATION_VERIFY, enforce_rate_limit

logger = logging.getLogger(__name__)

router = APIRouter()


def get_facilitator(request: Request) -> FacilitatorService:
    """The service instance owned by the application lifespan."""
    return request.app.state.facilitator


# Handlers are plain functions so they run in the threadpool: a client
# disconnect never interrupts a verification between ledger query and commit.

@router.post(
    "/request",
    response_model=PaymentRequestCreated,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
    summary="Create a payment request"
)
def create_payment_request(
    body: PaymentRequestCreate,
    request: Request,
    facilitator: FacilitatorService = Depends(get_facilitator),
) -> PaymentRequestCreated:
    """
    Creates a pending payment request and returns the instructions the
    payer must follow, including the memo that binds the settlement to it.

    Raises:
        400 on invalid terms, 429 when the creation quota is exhausted
    """
    client_ip = get_client_ip(request)
    try:
        enforce_rate_limit(client_ip, OPERATION_CREATE)
        payment = facilitator.create_request(
            seller=body.seller,
            amount=body.amount,
            token=body.token,
            token_mint=body.tokenMint,
            metadata=body.metadata,
            client_ip=client_ip,
        )
    except RateLimitError as e:
        audit.log_payment_rejected(None, e.reason, client_ip=client_ip)
        raise

    audit.log_request_created(
        payment_id=payment.id,
        seller=payment.seller,
        amount=format_amount(payment.amount),
        token=payment.token,
        client_ip=client_ip,
    )
    return PaymentRequestCreated.from_request(payment)


@router.post(
    "/verify",
    response_model=PaymentVerifyResponse,
    response_model_exclude_none=True,
    summary="Verify a settlement for a payment request"
)
def verify_payment(
    body: PaymentVerifyRequest,
    request: Request,
    facilitator: FacilitatorService = Depends(get_facilitator),
) -> PaymentVerifyResponse:
    """
    Checks the settlement signature against the ledger and the request terms.
    Repeating a successful call with the same signature returns the stored
    result without querying the ledger again.

    Raises:
        402 verification failed or expired, 404 unknown id, 409 a different
        signature was already accepted, 503 ledger unavailable
    """
    client_ip = get_client_ip(request)
    audit.log_verification_attempted(body.paymentId, body.signature, client_ip=client_ip)
    try:
        enforce_rate_limit(client_ip, OPERATION_VERIFY)
        payment = facilitator.verify(body.paymentId, body.signature, client_ip=client_ip)
    except FacilitatorError as e:
        audit.log_payment_rejected(body.paymentId, e.reason, body.signature, client_ip=client_ip)
        raise

    audit.log_payment_verified(payment.id, body.signature, client_ip=client_ip)
    return PaymentVerifyResponse.from_request(payment)


@router.get(
    "/{payment_id}",
    response_model=PaymentRecordResponse,
    response_model_exclude_none=True,
    summary="Get payment request status"
)
def get_payment(
    payment_id: str = Path(..., description="The payment request id."),
    facilitator: FacilitatorService = Depends(get_facilitator),
) -> PaymentRecordResponse:
    """Current state of a payment request. Overdue pending requests read as expired."""
    return PaymentRecordResponse.from_request(facilitator.get_status(payment_id))
