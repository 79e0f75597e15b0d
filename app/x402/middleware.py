"""
Challenge middleware for payment-protected routes.

This module provides HTTP middleware that:
1. Intercepts requests to protected routes
2. Returns 402 Payment Required with a fresh payment request when no proof is sent
3. Verifies X-Payment-Id / X-Payment-Signature proof via the facilitator
4. Invokes the protected handler only after successful verification
5. Rejects partial or malformed proof headers with 400

Prices and assets come from the route configuration, never from the client.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from app.facilitator.errors import (
    ChainQueryError,
    FacilitatorError,
    RateLimitError,
    ValidationError,
    VerificationFailedError,
)
from app.facilitator.models import PaymentRequest, PaymentStatus, format_amount
from app.x402 import audit
from app.x402.headers import X_PAYMENT_ID, ChallengeHeaders, parse_proof_headers
from app.x402.ratelimit import (
    OPERATION_CREATE,
    OPERATION_VERIFY,
    enforce_rate_limit,
    get_rate_limit_headers,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProtectedRoute:
    """Payment terms for one protected method + path prefix."""
    method: str
    path: str
    amount: Decimal
    token: str
    seller: str
    token_mint: Optional[str] = None
    description: str = "Protected resource"

    @property
    def resource(self) -> str:
        return f"{self.method.upper()} {self.path.rstrip('/') or '/'}"

    def matches(self, method: str, path: str) -> bool:
        if method.upper() != self.method.upper():
            return False
        prefix = self.path.rstrip("/")
        path = path.rstrip("/")
        return path == prefix or path.startswith(prefix + "/")


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def error_response(error: FacilitatorError) -> JSONResponse:
    """JSON error body with the error's status code (and quota headers for 429)."""
    headers = None
    if isinstance(error, RateLimitError):
        headers = get_rate_limit_headers(error.stats)
    return JSONResponse(status_code=error.status_code, content=error.to_dict(), headers=headers)


def create_402_response(
    payment: PaymentRequest,
    facilitator_url: str,
    reason: Optional[str] = None,
    description: Optional[str] = None,
) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response carrying the challenge headers.
    """
    body = {
        "error": "Payment Required",
        "code": 402,
        "payment": {
            "id": payment.id,
            "amount": format_amount(payment.amount),
            "token": payment.token,
        },
    }
    if description:
        body["payment"]["description"] = description
    if reason:
        body["reason"] = reason

    challenge = ChallengeHeaders.from_request(payment, facilitator_url)
    return JSONResponse(status_code=402, content=body, headers=challenge.to_headers())


class ChallengeMiddleware(BaseHTTPMiddleware):
    """
    Payment challenge middleware for FastAPI.

    The facilitator is any object offering create_request / verify, either
    passed in (e.g. a remote FacilitatorClient) or, by default, the
    in-process service found on ``app.state.facilitator``.
    """

    def __init__(
        self,
        app,
        routes: List[ProtectedRoute],
        facilitator_url: str,
        facilitator=None,
    ):
        super().__init__(app)
        self.routes = list(routes)
        self.facilitator_url = facilitator_url
        self._facilitator = facilitator

    def match_route(self, method: str, path: str) -> Optional[ProtectedRoute]:
        for route in self.routes:
            if route.matches(method, path):
                return route
        return None

    def get_facilitator(self, request: Request):
        if self._facilitator is not None:
            return self._facilitator
        return request.app.state.facilitator

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        route = self.match_route(request.method, request.url.path)
        if route is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        facilitator = self.get_facilitator(request)

        try:
            proof = parse_proof_headers(request.headers)
        except ValidationError as e:
            logger.warning(f"Payment: malformed proof headers from {client_ip}: {e.message}")
            return self._bad_request(e)

        if proof is None:
            logger.info(f"Payment: no proof for {route.resource} from {client_ip}, issuing challenge")
            return await self._challenge(facilitator, route, client_ip)

        audit.log_verification_attempted(proof.payment_id, proof.signature, client_ip=client_ip)
        try:
            enforce_rate_limit(client_ip, OPERATION_VERIFY)
            # Runs to completion in a worker thread even if the client goes away
            payment = await run_in_threadpool(
                facilitator.verify, proof.payment_id, proof.signature, client_ip=client_ip
            )
            self._check_route_terms(payment, route)
        except ValidationError as e:
            return self._bad_request(e)
        except (ChainQueryError, RateLimitError) as e:
            audit.log_payment_rejected(proof.payment_id, e.reason, proof.signature, client_ip=client_ip)
            return error_response(e)
        except FacilitatorError as e:
            logger.info(f"Payment: proof for {proof.payment_id} rejected ({e.reason})")
            audit.log_payment_rejected(proof.payment_id, e.reason, proof.signature, client_ip=client_ip)
            return await self._challenge(facilitator, route, client_ip, reason=e.reason)

        audit.log_payment_verified(payment.id, proof.signature, client_ip=client_ip)
        logger.info(f"Payment: {payment.id} accepted for {route.resource}")

        request.state.payment_id = payment.id
        response = await call_next(request)
        response.headers[X_PAYMENT_ID] = payment.id
        return response

    async def _challenge(
        self,
        facilitator,
        route: ProtectedRoute,
        client_ip: str,
        reason: Optional[str] = None,
    ) -> Response:
        try:
            enforce_rate_limit(client_ip, OPERATION_CREATE)
            payment = await run_in_threadpool(
                facilitator.create_request,
                seller=route.seller,
                amount=route.amount,
                token=route.token,
                token_mint=route.token_mint,
                metadata={"resource": route.resource},
                client_ip=client_ip,
            )
        except ValidationError as e:
            logger.error(f"Payment: route {route.resource} has invalid payment terms: {e.message}")
            return JSONResponse(
                status_code=500,
                content={"error": "Payment configuration error", "reason": "internal_error"},
            )
        except FacilitatorError as e:
            audit.log_payment_rejected(None, e.reason, client_ip=client_ip)
            return error_response(e)

        audit.log_challenge_issued(
            payment_id=payment.id,
            resource=route.resource,
            amount=format_amount(payment.amount),
            token=payment.token,
            reason=reason,
            client_ip=client_ip,
        )
        return create_402_response(
            payment, self.facilitator_url, reason=reason, description=route.description
        )

    @staticmethod
    def _check_route_terms(payment: PaymentRequest, route: ProtectedRoute) -> None:
        """
        A verified payment only unlocks the route it was issued for.

        Raises:
            VerificationFailedError: with reason ``route_mismatch``
        """
        if payment.status is not PaymentStatus.VERIFIED:
            raise VerificationFailedError("verification_failed")
        mismatched = (
            payment.metadata.get("resource") != route.resource
            or payment.seller != route.seller
            or payment.token != route.token.upper()
            or (route.token_mint is not None and payment.token_mint != route.token_mint)
            or payment.amount < route.amount
        )
        if mismatched:
            logger.warning(f"Payment: {payment.id} was not issued for {route.resource}")
            raise VerificationFailedError("route_mismatch")

    @staticmethod
    def _bad_request(error: ValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Bad Request", "reason": error.reason, "detail": error.message},
        )
