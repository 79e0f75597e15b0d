"""
HTTP client for a remote facilitator.

Lets the challenge middleware run in front of a resource server that does
not host the facilitator itself. Exposes the same create_request / verify /
get_status calls as FacilitatorService and translates HTTP error responses
back into the facilitator error hierarchy.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests
from requests.exceptions import RequestException

from app.api.models.payment import PaymentRecordResponse
from app.facilitator.errors import (
    ChainQueryError,
    ConflictError,
    ExpiredError,
    FacilitatorError,
    NotFoundError,
    RateLimitError,
    ValidationError,
    VerificationFailedError,
)
from app.facilitator.models import PaymentRequest, format_amount

logger = logging.getLogger(__name__)


class FacilitatorClient:
    """Facilitator API over HTTP, using ``requests``."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/") + "/"
        self.timeout_seconds = timeout_seconds
        self._session = session or requests.Session()

    def create_request(
        self,
        seller: str,
        amount: Decimal,
        token: str,
        token_mint: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        client_ip: Optional[str] = None,
    ) -> PaymentRequest:
        body: Dict[str, Any] = {
            "seller": seller,
            "amount": format_amount(Decimal(str(amount))),
            "token": token,
        }
        if token_mint:
            body["tokenMint"] = token_mint
        if metadata:
            body["metadata"] = metadata

        created = self._request(
            "POST", "payment/request", json=body, headers=self._forwarding_headers(client_ip)
        )
        # The creation response is a subset of the record; fetch the full projection
        return self.get_status(created["id"])

    def verify(self, payment_id: str, signature: str, client_ip: Optional[str] = None) -> PaymentRequest:
        self._request(
            "POST",
            "payment/verify",
            payment_id=payment_id,
            json={"paymentId": payment_id, "signature": signature},
            headers=self._forwarding_headers(client_ip),
        )
        return self.get_status(payment_id)

    def get_status(self, payment_id: str) -> PaymentRequest:
        record = self._request("GET", f"payment/{payment_id}", payment_id=payment_id)
        return PaymentRecordResponse.model_validate(record).to_payment_request()

    def close(self) -> None:
        self._session.close()

    @staticmethod
    def _forwarding_headers(client_ip: Optional[str]) -> Dict[str, str]:
        # Facilitator quotas are keyed on the first X-Forwarded-For entry
        if not client_ip or client_ip == "unknown":
            return {}
        return {"X-Forwarded-For": client_ip}

    def _request(
        self,
        method: str,
        path: str,
        payment_id: Optional[str] = None,
        **kwargs,
    ) -> Dict[str, Any]:
        url = urljoin(self.base_url, path)
        try:
            response = self._session.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except RequestException as e:
            logger.error(f"Facilitator request failed ({method} {url}): {e}")
            raise ChainQueryError("Facilitator unavailable") from e

        if response.status_code < 400:
            return response.json()

        try:
            body = response.json()
        except ValueError:
            body = {}
        raise self._error_from_response(response.status_code, body, payment_id or "")

    @staticmethod
    def _error_from_response(status_code: int, body: Dict[str, Any], payment_id: str) -> FacilitatorError:
        reason = body.get("reason") or ""
        message = body.get("error") or f"Facilitator returned HTTP {status_code}"

        if status_code == 400:
            return ValidationError(message)
        if status_code == 404:
            return NotFoundError(payment_id)
        if status_code == 402:
            if reason == ExpiredError.reason:
                return ExpiredError(payment_id)
            return VerificationFailedError(reason or "verification_failed")
        if status_code == 409:
            return ConflictError(payment_id)
        if status_code == 429:
            return RateLimitError(message)
        if status_code >= 500:
            logger.error(f"Facilitator error HTTP {status_code}: {body}")
            return ChainQueryError("Facilitator unavailable")
        return FacilitatorError(message, reason=reason or None)
