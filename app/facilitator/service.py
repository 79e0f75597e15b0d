"""
Facilitator service: the externally callable API over the store and the
verification engine.
"""
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional

from app.facilitator.errors import ValidationError
from app.facilitator.models import PaymentRequest, utc_now
from app.facilitator.store import DuplicatePaymentIdError, PaymentRequestStore
from app.facilitator.verification import VerificationEngine
from app.services.ledger import ChainQueryAdapter

logger = logging.getLogger(__name__)

MAX_METADATA_ENTRIES = 16
MAX_METADATA_VALUE_LENGTH = 256
MAX_ID_ATTEMPTS = 5


class FacilitatorService:
    """
    Creates payment requests, verifies settlements and reports status.

    Owns nothing global: the store, engine and adapter are injected and
    torn down together through ``close()``.
    """

    def __init__(
        self,
        store: PaymentRequestStore,
        engine: VerificationEngine,
        adapter: ChainQueryAdapter,
        memo_prefix: str = "x402",
        payment_timeout_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.engine = engine
        self.adapter = adapter
        self.memo_prefix = memo_prefix
        self.payment_timeout = timedelta(seconds=payment_timeout_seconds)
        self._clock = clock

    def memo_for(self, payment_id: str) -> str:
        return f"{self.memo_prefix}:{payment_id}"

    def create_request(
        self,
        seller: str,
        amount: Any,
        token: str,
        token_mint: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
        client_ip: Optional[str] = None,
    ) -> PaymentRequest:
        """
        Create and store a new pending payment request.

        Raises:
            ValidationError: for a bad seller, amount, token or metadata
        """
        amount = self._parse_amount(amount)
        if not seller or not self.adapter.validate_address(seller):
            raise ValidationError(f"Invalid seller address for {self.adapter.chain_name}")

        token = (token or "").strip().upper()
        if not token:
            raise ValidationError("token is required")
        token_mint = self._resolve_mint(token, token_mint)
        metadata = self._validate_metadata(metadata)

        for _ in range(MAX_ID_ATTEMPTS):
            payment_id = str(uuid.uuid4())
            now = self._clock()
            request = PaymentRequest(
                id=payment_id,
                seller=seller,
                amount=amount,
                token=token,
                token_mint=token_mint,
                memo=self.memo_for(payment_id),
                created_at=now,
                expires_at=now + self.payment_timeout,
                metadata=metadata,
            )
            try:
                self.store.put(request)
            except DuplicatePaymentIdError:
                logger.warning(f"Payment id collision on {payment_id}, regenerating")
                continue
            logger.info(
                f"Created payment request {payment_id}: {amount} {token} to {seller} "
                f"(client {client_ip or 'unknown'})"
            )
            return request

        raise RuntimeError("Could not allocate a unique payment id")

    def verify(self, payment_id: str, signature: str, client_ip: Optional[str] = None) -> PaymentRequest:
        """Verify a settlement signature for a payment request."""
        logger.debug(f"Verifying {payment_id} with {signature} (client {client_ip or 'unknown'})")
        if not payment_id:
            raise ValidationError("paymentId is required")
        if not signature or not self.adapter.validate_reference(signature):
            raise ValidationError("signature is not a valid transaction reference")
        return self.engine.verify(payment_id, signature)

    def get_status(self, payment_id: str) -> PaymentRequest:
        return self.store.get(payment_id)

    def sweep_expired(self) -> Dict[str, int]:
        return self.store.sweep_expired()

    def health(self) -> Dict[str, Any]:
        """Liveness snapshot. Never queries the ledger."""
        return {
            "status": "ok",
            "network": self.adapter.chain_name,
            "requests": self.store.count_by_status(),
        }

    def close(self) -> None:
        self.store.close()
        self.adapter.close()

    def _parse_amount(self, amount: Any) -> Decimal:
        if isinstance(amount, bool):
            raise ValidationError("amount must be a decimal number")
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            raise ValidationError("amount must be a decimal number")
        if not value.is_finite() or value <= 0:
            raise ValidationError("amount must be greater than zero")
        return value

    def _resolve_mint(self, token: str, token_mint: Optional[str]) -> Optional[str]:
        if self.adapter.is_native(token):
            if token_mint:
                raise ValidationError(f"tokenMint must not be set for native {token}")
            return None
        if token_mint:
            if not self.adapter.validate_address(token_mint):
                raise ValidationError("Invalid tokenMint address")
            return token_mint
        default = self.adapter.default_mint(token)
        if default is None:
            raise ValidationError(f"tokenMint is required for token {token}")
        return default

    def _validate_metadata(self, metadata: Optional[Dict[str, Any]]) -> Dict[str, str]:
        if not metadata:
            return {}
        if len(metadata) > MAX_METADATA_ENTRIES:
            raise ValidationError(f"metadata may hold at most {MAX_METADATA_ENTRIES} entries")
        cleaned = {}
        for key, value in metadata.items():
            value = str(value)
            if len(value) > MAX_METADATA_VALUE_LENGTH:
                raise ValidationError(f"metadata value for '{key}' is too long")
            cleaned[str(key)] = value
        return cleaned
