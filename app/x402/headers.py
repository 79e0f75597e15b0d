"""
Typed records for the challenge/retry header protocol.

Challenge (server -> client, with HTTP 402):
    X-Payment-Required, X-Payment-Id, X-Payment-Amount, X-Payment-Token,
    X-Payment-Token-Mint (non-native assets only), X-Payment-To,
    X-Payment-Memo, X-Payment-Facilitator

Proof (client -> server, on retry):
    X-Payment-Id, X-Payment-Signature
"""
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Dict, Mapping, Optional

from app.facilitator.errors import ValidationError
from app.facilitator.models import PaymentRequest, format_amount

X_PAYMENT_REQUIRED = "X-Payment-Required"
X_PAYMENT_ID = "X-Payment-Id"
X_PAYMENT_AMOUNT = "X-Payment-Amount"
X_PAYMENT_TOKEN = "X-Payment-Token"
X_PAYMENT_TOKEN_MINT = "X-Payment-Token-Mint"
X_PAYMENT_TO = "X-Payment-To"
X_PAYMENT_MEMO = "X-Payment-Memo"
X_PAYMENT_FACILITATOR = "X-Payment-Facilitator"
X_PAYMENT_SIGNATURE = "X-Payment-Signature"

MAX_SIGNATURE_LENGTH = 128


@dataclass(frozen=True)
class ChallengeHeaders:
    """The complete header set of a 402 challenge."""
    payment_id: str
    amount: Decimal
    token: str
    to: str
    memo: str
    facilitator: str
    token_mint: Optional[str] = None

    @classmethod
    def from_request(cls, request: PaymentRequest, facilitator_url: str) -> "ChallengeHeaders":
        return cls(
            payment_id=request.id,
            amount=request.amount,
            token=request.token,
            to=request.seller,
            memo=request.memo,
            facilitator=facilitator_url,
            token_mint=request.token_mint,
        )

    def to_headers(self) -> Dict[str, str]:
        headers = {
            X_PAYMENT_REQUIRED: "true",
            X_PAYMENT_ID: self.payment_id,
            X_PAYMENT_AMOUNT: format_amount(self.amount),
            X_PAYMENT_TOKEN: self.token,
            X_PAYMENT_TO: self.to,
            X_PAYMENT_MEMO: self.memo,
            X_PAYMENT_FACILITATOR: self.facilitator,
        }
        if self.token_mint:
            headers[X_PAYMENT_TOKEN_MINT] = self.token_mint
        return headers

    @classmethod
    def parse(cls, headers: Mapping[str, str]) -> "ChallengeHeaders":
        """
        Read a challenge from response headers (client side).

        Raises:
            ValidationError: if a required header is missing or malformed
        """
        required = [X_PAYMENT_ID, X_PAYMENT_AMOUNT, X_PAYMENT_TOKEN, X_PAYMENT_TO,
                    X_PAYMENT_MEMO, X_PAYMENT_FACILITATOR]
        missing = [name for name in required if not headers.get(name)]
        if missing or headers.get(X_PAYMENT_REQUIRED, "").lower() != "true":
            raise ValidationError(f"Incomplete payment challenge, missing: {missing}")
        try:
            amount = Decimal(headers[X_PAYMENT_AMOUNT])
        except InvalidOperation:
            raise ValidationError(f"Invalid {X_PAYMENT_AMOUNT} header")
        return cls(
            payment_id=headers[X_PAYMENT_ID],
            amount=amount,
            token=headers[X_PAYMENT_TOKEN],
            to=headers[X_PAYMENT_TO],
            memo=headers[X_PAYMENT_MEMO],
            facilitator=headers[X_PAYMENT_FACILITATOR],
            token_mint=headers.get(X_PAYMENT_TOKEN_MINT) or None,
        )


@dataclass(frozen=True)
class PaymentProof:
    """Proof headers sent by a client retrying after payment."""
    payment_id: str
    signature: str


def parse_proof_headers(headers: Mapping[str, str]) -> Optional[PaymentProof]:
    """
    Extract payment proof from request headers.

    Returns None when neither proof header is present.

    Raises:
        ValidationError: when only one header is present or a value is malformed
    """
    payment_id = (headers.get(X_PAYMENT_ID) or "").strip()
    signature = (headers.get(X_PAYMENT_SIGNATURE) or "").strip()

    if not payment_id and not signature:
        return None
    if not payment_id or not signature:
        raise ValidationError(
            f"Both {X_PAYMENT_ID} and {X_PAYMENT_SIGNATURE} headers are required"
        )

    try:
        uuid.UUID(payment_id)
    except ValueError:
        raise ValidationError(f"Malformed {X_PAYMENT_ID} header")
    if len(signature) > MAX_SIGNATURE_LENGTH or not signature.isalnum():
        raise ValidationError(f"Malformed {X_PAYMENT_SIGNATURE} header")

    return PaymentProof(payment_id=payment_id, signature=signature)
