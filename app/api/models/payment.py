from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.facilitator.models import PaymentRequest, PaymentStatus, format_amount


class PaymentRequestCreate(BaseModel):
    """
    Request body for creating a payment request.
    """
    model_config = ConfigDict(extra="forbid")

    seller: str = Field(..., min_length=1, description="Destination address for funds.")
    amount: Decimal = Field(..., gt=0, description="Amount in token units (not base units).")
    token: str = Field(..., min_length=1, max_length=16, description="Token symbol, e.g. USDC or SOL.")
    tokenMint: Optional[str] = Field(None, description="Mint address for non-native tokens.")
    metadata: Optional[Dict[str, str]] = Field(None, description="Free-form labels stored with the request.")


class PaymentInstructions(BaseModel):
    to: str
    amount: str
    token: str
    tokenMint: Optional[str] = None
    memo: str


class PaymentRequestCreated(BaseModel):
    """
    Response model for a newly created payment request.
    """
    id: str
    status: PaymentStatus
    expiresAt: datetime
    paymentInstructions: PaymentInstructions

    @classmethod
    def from_request(cls, request: PaymentRequest) -> "PaymentRequestCreated":
        return cls(
            id=request.id,
            status=request.status,
            expiresAt=request.expires_at,
            paymentInstructions=PaymentInstructions(
                to=request.seller,
                amount=format_amount(request.amount),
                token=request.token,
                tokenMint=request.token_mint,
                memo=request.memo,
            ),
        )


class PaymentVerifyRequest(BaseModel):
    """
    Request body for verifying a settlement.
    """
    model_config = ConfigDict(extra="forbid")

    paymentId: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1, max_length=128, description="Settlement transaction signature.")


class PaymentVerifyResponse(BaseModel):
    id: str
    status: PaymentStatus
    signature: Optional[str] = None
    verifiedAt: Optional[datetime] = None

    @classmethod
    def from_request(cls, request: PaymentRequest) -> "PaymentVerifyResponse":
        return cls(
            id=request.id,
            status=request.status,
            signature=request.settlement_ref,
            verifiedAt=request.verified_at,
        )


class PaymentRecordResponse(BaseModel):
    """
    Projection of a stored payment request as returned by GET /payment/{id}.
    """
    id: str
    status: PaymentStatus
    to: str
    amount: str
    token: str
    tokenMint: Optional[str] = None
    memo: str
    createdAt: datetime
    expiresAt: datetime
    signature: Optional[str] = None
    verifiedAt: Optional[datetime] = None
    failureReason: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_request(cls, request: PaymentRequest) -> "PaymentRecordResponse":
        return cls(
            id=request.id,
            status=request.status,
            to=request.seller,
            amount=format_amount(request.amount),
            token=request.token,
            tokenMint=request.token_mint,
            memo=request.memo,
            createdAt=request.created_at,
            expiresAt=request.expires_at,
            signature=request.settlement_ref,
            verifiedAt=request.verified_at,
            failureReason=request.failure_reason,
            metadata=request.metadata,
        )

    def to_payment_request(self) -> PaymentRequest:
        """Rebuild the domain record (used by the remote facilitator client)."""
        return PaymentRequest(
            id=self.id,
            seller=self.to,
            amount=Decimal(self.amount),
            token=self.token,
            token_mint=self.tokenMint,
            memo=self.memo,
            created_at=self.createdAt,
            expires_at=self.expiresAt,
            status=self.status,
            settlement_ref=self.signature,
            verified_at=self.verifiedAt,
            failure_reason=self.failureReason,
            metadata=dict(self.metadata),
        )


class HealthResponse(BaseModel):
    status: str
    service: str
    network: str
    requests: Dict[str, int]
