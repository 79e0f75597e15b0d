"""
Domain records for payment requests and ledger settlements.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_amount(amount: Decimal) -> str:
    """Plain decimal string without exponent or trailing zeros ("0.0004", "10")."""
    return format(amount.normalize(), "f")


class PaymentStatus(str, Enum):
    """Lifecycle states of a payment request."""
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class SettlementStatus(str, Enum):
    """Confirmation state of a transaction as reported by the ledger."""
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentRequest:
    """
    A single payment request tracked by the facilitator.

    Records are immutable; the store replaces them wholesale on every
    successful compare-and-swap.
    """
    id: str
    seller: str
    amount: Decimal
    token: str
    memo: str
    created_at: datetime
    expires_at: datetime
    token_mint: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    settlement_ref: Optional[str] = None
    verified_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def is_past_deadline(self, now: datetime) -> bool:
        return now >= self.expires_at

    def effective_status(self, now: datetime) -> PaymentStatus:
        """Status as a reader must see it: overdue pending requests are expired."""
        if self.status is PaymentStatus.PENDING and self.is_past_deadline(now):
            return PaymentStatus.EXPIRED
        return self.status


@dataclass(frozen=True)
class SettlementDetails:
    """On-chain facts about a settlement reference."""
    reference: str
    status: SettlementStatus
    sender: Optional[str] = None
    recipient: Optional[str] = None
    amount: Decimal = Decimal("0")
    decimals: Optional[int] = None
    mint: Optional[str] = None  # None means the ledger's native asset
    memos: List[str] = field(default_factory=list)

    @property
    def is_confirmed(self) -> bool:
        return self.status is SettlementStatus.CONFIRMED
