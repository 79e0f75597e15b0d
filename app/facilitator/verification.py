"""
Settlement verification.

The engine decides whether a claimed settlement reference satisfies a
payment request and commits the outcome through the store's
compare-and-swap. Together with the ordering below this guarantees at most
one accepted settlement per request, at most one request per settlement,
and that failed or expired requests never become verified.

Check order (first failure wins):
1. unconfirmed         - the transaction is not confirmed on the ledger
2. recipient_mismatch  - funds did not go to the seller
3. amount_insufficient - transferred amount below request amount minus tolerance
4. asset_mismatch      - wrong mint, or a token transfer where native was requested
5. memo_mismatch       - no memo exactly equal to the request memo, or memos
                         for more than one payment request
"""
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterator, Optional

from app.facilitator.errors import (
    ConflictError,
    ExpiredError,
    VerificationFailedError,
)
from app.facilitator.models import (
    PaymentRequest,
    PaymentStatus,
    SettlementDetails,
    utc_now,
)
from app.facilitator.store import PaymentRequestStore
from app.services.ledger import ChainQueryAdapter

logger = logging.getLogger(__name__)

BPS_DENOMINATOR = Decimal("10000")


@dataclass(frozen=True)
class AmountTolerance:
    """
    Allowed shortfall when comparing a settled amount with the requested one.

    The tolerance is the smaller of one base unit of the asset and
    ``bps`` basis points of the requested amount.
    """
    bps: Decimal = Decimal("1")

    def allowance(self, requested: Decimal, decimals: Optional[int]) -> Decimal:
        relative = requested * self.bps / BPS_DENOMINATOR
        if decimals is None:
            return relative
        return min(Decimal(1).scaleb(-decimals), relative)

    def is_satisfied(self, requested: Decimal, settled: Decimal, decimals: Optional[int]) -> bool:
        return settled >= requested - self.allowance(requested, decimals)


class _KeyedLocks:
    """Per-key locks that are dropped once no caller holds or awaits them."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] += 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]


class VerificationEngine:
    """Drives verify(id, ref) against the ledger adapter and the store."""

    def __init__(
        self,
        store: PaymentRequestStore,
        adapter: ChainQueryAdapter,
        tolerance: Optional[AmountTolerance] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.adapter = adapter
        self.tolerance = tolerance or AmountTolerance()
        self._clock = clock
        self._inflight = _KeyedLocks()

    def verify(self, payment_id: str, settlement_ref: str) -> PaymentRequest:
        """
        Verify ``settlement_ref`` against the payment request ``payment_id``.

        Returns the verified request. Raises NotFoundError, ExpiredError,
        VerificationFailedError, ConflictError or ChainQueryError.
        """
        # Duplicate retries for the same id queue here, so only the first
        # reaches the ledger and the rest take the verified short circuit.
        with self._inflight.hold(payment_id):
            return self._verify(payment_id, settlement_ref)

    def _verify(self, payment_id: str, settlement_ref: str) -> PaymentRequest:
        request = self.store.get(payment_id)

        terminal = self._check_terminal(request, settlement_ref)
        if terminal is not None:
            return terminal

        if request.is_past_deadline(self._clock()):
            raise ExpiredError(payment_id)

        settlement = self.adapter.resolve_settlement(settlement_ref)

        reason, detail = self._check_settlement(request, settlement)
        if reason is not None:
            return self._commit_failure(request, settlement_ref, reason, detail)

        return self._commit_success(request, settlement_ref)

    def _check_terminal(self, request: PaymentRequest, settlement_ref: str) -> Optional[PaymentRequest]:
        """Resolve requests that already left pending without touching the ledger."""
        if request.status is PaymentStatus.VERIFIED:
            if request.settlement_ref == settlement_ref:
                logger.info(f"Payment {request.id} already verified with this signature")
                return request
            raise ConflictError(request.id)
        if request.status is PaymentStatus.FAILED:
            raise VerificationFailedError(request.failure_reason or "verification_failed")
        if request.status is PaymentStatus.EXPIRED:
            raise ExpiredError(request.id)
        return None

    def _check_settlement(
        self,
        request: PaymentRequest,
        settlement: SettlementDetails,
    ):
        """Return (reason, detail) for the first failed check, or (None, None)."""
        if not settlement.is_confirmed:
            return "unconfirmed", f"transaction status is {settlement.status.value}"

        if settlement.recipient != request.seller:
            return "recipient_mismatch", f"recipient {settlement.recipient} != seller {request.seller}"

        decimals = settlement.decimals
        if decimals is None and settlement.mint is None:
            decimals = self.adapter.native_decimals
        if not self.tolerance.is_satisfied(request.amount, settlement.amount, decimals):
            return "amount_insufficient", f"transferred {settlement.amount} < requested {request.amount}"

        if request.token_mint:
            if settlement.mint != request.token_mint:
                return "asset_mismatch", f"mint {settlement.mint} != {request.token_mint}"
        elif settlement.mint is not None:
            return "asset_mismatch", f"expected native transfer, got mint {settlement.mint}"

        if request.memo not in settlement.memos:
            return "memo_mismatch", f"memos {settlement.memos!r} do not contain {request.memo!r}"

        # One settlement pays for exactly one request
        prefix = request.memo[: len(request.memo) - len(request.id)]
        bound = [memo for memo in settlement.memos if memo.startswith(prefix)]
        if len(bound) > 1:
            return "memo_mismatch", f"settlement carries {len(bound)} payment memos: {bound!r}"

        return None, None

    def _commit_success(self, request: PaymentRequest, settlement_ref: str) -> PaymentRequest:
        won = self.store.compare_and_swap_status(
            request.id,
            PaymentStatus.PENDING,
            PaymentStatus.VERIFIED,
            {"settlement_ref": settlement_ref, "verified_at": self._clock()},
        )
        current = self.store.get(request.id)
        if won:
            logger.info(f"Payment {request.id} verified with signature {settlement_ref}")
            return current

        # Another verifier (or the deadline) got there first
        if current.status is PaymentStatus.VERIFIED and current.settlement_ref == settlement_ref:
            return current
        if current.status is PaymentStatus.EXPIRED:
            raise ExpiredError(request.id)
        if current.status is PaymentStatus.FAILED:
            raise VerificationFailedError(current.failure_reason or "verification_failed")
        raise ConflictError(request.id)

    def _commit_failure(
        self,
        request: PaymentRequest,
        settlement_ref: str,
        reason: str,
        detail: Optional[str],
    ) -> PaymentRequest:
        logger.warning(f"Payment {request.id} failed check {reason} for {settlement_ref}: {detail}")
        won = self.store.compare_and_swap_status(
            request.id,
            PaymentStatus.PENDING,
            PaymentStatus.FAILED,
            {"failure_reason": reason},
        )
        if not won:
            current = self.store.get(request.id)
            if current.status is PaymentStatus.VERIFIED and current.settlement_ref == settlement_ref:
                return current
            if current.status is PaymentStatus.EXPIRED:
                raise ExpiredError(request.id)
            if current.status is PaymentStatus.VERIFIED:
                raise ConflictError(request.id)
        raise VerificationFailedError(reason, detail=detail)
