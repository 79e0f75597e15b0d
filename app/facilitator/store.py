"""
Payment request storage.

The store is the only mutable state shared between concurrent requests.
All mutation goes through ``compare_and_swap_status``; there is no
read-then-write path. One instance is constructed at service start and
passed to the components that need it.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from app.facilitator.errors import NotFoundError
from app.facilitator.models import PaymentRequest, PaymentStatus, utc_now

logger = logging.getLogger(__name__)

# Directed edges of the request state machine
ALLOWED_TRANSITIONS = {
    PaymentStatus.PENDING: {
        PaymentStatus.VERIFIED,
        PaymentStatus.FAILED,
        PaymentStatus.EXPIRED,
    },
}

# Fields a transition may set alongside the status
MUTABLE_FIELDS = {"settlement_ref", "verified_at", "failure_reason"}


class DuplicatePaymentIdError(Exception):
    """Raised when put() is called with an id that is already stored."""


class PaymentRequestStore(ABC):
    """Key/value store of payment requests keyed by payment id."""

    @abstractmethod
    def put(self, request: PaymentRequest) -> None:
        pass

    @abstractmethod
    def get(self, payment_id: str) -> PaymentRequest:
        pass

    @abstractmethod
    def compare_and_swap_status(
        self,
        payment_id: str,
        expected_status: PaymentStatus,
        new_status: PaymentStatus,
        mutation: Optional[Dict[str, Any]] = None,
    ) -> bool:
        pass

    @abstractmethod
    def sweep_expired(self) -> Dict[str, int]:
        pass

    @abstractmethod
    def count_by_status(self) -> Dict[str, int]:
        pass

    def close(self) -> None:
        """Release resources at shutdown."""


class InMemoryPaymentRequestStore(PaymentRequestStore):
    """
    Thread-safe in-process store.

    A single lock guards the record table. It is held only for dictionary
    operations, never across ledger I/O, so concurrent verifications of
    different ids do not contend beyond the swap itself.
    """

    def __init__(
        self,
        retention_seconds: int = 3600,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._records: Dict[str, PaymentRequest] = {}
        # settlement_ref -> id of the request it verified
        self._settlements: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._retention = timedelta(seconds=retention_seconds)
        self._clock = clock

    def put(self, request: PaymentRequest) -> None:
        with self._lock:
            if request.id in self._records:
                raise DuplicatePaymentIdError(request.id)
            self._records[request.id] = request

    def get(self, payment_id: str) -> PaymentRequest:
        """
        Return the request as a reader must observe it.

        A pending request whose deadline has passed is reported as expired
        even if the sweep has not applied that transition yet.
        """
        with self._lock:
            record = self._records.get(payment_id)
        if record is None:
            raise NotFoundError(payment_id)

        status = record.effective_status(self._clock())
        if status is not record.status:
            return replace(record, status=status)
        return record

    def compare_and_swap_status(
        self,
        payment_id: str,
        expected_status: PaymentStatus,
        new_status: PaymentStatus,
        mutation: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Atomically move a request from ``expected_status`` to ``new_status``.

        Returns False when the stored status differs from ``expected_status``,
        or when a pending request is past its deadline and the target is not
        ``expired``, or when the ``settlement_ref`` being set already verified
        another request. Raises NotFoundError for unknown ids.
        """
        if new_status not in ALLOWED_TRANSITIONS.get(expected_status, set()):
            raise ValueError(
                f"Illegal transition {expected_status.value} -> {new_status.value}"
            )
        mutation = mutation or {}
        unknown = set(mutation) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be mutated: {sorted(unknown)}")

        now = self._clock()
        with self._lock:
            current = self._records.get(payment_id)
            if current is None:
                raise NotFoundError(payment_id)
            if current.status is not expected_status:
                return False
            if (
                expected_status is PaymentStatus.PENDING
                and new_status is not PaymentStatus.EXPIRED
                and current.is_past_deadline(now)
            ):
                return False
            settlement_ref = mutation.get("settlement_ref")
            if settlement_ref is not None:
                owner = self._settlements.get(settlement_ref)
                if owner is not None and owner != payment_id:
                    logger.warning(
                        f"Settlement {settlement_ref} already verified payment {owner}, "
                        f"refusing it for {payment_id}"
                    )
                    return False
                self._settlements[settlement_ref] = payment_id
            self._records[payment_id] = replace(current, status=new_status, **mutation)

        logger.debug(
            f"Payment {payment_id}: {expected_status.value} -> {new_status.value}"
        )
        return True

    def sweep_expired(self) -> Dict[str, int]:
        """
        Mark overdue pending requests as expired and purge terminal records
        older than the retention window.
        """
        now = self._clock()
        expired = 0
        purged = 0

        with self._lock:
            overdue = [
                payment_id
                for payment_id, record in self._records.items()
                if record.status is PaymentStatus.PENDING and record.is_past_deadline(now)
            ]

        for payment_id in overdue:
            try:
                if self.compare_and_swap_status(
                    payment_id, PaymentStatus.PENDING, PaymentStatus.EXPIRED
                ):
                    expired += 1
            except NotFoundError:
                continue

        with self._lock:
            for payment_id, record in list(self._records.items()):
                if record.status.is_terminal and now >= record.expires_at + self._retention:
                    del self._records[payment_id]
                    if record.settlement_ref is not None:
                        self._settlements.pop(record.settlement_ref, None)
                    purged += 1

        if expired or purged:
            logger.info(f"Sweep: expired {expired}, purged {purged} payment requests")
        return {"expired": expired, "purged": purged}

    def count_by_status(self) -> Dict[str, int]:
        now = self._clock()
        counts = {status.value: 0 for status in PaymentStatus}
        with self._lock:
            records = list(self._records.values())
        for record in records:
            counts[record.effective_status(now).value] += 1
        return counts

    def close(self) -> None:
        with self._lock:
            self._records.clear()
            self._settlements.clear()
