# tests/test_verification_engine.py
"""
Tests for settlement verification: check order, tolerance, idempotence and
the at-most-one-settlement guarantee under concurrency.
"""
import asyncio
import threading
from decimal import Decimal

import pytest
from starlette.concurrency import run_in_threadpool

from app.facilitator.errors import (
    ChainQueryError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    VerificationFailedError,
)
from app.facilitator.models import PaymentStatus, SettlementStatus
from app.facilitator.verification import AmountTolerance

from tests.conftest import OTHER_MINT, PAYER, SELLER, make_signature


class TestAmountTolerance:
    """Test the amount tolerance policy."""

    def test_relative_allowance_for_small_amounts(self):
        tolerance = AmountTolerance(bps=Decimal("1"))
        assert tolerance.allowance(Decimal("0.0004"), 6) == Decimal("0.00000004")

    def test_base_unit_caps_allowance(self):
        tolerance = AmountTolerance(bps=Decimal("1"))
        assert tolerance.allowance(Decimal("100"), 6) == Decimal("0.000001")

    def test_unknown_decimals_uses_relative(self):
        tolerance = AmountTolerance(bps=Decimal("1"))
        assert tolerance.allowance(Decimal("100"), None) == Decimal("0.01")

    def test_is_satisfied(self):
        tolerance = AmountTolerance()
        assert tolerance.is_satisfied(Decimal("100"), Decimal("99.999999"), 6)
        assert not tolerance.is_satisfied(Decimal("100"), Decimal("99.999998"), 6)
        assert tolerance.is_satisfied(Decimal("100"), Decimal("150"), 6)


class TestVerifySuccess:
    """Test accepted settlements."""

    def test_verify_marks_request_verified(self, facilitator, adapter, clock, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo)

        result = facilitator.verify(usdc_request.id, signature)

        assert result.status is PaymentStatus.VERIFIED
        assert result.settlement_ref == signature
        assert result.verified_at == clock()
        assert facilitator.get_status(usdc_request.id).status is PaymentStatus.VERIFIED

    def test_overpayment_accepted(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo, amount=Decimal("1"))
        assert facilitator.verify(usdc_request.id, signature).status is PaymentStatus.VERIFIED

    def test_shortfall_within_tolerance_accepted(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo, amount=Decimal("0.00039999"))
        assert facilitator.verify(usdc_request.id, signature).status is PaymentStatus.VERIFIED

    def test_memo_next_to_unrelated_note_accepted(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(
            signature, memo="", memos=["unrelated note", usdc_request.memo]
        )
        assert facilitator.verify(usdc_request.id, signature).status is PaymentStatus.VERIFIED

    def test_native_decimals_used_when_ledger_omits_them(self, facilitator, adapter):
        request = facilitator.create_request(seller=SELLER, amount="100", token="SOL")
        signature = make_signature(2)
        # One lamport short is within the one-base-unit bound
        adapter.add_settlement(
            signature, memo=request.memo, amount=Decimal("99.999999999"), mint=None, decimals=None
        )
        assert facilitator.verify(request.id, signature).status is PaymentStatus.VERIFIED

    def test_native_shortfall_beyond_one_lamport_rejected(self, facilitator, adapter):
        request = facilitator.create_request(seller=SELLER, amount="100", token="SOL")
        signature = make_signature(2)
        adapter.add_settlement(
            signature, memo=request.memo, amount=Decimal("99.999"), mint=None, decimals=None
        )
        with pytest.raises(VerificationFailedError) as exc_info:
            facilitator.verify(request.id, signature)
        assert exc_info.value.reason == "amount_insufficient"

    def test_native_transfer_accepted(self, facilitator, adapter):
        request = facilitator.create_request(seller=SELLER, amount="0.5", token="sol")
        signature = make_signature(2)
        adapter.add_settlement(
            signature, memo=request.memo, amount=Decimal("0.5"), mint=None, decimals=9
        )
        assert request.token == "SOL"
        assert request.token_mint is None
        assert facilitator.verify(request.id, signature).status is PaymentStatus.VERIFIED

    def test_transient_faults_retried(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo)
        adapter.transient_failures = 2

        result = facilitator.verify(usdc_request.id, signature)

        assert result.status is PaymentStatus.VERIFIED
        assert adapter.queries[signature] == 3


class TestIdempotence:
    """Repeated verification never changes the outcome."""

    def test_repeat_same_signature_skips_ledger(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo)

        first = facilitator.verify(usdc_request.id, signature)
        second = facilitator.verify(usdc_request.id, signature)

        assert first == second
        assert adapter.queries[signature] == 1

    def test_repeat_after_expiry_still_verified(self, facilitator, adapter, clock, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo)
        facilitator.verify(usdc_request.id, signature)
        clock.advance(3600)

        assert facilitator.verify(usdc_request.id, signature).status is PaymentStatus.VERIFIED

    def test_different_signature_conflicts(self, facilitator, adapter, usdc_request):
        first, second = make_signature(1), make_signature(2)
        adapter.add_settlement(first, memo=usdc_request.memo)
        adapter.add_settlement(second, memo=usdc_request.memo)
        facilitator.verify(usdc_request.id, first)

        with pytest.raises(ConflictError):
            facilitator.verify(usdc_request.id, second)
        assert adapter.queries[second] == 0
        assert facilitator.get_status(usdc_request.id).settlement_ref == first

    def test_accepted_signature_not_reused_for_another_request(self, facilitator, adapter, usdc_request):
        other = facilitator.create_request(seller=SELLER, amount="0.0004", token="USDC")
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo)
        facilitator.verify(usdc_request.id, signature)
        # The ledger now answers with terms matching the second request
        adapter.add_settlement(signature, memo=other.memo)

        with pytest.raises(ConflictError):
            facilitator.verify(other.id, signature)

        assert facilitator.get_status(other.id).status is PaymentStatus.PENDING
        assert facilitator.get_status(usdc_request.id).settlement_ref == signature

    def test_failed_request_never_resurrected(self, facilitator, adapter, usdc_request):
        bad, good = make_signature(1), make_signature(2)
        adapter.add_settlement(bad, memo="x402:something-else")
        adapter.add_settlement(good, memo=usdc_request.memo)

        with pytest.raises(VerificationFailedError) as first:
            facilitator.verify(usdc_request.id, bad)
        with pytest.raises(VerificationFailedError) as second:
            facilitator.verify(usdc_request.id, good)

        assert first.value.reason == "memo_mismatch"
        assert second.value.reason == "memo_mismatch"
        assert adapter.queries[good] == 0
        record = facilitator.get_status(usdc_request.id)
        assert record.status is PaymentStatus.FAILED
        assert record.failure_reason == "memo_mismatch"


class TestVerificationChecks:
    """Each check fails the request with its own reason."""

    def _verify_reason(self, facilitator, payment_id, signature):
        with pytest.raises(VerificationFailedError) as exc_info:
            facilitator.verify(payment_id, signature)
        assert exc_info.value.status_code == 402
        return exc_info.value.reason

    def test_unconfirmed(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo, status=SettlementStatus.UNCONFIRMED)
        assert self._verify_reason(facilitator, usdc_request.id, signature) == "unconfirmed"

    def test_unknown_transaction_is_unconfirmed(self, facilitator, usdc_request):
        assert self._verify_reason(facilitator, usdc_request.id, make_signature(1)) == "unconfirmed"

    def test_failed_transaction_is_unconfirmed(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo, status=SettlementStatus.FAILED)
        assert self._verify_reason(facilitator, usdc_request.id, signature) == "unconfirmed"

    def test_recipient_mismatch(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo, recipient=PAYER)
        assert self._verify_reason(facilitator, usdc_request.id, signature) == "recipient_mismatch"

    def test_half_amount_insufficient(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo, amount=Decimal("0.0002"))
        assert self._verify_reason(facilitator, usdc_request.id, signature) == "amount_insufficient"

    def test_shortfall_beyond_tolerance_insufficient(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo, amount=Decimal("0.000399"))
        assert self._verify_reason(facilitator, usdc_request.id, signature) == "amount_insufficient"

    def test_wrong_mint(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo, mint=OTHER_MINT)
        assert self._verify_reason(facilitator, usdc_request.id, signature) == "asset_mismatch"

    def test_token_transfer_for_native_request(self, facilitator, adapter):
        request = facilitator.create_request(seller=SELLER, amount="0.5", token="SOL")
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=request.memo, amount=Decimal("0.5"))
        assert self._verify_reason(facilitator, request.id, signature) == "asset_mismatch"

    def test_memo_one_character_off(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        memo = usdc_request.memo
        wrong = memo[:-1] + ("0" if memo[-1] != "0" else "1")
        adapter.add_settlement(signature, memo=wrong)
        assert self._verify_reason(facilitator, usdc_request.id, signature) == "memo_mismatch"

    def test_memo_must_match_exactly(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=f"paid {usdc_request.memo}")
        assert self._verify_reason(facilitator, usdc_request.id, signature) == "memo_mismatch"

    def test_one_settlement_cannot_pay_two_requests(self, facilitator, adapter, usdc_request):
        other = facilitator.create_request(seller=SELLER, amount="0.0004", token="USDC")
        signature = make_signature(1)
        adapter.add_settlement(signature, memo="", memos=[usdc_request.memo, other.memo])

        assert self._verify_reason(facilitator, usdc_request.id, signature) == "memo_mismatch"
        assert self._verify_reason(facilitator, other.id, signature) == "memo_mismatch"
        assert facilitator.get_status(usdc_request.id).status is PaymentStatus.FAILED
        assert facilitator.get_status(other.id).status is PaymentStatus.FAILED

    def test_no_memo(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo="", memos=[])
        assert self._verify_reason(facilitator, usdc_request.id, signature) == "memo_mismatch"

    def test_first_failing_check_wins(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(
            signature, memo="wrong", recipient=PAYER, amount=Decimal("0.0001"), mint=OTHER_MINT
        )
        assert self._verify_reason(facilitator, usdc_request.id, signature) == "recipient_mismatch"


class TestExpiryAndErrors:
    """Expiry, unknown ids and ledger outages."""

    def test_expired_request_rejected_without_ledger_query(self, facilitator, adapter, clock, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo)
        clock.advance(301)

        with pytest.raises(ExpiredError):
            facilitator.verify(usdc_request.id, signature)
        assert adapter.total_queries == 0
        assert facilitator.get_status(usdc_request.id).status is PaymentStatus.EXPIRED

    def test_deadline_passing_during_query(self, facilitator, adapter, clock, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo)
        original = adapter._query_settlement

        def slow_query(reference):
            clock.advance(400)
            return original(reference)

        adapter._query_settlement = slow_query

        with pytest.raises(ExpiredError):
            facilitator.verify(usdc_request.id, signature)
        assert facilitator.get_status(usdc_request.id).status is PaymentStatus.EXPIRED

    def test_unknown_id(self, facilitator):
        with pytest.raises(NotFoundError):
            facilitator.verify("00000000-0000-4000-8000-000000000000", make_signature(1))

    def test_ledger_outage_leaves_request_pending(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo)
        adapter.transient_failures = 100

        with pytest.raises(ChainQueryError) as exc_info:
            facilitator.verify(usdc_request.id, signature)

        assert exc_info.value.status_code == 503
        assert adapter.queries[signature] == adapter.max_retries + 1
        assert facilitator.get_status(usdc_request.id).status is PaymentStatus.PENDING

        adapter.transient_failures = 0
        assert facilitator.verify(usdc_request.id, signature).status is PaymentStatus.VERIFIED


class TestConcurrentVerification:
    """At most one settlement is accepted per request."""

    def _run_concurrently(self, count, target):
        barrier = threading.Barrier(count)
        outcomes = []
        lock = threading.Lock()

        def worker(n):
            barrier.wait()
            try:
                result = target(n)
            except Exception as e:
                result = e
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)
        return outcomes

    def test_same_signature_queries_ledger_once(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo)

        outcomes = self._run_concurrently(
            8, lambda n: facilitator.verify(usdc_request.id, signature)
        )

        assert len(outcomes) == 8
        assert all(o.status is PaymentStatus.VERIFIED for o in outcomes)
        assert adapter.queries[signature] == 1

    def test_competing_signatures_single_winner(self, facilitator, adapter, usdc_request):
        signatures = [make_signature(n + 1) for n in range(8)]
        for signature in signatures:
            adapter.add_settlement(signature, memo=usdc_request.memo)

        outcomes = self._run_concurrently(
            8, lambda n: facilitator.verify(usdc_request.id, signatures[n])
        )

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        conflicts = [o for o in outcomes if isinstance(o, ConflictError)]
        assert len(winners) == 1
        assert len(conflicts) == 7
        assert facilitator.get_status(usdc_request.id).settlement_ref == winners[0].settlement_ref

    def test_different_requests_verify_independently(self, facilitator, adapter):
        requests = [
            facilitator.create_request(seller=SELLER, amount="0.0004", token="USDC")
            for _ in range(6)
        ]
        for n, request in enumerate(requests):
            adapter.add_settlement(make_signature(n + 1), memo=request.memo)

        outcomes = self._run_concurrently(
            6, lambda n: facilitator.verify(requests[n].id, make_signature(n + 1))
        )

        assert all(o.status is PaymentStatus.VERIFIED for o in outcomes)


class TestCancelledCaller:
    """A verification whose caller goes away still commits its outcome."""

    def test_cancelled_caller_does_not_abandon_verification(self, facilitator, adapter, usdc_request):
        signature = make_signature(1)
        adapter.add_settlement(signature, memo=usdc_request.memo)
        adapter.gate = threading.Event()

        async def disconnect_mid_verification():
            task = asyncio.create_task(
                run_in_threadpool(facilitator.verify, usdc_request.id, signature)
            )
            while adapter.queries[signature] == 0:
                await asyncio.sleep(0.01)
            task.cancel()
            await asyncio.sleep(0.05)
            adapter.gate.set()
            try:
                await task
            except asyncio.CancelledError:
                pass

        asyncio.run(disconnect_mid_verification())

        record = facilitator.get_status(usdc_request.id)
        assert record.status is PaymentStatus.VERIFIED
        assert record.settlement_ref == signature

        # The client's retry takes the verified short circuit
        assert facilitator.verify(usdc_request.id, signature).status is PaymentStatus.VERIFIED
        assert adapter.queries[signature] == 1
