# tests/conftest.py
"""
Shared fixtures: a controllable clock, a scripted chain adapter and a fully
wired facilitator that never touches a real ledger.
"""
import threading
from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import base58
import pytest

from app.core.config import settings
from app.facilitator.models import SettlementDetails, SettlementStatus
from app.facilitator.service import FacilitatorService
from app.facilitator.store import InMemoryPaymentRequestStore
from app.facilitator.verification import AmountTolerance, VerificationEngine
from app.services.ledger import ChainQueryAdapter, TransientLedgerError
from app.x402.ratelimit import reset_rate_limiter

USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def make_address(seed: int) -> str:
    """A valid 32-byte base58 address."""
    return base58.b58encode(bytes([seed]) * 32).decode()


def make_signature(seed: int) -> str:
    """A valid 64-byte base58 transaction signature."""
    return base58.b58encode(bytes([seed]) * 64).decode()


SELLER = make_address(7)
PAYER = make_address(8)
OTHER_MINT = make_address(9)


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeChainAdapter(ChainQueryAdapter):
    """Chain adapter answering from a dict of scripted settlements."""

    native_token = "SOL"
    native_decimals = 9

    def __init__(self, **kwargs):
        kwargs.setdefault("backoff_seconds", 0)
        kwargs.setdefault("sleep", lambda seconds: None)
        super().__init__(**kwargs)
        self.settlements: Dict[str, SettlementDetails] = {}
        self.queries: Counter = Counter()
        self.transient_failures = 0
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    @property
    def chain_name(self) -> str:
        return "fake-chain"

    @property
    def default_mints(self) -> Dict[str, str]:
        return {"USDC": USDC_MINT}

    def validate_address(self, address: str) -> bool:
        try:
            return len(base58.b58decode(address)) == 32
        except ValueError:
            return False

    def validate_reference(self, reference: str) -> bool:
        try:
            return len(base58.b58decode(reference)) == 64
        except ValueError:
            return False

    def _query_settlement(self, reference: str) -> SettlementDetails:
        with self._lock:
            self.queries[reference] += 1
            if self.transient_failures > 0:
                self.transient_failures -= 1
                raise TransientLedgerError("node is behind")
        if self.gate is not None:
            self.gate.wait(timeout=5)
        return self.settlements.get(
            reference,
            SettlementDetails(reference=reference, status=SettlementStatus.UNCONFIRMED),
        )

    @property
    def total_queries(self) -> int:
        return sum(self.queries.values())

    def add_settlement(
        self,
        reference: str,
        memo: str,
        amount: Decimal = Decimal("0.0004"),
        recipient: str = SELLER,
        mint: Optional[str] = USDC_MINT,
        decimals: int = 6,
        status: SettlementStatus = SettlementStatus.CONFIRMED,
        memos: Optional[List[str]] = None,
    ) -> SettlementDetails:
        details = SettlementDetails(
            reference=reference,
            status=status,
            sender=PAYER,
            recipient=recipient,
            amount=amount,
            decimals=decimals,
            mint=mint,
            memos=memos if memos is not None else [memo],
        )
        self.settlements[reference] = details
        return details


@pytest.fixture(autouse=True)
def isolated_ambient_state(tmp_path, monkeypatch):
    """Audit log in a temp dir and a fresh rate limiter for every test."""
    monkeypatch.setattr(settings, "AUDIT_LOG_PATH", str(tmp_path / "audit.jsonl"))
    reset_rate_limiter()
    yield
    reset_rate_limiter()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def adapter():
    return FakeChainAdapter()


@pytest.fixture
def store(clock):
    return InMemoryPaymentRequestStore(retention_seconds=3600, clock=clock)


@pytest.fixture
def engine(store, adapter, clock):
    return VerificationEngine(store=store, adapter=adapter, tolerance=AmountTolerance(), clock=clock)


@pytest.fixture
def facilitator(store, engine, adapter, clock):
    return FacilitatorService(
        store=store,
        engine=engine,
        adapter=adapter,
        memo_prefix="x402",
        payment_timeout_seconds=300,
        clock=clock,
    )


@pytest.fixture
def usdc_request(facilitator):
    """A pending request for 0.0004 USDC to SELLER."""
    return facilitator.create_request(seller=SELLER, amount="0.0004", token="USDC", token_mint=USDC_MINT)
