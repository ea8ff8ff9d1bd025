"""Shared fixtures: a throwaway sqlite claim store plus fake payment collaborators."""

from __future__ import annotations

from decimal import Decimal
from itertools import count

import pytest

from prime_claims import database
from prime_claims.schemas.payments import PaymentRequest, PriceQuote
from prime_claims.services.allocator import PrimeAllocator
from prime_claims.services.claim_store import ClaimStore
from prime_claims.services.claims import ClaimService
from prime_claims.services.email import EmailSendError
from prime_claims.services.payments import OracleUnavailable, PaymentProviderError


@pytest.fixture
def database_url(tmp_path):
    url = f"sqlite:///{tmp_path / 'claims.db'}"
    database.configure_engine(url)
    database.init_db()
    yield url
    database.engine.dispose()


@pytest.fixture
def store(database_url) -> ClaimStore:
    return ClaimStore()


@pytest.fixture
def allocator(store) -> PrimeAllocator:
    return PrimeAllocator(
        store,
        reservation_ttl_seconds=3600,
        abandoned_payment_ttl_seconds=7200,
        max_retries=5,
    )


class FakeOracle:
    def __init__(self, rates: dict[str, Decimal] | None = None) -> None:
        if rates is None:
            rates = {"BTC": Decimal("50000"), "DOGE": Decimal("0.25")}
        self.rates = rates

    def usd_rate(self, currency: str) -> tuple[Decimal, str]:
        rate = self.rates.get(currency)
        if rate is None:
            raise OracleUnavailable(f"No rate for {currency}")
        return rate, "fake"

    def convert_usd_to(self, currency: str, usd_amount: Decimal) -> PriceQuote:
        rate, _ = self.usd_rate(currency)
        return PriceQuote(
            currency=currency,
            amount=(Decimal(usd_amount) / rate).quantize(Decimal("0.00000001")),
            rate=rate,
            source="fake",
        )


class FakeInitiator:
    def __init__(self, method: str, fail: bool = False) -> None:
        self.method = method
        self.fail = fail
        self.calls: list[tuple[int, str]] = []
        self._references = count(1)

    def create_payment(self, prime: int, payer_identity: str) -> PaymentRequest:
        self.calls.append((prime, payer_identity))
        if self.fail:
            raise PaymentProviderError("address service down")
        return PaymentRequest(
            reference=f"{self.method}-{next(self._references)}",
            method=self.method,
            address=f"{self.method}-address-{prime}",
            amount_usd=Decimal(prime),
        )


class FakeNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, int]] = []

    def notify_confirmed(self, payer_identity, prime, amount, method, tx_reference) -> None:
        if self.fail:
            raise EmailSendError("smtp unavailable")
        self.sent.append((payer_identity, prime))


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def initiators() -> dict[str, FakeInitiator]:
    return {"bitcoin": FakeInitiator("bitcoin"), "dogecoin": FakeInitiator("dogecoin")}


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def service(allocator, initiators, oracle, notifier) -> ClaimService:
    return ClaimService(allocator, initiators, oracle, notifier)
