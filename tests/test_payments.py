import json
from decimal import Decimal
from urllib.error import URLError

import pytest

from prime_claims.services.payments import (
    PRICE_SOURCES,
    AddressDeriver,
    CryptoPaymentInitiator,
    OracleUnavailable,
    PaymentProviderError,
    PriceOracle,
    build_payment_uri,
)


class _FakeHttp:
    """Answers requests by URL; a stored exception is raised instead of returned."""

    def __init__(self, responses: dict[str, object]) -> None:
        self.responses = responses
        self.requests = []

    def __call__(self, request, timeout):
        self.requests.append(request)
        response = self.responses[request.full_url]
        if isinstance(response, Exception):
            raise response
        return response


def _url(currency: str, index: int) -> str:
    return PRICE_SOURCES[currency][index].url


def test_oracle_uses_first_healthy_source() -> None:
    http = _FakeHttp({_url("BTC", 0): {"data": {"rates": {"USD": "60000.00"}}}})
    oracle = PriceOracle(5, fetch_json=http)

    assert oracle.usd_rate("BTC") == (Decimal("60000.00"), "Coinbase")
    assert len(http.requests) == 1


def test_oracle_falls_back_when_source_fails() -> None:
    http = _FakeHttp(
        {
            _url("DOGE", 0): URLError("timed out"),
            _url("DOGE", 1): {"symbol": "DOGEUSDT", "price": "0.20000000"},
        }
    )
    oracle = PriceOracle(5, fetch_json=http)

    rate, source = oracle.usd_rate("DOGE")

    assert rate == Decimal("0.20000000")
    assert source == "Binance"


def test_oracle_skips_malformed_and_non_positive_rates() -> None:
    http = _FakeHttp(
        {
            _url("BTC", 0): {"data": {}},
            _url("BTC", 1): {"bitcoin": {"usd": 0}},
        }
    )
    oracle = PriceOracle(5, fetch_json=http)

    with pytest.raises(OracleUnavailable):
        oracle.usd_rate("BTC")


def test_oracle_without_sources() -> None:
    with pytest.raises(OracleUnavailable):
        PriceOracle(5, sources={}).usd_rate("BTC")


def test_convert_rounds_to_currency_precision() -> None:
    http = _FakeHttp(
        {
            _url("BTC", 0): {"data": {"rates": {"USD": "30000"}}},
            _url("DOGE", 0): {"dogecoin": {"usd": 0.3}},
        }
    )
    oracle = PriceOracle(5, fetch_json=http)

    btc = oracle.convert_usd_to("BTC", Decimal(7))
    doge = oracle.convert_usd_to("DOGE", Decimal(7))

    assert btc.amount == Decimal("0.00023333")
    assert doge.amount == Decimal("23.33")
    assert doge.source == "CoinGecko"


def test_deriver_posts_prime_index() -> None:
    http = _FakeHttp({"http://wallet/btc": {"address": "bc1qexample"}})
    deriver = AddressDeriver({"BTC": "http://wallet/btc"}, 5, fetch_json=http)

    assert deriver.address_for("BTC", 13) == "bc1qexample"
    request = http.requests[0]
    assert request.get_method() == "POST"
    assert json.loads(request.data) == {"currency": "BTC", "index": 13}


@pytest.mark.parametrize(
    "response",
    [URLError("refused"), {"address": ""}, {}, ValueError("bad json")],
)
def test_deriver_errors_become_provider_errors(response) -> None:
    http = _FakeHttp({"http://wallet/doge": response})
    deriver = AddressDeriver({"DOGE": "http://wallet/doge"}, 5, fetch_json=http)

    with pytest.raises(PaymentProviderError):
        deriver.address_for("DOGE", 13)


def test_deriver_without_service_url() -> None:
    with pytest.raises(PaymentProviderError):
        AddressDeriver({"BTC": ""}, 5).address_for("BTC", 2)


def test_initiator_creates_quoted_payment() -> None:
    http = _FakeHttp(
        {
            _url("BTC", 0): {"data": {"rates": {"USD": "50000"}}},
            "http://wallet/btc": {"address": "bc1qprime"},
        }
    )
    initiator = CryptoPaymentInitiator(
        "bitcoin",
        "BTC",
        PriceOracle(5, fetch_json=http),
        AddressDeriver({"BTC": "http://wallet/btc"}, 5, fetch_json=http),
    )

    payment = initiator.create_payment(5, "a@x.com")

    assert payment.method == "bitcoin"
    assert payment.address == "bc1qprime"
    assert payment.amount_usd == Decimal(5)
    assert payment.amount_in_currency == Decimal("0.00010000")
    assert payment.rate == Decimal("50000")
    assert len(payment.reference) == 32
    assert payment.payment_uri == "bitcoin:bc1qprime?amount=0.00010000&label=PrimeClaims"
    assert payment.qr_code.startswith("data:image/png;base64,")


def test_initiator_without_quote_still_returns_address() -> None:
    http = _FakeHttp(
        {
            _url("DOGE", 0): URLError("down"),
            _url("DOGE", 1): URLError("down"),
            "http://wallet/doge": {"address": "DPrimeAddress"},
        }
    )
    initiator = CryptoPaymentInitiator(
        "dogecoin",
        "DOGE",
        PriceOracle(5, fetch_json=http),
        AddressDeriver({"DOGE": "http://wallet/doge"}, 5, fetch_json=http),
    )

    payment = initiator.create_payment(7, "a@x.com")

    assert payment.address == "DPrimeAddress"
    assert payment.amount_in_currency is None
    assert payment.rate is None
    assert payment.payment_uri == "dogecoin:DPrimeAddress?label=PrimeClaims"
    assert payment.qr_code is not None


def test_payment_uri_never_uses_exponent_notation() -> None:
    uri = build_payment_uri("bitcoin", "bc1qtiny", Decimal("0.00000001"))

    assert uri == "bitcoin:bc1qtiny?amount=0.00000001&label=PrimeClaims"
