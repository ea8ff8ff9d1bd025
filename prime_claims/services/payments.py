from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen
from uuid import uuid4

import segno

from prime_claims.config import settings
from prime_claims.schemas.payments import PaymentRequest, PriceQuote

LOGGER = logging.getLogger(__name__)

BITCOIN = "bitcoin"
DOGECOIN = "dogecoin"


class PaymentError(RuntimeError):
    pass


class OracleUnavailable(PaymentError):
    pass


class PaymentProviderError(PaymentError):
    pass


@dataclass(frozen=True)
class PriceSource:
    name: str
    url: str
    parser: Callable[[dict[str, Any]], Any]


PRICE_SOURCES: dict[str, tuple[PriceSource, ...]] = {
    "BTC": (
        PriceSource(
            "Coinbase",
            "https://api.coinbase.com/v2/exchange-rates?currency=BTC",
            lambda data: data["data"]["rates"]["USD"],
        ),
        PriceSource(
            "CoinGecko",
            "https://api.coingecko.com/api/v3/simple/price?ids=bitcoin&vs_currencies=usd",
            lambda data: data["bitcoin"]["usd"],
        ),
    ),
    "DOGE": (
        PriceSource(
            "CoinGecko",
            "https://api.coingecko.com/api/v3/simple/price?ids=dogecoin&vs_currencies=usd",
            lambda data: data["dogecoin"]["usd"],
        ),
        PriceSource(
            "Binance",
            "https://api.binance.com/api/v3/ticker/price?symbol=DOGEUSDT",
            lambda data: data["price"],
        ),
    ),
}

CURRENCY_PRECISION = {"BTC": Decimal("0.00000001"), "DOGE": Decimal("0.01")}

PAYMENT_LABEL = "PrimeClaims"


def _fetch_json(request: Request, timeout: int) -> dict[str, Any]:
    with urlopen(request, timeout=timeout) as response:
        return json.loads(response.read().decode("utf-8"))


class PriceOracle:
    def __init__(
        self,
        timeout_seconds: int,
        sources: Optional[dict[str, tuple[PriceSource, ...]]] = None,
        fetch_json: Callable[[Request, int], dict[str, Any]] = _fetch_json,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._sources = sources if sources is not None else PRICE_SOURCES
        self._fetch_json = fetch_json

    def usd_rate(self, currency: str) -> tuple[Decimal, str]:
        sources = self._sources.get(currency)
        if not sources:
            raise OracleUnavailable(f"No price sources for {currency}")
        for source in sources:
            try:
                data = self._fetch_json(Request(source.url, method="GET"), self._timeout_seconds)
                rate = Decimal(str(source.parser(data)))
            except (URLError, TimeoutError, ValueError, KeyError, TypeError, InvalidOperation) as exc:
                LOGGER.warning(
                    "Price lookup failed source=%s currency=%s: %s", source.name, currency, exc
                )
                continue
            if rate > 0:
                LOGGER.info("%s price from %s: $%s", currency, source.name, rate)
                return rate, source.name
        raise OracleUnavailable(f"Unable to fetch {currency} price from any source")

    def convert_usd_to(self, currency: str, usd_amount: Decimal) -> PriceQuote:
        rate, source = self.usd_rate(currency)
        precision = CURRENCY_PRECISION.get(currency, Decimal("0.00000001"))
        amount = (Decimal(usd_amount) / rate).quantize(precision, rounding=ROUND_HALF_UP)
        return PriceQuote(currency=currency, amount=amount, rate=rate, source=source)


def build_payment_uri(method: str, address: str, amount: Optional[Decimal]) -> str:
    """BIP21-style URI that wallets open directly, e.g. ``bitcoin:<addr>?amount=0.1``."""
    query = f"label={PAYMENT_LABEL}"
    if amount is not None:
        query = f"amount={amount:f}&{query}"
    return f"{method}:{address}?{query}"


def payment_qr_code(payment_uri: str) -> str:
    qr = segno.make_qr(payment_uri, error="m")
    return qr.png_data_uri(scale=8, border=2, dark="#000000", light="#FFFFFF")


class AddressDeriver:
    """Asks a wallet service for the deposit address of a prime.

    The service owns the extended public keys; it derives one address per
    prime and answers ``{"address": "..."}``.
    """

    def __init__(
        self,
        service_urls: dict[str, str],
        timeout_seconds: int,
        fetch_json: Callable[[Request, int], dict[str, Any]] = _fetch_json,
    ) -> None:
        self._service_urls = service_urls
        self._timeout_seconds = timeout_seconds
        self._fetch_json = fetch_json

    def address_for(self, currency: str, prime: int) -> str:
        service_url = self._service_urls.get(currency)
        if not service_url:
            raise PaymentProviderError(f"No address service configured for {currency}")
        payload = json.dumps({"currency": currency, "index": prime}).encode("utf-8")
        request = Request(
            service_url,
            data=payload,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            data = self._fetch_json(request, self._timeout_seconds)
        except HTTPError as exc:
            error_body = exc.read().decode("utf-8", errors="replace")
            LOGGER.error("Address service error currency=%s response=%s", currency, error_body)
            raise PaymentProviderError(f"Failed to derive {currency} address") from exc
        except (URLError, TimeoutError) as exc:
            raise PaymentProviderError(f"Failed to reach {currency} address service") from exc
        except ValueError as exc:
            raise PaymentProviderError(f"Invalid {currency} address service response") from exc
        address = data.get("address") if isinstance(data, dict) else None
        if not address:
            raise PaymentProviderError(f"Address service returned no {currency} address")
        LOGGER.info("Derived %s address prime=%s address=%s", currency, prime, address)
        return address


class CryptoPaymentInitiator:
    def __init__(
        self,
        method: str,
        currency: str,
        oracle: PriceOracle,
        deriver: AddressDeriver,
    ) -> None:
        self.method = method
        self.currency = currency
        self._oracle = oracle
        self._deriver = deriver

    def create_payment(self, prime: int, payer_identity: str) -> PaymentRequest:
        amount_usd = Decimal(prime)
        address = self._deriver.address_for(self.currency, prime)
        amount_in_currency = None
        rate = None
        try:
            quote = self._oracle.convert_usd_to(self.currency, amount_usd)
            amount_in_currency = quote.amount
            rate = quote.rate
        except OracleUnavailable as exc:
            LOGGER.warning("Creating %s payment without quote prime=%s: %s", self.method, prime, exc)
        payment_uri = build_payment_uri(self.method, address, amount_in_currency)
        payment = PaymentRequest(
            reference=uuid4().hex,
            method=self.method,
            address=address,
            amount_usd=amount_usd,
            amount_in_currency=amount_in_currency,
            rate=rate,
            payment_uri=payment_uri,
            qr_code=payment_qr_code(payment_uri),
        )
        LOGGER.info(
            "%s payment created prime=%s payer=%s reference=%s amount=%s",
            self.method,
            prime,
            payer_identity,
            payment.reference,
            amount_in_currency,
        )
        return payment


price_oracle = PriceOracle(settings.oracle_timeout_seconds)
address_deriver = AddressDeriver(
    {
        "BTC": settings.bitcoin_address_service_url,
        "DOGE": settings.dogecoin_address_service_url,
    },
    settings.http_timeout_seconds,
)


def build_initiators() -> dict[str, CryptoPaymentInitiator]:
    initiators = {}
    if settings.enable_bitcoin:
        initiators[BITCOIN] = CryptoPaymentInitiator(BITCOIN, "BTC", price_oracle, address_deriver)
    if settings.enable_dogecoin:
        initiators[DOGECOIN] = CryptoPaymentInitiator(DOGECOIN, "DOGE", price_oracle, address_deriver)
    return initiators
