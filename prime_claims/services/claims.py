from decimal import Decimal
import logging
from typing import Optional, Protocol

from prime_claims.schemas.claims import ClaimRecord, ClaimStats, Reservation
from prime_claims.schemas.payments import PaymentSession, PriceCheck
from prime_claims.services.allocator import AlreadyReserved, PrimeAllocator, allocator
from prime_claims.services.email import EmailSendError, email_notifier
from prime_claims.services.payments import (
    CryptoPaymentInitiator,
    OracleUnavailable,
    PaymentError,
    PriceOracle,
    build_initiators,
    price_oracle,
)
from prime_claims.services.primes import price

LOGGER = logging.getLogger(__name__)

QUOTE_CURRENCIES = ("BTC", "DOGE")


class UnknownPaymentMethod(ValueError):
    pass


class Notifier(Protocol):
    def notify_confirmed(
        self,
        payer_identity: str,
        prime: int,
        amount: Decimal,
        method: Optional[str],
        tx_reference: Optional[str],
    ) -> None: ...


class ClaimService:
    def __init__(
        self,
        allocator: PrimeAllocator,
        initiators: dict[str, CryptoPaymentInitiator],
        oracle: PriceOracle,
        notifier: Notifier,
    ) -> None:
        self._allocator = allocator
        self._initiators = initiators
        self._oracle = oracle
        self._notifier = notifier

    @property
    def payment_methods(self) -> list[str]:
        return sorted(self._initiators)

    def check_price(self, payer_identity: str) -> PriceCheck:
        owned = self._allocator.store.get_claim_by_payer(payer_identity)
        if owned is not None and owned.is_paid:
            return PriceCheck(prime=owned.prime, price=price(owned.prime), already_claimed=True)
        if owned is not None:
            candidate = owned.prime
        else:
            candidate = self._allocator.find_next_available_prime()
        amount = price(candidate)
        quotes = []
        for currency in QUOTE_CURRENCIES:
            try:
                quotes.append(self._oracle.convert_usd_to(currency, amount))
            except OracleUnavailable as exc:
                LOGGER.warning("No %s quote for prime=%s: %s", currency, candidate, exc)
        return PriceCheck(prime=candidate, price=amount, quotes=tuple(quotes))

    def reserve(
        self, payer_identity: str, prime: int, ttl_seconds: Optional[int] = None
    ) -> Reservation:
        return self._allocator.reserve_specific_prime(prime, payer_identity, ttl_seconds)

    def create_payment(
        self, method: str, payer_identity: str, prime: Optional[int] = None
    ) -> PaymentSession:
        initiator = self._initiators.get(method)
        if initiator is None:
            raise UnknownPaymentMethod(f"Payment method '{method}' is not available")

        if prime is None:
            reservation = self._allocator.reserve_next_available(payer_identity)
        else:
            reservation = self._allocator.reserve_specific_prime(prime, payer_identity)

        try:
            payment = initiator.create_payment(reservation.prime, payer_identity)
        except PaymentError:
            if self._allocator.release(reservation):
                LOGGER.info("Released reservation prime=%s after payment failure", reservation.prime)
            raise

        attached = self._allocator.attach_payment(reservation, method, payment.reference)
        if attached is None:
            # The reservation lapsed while the provider was being called.
            LOGGER.warning(
                "Reservation lost before payment attach prime=%s payer=%s",
                reservation.prime,
                payer_identity,
            )
            raise AlreadyReserved(
                f"Reservation for prime {reservation.prime} expired before payment was created",
                prime=reservation.prime,
            )
        return PaymentSession(
            prime=reservation.prime,
            payer_identity=payer_identity,
            payment=payment,
            expires_at=attached.expires_at,
        )

    def confirm_payment(
        self,
        payment_reference: str,
        amount_paid: Decimal,
        tx_reference: Optional[str] = None,
    ) -> Optional[ClaimRecord]:
        claim, newly_confirmed = self._allocator.confirm_claim(
            payment_reference, amount_paid, tx_reference
        )
        if claim is None or not newly_confirmed:
            return claim
        try:
            self._notifier.notify_confirmed(
                claim.payer_identity,
                claim.prime,
                amount_paid,
                claim.payment_method,
                tx_reference,
            )
        except EmailSendError as exc:
            LOGGER.error("Confirmation email failed prime=%s: %s", claim.prime, exc)
        return claim

    def payment_status(self, payer_identity: str) -> Optional[ClaimRecord]:
        return self._allocator.store.get_claim_by_payer(payer_identity)

    def payment_by_reference(self, method: str, reference: str) -> Optional[ClaimRecord]:
        claim = self._allocator.store.get_claim_by_reference(reference)
        if claim is None or claim.payment_method != method:
            return None
        return claim

    def usd_rate(self, currency: str) -> tuple[Decimal, str]:
        return self._oracle.usd_rate(currency)

    def stats(self) -> tuple[ClaimStats, int]:
        return self._allocator.store.get_stats(), self._allocator.find_next_available_prime()


claim_service = ClaimService(allocator, build_initiators(), price_oracle, email_notifier)
