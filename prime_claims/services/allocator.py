from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging

from prime_claims.config import settings
from prime_claims.models.claim import MAX_STORABLE_PRIME
from prime_claims.schemas.claims import ClaimRecord, Reservation
from prime_claims.services.claim_store import ClaimStore, DuplicatePaidClaim, claim_store
from prime_claims.services.primes import is_prime, next_candidate, price

LOGGER = logging.getLogger(__name__)


class AllocationError(ValueError):
    reason = "allocation_error"

    def __init__(self, message: str, prime: int | None = None) -> None:
        super().__init__(message)
        self.prime = prime


class NotPrime(AllocationError):
    reason = "not_prime"


class PrimeOutOfRange(AllocationError):
    reason = "prime_out_of_range"


class AlreadyClaimed(AllocationError):
    reason = "already_claimed"


class AlreadyReserved(AllocationError):
    reason = "already_reserved"


class AllocationContention(AllocationError):
    reason = "allocation_contention"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PrimeAllocator:
    def __init__(
        self,
        store: ClaimStore,
        reservation_ttl_seconds: int,
        abandoned_payment_ttl_seconds: int,
        max_retries: int,
    ) -> None:
        self._store = store
        self._reservation_ttl_seconds = reservation_ttl_seconds
        self._abandoned_payment_ttl_seconds = abandoned_payment_ttl_seconds
        self._max_retries = max_retries

    @property
    def store(self) -> ClaimStore:
        return self._store

    def find_next_available_prime(self) -> int:
        # Lower bound only: a concurrent caller may take the candidate first,
        # the reservation step re-checks it atomically.
        candidate = next_candidate(max(self._store.get_max_allocated_prime(), 1))
        while True:
            if is_prime(candidate) and not self._store.is_actively_reserved(candidate):
                return candidate
            candidate = next_candidate(candidate)

    def reserve_specific_prime(
        self, prime: int, payer_identity: str, ttl_seconds: int | None = None
    ) -> Reservation:
        if prime > MAX_STORABLE_PRIME:
            raise PrimeOutOfRange(
                f"{prime} is above the claimable range (max {MAX_STORABLE_PRIME})",
                prime=prime,
            )
        if not is_prime(prime):
            raise NotPrime(f"{prime} is not a prime number", prime=prime)
        self._ensure_payer_unpaid(payer_identity, prime)

        existing = self._store.get_claim(prime)
        if (
            existing is not None
            and existing.payer_identity == payer_identity
            and not existing.is_paid
            and existing.expires_at is None
        ):
            # Payment already in flight for this payer; nothing to renew.
            return self._to_reservation(existing, renewed=True)

        ttl = ttl_seconds if ttl_seconds is not None else self._reservation_ttl_seconds
        expires_at = _utcnow() + timedelta(seconds=ttl)
        record = self._store.upsert_pending_reservation(prime, payer_identity, expires_at)
        if record is None:
            raise self._conflict_for(prime)

        renewed = existing is not None and existing.payer_identity == payer_identity
        LOGGER.info(
            "Prime reserved prime=%s payer=%s expires_at=%s renewed=%s",
            prime,
            payer_identity,
            record.expires_at,
            renewed,
        )
        return self._to_reservation(record, renewed=renewed)

    def reserve_next_available(self, payer_identity: str) -> Reservation:
        existing = self._store.get_claim_by_payer(payer_identity)
        if existing is not None:
            if existing.is_paid:
                raise AlreadyClaimed(
                    f"{payer_identity} already owns prime {existing.prime}",
                    prime=existing.prime,
                )
            if existing.expires_at is None:
                return self._to_reservation(existing, renewed=True)
            record = self._store.upsert_pending_reservation(
                existing.prime, payer_identity, self._expiry()
            )
            if record is not None:
                return self._to_reservation(record, renewed=True)
            LOGGER.debug(
                "Hold lapsed before renewal prime=%s payer=%s", existing.prime, payer_identity
            )

        for attempt in range(1, self._max_retries + 1):
            candidate = self.find_next_available_prime()
            record = self._store.upsert_pending_reservation(
                candidate, payer_identity, self._expiry()
            )
            if record is not None:
                LOGGER.info(
                    "Next prime reserved prime=%s payer=%s attempt=%s",
                    candidate,
                    payer_identity,
                    attempt,
                )
                return self._to_reservation(record)
            LOGGER.debug(
                "Lost reservation race prime=%s payer=%s attempt=%s",
                candidate,
                payer_identity,
                attempt,
            )

        LOGGER.warning(
            "Allocation contention payer=%s retries=%s", payer_identity, self._max_retries
        )
        raise AllocationContention(
            f"Could not reserve a prime after {self._max_retries} attempts"
        )

    def attach_payment(
        self, reservation: Reservation, method: str, reference: str
    ) -> ClaimRecord | None:
        return self._store.attach_payment_method(
            reservation.prime, method, reference, payer_identity=reservation.payer_identity
        )

    def release(self, reservation: Reservation) -> bool:
        return self._store.release_reservation(reservation.prime, reservation.payer_identity)

    def confirm_claim(
        self,
        payment_reference: str,
        amount_paid: Decimal,
        tx_reference: str | None = None,
    ) -> tuple[ClaimRecord | None, bool]:
        try:
            record = self._store.confirm_payment(payment_reference, amount_paid, tx_reference)
        except DuplicatePaidClaim as exc:
            raise AlreadyClaimed(str(exc)) from exc
        if record is not None:
            LOGGER.info(
                "Payment confirmed prime=%s payer=%s amount=%s reference=%s",
                record.prime,
                record.payer_identity,
                amount_paid,
                payment_reference,
            )
            return record, True

        existing = self._store.get_claim_by_reference(payment_reference)
        if existing is not None and existing.is_paid:
            return existing, False
        LOGGER.warning("No pending claim for payment reference=%s", payment_reference)
        return None, False

    def sweep_expired_reservations(self) -> int:
        removed = self._store.sweep_expired_reservations(self._abandoned_payment_ttl_seconds)
        if removed:
            LOGGER.info("Swept stale reservations count=%s", removed)
        return removed

    def _expiry(self) -> datetime:
        return _utcnow() + timedelta(seconds=self._reservation_ttl_seconds)

    def _ensure_payer_unpaid(self, payer_identity: str, prime: int) -> None:
        owned = self._store.get_claim_by_payer(payer_identity)
        if owned is not None and owned.is_paid:
            raise AlreadyClaimed(
                f"{payer_identity} already owns prime {owned.prime}", prime=owned.prime
            )

    def _conflict_for(self, prime: int) -> AllocationError:
        holder = self._store.get_claim(prime)
        if holder is not None and holder.is_paid:
            return AlreadyClaimed(f"Prime {prime} is already claimed", prime=prime)
        return AlreadyReserved(f"Prime {prime} is reserved by another payer", prime=prime)

    @staticmethod
    def _to_reservation(record: ClaimRecord, renewed: bool = False) -> Reservation:
        return Reservation(
            prime=record.prime,
            payer_identity=record.payer_identity,
            expires_at=record.expires_at,
            price=price(record.prime),
            renewed=renewed,
        )


allocator = PrimeAllocator(
    claim_store,
    reservation_ttl_seconds=settings.reservation_ttl_seconds,
    abandoned_payment_ttl_seconds=settings.abandoned_payment_ttl_seconds,
    max_retries=settings.allocation_max_retries,
)
