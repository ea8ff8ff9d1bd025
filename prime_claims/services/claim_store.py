from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging

from sqlalchemy import and_, delete, exists, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError

from prime_claims.database import session_scope
from prime_claims.models.claim import STATUS_PAID, STATUS_PENDING, ClaimEntry
from prime_claims.schemas.claims import ClaimRecord, ClaimStats, RecentClaim

LOGGER = logging.getLogger(__name__)


class DuplicatePaidClaim(ValueError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; everything is stored in UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _to_record(entry: ClaimEntry) -> ClaimRecord:
    return ClaimRecord(
        prime=int(entry.prime),
        payer_identity=entry.payer_identity,
        status=entry.status,
        claimed_at=_as_utc(entry.claimed_at),
        expires_at=_as_utc(entry.expires_at),
        payment_method=entry.payment_method,
        payment_reference=entry.payment_reference,
        amount_paid=Decimal(entry.amount_paid) if entry.amount_paid is not None else None,
        tx_reference=entry.tx_reference,
        paid_at=_as_utc(entry.paid_at),
    )


def _active_condition(now: datetime):
    return or_(
        ClaimEntry.status == STATUS_PAID,
        and_(
            ClaimEntry.status == STATUS_PENDING,
            or_(ClaimEntry.expires_at.is_(None), ClaimEntry.expires_at > now),
        ),
    )


def _dialect_insert(session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"Unsupported database dialect for conditional upsert: {dialect}")


class ClaimStore:
    def get_max_allocated_prime(self) -> int:
        with session_scope() as session:
            max_prime = session.execute(select(func.max(ClaimEntry.prime))).scalar()
            return int(max_prime) if max_prime is not None else 1

    def get_claim(self, prime: int) -> ClaimRecord | None:
        with session_scope() as session:
            entry = session.get(ClaimEntry, prime)
            if entry is None:
                return None
            return _to_record(entry)

    def get_claim_by_payer(self, payer_identity: str) -> ClaimRecord | None:
        now = _utcnow()
        with session_scope() as session:
            paid = session.execute(
                select(ClaimEntry).where(
                    ClaimEntry.payer_identity == payer_identity,
                    ClaimEntry.status == STATUS_PAID,
                )
            ).scalar_one_or_none()
            if paid is not None:
                return _to_record(paid)
            pending = session.execute(
                select(ClaimEntry)
                .where(ClaimEntry.payer_identity == payer_identity, _active_condition(now))
                .order_by(ClaimEntry.claimed_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            if pending is None:
                return None
            return _to_record(pending)

    def get_claim_by_reference(self, payment_reference: str) -> ClaimRecord | None:
        with session_scope() as session:
            entry = session.execute(
                select(ClaimEntry).where(ClaimEntry.payment_reference == payment_reference)
            ).scalar_one_or_none()
            if entry is None:
                return None
            return _to_record(entry)

    def is_actively_reserved(self, prime: int) -> bool:
        now = _utcnow()
        with session_scope() as session:
            return bool(
                session.execute(
                    select(
                        exists().where(ClaimEntry.prime == prime, _active_condition(now))
                    )
                ).scalar()
            )

    def upsert_pending_reservation(
        self, prime: int, payer_identity: str, expires_at: datetime
    ) -> ClaimRecord | None:
        """Insert a pending reservation, or take over a released one.

        An existing row is overwritten only while it is pending and either
        expired or a soft reservation of the same payer. Returns None, writing
        nothing, when the prime is held by someone else or already paid.
        """
        now = _utcnow()
        with session_scope() as session:
            insert = _dialect_insert(session)
            stmt = insert(ClaimEntry).values(
                prime=prime,
                payer_identity=payer_identity,
                status=STATUS_PENDING,
                expires_at=expires_at,
                payment_method=None,
                payment_reference=None,
                amount_paid=None,
                tx_reference=None,
                claimed_at=now,
                paid_at=None,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[ClaimEntry.prime],
                set_={
                    "payer_identity": stmt.excluded.payer_identity,
                    "expires_at": stmt.excluded.expires_at,
                    "payment_method": None,
                    "payment_reference": None,
                    "claimed_at": stmt.excluded.claimed_at,
                },
                where=and_(
                    ClaimEntry.status == STATUS_PENDING,
                    ClaimEntry.expires_at.is_not(None),
                    or_(
                        ClaimEntry.expires_at <= now,
                        ClaimEntry.payer_identity == stmt.excluded.payer_identity,
                    ),
                ),
            ).returning(ClaimEntry)
            entry = session.scalars(
                stmt, execution_options={"populate_existing": True}
            ).one_or_none()
            if entry is None:
                return None
            return _to_record(entry)

    def attach_payment_method(
        self,
        prime: int,
        method: str,
        reference: str,
        *,
        payer_identity: str | None = None,
    ) -> ClaimRecord | None:
        now = _utcnow()
        conditions = [
            ClaimEntry.prime == prime,
            ClaimEntry.status == STATUS_PENDING,
            or_(ClaimEntry.expires_at.is_(None), ClaimEntry.expires_at > now),
        ]
        if payer_identity is not None:
            conditions.append(ClaimEntry.payer_identity == payer_identity)
        with session_scope() as session:
            entry = session.scalars(
                update(ClaimEntry)
                .where(*conditions)
                .values(
                    payment_method=method,
                    payment_reference=reference,
                    expires_at=None,
                    claimed_at=now,
                )
                .returning(ClaimEntry),
                execution_options={"populate_existing": True},
            ).one_or_none()
            if entry is None:
                return None
            return _to_record(entry)

    def release_reservation(self, prime: int, payer_identity: str) -> bool:
        with session_scope() as session:
            result = session.execute(
                delete(ClaimEntry)
                .where(
                    ClaimEntry.prime == prime,
                    ClaimEntry.payer_identity == payer_identity,
                    ClaimEntry.status == STATUS_PENDING,
                    ClaimEntry.payment_reference.is_(None),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def confirm_payment(
        self,
        payment_reference: str,
        amount_paid: Decimal,
        tx_reference: str | None = None,
    ) -> ClaimRecord | None:
        now = _utcnow()
        try:
            with session_scope() as session:
                entry = session.scalars(
                    update(ClaimEntry)
                    .where(
                        ClaimEntry.payment_reference == payment_reference,
                        ClaimEntry.status == STATUS_PENDING,
                    )
                    .values(
                        status=STATUS_PAID,
                        amount_paid=amount_paid,
                        tx_reference=tx_reference,
                        paid_at=now,
                        expires_at=None,
                    )
                    .returning(ClaimEntry),
                    execution_options={"populate_existing": True},
                ).one_or_none()
                if entry is None:
                    return None
                return _to_record(entry)
        except IntegrityError as exc:
            raise DuplicatePaidClaim(
                f"Payer of payment {payment_reference} already owns a prime"
            ) from exc

    def sweep_expired_reservations(self, abandoned_ttl_seconds: int) -> int:
        now = _utcnow()
        abandoned_before = now - timedelta(seconds=abandoned_ttl_seconds)
        with session_scope() as session:
            result = session.execute(
                delete(ClaimEntry)
                .where(
                    ClaimEntry.status == STATUS_PENDING,
                    or_(
                        and_(
                            ClaimEntry.expires_at.is_not(None),
                            ClaimEntry.expires_at <= now,
                        ),
                        and_(
                            ClaimEntry.expires_at.is_(None),
                            ClaimEntry.claimed_at <= abandoned_before,
                        ),
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    def get_stats(self, recent_limit: int = 10) -> ClaimStats:
        now = _utcnow()
        with session_scope() as session:
            claimed = session.execute(
                select(func.count()).select_from(ClaimEntry).where(_active_condition(now))
            ).scalar_one()
            by_method = session.execute(
                select(
                    ClaimEntry.payment_method,
                    func.count(),
                    func.coalesce(func.sum(ClaimEntry.amount_paid), 0),
                )
                .where(ClaimEntry.status == STATUS_PAID)
                .group_by(ClaimEntry.payment_method)
            ).all()
            recent = session.execute(
                select(ClaimEntry)
                .where(ClaimEntry.status == STATUS_PAID)
                .order_by(ClaimEntry.paid_at.desc())
                .limit(recent_limit)
            ).scalars().all()
            max_prime = session.execute(select(func.max(ClaimEntry.prime))).scalar()

        paid_by_method = {}
        revenue_by_method = {}
        for method, count, revenue in by_method:
            key = method or "unknown"
            paid_by_method[key] = int(count)
            revenue_by_method[key] = Decimal(str(revenue))
        paid = sum(paid_by_method.values())
        return ClaimStats(
            claimed=int(claimed),
            paid=paid,
            pending=int(claimed) - paid,
            max_allocated_prime=int(max_prime) if max_prime is not None else 1,
            revenue_by_method=revenue_by_method,
            paid_by_method=paid_by_method,
            recent_claims=[
                RecentClaim(
                    prime=int(entry.prime),
                    paid_at=_as_utc(entry.paid_at),
                    amount_paid=(
                        Decimal(entry.amount_paid) if entry.amount_paid is not None else None
                    ),
                )
                for entry in recent
            ],
        )


claim_store = ClaimStore()
