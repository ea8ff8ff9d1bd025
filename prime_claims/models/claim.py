from sqlalchemy import BigInteger, Column, DateTime, Index, Numeric, String, text

from prime_claims.database import Base

STATUS_PENDING = "pending"
STATUS_PAID = "paid"

# Upper bound of the BIGINT primary key.
MAX_STORABLE_PRIME = 2**63 - 1


class ClaimEntry(Base):
    __tablename__ = "prime_claims"

    prime = Column(BigInteger, primary_key=True, autoincrement=False)
    payer_identity = Column(String(255), nullable=False, index=True)
    status = Column(String(16), nullable=False, default=STATUS_PENDING)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    payment_method = Column(String(32), nullable=True)
    payment_reference = Column(String(64), nullable=True, unique=True)
    amount_paid = Column(Numeric(18, 8), nullable=True)
    tx_reference = Column(String(128), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        # One paid prime per payer; pending rows are unrestricted.
        Index(
            "uq_prime_claims_paid_payer",
            "payer_identity",
            unique=True,
            postgresql_where=text("status = 'paid'"),
            sqlite_where=text("status = 'paid'"),
        ),
        Index("ix_prime_claims_status_expires_at", "status", "expires_at"),
    )
