import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from prime_claims.models.claim import MAX_STORABLE_PRIME

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_payer_identity(email: str) -> str:
    return email.strip().lower()


@dataclass(frozen=True)
class ClaimRecord:
    prime: int
    payer_identity: str
    status: str
    claimed_at: datetime
    expires_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    tx_reference: Optional[str] = None
    paid_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"


@dataclass(frozen=True)
class Reservation:
    prime: int
    payer_identity: str
    expires_at: Optional[datetime]
    price: Decimal
    renewed: bool = False


@dataclass(frozen=True)
class RecentClaim:
    prime: int
    paid_at: Optional[datetime]
    amount_paid: Optional[Decimal]


@dataclass(frozen=True)
class ClaimStats:
    claimed: int
    paid: int
    pending: int
    max_allocated_prime: int
    revenue_by_method: dict[str, Decimal] = field(default_factory=dict)
    paid_by_method: dict[str, int] = field(default_factory=dict)
    recent_claims: list[RecentClaim] = field(default_factory=list)


class PayerRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        cleaned = normalize_payer_identity(value)
        if not EMAIL_PATTERN.match(cleaned):
            raise ValueError("Valid email address required")
        return cleaned


class ReservationRequest(PayerRequest):
    prime: int = Field(ge=2, le=MAX_STORABLE_PRIME)
    ttl_seconds: Optional[int] = Field(default=None, gt=0, le=7 * 86400)


class ReservationResponse(BaseModel):
    prime: int
    email: str
    price: Decimal
    expires_at: Optional[datetime] = None
    renewed: bool = False


class ConfirmPaymentRequest(BaseModel):
    reference: str = Field(min_length=1, max_length=64)
    amount_paid: Decimal = Field(ge=0)
    tx_reference: Optional[str] = Field(default=None, max_length=128)


class ClaimResponse(BaseModel):
    prime: int
    email: str
    status: Literal["pending", "paid"]
    payment_method: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    claimed_at: datetime
    expires_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    prime_index: Optional[int] = None


class PaymentStatusResponse(BaseModel):
    status: Literal["not_found", "pending", "paid"]
    claim: Optional[ClaimResponse] = None


class RecentClaimResponse(BaseModel):
    prime: int
    paid_at: Optional[datetime] = None
    amount_paid: Optional[Decimal] = None


class StatsResponse(BaseModel):
    claimed: int
    paid: int
    pending: int
    next_prime: int
    revenue_by_method: dict[str, Decimal]
    paid_by_method: dict[str, int]
    recent_claims: list[RecentClaimResponse]


class PrimeInfoResponse(BaseModel):
    number: int
    is_prime: bool
    index: Optional[int] = None
    price: Optional[Decimal] = None
