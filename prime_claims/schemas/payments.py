from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from prime_claims.models.claim import MAX_STORABLE_PRIME
from prime_claims.schemas.claims import PayerRequest


@dataclass(frozen=True)
class PriceQuote:
    currency: str
    amount: Decimal
    rate: Decimal
    source: str


@dataclass(frozen=True)
class PaymentRequest:
    reference: str
    method: str
    address: str
    amount_usd: Decimal
    amount_in_currency: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    payment_uri: Optional[str] = None
    qr_code: Optional[str] = None


@dataclass(frozen=True)
class PaymentSession:
    prime: int
    payer_identity: str
    payment: PaymentRequest
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class PriceCheck:
    prime: int
    price: Decimal
    already_claimed: bool = False
    quotes: tuple[PriceQuote, ...] = ()


class CreatePaymentRequest(PayerRequest):
    prime: Optional[int] = Field(default=None, ge=2, le=MAX_STORABLE_PRIME)


class PaymentSessionResponse(BaseModel):
    prime: int
    email: str
    payment_method: str
    reference: str
    address: str
    amount_usd: Decimal
    amount_in_currency: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    payment_uri: Optional[str] = None
    qr_code: Optional[str] = None


class QuoteResponse(BaseModel):
    currency: str
    amount: Decimal
    rate: Decimal


class PriceCheckResponse(BaseModel):
    prime: int
    price: Decimal
    already_claimed: bool = False
    message: Optional[str] = None
    quotes: list[QuoteResponse] = Field(default_factory=list)


class UsdRateResponse(BaseModel):
    currency: str
    price: Decimal
    source: str
    timestamp: datetime
