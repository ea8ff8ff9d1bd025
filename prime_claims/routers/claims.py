from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Path, status

from prime_claims.database import StoreUnavailable
from prime_claims.schemas.claims import (
    EMAIL_PATTERN,
    ClaimRecord,
    ClaimResponse,
    ConfirmPaymentRequest,
    PayerRequest,
    PaymentStatusResponse,
    PrimeInfoResponse,
    RecentClaimResponse,
    ReservationRequest,
    ReservationResponse,
    StatsResponse,
    normalize_payer_identity,
)
from prime_claims.schemas.payments import (
    CreatePaymentRequest,
    PaymentSessionResponse,
    PriceCheckResponse,
    QuoteResponse,
    UsdRateResponse,
)
from prime_claims.services.allocator import (
    AllocationContention,
    AllocationError,
    AlreadyClaimed,
    AlreadyReserved,
    NotPrime,
    PrimeOutOfRange,
)
from prime_claims.services.claims import ClaimService, UnknownPaymentMethod, claim_service
from prime_claims.services.payments import OracleUnavailable, PaymentError
from prime_claims.services.primes import display_index, is_prime, price

router = APIRouter(tags=["claims"])

_ALLOCATION_STATUS = {
    NotPrime: status.HTTP_400_BAD_REQUEST,
    PrimeOutOfRange: status.HTTP_400_BAD_REQUEST,
    AlreadyClaimed: status.HTTP_409_CONFLICT,
    AlreadyReserved: status.HTTP_409_CONFLICT,
    AllocationContention: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_claim_service() -> ClaimService:
    return claim_service


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, AllocationError):
        status_code = _ALLOCATION_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
        return HTTPException(
            status_code=status_code,
            detail={"reason": exc.reason, "message": str(exc), "prime": exc.prime},
        )
    if isinstance(exc, OracleUnavailable):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Price feed temporarily unavailable",
        )
    if isinstance(exc, StoreUnavailable):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable",
        )
    if isinstance(exc, UnknownPaymentMethod):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))


def _claim_response(claim: ClaimRecord) -> ClaimResponse:
    return ClaimResponse(
        prime=claim.prime,
        email=claim.payer_identity,
        status=claim.status,
        payment_method=claim.payment_method,
        amount_paid=claim.amount_paid,
        claimed_at=claim.claimed_at,
        expires_at=claim.expires_at,
        paid_at=claim.paid_at,
        prime_index=display_index(claim.prime) if claim.is_paid else None,
    )


@router.post("/check-price", response_model=PriceCheckResponse)
def check_price(
    payload: PayerRequest, service: ClaimService = Depends(get_claim_service)
) -> PriceCheckResponse:
    try:
        result = service.check_price(payload.email)
    except StoreUnavailable as exc:
        raise _http_error(exc) from exc
    return PriceCheckResponse(
        prime=result.prime,
        price=result.price,
        already_claimed=result.already_claimed,
        message="This email already owns a prime" if result.already_claimed else None,
        quotes=[
            QuoteResponse(currency=quote.currency, amount=quote.amount, rate=quote.rate)
            for quote in result.quotes
        ],
    )


@router.post(
    "/reservations",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
)
def reserve_prime(
    payload: ReservationRequest, service: ClaimService = Depends(get_claim_service)
) -> ReservationResponse:
    try:
        reservation = service.reserve(payload.email, payload.prime, payload.ttl_seconds)
    except (AllocationError, StoreUnavailable) as exc:
        raise _http_error(exc) from exc
    return ReservationResponse(
        prime=reservation.prime,
        email=reservation.payer_identity,
        price=reservation.price,
        expires_at=reservation.expires_at,
        renewed=reservation.renewed,
    )


@router.post("/create-payment/{method}", response_model=PaymentSessionResponse)
def create_payment(
    payload: CreatePaymentRequest,
    method: str = Path(min_length=1, max_length=32),
    service: ClaimService = Depends(get_claim_service),
) -> PaymentSessionResponse:
    try:
        session = service.create_payment(method.lower(), payload.email, payload.prime)
    except (AllocationError, StoreUnavailable, UnknownPaymentMethod, PaymentError) as exc:
        raise _http_error(exc) from exc
    payment = session.payment
    return PaymentSessionResponse(
        prime=session.prime,
        email=session.payer_identity,
        payment_method=payment.method,
        reference=payment.reference,
        address=payment.address,
        amount_usd=payment.amount_usd,
        amount_in_currency=payment.amount_in_currency,
        rate=payment.rate,
        payment_uri=payment.payment_uri,
        qr_code=payment.qr_code,
    )


@router.post("/payments/confirm", response_model=ClaimResponse)
def confirm_payment(
    payload: ConfirmPaymentRequest, service: ClaimService = Depends(get_claim_service)
) -> ClaimResponse:
    try:
        claim = service.confirm_payment(
            payload.reference, payload.amount_paid, payload.tx_reference
        )
    except (AllocationError, StoreUnavailable) as exc:
        raise _http_error(exc) from exc
    if claim is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return _claim_response(claim)


@router.get("/payment-status/{email}", response_model=PaymentStatusResponse)
def payment_status(
    email: str, service: ClaimService = Depends(get_claim_service)
) -> PaymentStatusResponse:
    payer_identity = normalize_payer_identity(email)
    if not EMAIL_PATTERN.match(payer_identity):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Valid email address required",
        )
    try:
        claim = service.payment_status(payer_identity)
    except StoreUnavailable as exc:
        raise _http_error(exc) from exc
    if claim is None:
        return PaymentStatusResponse(status="not_found")
    return PaymentStatusResponse(status=claim.status, claim=_claim_response(claim))


@router.get("/payment-status/{method}/{reference}", response_model=PaymentStatusResponse)
def payment_status_by_reference(
    method: str,
    reference: str = Path(min_length=1, max_length=64),
    service: ClaimService = Depends(get_claim_service),
) -> PaymentStatusResponse:
    try:
        claim = service.payment_by_reference(method.lower(), reference)
    except StoreUnavailable as exc:
        raise _http_error(exc) from exc
    if claim is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Payment not found")
    return PaymentStatusResponse(status=claim.status, claim=_claim_response(claim))


def _usd_rate_response(service: ClaimService, currency: str) -> UsdRateResponse:
    try:
        rate, source = service.usd_rate(currency)
    except OracleUnavailable as exc:
        raise _http_error(exc) from exc
    return UsdRateResponse(
        currency=currency, price=rate, source=source, timestamp=datetime.now(timezone.utc)
    )


@router.get("/btc-price", response_model=UsdRateResponse)
def btc_price(service: ClaimService = Depends(get_claim_service)) -> UsdRateResponse:
    return _usd_rate_response(service, "BTC")


@router.get("/doge-price", response_model=UsdRateResponse)
def doge_price(service: ClaimService = Depends(get_claim_service)) -> UsdRateResponse:
    return _usd_rate_response(service, "DOGE")


@router.get("/stats", response_model=StatsResponse)
def stats(service: ClaimService = Depends(get_claim_service)) -> StatsResponse:
    try:
        claim_stats, next_prime = service.stats()
    except StoreUnavailable as exc:
        raise _http_error(exc) from exc
    return StatsResponse(
        claimed=claim_stats.claimed,
        paid=claim_stats.paid,
        pending=claim_stats.pending,
        next_prime=next_prime,
        revenue_by_method=claim_stats.revenue_by_method,
        paid_by_method=claim_stats.paid_by_method,
        recent_claims=[
            RecentClaimResponse(
                prime=recent.prime, paid_at=recent.paid_at, amount_paid=recent.amount_paid
            )
            for recent in claim_stats.recent_claims
        ],
    )


@router.get("/primes/{number}", response_model=PrimeInfoResponse)
def prime_info(number: int = Path(ge=0, le=10**12)) -> PrimeInfoResponse:
    if not is_prime(number):
        return PrimeInfoResponse(number=number, is_prime=False)
    return PrimeInfoResponse(
        number=number,
        is_prime=True,
        index=display_index(number),
        price=price(number),
    )
