from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from prime_claims.database import ping
from prime_claims.services.claims import claim_service

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> JSONResponse:
    database_ok = ping()
    return JSONResponse(
        status_code=status.HTTP_200_OK if database_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ok" if database_ok else "degraded",
            "database": "ok" if database_ok else "error",
            "payment_methods": claim_service.payment_methods,
        },
    )
