import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from prime_claims.config import settings
from prime_claims.database import init_db
from prime_claims.routers import claims, health
from prime_claims.services.allocator import allocator
from prime_claims.services.sweeper import ReservationSweeper

app = FastAPI(title="Prime Claims")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(health.router, prefix="/api")
app.include_router(claims.router, prefix="/api")

sweeper = ReservationSweeper(allocator, settings.sweep_interval_seconds)


@app.on_event("startup")
async def startup() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
    settings.validate()
    init_db()
    sweeper.start()


@app.on_event("shutdown")
async def shutdown() -> None:
    await sweeper.stop()


@app.get("/")
def root():
    return {"status": "Prime claims running"}
