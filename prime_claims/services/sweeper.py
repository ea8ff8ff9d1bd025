import asyncio
import logging
from typing import Optional

from prime_claims.database import StoreUnavailable
from prime_claims.services.allocator import PrimeAllocator

LOGGER = logging.getLogger(__name__)


class ReservationSweeper:
    def __init__(self, allocator: PrimeAllocator, interval_seconds: int) -> None:
        self._allocator = allocator
        self._interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        LOGGER.info("Reservation sweeper started interval=%ss", self._interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        LOGGER.info("Reservation sweeper stopped")

    async def sweep_once(self) -> int:
        # Store calls block; keep them off the event loop.
        return await asyncio.to_thread(self._allocator.sweep_expired_reservations)

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except StoreUnavailable as exc:
                LOGGER.error("Reservation sweep skipped: %s", exc)
            except Exception:
                LOGGER.exception("Reservation sweep failed")
            await asyncio.sleep(self._interval_seconds)
