"""
Background sweeper that cancels PENDING reservations whose hold ran out.

Runs as an asyncio task inside the API process; the same sweep is scheduled
on Celery beat so expiry keeps happening when API instances are idle.
"""
import asyncio
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from vibewell.obs.logging import get_logger
from vibewell.services.reservation_service import ReservationService

logger = get_logger(__name__)


def sweep_expired_reservations(session_factory: Callable, now=None) -> int:
    db = session_factory()
    try:
        return ReservationService(db).expire_stale(now)
    finally:
        db.close()


class ReservationSweeper:
    def __init__(self, session_factory: Callable, interval_seconds: float):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    def sweep_once(self) -> int:
        return sweep_expired_reservations(self.session_factory)

    async def run(self):
        logger.info(f"Reservation sweeper started (every {self.interval_seconds}s)")
        while True:
            try:
                await asyncio.to_thread(self.sweep_once)
            except SQLAlchemyError as e:
                # keep sweeping; the next pass retries
                logger.error(f"Reservation sweep failed: {e}", extra={'error_type': type(e).__name__})
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reservation sweeper stopped")
