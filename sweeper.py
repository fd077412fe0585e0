import asyncio
from typing import Optional

from constants import ROOM_SWEEP_INTERVAL_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)


class RoomSweeper:
    """
    Background task that deletes expired rooms.

    Sweeps once at startup and then every ``interval`` seconds. Sweeps run one
    after another in a single loop, so they never overlap; a failed sweep is
    logged and the next tick runs as usual.
    """

    def __init__(self, service, interval: float = ROOM_SWEEP_INTERVAL_SECONDS):
        self.service = service
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())
        logger.info(f"Room sweeper started, interval {self.interval} seconds")

    async def stop(self) -> None:
        if not self._task:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Room sweeper stopped")

    async def sweep_once(self) -> int:
        try:
            removed = await self.service.expire_rooms()
        except Exception as e:
            logger.error(f"Error in periodic room cleanup: {e}", exc_info=True)
            return 0
        logger.info(f"Periodic cleanup: removed {removed} expired rooms")
        return removed

    async def _run(self) -> None:
        while True:
            await self.sweep_once()
            await asyncio.sleep(self.interval)
