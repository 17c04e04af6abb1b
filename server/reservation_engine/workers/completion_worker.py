"""Background worker completing finished stays."""

import logging

from ..core.database import async_session_factory
from ..services.reservation_service import ReservationService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class CompletionSweepWorker(BaseWorker):
    """
    Moves confirmed bookings to ``completed`` once their checkout date arrives.

    Safe to run alongside manual sweeps; each booking is completed through
    a compare-and-set on its status.
    """

    def __init__(self, interval_seconds: int = 3600, batch_size: int = 100):
        super().__init__(name="CompletionSweep", interval_seconds=interval_seconds)
        self.batch_size = batch_size

    async def process(self) -> None:
        async with async_session_factory() as db:
            service = ReservationService(db)
            completed = await service.sweep_completed_bookings(batch_size=self.batch_size)

        if completed:
            logger.info("Completed finished bookings", extra={"completed_count": completed, "worker": self.name})
