"""Background worker re-checking payments whose callback never arrived."""

import logging

from ..core.database import async_session_factory
from ..providers.registry import ProviderRegistry
from ..services.webhook_service import WebhookReconciliationService
from .base import BaseWorker

logger = logging.getLogger(__name__)


class PaymentReconciliationWorker(BaseWorker):
    """Queries providers for stale pending bookings and times out abandoned ones."""

    def __init__(self, providers: ProviderRegistry, interval_seconds: int = 300, batch_size: int = 100):
        super().__init__(name="PaymentReconciliation", interval_seconds=interval_seconds)
        self.providers = providers
        self.batch_size = batch_size

    async def process(self) -> None:
        async with async_session_factory() as db:
            service = WebhookReconciliationService(db, self.providers)
            summary = await service.reconcile_stale_pending(batch_size=self.batch_size)

        if summary.checked:
            logger.info(
                "Stale payments reconciled",
                extra={
                    "worker": self.name,
                    "checked": summary.checked,
                    "confirmed": summary.confirmed,
                    "failed": summary.failed,
                    "timed_out": summary.timed_out,
                    "errors": summary.errors,
                }
            )
