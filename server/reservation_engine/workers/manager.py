"""Worker manager for coordinating background tasks."""

import asyncio
import logging
from typing import Dict

from ..core.config import Settings, settings
from ..providers.registry import ProviderRegistry
from ..services.notification_service import NotificationDispatcher
from .base import BaseWorker
from .completion_worker import CompletionSweepWorker
from .outbox_worker import OutboxDispatchWorker
from .payment_reconciliation_worker import PaymentReconciliationWorker

logger = logging.getLogger(__name__)


class WorkerManager:
    """
    Manages background workers for the application.

    Coordinates starting, stopping, and monitoring of all background workers.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        dispatcher: NotificationDispatcher,
        config: Settings = settings,
    ):
        self.workers: Dict[str, BaseWorker] = {
            "completion_sweep": CompletionSweepWorker(
                interval_seconds=config.completion_sweep_interval_seconds,
                batch_size=config.worker_batch_size,
            ),
            "payment_reconciliation": PaymentReconciliationWorker(
                providers,
                interval_seconds=config.payment_reconciliation_interval_seconds,
                batch_size=config.worker_batch_size,
            ),
            "outbox_dispatch": OutboxDispatchWorker(
                dispatcher,
                interval_seconds=config.outbox_dispatch_interval_seconds,
                batch_size=config.worker_batch_size,
            ),
        }
        logger.info("Initialized workers", extra={"workers": list(self.workers)})

    async def start_all(self) -> None:
        """Start all workers."""
        for worker in self.workers.values():
            await worker.start()
        logger.info("Started all workers", extra={"count": len(self.workers)})

    async def stop_all(self) -> None:
        """Stop all workers gracefully."""
        names = [name for name, worker in self.workers.items() if worker.running]
        results = await asyncio.gather(
            *(self.workers[name].stop() for name in names),
            return_exceptions=True,
        )

        for name, result in zip(names, results):
            if isinstance(result, Exception):
                logger.error("Error stopping worker", extra={"worker": name, "error": str(result)})

        logger.info("All workers stopped")

    def get_worker(self, name: str) -> BaseWorker:
        """
        Get a specific worker by name.

        Raises:
            KeyError: If worker not found
        """
        return self.workers[name]

    def get_worker_status(self) -> Dict[str, bool]:
        """Map of worker name to running status."""
        return {name: worker.running for name, worker in self.workers.items()}
