"""Background workers for the reservation engine."""

from .completion_worker import CompletionSweepWorker
from .manager import WorkerManager
from .outbox_worker import OutboxDispatchWorker
from .payment_reconciliation_worker import PaymentReconciliationWorker

__all__ = [
    "CompletionSweepWorker",
    "OutboxDispatchWorker",
    "PaymentReconciliationWorker",
    "WorkerManager",
]
