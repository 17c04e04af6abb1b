"""Background worker delivering outbox events."""

from ..core.database import async_session_factory
from ..services.notification_service import NotificationDispatcher, OutboxService
from .base import BaseWorker


class OutboxDispatchWorker(BaseWorker):
    """Hands pending domain events to the notification dispatcher."""

    def __init__(self, dispatcher: NotificationDispatcher, interval_seconds: int = 15, batch_size: int = 100):
        super().__init__(name="OutboxDispatch", interval_seconds=interval_seconds)
        self.dispatcher = dispatcher
        self.batch_size = batch_size

    async def process(self) -> None:
        async with async_session_factory() as db:
            await OutboxService(db, self.dispatcher).dispatch_pending(self.batch_size)
