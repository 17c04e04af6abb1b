"""Outbox dispatch of booking domain events to the notification dispatcher."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import utcnow
from ..core.config import settings
from ..core.observability import metrics_collector
from ..models.outbox import OutboxStatus
from .booking_repository import BookingRepository

logger = logging.getLogger(__name__)


class NotificationDispatcher(ABC):
    """Receives ``booking.*`` domain events; formatting and delivery are its business."""

    @abstractmethod
    async def dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        """Deliver one event, raising on failure so it is retried."""


class LoggingDispatcher(NotificationDispatcher):
    """Dispatcher used when no notification endpoint is configured."""

    async def dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("Domain event emitted", extra={"event_type": event_type, "payload": payload})


class HttpDispatcher(NotificationDispatcher):
    """POSTs each event as JSON to the notification service."""

    def __init__(self, client: httpx.AsyncClient, url: str, timeout: float | None = None):
        self.client = client
        self.url = url
        self.timeout = timeout or settings.provider_timeout_seconds

    async def dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        response = await self.client.post(
            self.url,
            json={"type": event_type, "data": payload},
            timeout=self.timeout,
        )
        response.raise_for_status()


def build_dispatcher(client: httpx.AsyncClient) -> NotificationDispatcher:
    if settings.notification_webhook_url:
        return HttpDispatcher(client, settings.notification_webhook_url)
    return LoggingDispatcher()


class OutboxService:
    """Delivers pending outbox events at least once, in creation order."""

    def __init__(self, db: AsyncSession, dispatcher: NotificationDispatcher):
        self.db = db
        self.dispatcher = dispatcher
        self.repository = BookingRepository(db)

    async def dispatch_pending(self, batch_size: int = 100) -> int:
        """
        Dispatch one batch of pending events.

        Failed deliveries stay pending with their attempt count and last
        error, and are retried on the next run.

        Returns:
            Number of events dispatched
        """
        events = await self.repository.pending_events(batch_size)
        dispatched = 0

        for event in events:
            event.attempts += 1
            try:
                await self.dispatcher.dispatch(event.event_type, json.loads(event.payload))
            except (httpx.HTTPError, OSError) as exc:
                event.last_error = str(exc)[:1000]
                logger.warning(
                    "Domain event dispatch failed",
                    extra={
                        "outbox_event_id": str(event.id),
                        "event_type": event.event_type,
                        "attempts": event.attempts,
                        "error": str(exc),
                    }
                )
                continue

            event.status = OutboxStatus.DISPATCHED.value
            event.dispatched_at = utcnow()
            event.last_error = None
            dispatched += 1

        await self.db.commit()

        remaining = await self.repository.count_pending_events()
        await self.db.commit()
        metrics_collector.set_outbox_backlog(remaining)

        if dispatched:
            logger.info(
                "Outbox dispatch batch completed",
                extra={"dispatched_count": dispatched, "remaining": remaining}
            )
        return dispatched
