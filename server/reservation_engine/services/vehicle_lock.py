"""Per-vehicle mutual exclusion for reservation creation."""

import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import is_postgresql

logger = logging.getLogger(__name__)

# Engines without advisory locks (SQLite in tests and local runs) serialize in-process
_local_locks: "weakref.WeakValueDictionary[UUID, asyncio.Lock]" = weakref.WeakValueDictionary()


def _local_lock(vehicle_id: UUID) -> asyncio.Lock:
    lock = _local_locks.get(vehicle_id)
    if lock is None:
        lock = _local_locks[vehicle_id] = asyncio.Lock()
    return lock


@asynccontextmanager
async def vehicle_lock(db: AsyncSession, vehicle_id: UUID) -> AsyncIterator[None]:
    """
    Hold the vehicle's lock for the body of the ``async with`` block.

    On PostgreSQL this takes ``pg_advisory_xact_lock`` on the session's
    transaction, so the lock lives until that transaction commits or rolls
    back; the body must therefore commit before leaving the block. Other
    engines fall back to an ``asyncio.Lock`` per vehicle released on exit.
    """
    if is_postgresql(db):
        await db.execute(
            text("SELECT pg_advisory_xact_lock(hashtext(:vehicle_id))"),
            {"vehicle_id": str(vehicle_id)}
        )
        logger.debug("Acquired advisory lock for vehicle", extra={"vehicle_id": str(vehicle_id)})
        yield
        return

    async with _local_lock(vehicle_id):
        logger.debug("Acquired local lock for vehicle", extra={"vehicle_id": str(vehicle_id)})
        yield
