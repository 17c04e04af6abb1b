"""FastAPI routers package."""

from .health import probe_router
from .health import router as health_router
from .metrics import router as metrics_router
from .payments import router as payments_router
from .reservations import router as reservations_router

__all__ = [
    "health_router",
    "metrics_router",
    "payments_router",
    "probe_router",
    "reservations_router",
]
