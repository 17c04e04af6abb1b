"""Pydantic schemas for request/response validation."""

from .common import *  # noqa: F403
from .health import *  # noqa: F403
from .payment import *  # noqa: F403
from .reservation import *  # noqa: F403
