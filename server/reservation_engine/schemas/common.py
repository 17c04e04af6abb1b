"""Shared Pydantic schemas: money and the problem-details error body."""

from typing import List, Optional

from pydantic import BaseModel, Field


class Money(BaseModel):
    """Amount in the currency's minor unit (cents, yen, fils)."""

    amount: int = Field(..., ge=0, description="Amount in minor units")
    currency: str = Field(..., pattern=r"^[A-Z]{3}$", description="ISO 4217 currency code")


class Violation(BaseModel):
    """One invalid request field."""

    path: str = Field(..., description="Dotted path to the invalid field")
    message: str


class ConflictingInterval(BaseModel):
    """Active booking that blocks the requested dates."""

    vehicle_id: str
    start_date: str = Field(..., description="First blocked night (inclusive)")
    end_date: str = Field(..., description="Checkout date of the blocking booking (exclusive)")
    booking_id: Optional[str] = None


class Problem(BaseModel):
    """RFC 9457 problem details body returned for every error."""

    type: Optional[str] = Field(None, description="Problem type URI")
    title: str
    status: int
    detail: Optional[str] = None
    instance: Optional[str] = None
    code: Optional[str] = Field(None, description="Machine-readable error code, e.g. DATES_UNAVAILABLE")
    retryable: Optional[bool] = Field(None, description="Whether repeating the same request may succeed")
    violations: Optional[List[Violation]] = None
    conflicting_resource: Optional[ConflictingInterval] = None


# OpenAPI error responses shared by the authenticated routes
AUTH_RESPONSES = {
    401: {"model": Problem, "description": "Missing or invalid bearer token"},
    403: {"model": Problem, "description": "Caller may not act on this booking"},
}
