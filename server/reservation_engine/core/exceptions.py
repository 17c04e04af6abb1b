"""Custom exceptions following RFC 9457 Problem Details for HTTP APIs."""

import logging
import uuid
from datetime import date
from typing import Any, Dict, Optional

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .clock import utcnow

logger = logging.getLogger(__name__)


class ProblemDetailsException(HTTPException):
    """
    Base exception class following RFC 9457 Problem Details for HTTP APIs.

    https://tools.ietf.org/rfc/rfc9457.txt
    """

    def __init__(
        self,
        status_code: int,
        title: str,
        detail: Optional[str] = None,
        type_uri: Optional[str] = None,
        instance: Optional[str] = None,
        extensions: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize Problem Details exception.

        Args:
            status_code: HTTP status code
            title: Short, human-readable summary of the problem type
            detail: Human-readable explanation specific to this occurrence
            type_uri: URI reference that identifies the problem type
            instance: URI reference that identifies the specific occurrence
            extensions: Additional problem-specific information
            headers: HTTP headers to include in response
        """
        self.status_code = status_code
        self.title = title
        self.detail = detail
        self.type_uri = type_uri or f"about:blank#{status_code}"
        self.instance = instance
        self.extensions = extensions or {}

        self.problem_details = {
            "type": self.type_uri,
            "title": self.title,
            "status": self.status_code,
        }

        if self.detail:
            self.problem_details["detail"] = self.detail

        if self.instance:
            self.problem_details["instance"] = self.instance

        self.problem_details.update(self.extensions)

        super().__init__(
            status_code=status_code,
            detail=self.problem_details,
            headers=headers
        )


class ValidationError(ProblemDetailsException):
    """Exception for malformed or out-of-range input."""

    def __init__(
        self,
        detail: str = "The request data failed validation",
        violations: Optional[list[Dict[str, str]]] = None,
        instance: Optional[str] = None,
    ):
        extensions: Dict[str, Any] = {"code": "VALIDATION_FAILED", "retryable": False}
        if violations:
            extensions["violations"] = violations

        super().__init__(
            status_code=400,
            title="Validation Error",
            detail=detail,
            type_uri="https://example.com/problems/validation-error",
            instance=instance,
            extensions=extensions,
        )


class AuthenticationError(ProblemDetailsException):
    """Exception for missing or unreadable caller identity."""

    def __init__(
        self,
        detail: str = "Authorization credentials are required",
        instance: Optional[str] = None,
    ):
        super().__init__(
            status_code=401,
            title="Authorization Required",
            detail=detail,
            type_uri="https://example.com/problems/authentication-required",
            instance=instance,
            headers={"WWW-Authenticate": "Bearer"},
        )


class AuthorizationError(ProblemDetailsException):
    """Exception for authorization errors."""

    def __init__(
        self,
        detail: str = "Insufficient permissions to access this resource",
        required_roles: Optional[list] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if required_roles:
            extensions["required_roles"] = required_roles

        super().__init__(
            status_code=403,
            title="Access Forbidden",
            detail=detail,
            type_uri="https://example.com/problems/access-forbidden",
            instance=instance,
            extensions=extensions,
        )


class NotFoundError(ProblemDetailsException):
    """Exception for resource not found errors."""

    def __init__(
        self,
        resource_type: str = "resource",
        resource_id: Optional[str] = None,
        detail: Optional[str] = None,
        instance: Optional[str] = None,
    ):
        if not detail:
            detail = f"The requested {resource_type}"
            if resource_id:
                detail += f" with ID '{resource_id}'"
            detail += " could not be found"

        extensions = {
            "resource_type": resource_type,
        }
        if resource_id:
            extensions["resource_id"] = resource_id

        super().__init__(
            status_code=404,
            title="Resource Not Found",
            detail=detail,
            type_uri="https://example.com/problems/resource-not-found",
            instance=instance,
            extensions=extensions,
        )


class ConflictError(ProblemDetailsException):
    """Exception for resource conflict errors."""

    def __init__(
        self,
        detail: str = "The request conflicts with the current state of the resource",
        conflicting_resource: Optional[Dict[str, Any]] = None,
        instance: Optional[str] = None,
    ):
        extensions = {}
        if conflicting_resource:
            extensions["conflicting_resource"] = conflicting_resource

        super().__init__(
            status_code=409,
            title="Resource Conflict",
            detail=detail,
            type_uri="https://example.com/problems/resource-conflict",
            instance=instance,
            extensions=extensions,
        )


# Business logic exceptions

class ReservationConflictError(ConflictError):
    """Requested dates overlap an active booking on the same vehicle."""

    def __init__(
        self,
        vehicle_id: str,
        conflicting_start: date,
        conflicting_end: date,
        conflicting_booking_id: Optional[str] = None,
    ):
        self.conflicting_start = conflicting_start
        self.conflicting_end = conflicting_end
        conflicting_resource: Dict[str, Any] = {
            "vehicle_id": vehicle_id,
            "start_date": conflicting_start.isoformat(),
            "end_date": conflicting_end.isoformat(),
        }
        if conflicting_booking_id:
            conflicting_resource["booking_id"] = conflicting_booking_id

        super().__init__(
            detail=(
                f"Vehicle {vehicle_id} is already reserved from "
                f"{conflicting_start.isoformat()} to {conflicting_end.isoformat()}"
            ),
            conflicting_resource=conflicting_resource,
        )
        self.problem_details.update({
            "code": "DATES_UNAVAILABLE",
            "retryable": False,
        })


class UnavailableError(ProblemDetailsException):
    """Vehicle exists but is delisted and cannot be reserved."""

    def __init__(self, vehicle_id: str, detail: Optional[str] = None):
        super().__init__(
            status_code=409,
            title="Vehicle Unavailable",
            detail=detail or f"Vehicle {vehicle_id} is not available for reservation",
            type_uri="https://example.com/problems/vehicle-unavailable",
            extensions={
                "code": "VEHICLE_UNAVAILABLE",
                "retryable": False,
                "vehicle_id": vehicle_id,
            },
        )


class ProviderError(ProblemDetailsException):
    """Base class for payment provider failures."""

    code = "PROVIDER_ERROR"
    retryable = True

    def __init__(
        self,
        status_code: int,
        title: str,
        provider: str,
        operation: str,
        detail: Optional[str] = None,
    ):
        self.provider = provider
        self.operation = operation
        super().__init__(
            status_code=status_code,
            title=title,
            detail=detail or f"Payment provider '{provider}' failed during {operation}",
            type_uri=f"https://example.com/problems/{self.code.lower().replace('_', '-')}",
            extensions={
                "code": self.code,
                "retryable": self.retryable,
                "provider": provider,
                "operation": operation,
            },
        )


class ProviderUnavailableError(ProviderError):
    """Provider could not be reached or answered with a server error."""

    code = "PROVIDER_UNAVAILABLE"

    def __init__(self, provider: str, operation: str, detail: Optional[str] = None):
        super().__init__(503, "Payment Provider Unavailable", provider, operation, detail)


class ProviderTimeoutError(ProviderError):
    """Provider did not answer within the configured timeout."""

    code = "PROVIDER_TIMEOUT"

    def __init__(self, provider: str, operation: str, detail: Optional[str] = None):
        super().__init__(
            504,
            "Payment Provider Timeout",
            provider,
            operation,
            detail or f"Payment provider '{provider}' timed out during {operation}",
        )


class ProviderRejectedError(ProviderError):
    """Provider refused the request; retrying the same request will not help."""

    code = "PROVIDER_REJECTED"
    retryable = False

    def __init__(self, provider: str, operation: str, detail: Optional[str] = None):
        super().__init__(502, "Payment Provider Rejected Request", provider, operation, detail)


class InvalidSignatureError(ProblemDetailsException):
    """Webhook callback failed its provider-specific authenticity check."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(
            status_code=401,
            title="Invalid Signature",
            detail=f"Callback signature for provider '{provider}' could not be verified",
            type_uri="https://example.com/problems/invalid-signature",
            extensions={"code": "INVALID_SIGNATURE", "retryable": False},
        )


class UnknownSessionError(ProblemDetailsException):
    """Webhook callback references a payment session this engine never opened."""

    def __init__(self, provider: str, provider_session_id: str):
        self.provider = provider
        self.provider_session_id = provider_session_id
        super().__init__(
            status_code=404,
            title="Unknown Payment Session",
            detail=f"No payment session '{provider_session_id}' for provider '{provider}'",
            type_uri="https://example.com/problems/unknown-session",
            extensions={"code": "UNKNOWN_SESSION", "retryable": False},
        )


async def problem_details_handler(request: Request, exc: ProblemDetailsException) -> JSONResponse:
    """
    Exception handler for Problem Details exceptions.

    Args:
        request: FastAPI request object
        exc: Problem Details exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.problem_details,
        headers=exc.headers,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Convert FastAPI request validation failures into a 400 ValidationError body."""
    violations = [
        {
            "path": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", "Invalid value"),
        }
        for error in exc.errors()
    ]
    problem = ValidationError(violations=violations, instance=str(request.url.path))
    return JSONResponse(status_code=problem.status_code, content=problem.problem_details)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Generic exception handler that converts unhandled exceptions to Problem Details format.

    Args:
        request: FastAPI request object
        exc: Unhandled exception

    Returns:
        JSONResponse: Problem Details formatted response
    """
    error_id = str(uuid.uuid4())

    logger.error(
        "Unhandled exception",
        extra={"error_id": error_id, "path": request.url.path, "error": str(exc)},
        exc_info=exc,
    )

    problem_details = {
        "type": "https://example.com/problems/internal-server-error",
        "title": "Internal Server Error",
        "status": 500,
        "detail": "An unexpected error occurred while processing the request",
        "instance": str(request.url),
        "error_id": error_id,
        "timestamp": utcnow().isoformat() + "Z",
    }

    return JSONResponse(
        status_code=500,
        content=problem_details,
    )
