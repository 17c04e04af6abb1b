"""Payment provider adapter interface and shared HTTP plumbing."""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Mapping

import httpx

from ..core.config import settings
from ..core.exceptions import ProviderRejectedError, ProviderTimeoutError, ProviderUnavailableError
from ..core.observability import metrics_collector
from ..models.booking import Booking
from ..schemas.payment import CaptureResult, ProviderCallback, ProviderSession, RefundResult

logger = logging.getLogger(__name__)


class PaymentProvider(ABC):
    """
    One external payment processor behind a provider-neutral interface.

    Adapters translate between the provider's wire format and the schemas in
    ``schemas.payment``; they never decide reservation state.
    """

    provider_id: str = ""

    def __init__(self, client: httpx.AsyncClient, timeout: float | None = None):
        self.client = client
        self.timeout = timeout or settings.provider_timeout_seconds

    @abstractmethod
    async def open_session(self, booking: Booking) -> ProviderSession:
        """Open a checkout session for the booking's total."""

    @abstractmethod
    async def capture_result(self, provider_session_id: str) -> CaptureResult:
        """Authoritative status of a session, capturing an approved payment first if needed."""

    @abstractmethod
    async def verify_callback(self, raw: bytes, headers: Mapping[str, str]) -> bool:
        """True when a webhook body and headers pass the provider's authenticity check."""

    @abstractmethod
    def parse_callback(self, raw: bytes) -> ProviderCallback:
        """Normalize a verified webhook body."""

    @abstractmethod
    async def refund(
        self,
        provider_session_id: str,
        amount: int,
        currency: str,
        reason: str | None = None,
    ) -> RefundResult:
        """Refund ``amount`` minor units of a captured session."""

    async def _request(self, operation: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """
        Perform one provider call with the configured timeout.

        Raises:
            ProviderTimeoutError: No answer within the timeout
            ProviderUnavailableError: Transport failure, 5xx or 429
            ProviderRejectedError: Any other 4xx
        """
        started = time.perf_counter()
        outcome = "ok"
        try:
            response = await self.client.request(method, url, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as exc:
            outcome = "timeout"
            logger.warning(
                "Payment provider timed out",
                extra={"provider": self.provider_id, "operation": operation, "timeout": self.timeout}
            )
            raise ProviderTimeoutError(self.provider_id, operation) from exc
        except httpx.TransportError as exc:
            outcome = "unavailable"
            logger.warning(
                "Payment provider unreachable",
                extra={"provider": self.provider_id, "operation": operation, "error": str(exc)}
            )
            raise ProviderUnavailableError(self.provider_id, operation, detail=str(exc) or None) from exc
        finally:
            if outcome != "ok":
                metrics_collector.observe_provider_request(
                    self.provider_id, operation, outcome, time.perf_counter() - started
                )

        if response.status_code >= 500 or response.status_code == 429:
            outcome = "unavailable"
        elif response.status_code >= 400:
            outcome = "rejected"
        metrics_collector.observe_provider_request(self.provider_id, operation, outcome, time.perf_counter() - started)

        if outcome == "unavailable":
            logger.warning(
                "Payment provider returned a server error",
                extra={"provider": self.provider_id, "operation": operation, "status_code": response.status_code}
            )
            raise ProviderUnavailableError(
                self.provider_id,
                operation,
                detail=f"Payment provider '{self.provider_id}' answered {response.status_code} during {operation}",
            )
        if outcome == "rejected":
            logger.warning(
                "Payment provider rejected request",
                extra={
                    "provider": self.provider_id,
                    "operation": operation,
                    "status_code": response.status_code,
                    "body": response.text[:500],
                }
            )
            raise ProviderRejectedError(
                self.provider_id,
                operation,
                detail=f"Payment provider '{self.provider_id}' rejected {operation} with {response.status_code}",
            )

        return response

    def _json(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        """Decode a provider response body, treating garbage as a provider outage."""
        try:
            body = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProviderUnavailableError(
                self.provider_id, operation, detail=f"Payment provider '{self.provider_id}' returned malformed JSON"
            ) from exc
        if not isinstance(body, dict):
            raise ProviderUnavailableError(
                self.provider_id, operation, detail=f"Payment provider '{self.provider_id}' returned an unexpected body"
            )
        return body


def load_callback_body(raw: bytes) -> dict[str, Any] | None:
    """Decode a webhook body, returning None when it is not a JSON object."""
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return body if isinstance(body, dict) else None


def lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}
