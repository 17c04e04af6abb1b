"""Payment router: session opening and provider webhooks."""

import logging

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import get_db
from ..core.dependencies import get_current_user
from ..core.exceptions import ProviderError, UnknownSessionError
from ..core.identity import Caller
from ..providers.registry import ProviderRegistry, get_provider_registry
from ..schemas.common import AUTH_RESPONSES, Problem
from ..schemas.payment import OpenPaymentSessionRequest, PaymentSessionResponse, WebhookAck, WebhookResult
from ..services.payment_service import PaymentService
from ..services.webhook_service import WebhookReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/payment", tags=["payment"])

# Define dependencies to avoid B008 linting errors
DB_DEPENDENCY = Depends(get_db)
CALLER_DEPENDENCY = Depends(get_current_user)
PROVIDERS_DEPENDENCY = Depends(get_provider_registry)


@router.post("/open-session", response_model=PaymentSessionResponse, status_code=201, responses=AUTH_RESPONSES)
async def open_payment_session(
    request: OpenPaymentSessionRequest,
    caller: Caller = CALLER_DEPENDENCY,
    db: AsyncSession = DB_DEPENDENCY,
    providers: ProviderRegistry = PROVIDERS_DEPENDENCY,
) -> PaymentSessionResponse:
    """Open a checkout session with a provider for a pending reservation."""
    service = PaymentService(db, providers)
    session = await service.open_payment_session(request.booking_id, request.provider_id, caller)
    return PaymentSessionResponse.from_session(session)


@router.post(
    "/webhook/{provider_id}",
    response_model=WebhookAck,
    responses={
        401: {"model": Problem, "description": "Callback signature could not be verified"},
        503: {"description": "Payment provider unavailable; the callback should be redelivered"},
    },
)
async def handle_payment_callback(
    provider_id: str,
    request: Request,
    db: AsyncSession = DB_DEPENDENCY,
    providers: ProviderRegistry = PROVIDERS_DEPENDENCY,
) -> WebhookAck | Response:
    """
    Receive an asynchronous payment callback.

    Authenticated by the provider's signature rather than a bearer token.
    Callbacks for sessions this engine never opened are acknowledged and
    dropped so the provider stops redelivering them. Provider failures while
    handling a callback answer a bare 503 so the provider redelivers it.
    """
    raw = await request.body()
    service = WebhookReconciliationService(db, providers)

    try:
        result = await service.handle_callback(provider_id, raw, request.headers)
    except UnknownSessionError as exc:
        logger.info(
            "Dropping callback for unknown payment session",
            extra={"provider": provider_id, "provider_session_id": exc.provider_session_id}
        )
        return WebhookAck(result=WebhookResult.DROPPED)
    except ProviderError as exc:
        logger.warning(
            "Webhook deferred - payment provider error",
            extra={
                "provider": provider_id,
                "operation": exc.operation,
                "status_code": exc.status_code,
                "error": exc.problem_details.get("detail"),
            }
        )
        return Response(status_code=503)

    booking = result.booking
    return WebhookAck(
        result=result.result,
        booking_id=booking.id if booking else None,
        booking_status=booking.status if booking else None,
    )
