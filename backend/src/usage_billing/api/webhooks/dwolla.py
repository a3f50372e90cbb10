"""Dwolla webhook handler for transfer status events."""
import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.api.deps import get_db
from usage_billing.api.errors import error_response
from usage_billing.exceptions import WebhookAuthError
from usage_billing.schemas.error import ErrorCode
from usage_billing.schemas.transfer_notification import NotificationAck
from usage_billing.services.reconciliation_service import (
    SIGNATURE_HEADER,
    ReconciliationService,
    verify_signature,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks/dwolla", tags=["Webhooks"])


@router.post("", response_model=NotificationAck)
async def handle_dwolla_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> NotificationAck | JSONResponse:
    """
    Handle incoming Dwolla transfer notifications.

    The signature is checked against the raw body before anything is parsed.
    Once authenticated the notification is always acknowledged, even when it
    is malformed or refers to an unknown transfer, so Dwolla stops
    redelivering it.

    Args:
        request: FastAPI request with the raw webhook payload
        db: Database session

    Returns:
        Acknowledgement, or a 401 error for a bad signature
    """
    body = await request.body()

    try:
        verify_signature(body, request.headers.get(SIGNATURE_HEADER))
    except WebhookAuthError as e:
        logger.warning("dwolla_webhook_rejected", error=str(e))
        return error_response(
            request,
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="Unauthorized",
            message=str(e),
            code=ErrorCode.INVALID_SIGNATURE,
            remediation="Sign the raw body with the webhook secret",
        )

    outcome = await ReconciliationService(db).handle_notification(body)
    logger.info("dwolla_webhook_handled", outcome=outcome.value)
    return NotificationAck()


# Callback URL registered in existing Dwolla webhook subscriptions.
legacy_router = APIRouter(tags=["Webhooks"], include_in_schema=False)
legacy_router.add_api_route("/dwolla/webhook", handle_dwolla_webhook, methods=["POST"], response_model=NotificationAck)
