"""Service reconciling Dwolla transfer status webhooks against invoices."""
import enum
import hashlib
import hmac

import structlog
from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.config import settings
from usage_billing.exceptions import WebhookAuthError
from usage_billing.metrics import transfer_notifications_total
from usage_billing.models.base import utcnow
from usage_billing.models.invoice import Invoice, InvoiceStatus
from usage_billing.schemas.transfer_notification import TransferNotification

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Request-Signature-SHA256"

TOPIC_STATUSES = {
    "transfer_completed": InvoiceStatus.COMPLETED,
    "completed": InvoiceStatus.COMPLETED,
    "transfer_failed": InvoiceStatus.FAILED,
    "failed": InvoiceStatus.FAILED,
}


class NotificationOutcome(str, enum.Enum):
    """What a transfer notification did to the invoice table."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNKNOWN_TRANSFER = "unknown_transfer"
    CONFLICT = "conflict"
    IGNORED = "ignored"
    INVALID = "invalid"
    ERROR = "error"


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw webhook body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    signature: str | None,
    secret: str | None = None,
    required: bool | None = None,
) -> None:
    """
    Verify a Dwolla webhook signature.

    Args:
        payload: Raw request body
        signature: Value of the X-Request-Signature-SHA256 header
        secret: Webhook secret (defaults to settings)
        required: Reject when no secret is configured (defaults to settings)

    Raises:
        WebhookAuthError: If the signature is missing or does not match
    """
    secret = secret if secret is not None else settings.dwolla_webhook_secret
    required = required if required is not None else settings.dwolla_webhook_signature_required

    if not secret:
        if required:
            raise WebhookAuthError("Webhook secret is not configured")
        logger.warning("dwolla_webhook_secret_not_set", detail="skipping signature verification")
        return

    if not signature:
        raise WebhookAuthError("Missing webhook signature")

    expected = compute_signature(payload, secret).encode("ascii")
    if not hmac.compare_digest(expected, signature.strip().lower().encode("utf-8")):
        raise WebhookAuthError("Invalid webhook signature")


class ReconciliationService:
    """
    Applies transfer status notifications to invoices.

    Invoices only move out of INITIATED, so duplicated, reordered or late
    notifications cannot change an invoice twice.
    """

    def __init__(self, db: AsyncSession):
        """Initialize reconciliation service with database session."""
        self.db = db

    async def apply_notification(self, notification: TransferNotification) -> NotificationOutcome:
        """
        Move the invoice paid by the notified transfer to its terminal status.

        Args:
            notification: Parsed notification

        Returns:
            Outcome of the notification
        """
        target = TOPIC_STATUSES.get(notification.topic.lower())
        transfer_href = notification.resource_reference

        if target is None:
            logger.info("transfer_notification_ignored", topic=notification.topic, transfer_href=transfer_href)
            return NotificationOutcome.IGNORED

        result = await self.db.execute(
            update(Invoice)
            .where(
                Invoice.dwolla_transfer_href == transfer_href,
                Invoice.status == InvoiceStatus.INITIATED,
            )
            .values(status=target, updated_at=utcnow())
            .returning(Invoice.id, Invoice.crm_contact_id, Invoice.amount_cents)
            .execution_options(synchronize_session=False)
        )
        updated = result.first()

        if updated is not None:
            log = logger.info if target == InvoiceStatus.COMPLETED else logger.error
            log(
                "transfer_completed" if target == InvoiceStatus.COMPLETED else "transfer_failed",
                invoice_id=updated.id,
                crm_contact_id=updated.crm_contact_id,
                amount_cents=updated.amount_cents,
                transfer_href=transfer_href,
            )
            return NotificationOutcome.APPLIED

        existing = (
            await self.db.execute(
                select(Invoice.id, Invoice.status).where(Invoice.dwolla_transfer_href == transfer_href)
            )
        ).first()

        if existing is None:
            logger.warning("transfer_notification_unknown_transfer", topic=notification.topic, transfer_href=transfer_href)
            return NotificationOutcome.UNKNOWN_TRANSFER

        if existing.status == target:
            logger.info(
                "transfer_notification_duplicate",
                invoice_id=existing.id,
                status=target.value,
                transfer_href=transfer_href,
            )
            return NotificationOutcome.DUPLICATE

        logger.warning(
            "transfer_notification_conflict",
            invoice_id=existing.id,
            current_status=existing.status.value,
            requested_status=target.value,
            transfer_href=transfer_href,
        )
        return NotificationOutcome.CONFLICT

    async def handle_notification(self, payload: bytes) -> NotificationOutcome:
        """
        Parse and apply a raw notification body.

        Never raises: malformed bodies and internal errors are logged and
        reported through the returned outcome, so the notifier always gets an
        acknowledgement and does not keep redelivering.
        """
        try:
            notification = TransferNotification.model_validate_json(payload)
        except ValidationError as e:
            logger.warning("transfer_notification_invalid", error_count=e.error_count(), errors=e.errors(include_url=False))
            outcome = NotificationOutcome.INVALID
        else:
            logger.info(
                "transfer_notification_received",
                event_id=notification.id,
                topic=notification.topic,
                transfer_href=notification.resource_reference,
            )
            try:
                outcome = await self.apply_notification(notification)
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                logger.exception(
                    "transfer_notification_error",
                    topic=notification.topic,
                    transfer_href=notification.resource_reference,
                    exc_info=e,
                )
                outcome = NotificationOutcome.ERROR

        transfer_notifications_total.labels(outcome=outcome.value).inc()
        return outcome
