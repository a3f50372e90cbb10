"""Service for initiating ACH transfers for invoices."""
from typing import Any

import structlog

from usage_billing.adapters.dwolla_adapter import DwollaAdapter
from usage_billing.config import settings
from usage_billing.exceptions import ProcessorError
from usage_billing.metrics import transfers_requested_total

logger = structlog.get_logger(__name__)


class TransferService:
    """Moves invoice amounts from a customer funding source to the operator's."""

    def __init__(self, adapter: DwollaAdapter, operator_funding_href: str | None = None):
        """Initialize transfer service with a Dwolla adapter."""
        self.adapter = adapter
        self.operator_funding_href = operator_funding_href or settings.dwolla_operator_funding_href

    async def initiate_transfer(
        self,
        source_href: str,
        amount_cents: int,
        metadata: dict[str, Any] | None = None,
        destination_href: str | None = None,
    ) -> str:
        """
        Create a transfer and return its href.

        Args:
            source_href: Customer funding source
            amount_cents: Amount to move, in cents
            metadata: Metadata attached to the transfer
            destination_href: Overrides the operator funding source

        Returns:
            Transfer href used later to correlate status webhooks

        Raises:
            ValueError: If the amount is not positive or no destination is configured
            TerminalProcessorError: If Dwolla rejects the transfer
            TransientProcessorError: If Dwolla stays unavailable through all retries
        """
        destination = destination_href or self.operator_funding_href
        if not destination:
            raise ValueError("Operator funding source is not configured")
        if amount_cents <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount_cents}")

        try:
            transfer_href = await self.adapter.create_transfer(
                source_href=source_href,
                destination_href=destination,
                amount_cents=amount_cents,
                metadata=metadata,
            )
        except ProcessorError as e:
            transfers_requested_total.labels(status="failed").inc()
            logger.warning(
                "transfer_failed",
                source=source_href,
                amount_cents=amount_cents,
                status_code=e.status_code,
                error=str(e),
            )
            raise

        transfers_requested_total.labels(status="created").inc()
        logger.info(
            "transfer_created",
            transfer_href=transfer_href,
            amount_cents=amount_cents,
        )
        return transfer_href
