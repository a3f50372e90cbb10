"""Billing run worker.

Entry point for scheduled billing (cron, the CLI, or the billing trigger
endpoint). Bills the previous full week unless an explicit window is given.
"""
from datetime import datetime, timedelta

import structlog

from usage_billing.adapters.dwolla_adapter import DwollaAdapter
from usage_billing.schemas.billing import BillingRunSummary
from usage_billing.services.billing_service import BillingService, previous_week_window
from usage_billing.services.transfer_service import TransferService

logger = structlog.get_logger(__name__)


def resolve_window(
    period_start: datetime | None = None,
    period_end: datetime | None = None,
) -> tuple[datetime, datetime]:
    """
    Fill in a missing window bound from the default weekly window.

    With neither bound the previous week is used; with one bound the window
    is the week before ``end`` or the week after ``start``.
    """
    if period_start is None and period_end is None:
        return previous_week_window()
    if period_start is None:
        return period_end - timedelta(weeks=1), period_end
    if period_end is None:
        return period_start, period_start + timedelta(weeks=1)
    return period_start, period_end


async def run_billing(
    period_start: datetime | None = None,
    period_end: datetime | None = None,
    dwolla: DwollaAdapter | None = None,
) -> BillingRunSummary:
    """
    Run the billing aggregator once.

    Args:
        period_start: Inclusive window start (defaults to last week's start)
        period_end: Exclusive window end (defaults to this week's start)
        dwolla: Adapter to reuse; a short-lived one is created otherwise

    Returns:
        Billing run summary
    """
    start, end = resolve_window(period_start, period_end)
    logger.info("billing_run_requested", period_start=start.isoformat(), period_end=end.isoformat())

    if dwolla is not None:
        return await BillingService(TransferService(dwolla)).run_billing(start, end)

    async with DwollaAdapter() as adapter:
        return await BillingService(TransferService(adapter)).run_billing(start, end)
