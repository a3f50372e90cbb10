"""Service for aggregating unbilled usage into invoices and ACH transfers."""
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from usage_billing.config import settings
from usage_billing.database import AsyncSessionLocal
from usage_billing.exceptions import BillingRunInProgressError, InvalidBillingWindowError, ProcessorError
from usage_billing.metrics import billing_customers_total, invoice_amount_cents_total, invoices_created_total
from usage_billing.models.customer import Customer, CustomerStatus
from usage_billing.models.invoice import Invoice, InvoiceStatus
from usage_billing.models.usage_record import UsageRecord
from usage_billing.schemas.billing import (
    BillingCustomerError,
    BillingPeriod,
    BillingRunResults,
    BillingRunSummary,
)
from usage_billing.services.transfer_service import TransferService
from usage_billing.utils.currency import calculate_amount_cents, format_dollars

logger = structlog.get_logger(__name__)

# Single-flight guard for billing runs within this process
_billing_run_lock = asyncio.Lock()


@dataclass(frozen=True)
class BillableCustomer:
    """Customer with unbilled usage inside a billing window."""

    crm_contact_id: str
    name: str | None
    funding_href: str
    units: Decimal


def previous_week_window(now: datetime | None = None, tz_name: str | None = None) -> tuple[datetime, datetime]:
    """
    Return the last full Monday-to-Monday week as a naive UTC ``[start, end)``.

    Week boundaries are local midnight in the billing timezone, so the UTC
    window is 7 days long except across a DST change.

    Args:
        now: Reference time (aware; naive values are read as UTC). Defaults to now.
        tz_name: IANA timezone name. Defaults to ``settings.billing_timezone``.
    """
    tz = ZoneInfo(tz_name or settings.billing_timezone)
    reference = now or datetime.now(timezone.utc)
    if reference.tzinfo is None:
        reference = reference.replace(tzinfo=timezone.utc)

    local_now = reference.astimezone(tz)
    week_start = (local_now - timedelta(days=local_now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    previous_week_start = week_start - timedelta(weeks=1)

    def to_utc(value: datetime) -> datetime:
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    return to_utc(previous_week_start), to_utc(week_start)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware timestamp to naive UTC; naive values pass through."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class BillingService:
    """
    Billing aggregator.

    For a window ``[start, end)`` every active customer with a funding source
    and unbilled usage gets one transfer and one invoice. Each customer is
    billed in its own transaction so one failure never affects the others;
    failed customers keep their usage unbilled for the next run.
    """

    def __init__(
        self,
        transfer_service: TransferService,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        price_per_unit_cents: int | None = None,
        run_lock: asyncio.Lock | None = None,
    ):
        """Initialize billing service."""
        self.transfer_service = transfer_service
        self.session_factory = session_factory
        self.price_per_unit_cents = price_per_unit_cents or settings.price_per_unit_cents
        self.run_lock = run_lock or _billing_run_lock

    async def find_billable_customers(
        self,
        db: AsyncSession,
        period_start: datetime,
        period_end: datetime,
    ) -> list[BillableCustomer]:
        """
        Sum unbilled usage per billable customer inside the window.

        Customers that are not active or have no funding source are excluded
        entirely.
        """
        total_units = func.sum(UsageRecord.units)
        result = await db.execute(
            select(
                Customer.crm_contact_id,
                Customer.name,
                Customer.dwolla_funding_href,
                total_units.label("units"),
            )
            .join(UsageRecord, UsageRecord.crm_contact_id == Customer.crm_contact_id)
            .where(
                Customer.status == CustomerStatus.ACTIVE,
                Customer.dwolla_funding_href.is_not(None),
                Customer.dwolla_funding_href != "",
                UsageRecord.invoice_id.is_(None),
                UsageRecord.occurred_at >= period_start,
                UsageRecord.occurred_at < period_end,
            )
            .group_by(Customer.crm_contact_id, Customer.name, Customer.dwolla_funding_href)
            .having(total_units > 0)
            .order_by(Customer.crm_contact_id)
        )
        return [
            BillableCustomer(
                crm_contact_id=row.crm_contact_id,
                name=row.name,
                funding_href=row.dwolla_funding_href,
                units=Decimal(str(row.units)),
            )
            for row in result.all()
        ]

    async def bill_customer(
        self,
        customer: BillableCustomer,
        period_start: datetime,
        period_end: datetime,
    ) -> Invoice | None:
        """
        Bill one customer's unbilled usage in a single transaction.

        The unbilled rows are locked, the transfer is created, the invoice is
        inserted and the rows are claimed by it, in that order. Any exception
        rolls back the invoice and the claims together.

        Returns:
            The new invoice, or None if nothing billable remained once the rows
            were locked
        """
        async with self.session_factory() as db:
            async with db.begin():
                rows = (
                    await db.execute(
                        select(UsageRecord.id, UsageRecord.units)
                        .where(
                            UsageRecord.crm_contact_id == customer.crm_contact_id,
                            UsageRecord.invoice_id.is_(None),
                            UsageRecord.occurred_at >= period_start,
                            UsageRecord.occurred_at < period_end,
                        )
                        .order_by(UsageRecord.id)
                        .with_for_update()
                    )
                ).all()

                record_ids = [row.id for row in rows]
                total_units = sum((Decimal(str(row.units)) for row in rows), Decimal(0))
                amount_cents = calculate_amount_cents(total_units, self.price_per_unit_cents)
                if not record_ids or amount_cents <= 0:
                    return None

                transfer_href = await self.transfer_service.initiate_transfer(
                    source_href=customer.funding_href,
                    amount_cents=amount_cents,
                    metadata={
                        "crm_contact_id": customer.crm_contact_id,
                        "period_start": period_start.isoformat(),
                        "period_end": period_end.isoformat(),
                    },
                )

                invoice = Invoice(
                    crm_contact_id=customer.crm_contact_id,
                    period_start=period_start,
                    period_end=period_end,
                    amount_cents=amount_cents,
                    dwolla_transfer_href=transfer_href,
                    status=InvoiceStatus.INITIATED,
                )
                db.add(invoice)
                await db.flush()

                claimed = await db.execute(
                    update(UsageRecord)
                    .where(UsageRecord.id.in_(record_ids), UsageRecord.invoice_id.is_(None))
                    .values(invoice_id=invoice.id)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != len(record_ids):
                    raise RuntimeError(
                        f"Claimed {claimed.rowcount} of {len(record_ids)} usage records; "
                        f"transfer {transfer_href} needs manual review"
                    )

        return invoice

    async def run_billing(self, period_start: datetime, period_end: datetime) -> BillingRunSummary:
        """
        Bill every eligible customer for the window ``[period_start, period_end)``.

        Args:
            period_start: Inclusive window start
            period_end: Exclusive window end

        Returns:
            Summary with per-customer outcomes

        Raises:
            InvalidBillingWindowError: If start is not before end
            BillingRunInProgressError: If another run holds the lock
        """
        period_start = to_naive_utc(period_start)
        period_end = to_naive_utc(period_end)
        if period_start >= period_end:
            raise InvalidBillingWindowError(
                f"Billing window start {period_start.isoformat()} must be before end {period_end.isoformat()}"
            )

        if self.run_lock.locked():
            raise BillingRunInProgressError("A billing run is already in progress")

        async with self.run_lock:
            return await self._run(period_start, period_end)

    async def _run(self, period_start: datetime, period_end: datetime) -> BillingRunSummary:
        started = time.monotonic()

        async with self.session_factory() as db:
            customers = await self.find_billable_customers(db, period_start, period_end)

        logger.info(
            "billing_run_started",
            period_start=period_start.isoformat(),
            period_end=period_end.isoformat(),
            customers_count=len(customers),
        )

        results = BillingRunResults(total=len(customers))

        for customer in customers:
            if calculate_amount_cents(customer.units, self.price_per_unit_cents) <= 0:
                results.skipped += 1
                billing_customers_total.labels(outcome="skipped").inc()
                logger.info("billing_customer_skipped", crm_contact_id=customer.crm_contact_id, units=str(customer.units))
                continue

            try:
                invoice = await self.bill_customer(customer, period_start, period_end)
            except Exception as e:
                results.failed += 1
                results.errors.append(BillingCustomerError(crm_contact_id=customer.crm_contact_id, error=str(e)))
                billing_customers_total.labels(outcome="failed").inc()
                logger.error(
                    "billing_customer_failed",
                    crm_contact_id=customer.crm_contact_id,
                    error=str(e),
                    exc_info=not isinstance(e, ProcessorError),
                )
                continue

            if invoice is None:
                results.skipped += 1
                billing_customers_total.labels(outcome="skipped").inc()
                logger.info("billing_customer_already_claimed", crm_contact_id=customer.crm_contact_id)
                continue

            results.successful += 1
            results.total_amount_cents += invoice.amount_cents
            results.invoice_ids.append(invoice.id)
            billing_customers_total.labels(outcome="successful").inc()
            invoices_created_total.inc()
            invoice_amount_cents_total.inc(invoice.amount_cents)

            logger.info(
                "billing_customer_succeeded",
                crm_contact_id=customer.crm_contact_id,
                name=customer.name,
                units=str(customer.units),
                invoice_id=invoice.id,
                amount_cents=invoice.amount_cents,
                amount_dollars=invoice.amount_dollars,
                transfer_href=invoice.dwolla_transfer_href,
            )

        results.total_amount_dollars = format_dollars(results.total_amount_cents)
        duration_ms = int((time.monotonic() - started) * 1000)

        logger.info(
            "billing_run_completed",
            total=results.total,
            successful=results.successful,
            failed=results.failed,
            skipped=results.skipped,
            total_amount_dollars=results.total_amount_dollars,
            duration_ms=duration_ms,
        )

        return BillingRunSummary(
            period=BillingPeriod(start=period_start, end=period_end),
            results=results,
            duration_ms=duration_ms,
        )
