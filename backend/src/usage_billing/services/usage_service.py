"""Service for recording usage events in the ledger."""

import structlog
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.models.base import utcnow
from usage_billing.models.customer import Customer, CustomerStatus
from usage_billing.models.usage_record import UsageRecord
from usage_billing.schemas.usage_record import UsageEventCreate, UsageRecordResult

logger = structlog.get_logger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def dialect_insert(db: AsyncSession):
    """Return the ON CONFLICT-capable insert() for the session's database."""
    dialect = db.get_bind().dialect.name
    try:
        return _DIALECT_INSERTS[dialect]
    except KeyError:
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}") from None


class UsageService:
    """Service for recording and listing usage events."""

    def __init__(self, db: AsyncSession):
        """Initialize usage service with database session."""
        self.db = db

    async def upsert_customer(self, crm_contact_id: str, name: str | None, email: str | None) -> None:
        """
        Insert the customer, or refresh its name and email.

        Never touches status or funding source; those belong to provisioning.
        Missing name/email values keep whatever is already stored.
        """
        insert = dialect_insert(self.db)
        now = utcnow()
        stmt = insert(Customer).values(
            crm_contact_id=crm_contact_id,
            name=name,
            email=email,
            status=CustomerStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Customer.crm_contact_id],
            set_={
                "name": func.coalesce(stmt.excluded.name, Customer.name),
                "email": func.coalesce(stmt.excluded.email, Customer.email),
                "updated_at": now,
            },
        )
        await self.db.execute(stmt)

    async def record_usage(self, usage_data: UsageEventCreate) -> UsageRecordResult:
        """
        Record a usage event with idempotency.

        Upserts the customer and inserts the ledger row in the caller's
        transaction; the caller commits or rolls back both writes together.
        A repeated idempotency key is absorbed by the unique constraint and
        reported as ``recorded=False``, leaving the first row untouched.

        Args:
            usage_data: Validated usage event

        Returns:
            Whether a new row was written
        """
        await self.upsert_customer(usage_data.crm_contact_id, usage_data.name, usage_data.email)

        insert = dialect_insert(self.db)
        stmt = (
            insert(UsageRecord)
            .values(
                idempotency_key=usage_data.idempotency_key,
                crm_contact_id=usage_data.crm_contact_id,
                units=usage_data.units,
                occurred_at=usage_data.occurred_at,
                created_at=utcnow(),
            )
            .on_conflict_do_nothing(index_elements=[UsageRecord.idempotency_key])
            .returning(UsageRecord.id)
        )
        result = await self.db.execute(stmt)
        record_id = result.scalar_one_or_none()

        if record_id is None:
            logger.info(
                "usage_duplicate_ignored",
                crm_contact_id=usage_data.crm_contact_id,
                idempotency_key=usage_data.idempotency_key,
            )
            return UsageRecordResult(recorded=False, message="Duplicate request ignored")

        logger.info(
            "usage_recorded",
            crm_contact_id=usage_data.crm_contact_id,
            units=str(usage_data.units),
            usage_record_id=record_id,
        )
        return UsageRecordResult(recorded=True, message="Usage recorded", usage_record_id=record_id)

    async def get_by_idempotency_key(self, idempotency_key: str) -> UsageRecord | None:
        """Look up a ledger row by its idempotency key."""
        result = await self.db.execute(
            select(UsageRecord).where(UsageRecord.idempotency_key == idempotency_key)
        )
        return result.scalar_one_or_none()
