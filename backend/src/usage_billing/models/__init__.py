"""SQLAlchemy ORM models for the usage billing service."""
# Import all models here to ensure they are registered with Alembic

from usage_billing.models.base import Base
from usage_billing.models.customer import Customer, CustomerStatus
from usage_billing.models.invoice import Invoice, InvoiceStatus
from usage_billing.models.usage_record import UsageRecord

__all__ = [
    "Base",
    "Customer",
    "CustomerStatus",
    "Invoice",
    "InvoiceStatus",
    "UsageRecord",
]
