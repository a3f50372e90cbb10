"""Usage ledger model for metered CRM events."""
from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, text
from sqlalchemy.orm import relationship

from usage_billing.models.base import Base


class UsageRecord(Base):
    """
    Single usage event in the ledger.

    Immutable once written. ``idempotency_key`` is unique so retried webhook
    deliveries insert at most one row. ``invoice_id`` is set exactly once, by
    the billing run that claims the record, and never changes afterwards.
    """

    __tablename__ = "usage_ledger"
    __table_args__ = (
        Index("usage_idx", "crm_contact_id", "occurred_at"),
        # Backs the billing run's search for unclaimed usage
        Index(
            "usage_ledger_unbilled_idx",
            "crm_contact_id",
            "occurred_at",
            postgresql_where=text("invoice_id IS NULL"),
            sqlite_where=text("invoice_id IS NULL"),
        ),
        CheckConstraint("units > 0", name="usage_ledger_units_positive"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    idempotency_key = Column(String, nullable=False, unique=True)
    crm_contact_id = Column(String, ForeignKey("customers.crm_contact_id"), nullable=False)
    units = Column(Numeric(18, 6), nullable=False)
    occurred_at = Column(DateTime, nullable=False)
    invoice_id = Column(Integer, ForeignKey("invoices.id"), nullable=True, index=True)

    # Relationships
    customer = relationship("Customer", back_populates="usage_records")
    invoice = relationship("Invoice", back_populates="usage_records")

    def __repr__(self) -> str:
        """String representation."""
        return f"<UsageRecord(id={self.id}, crm_contact_id={self.crm_contact_id}, units={self.units}, invoice_id={self.invoice_id})>"
