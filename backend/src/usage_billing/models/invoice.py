"""Invoice model for per-period ACH billing."""
import enum

from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, String
from sqlalchemy.orm import relationship

from usage_billing.models.base import Base, utcnow


class InvoiceStatus(enum.Enum):
    """Invoice lifecycle status, mirroring the Dwolla transfer it was paid with."""

    INITIATED = "initiated"
    COMPLETED = "completed"
    FAILED = "failed"


class Invoice(Base):
    """
    Usage invoice for one customer and one billing window.

    Created together with its transfer and the claim of its usage records.
    Status only moves INITIATED -> COMPLETED or INITIATED -> FAILED.
    """

    __tablename__ = "invoices"
    __table_args__ = (
        Index("invoices_crm_contact_idx", "crm_contact_id", "period_start", "period_end"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    crm_contact_id = Column(String, ForeignKey("customers.crm_contact_id"), nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    dwolla_transfer_href = Column(String, nullable=True, index=True)
    status = Column(
        SQLEnum(
            InvoiceStatus,
            name="invoicestatus",
            native_enum=False,
            length=16,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=InvoiceStatus.INITIATED,
    )
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    customer = relationship("Customer", back_populates="invoices")
    usage_records = relationship("UsageRecord", back_populates="invoice")

    @property
    def amount_dollars(self) -> str:
        """Amount formatted as a dollar string with two decimals."""
        return f"{self.amount_cents / 100:.2f}"

    def __repr__(self) -> str:
        """String representation."""
        return f"<Invoice(id={self.id}, crm_contact_id={self.crm_contact_id}, status={self.status.value}, amount_cents={self.amount_cents})>"
