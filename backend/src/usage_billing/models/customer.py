"""Customer model for CRM contacts billed over ACH."""
import enum

from sqlalchemy import Column, DateTime, Enum as SQLEnum, String
from sqlalchemy.orm import relationship

from usage_billing.models.base import Base, utcnow


class CustomerStatus(enum.Enum):
    """Customer lifecycle status."""

    PENDING = "pending"
    ACTIVE = "active"


class Customer(Base):
    """
    CRM contact that usage is recorded against.

    Created on the first usage event; funding source and activation are set by
    the provisioning step. Only ACTIVE customers with a funding source are billed.
    """

    __tablename__ = "customers"

    crm_contact_id = Column(String, primary_key=True)
    name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    dwolla_customer_href = Column(String, nullable=True)
    dwolla_funding_href = Column(String, nullable=True)
    status = Column(
        SQLEnum(
            CustomerStatus,
            name="customerstatus",
            native_enum=False,
            length=16,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=CustomerStatus.PENDING,
    )
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    usage_records = relationship("UsageRecord", back_populates="customer")
    invoices = relationship("Invoice", back_populates="customer")

    @property
    def is_billable(self) -> bool:
        """Whether invoices may be created for this customer."""
        return self.status == CustomerStatus.ACTIVE and bool(self.dwolla_funding_href)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Customer(crm_contact_id={self.crm_contact_id}, status={self.status.value})>"
