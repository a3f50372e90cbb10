"""Service for provisioning customers and their Dwolla funding sources."""
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.adapters.dwolla_adapter import DwollaAdapter
from usage_billing.exceptions import CustomerNotFoundError, FundingSourceMissingError
from usage_billing.models.customer import Customer, CustomerStatus
from usage_billing.schemas.customer import CustomerProvision

logger = structlog.get_logger(__name__)


class CustomerService:
    """Attach funding sources to customers and drive micro-deposit verification."""

    def __init__(self, db: AsyncSession, dwolla: DwollaAdapter | None = None):
        """Initialize customer service with database session and optional Dwolla adapter."""
        self.db = db
        self.dwolla = dwolla

    async def get_customer(self, crm_contact_id: str) -> Customer:
        """
        Get a customer by CRM contact id.

        Raises:
            CustomerNotFoundError: If the customer does not exist
        """
        result = await self.db.execute(select(Customer).where(Customer.crm_contact_id == crm_contact_id))
        customer = result.scalar_one_or_none()
        if customer is None:
            raise CustomerNotFoundError(f"Customer {crm_contact_id} not found")
        return customer

    async def provision_customer(self, data: CustomerProvision) -> Customer:
        """
        Create or update a customer with its funding source and activate it.

        Args:
            data: Provisioning input

        Returns:
            The active customer
        """
        result = await self.db.execute(select(Customer).where(Customer.crm_contact_id == data.crm_contact_id))
        customer = result.scalar_one_or_none()

        if customer is None:
            customer = Customer(crm_contact_id=data.crm_contact_id)
            self.db.add(customer)

        customer.name = data.name
        customer.email = str(data.email)
        customer.dwolla_funding_href = data.dwolla_funding_href
        if data.dwolla_customer_href:
            customer.dwolla_customer_href = data.dwolla_customer_href
        customer.status = CustomerStatus.ACTIVE

        await self.db.flush()
        await self.db.refresh(customer)

        logger.info(
            "customer_provisioned",
            crm_contact_id=customer.crm_contact_id,
            funding_href=customer.dwolla_funding_href,
        )
        return customer

    def _require_dwolla(self) -> DwollaAdapter:
        if self.dwolla is None:
            raise RuntimeError("CustomerService was created without a Dwolla adapter")
        return self.dwolla

    async def _funding_href(self, crm_contact_id: str) -> str:
        customer = await self.get_customer(crm_contact_id)
        if not customer.dwolla_funding_href:
            raise FundingSourceMissingError(f"Customer {crm_contact_id} has no funding source set")
        return customer.dwolla_funding_href

    async def funding_source_status(self, crm_contact_id: str) -> dict[str, Any]:
        """Fetch the customer's funding source details from Dwolla."""
        funding_href = await self._funding_href(crm_contact_id)
        details = await self._require_dwolla().get_funding_source(funding_href)
        logger.info("funding_source_checked", crm_contact_id=crm_contact_id, status=details.get("status"))
        return details

    async def initiate_micro_deposits(self, crm_contact_id: str) -> None:
        """Start micro-deposit verification for the customer's funding source."""
        funding_href = await self._funding_href(crm_contact_id)
        await self._require_dwolla().initiate_micro_deposits(funding_href)
        logger.info("micro_deposits_initiated", crm_contact_id=crm_contact_id)

    async def verify_micro_deposits(self, crm_contact_id: str, amount1_cents: int, amount2_cents: int) -> None:
        """Confirm the two micro-deposit amounts the customer received."""
        funding_href = await self._funding_href(crm_contact_id)
        await self._require_dwolla().verify_micro_deposits(funding_href, amount1_cents, amount2_cents)
        logger.info("micro_deposits_verified", crm_contact_id=crm_contact_id)
