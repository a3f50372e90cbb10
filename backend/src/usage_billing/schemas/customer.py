"""Pydantic schemas for Customer model."""
from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from usage_billing.models.customer import CustomerStatus


class CustomerProvision(BaseModel):
    """Input for attaching a funding source to a customer and activating it."""

    crm_contact_id: str = Field(..., min_length=1, description="CRM contact id")
    name: str = Field(..., min_length=1, description="Customer name")
    email: EmailStr = Field(..., description="Customer email address")
    dwolla_funding_href: str = Field(..., min_length=1, description="Dwolla funding source href")
    dwolla_customer_href: str | None = Field(default=None, description="Dwolla customer href")

    @field_validator("dwolla_funding_href")
    @classmethod
    def looks_like_funding_source(cls, value: str) -> str:
        if "funding-sources/" not in value:
            raise ValueError("must be a Dwolla funding source href (.../funding-sources/<id>)")
        return value


class Customer(BaseModel):
    """Schema for returning customer data."""

    crm_contact_id: str
    name: str | None
    email: str | None
    dwolla_customer_href: str | None
    dwolla_funding_href: str | None
    status: CustomerStatus
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)
