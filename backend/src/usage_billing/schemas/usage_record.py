"""Pydantic schemas for usage ledger events."""
from datetime import datetime, timezone
from decimal import Decimal

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator


class UsageEventCreate(BaseModel):
    """Usage event delivered by the CRM webhook."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    crm_contact_id: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("crm_contact_id", "customer_id"),
        description="CRM contact the usage belongs to",
    )
    name: str | None = Field(default=None, description="Contact display name")
    email: EmailStr | None = Field(default=None, description="Contact email address")
    units: Decimal = Field(..., gt=0, max_digits=18, decimal_places=6, description="Units consumed")
    occurred_at: datetime = Field(..., description="When the usage occurred (ISO 8601)")
    idempotency_key: str = Field(..., min_length=1, description="Caller-supplied key making retries safe")

    @field_validator("occurred_at")
    @classmethod
    def normalize_to_utc(cls, value: datetime) -> datetime:
        """Store timestamps as naive UTC; naive input is taken to be UTC already."""
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    @field_validator("email", mode="before")
    @classmethod
    def blank_email_is_missing(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class UsageRecordResult(BaseModel):
    """Outcome of recording a usage event."""

    success: bool = True
    recorded: bool = Field(..., description="False when the idempotency key was already recorded")
    message: str
    usage_record_id: int | None = Field(default=None, description="Id of the newly written record")
