"""Pydantic schemas for billing runs."""
from datetime import datetime

from pydantic import BaseModel, Field


class BillingPeriod(BaseModel):
    """Half-open billing window ``[start, end)`` in UTC."""

    start: datetime
    end: datetime


class BillingCustomerError(BaseModel):
    """Per-customer failure reported by a billing run."""

    crm_contact_id: str
    error: str


class BillingRunResults(BaseModel):
    """Counters accumulated over a billing run."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    total_amount_cents: int = 0
    total_amount_dollars: str = "0.00"
    invoice_ids: list[int] = Field(default_factory=list)
    errors: list[BillingCustomerError] = Field(default_factory=list)


class BillingRunSummary(BaseModel):
    """Response of the billing trigger."""

    success: bool = True
    period: BillingPeriod
    results: BillingRunResults
    duration_ms: int = Field(..., description="Wall-clock duration of the run")
