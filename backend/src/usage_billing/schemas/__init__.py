"""Pydantic schemas for API request/response validation."""

from usage_billing.schemas.billing import (
    BillingCustomerError,
    BillingPeriod,
    BillingRunResults,
    BillingRunSummary,
)
from usage_billing.schemas.customer import Customer, CustomerProvision
from usage_billing.schemas.error import ErrorCode, ErrorDetail, ErrorResponse
from usage_billing.schemas.transfer_notification import NotificationAck, TransferNotification
from usage_billing.schemas.usage_record import UsageEventCreate, UsageRecordResult

__all__ = [
    # Billing
    "BillingCustomerError",
    "BillingPeriod",
    "BillingRunResults",
    "BillingRunSummary",
    # Customer
    "Customer",
    "CustomerProvision",
    # Error
    "ErrorCode",
    "ErrorDetail",
    "ErrorResponse",
    # Transfer notifications
    "NotificationAck",
    "TransferNotification",
    # Usage
    "UsageEventCreate",
    "UsageRecordResult",
]
