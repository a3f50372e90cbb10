"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter

# Usage metrics
usage_events_total = Counter(
    "usage_events_total",
    "Total usage events recorded",
)

usage_events_deduplicated_total = Counter(
    "usage_events_deduplicated_total",
    "Total duplicate usage events ignored",
)

usage_events_rejected_total = Counter(
    "usage_events_rejected_total",
    "Total usage events rejected",
    labelnames=["reason"],  # unauthorized, internal_error
)

# Invoice metrics
invoices_created_total = Counter(
    "invoices_created_total",
    "Total invoices created by billing runs",
)

invoice_amount_cents_total = Counter(
    "invoice_amount_cents_total",
    "Total amount invoiced in cents",
)

billing_customers_total = Counter(
    "billing_customers_total",
    "Customers processed by billing runs",
    labelnames=["outcome"],  # successful, failed, skipped
)

# Transfer metrics
transfers_requested_total = Counter(
    "transfers_requested_total",
    "Total transfer creation attempts",
    labelnames=["status"],  # created, failed
)

# Reconciliation metrics
transfer_notifications_total = Counter(
    "transfer_notifications_total",
    "Transfer status notifications processed",
    labelnames=["outcome"],  # applied, duplicate, unknown_transfer, conflict, ignored, invalid, error
)
