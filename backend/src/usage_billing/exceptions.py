"""Domain exceptions for usage billing."""


class UsageBillingError(Exception):
    """Base class for errors raised by the billing core."""


class InvalidBillingWindowError(UsageBillingError, ValueError):
    """Billing window is empty or reversed."""


class BillingRunInProgressError(UsageBillingError):
    """Another billing run is already executing in this process."""


class CustomerNotFoundError(UsageBillingError, LookupError):
    """No customer exists for the given CRM contact id."""


class FundingSourceMissingError(UsageBillingError):
    """Customer has no funding source reference configured."""


class WebhookAuthError(UsageBillingError):
    """Webhook credential or signature did not verify."""


class ProcessorError(UsageBillingError):
    """
    Error returned by the payment processor.

    Carries the HTTP status (None for network failures) and the response body
    so callers can surface the processor's own message.
    """

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class TransientProcessorError(ProcessorError):
    """Network failure or 5xx from the processor; safe to retry."""


class TerminalProcessorError(ProcessorError):
    """4xx business rejection from the processor (e.g. unverified funding source)."""
