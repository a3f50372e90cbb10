"""FastAPI dependencies for database sessions, bearer tokens and the Dwolla adapter."""
import hmac
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from usage_billing.adapters.dwolla_adapter import DwollaAdapter
from usage_billing.config import settings
from usage_billing.database import get_db
from usage_billing.metrics import usage_events_rejected_total
from usage_billing.services.billing_service import BillingService
from usage_billing.services.transfer_service import TransferService

logger = structlog.get_logger(__name__)

__all__ = [
    "get_db",
    "get_dwolla_adapter",
    "get_transfer_service",
    "get_billing_service",
    "require_crm_token",
    "require_billing_token",
]

# HTTP Bearer token security scheme (401 is raised by the checks below)
security = HTTPBearer(auto_error=False)


def _check_bearer(credentials: Optional[HTTPAuthorizationCredentials], expected: str, caller: str) -> None:
    """
    Compare a bearer credential against the configured static token.

    Raises:
        HTTPException: If the token is missing, unconfigured or wrong
    """
    if not credentials:
        logger.warning("bearer_token_missing", caller=caller)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not expected or not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        logger.warning("bearer_token_invalid", caller=caller)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_crm_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """Authenticate the CRM usage webhook."""
    try:
        _check_bearer(credentials, settings.crm_webhook_token, caller="crm")
    except HTTPException:
        usage_events_rejected_total.labels(reason="unauthorized").inc()
        raise


async def require_billing_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> None:
    """Authenticate callers of the billing trigger."""
    _check_bearer(credentials, settings.billing_admin_token, caller="billing")


def get_dwolla_adapter(request: Request) -> DwollaAdapter:
    """
    Dwolla adapter owned by the application lifespan.

    Returns:
        DwollaAdapter: Shared adapter (one HTTP client and token cache per process)
    """
    return request.app.state.dwolla


def get_transfer_service(dwolla: DwollaAdapter = Depends(get_dwolla_adapter)) -> TransferService:
    """Transfer initiator bound to the shared adapter."""
    return TransferService(dwolla)


def get_billing_service(transfer_service: TransferService = Depends(get_transfer_service)) -> BillingService:
    """Billing aggregator bound to the shared transfer initiator."""
    return BillingService(transfer_service)
