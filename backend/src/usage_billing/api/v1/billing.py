"""Billing run trigger endpoint."""
from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from usage_billing.api.deps import get_billing_service, require_billing_token
from usage_billing.api.errors import error_response
from usage_billing.exceptions import BillingRunInProgressError, InvalidBillingWindowError
from usage_billing.schemas.billing import BillingRunSummary
from usage_billing.schemas.error import ErrorCode
from usage_billing.services.billing_service import BillingService
from usage_billing.workers.billing_run import resolve_window

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["Billing"])


@router.post(
    "/run",
    response_model=BillingRunSummary,
    dependencies=[Depends(require_billing_token)],
)
async def run_billing(
    request: Request,
    start: datetime | None = Query(default=None, description="Inclusive window start (ISO 8601)"),
    end: datetime | None = Query(default=None, description="Exclusive window end (ISO 8601)"),
    billing_service: BillingService = Depends(get_billing_service),
) -> BillingRunSummary | JSONResponse:
    """
    Bill every eligible customer for ``[start, end)``.

    Without parameters the previous full week (billing timezone) is billed.
    A customer whose transfer fails is reported in ``results.errors`` and its
    usage stays unbilled for the next run.
    """
    period_start, period_end = resolve_window(start, end)

    try:
        return await billing_service.run_billing(period_start, period_end)
    except InvalidBillingWindowError as e:
        logger.warning("billing_run_rejected", reason="invalid_window", error=str(e))
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error="ValidationError",
            message=str(e),
            code=ErrorCode.INVALID_BILLING_WINDOW,
        )
    except BillingRunInProgressError as e:
        logger.warning("billing_run_rejected", reason="in_progress")
        return error_response(
            request,
            status_code=status.HTTP_409_CONFLICT,
            error="Conflict",
            message=str(e),
            code=ErrorCode.BILLING_RUN_IN_PROGRESS,
        )


# Path called by the weekly cron job.
legacy_router = APIRouter(tags=["Billing"], include_in_schema=False)
legacy_router.add_api_route(
    "/bill/week",
    run_billing,
    methods=["POST"],
    response_model=BillingRunSummary,
    dependencies=[Depends(require_billing_token)],
)
