"""CRM usage webhook endpoint."""
import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from usage_billing.api.deps import get_db, require_crm_token
from usage_billing.api.errors import error_response
from usage_billing.metrics import usage_events_deduplicated_total, usage_events_rejected_total, usage_events_total
from usage_billing.schemas.error import ErrorCode
from usage_billing.schemas.usage_record import UsageEventCreate, UsageRecordResult
from usage_billing.services.usage_service import UsageService

logger = structlog.get_logger(__name__)

USAGE_PATH = "/crm/usage"
LEGACY_USAGE_PATH = "/ghl/usage"

router = APIRouter(prefix="/crm", tags=["Usage"])


@router.post(
    "/usage",
    response_model=UsageRecordResult,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_crm_token)],
)
async def record_usage_event(
    usage_data: UsageEventCreate,
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> UsageRecordResult | JSONResponse:
    """
    Record one usage event pushed by the CRM.

    - **crm_contact_id** (or **customer_id**): CRM contact the usage belongs to
    - **name** / **email**: Contact details, refreshed on every event when sent
    - **units**: Positive number of units consumed
    - **occurred_at**: When the usage happened (ISO 8601)
    - **idempotency_key**: Unique per event; retries with the same key are ignored

    Duplicates are a success (``recorded: false``) so the CRM stops retrying.
    """
    service = UsageService(db)

    try:
        result = await service.record_usage(usage_data)
        await db.commit()
    except Exception as e:
        await db.rollback()
        usage_events_rejected_total.labels(reason="internal_error").inc()
        logger.exception(
            "usage_record_failed",
            crm_contact_id=usage_data.crm_contact_id,
            idempotency_key=usage_data.idempotency_key,
            exc_info=e,
        )
        return error_response(
            request,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error="InternalServerError",
            message="Usage event could not be recorded",
            code=ErrorCode.INTERNAL_ERROR,
            detail_message="Internal server error",
            remediation="Retry with the same idempotency_key",
        )

    if result.recorded:
        usage_events_total.inc()
    else:
        usage_events_deduplicated_total.inc()
    return result


# Path the CRM workflows were configured with before the /crm prefix existed.
legacy_router = APIRouter(tags=["Usage"], include_in_schema=False)
legacy_router.add_api_route(
    LEGACY_USAGE_PATH,
    record_usage_event,
    methods=["POST"],
    response_model=UsageRecordResult,
    status_code=status.HTTP_200_OK,
    dependencies=[Depends(require_crm_token)],
)
