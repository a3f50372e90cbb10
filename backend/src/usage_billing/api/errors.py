"""Builders for the structured error envelope returned by every endpoint."""
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from usage_billing.middleware.logging import request_id_for
from usage_billing.schemas.error import REMEDIATION_HINTS, ErrorDetail, ErrorResponse


def error_response(
    request: Request,
    status_code: int,
    error: str,
    message: str,
    code: str,
    details: list[ErrorDetail] | None = None,
    detail_message: str | None = None,
    headers: dict[str, str] | None = None,
    remediation: str | None = None,
) -> JSONResponse:
    """
    Render an ``ErrorResponse`` as JSON.

    Args:
        request: Request being answered (for the request id)
        status_code: HTTP status
        error: Error type name, e.g. ``"ValidationError"``
        message: Primary human-readable message
        code: Machine-readable code from ``ErrorCode``
        details: Field-level problems; defaults to a single entry built from
            ``code`` and ``detail_message``
        detail_message: Message of the default detail entry
        headers: Extra response headers
        remediation: Override for the code's default remediation hint
    """
    if details is None:
        details = [ErrorDetail(code=code, message=detail_message or message)]

    body: dict[str, Any] = ErrorResponse(
        error=error,
        message=message,
        details=details,
        remediation=remediation or REMEDIATION_HINTS.get(code),
        request_id=request_id_for(request),
    ).model_dump(mode="json")

    return JSONResponse(status_code=status_code, content=body, headers=headers)
