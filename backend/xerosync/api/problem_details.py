import uuid
from http import HTTPStatus
from typing import Any

from fastapi import Request, status
from fastapi.responses import JSONResponse

from xerosync.domain.xero.client import XeroApiError

PROBLEM_TYPE_VALIDATION = "https://example.com/problems/validation-error"
PROBLEM_TYPE_DOMAIN = "https://example.com/problems/domain-error"
PROBLEM_TYPE_RATE_LIMIT = "https://example.com/problems/rate-limit"
PROBLEM_TYPE_SERVER = "https://example.com/problems/server-error"
PROBLEM_TYPE_XERO = "https://example.com/problems/xero-error"

PROBLEM_MEDIA_TYPE = "application/problem+json"


def _request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID")
    if not request_id:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
    return request_id


def _default_type(status_code: int) -> str:
    if status_code == status.HTTP_422_UNPROCESSABLE_ENTITY:
        return PROBLEM_TYPE_VALIDATION
    if status_code == status.HTTP_429_TOO_MANY_REQUESTS:
        return PROBLEM_TYPE_RATE_LIMIT
    if status_code >= 500:
        return PROBLEM_TYPE_SERVER
    return PROBLEM_TYPE_DOMAIN


def problem_details(
    request: Request,
    *,
    status: int,
    title: str | None,
    detail: str,
    errors: list[dict[str, Any]] | None = None,
    type_: str | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    request_id = _request_id(request)
    if not title:
        try:
            title = HTTPStatus(status).phrase
        except ValueError:
            title = "Error"
    response = JSONResponse(
        status_code=status,
        content={
            "type": type_ or _default_type(status),
            "title": title,
            "status": status,
            "detail": detail,
            "request_id": request_id,
            "errors": errors or [],
        },
        headers=headers,
        media_type=PROBLEM_MEDIA_TYPE,
    )
    response.headers.setdefault("X-Request-ID", request_id)
    return response


def xero_problem(request: Request, exc: XeroApiError, *, title: str) -> JSONResponse:
    """Problem response for a failed Xero call made while serving an admin request.

    Throttling maps to 429 and transient provider failures to 502; anything else
    is the caller's problem (400).
    """
    if exc.rate_limited:
        status_code = status.HTTP_429_TOO_MANY_REQUESTS
    elif exc.transient:
        status_code = status.HTTP_502_BAD_GATEWAY
    else:
        status_code = status.HTTP_400_BAD_REQUEST
    errors = [{"field": "xero", "message": exc.detail}] if exc.detail else None
    return problem_details(
        request=request,
        status=status_code,
        title=title,
        detail=exc.code,
        errors=errors,
        type_=PROBLEM_TYPE_RATE_LIMIT if exc.rate_limited else PROBLEM_TYPE_XERO,
    )
