from __future__ import annotations

import uuid
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from firenoc.errors import ApiError
from firenoc.schemas import error_envelope
from firenoc.security import ADMIN_ROLE


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def tenant_id_from_request(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None)
    if tenant_id:
        return tenant_id
    return "tenant_default"


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def subject_from_request(request: Request) -> str:
    return getattr(request.state, "auth_subject", "")


def require_admin(request: Request) -> None:
    if getattr(request.state, "user_role", "") != ADMIN_ROLE:
        raise ApiError(
            code="AUTH_FORBIDDEN",
            message="admin role required",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )
