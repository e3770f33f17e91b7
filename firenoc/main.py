from __future__ import annotations

import logging
import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from firenoc.errors import ApiError
from firenoc.record_kinds import APPLICATION, SAFETY_REVIEW
from firenoc.routes import files
from firenoc.routes._deps import error_response, request_id_from_request, trace_id_from_request
from firenoc.routes.records import build_records_router
from firenoc.schemas import success_envelope
from firenoc.security import JwtSecurityConfig, parse_and_validate_bearer_token

logger = logging.getLogger(__name__)

SECURITY_CODES = frozenset({"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN", "TENANT_SCOPE_VIOLATION"})
PUBLIC_API_PATHS = frozenset({"/api/v1/health"})


def _log_security_block(request: Request, exc: ApiError) -> None:
    logger.warning(
        "security_blocked code=%s method=%s path=%s tenant_id=%s trace_id=%s",
        exc.code,
        request.method,
        request.url.path,
        getattr(request.state, "tenant_id", ""),
        trace_id_from_request(request),
    )


def _validation_fields(exc: RequestValidationError) -> list[str]:
    fields: list[str] = []
    for err in exc.errors():
        loc = [str(x) for x in err.get("loc", ()) if x not in {"body", "query", "path", "header"}]
        if loc:
            fields.append(".".join(loc))
    return fields


def create_app() -> FastAPI:
    app = FastAPI(title="Fire NOC Registry API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    if not security_cfg.enabled:
        logger.warning(
            "jwt_disabled header_roles_allowed=%s tenant_source=x-tenant-id",
            security_cfg.header_roles_allowed,
        )
    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = ""
        request.state.user_role = ""
        path = request.url.path
        if (
            security_cfg.trace_id_strict_required
            and path.startswith("/api/v1/")
            and path not in PUBLIC_API_PATHS
            and not incoming_trace_id
        ):
            response = error_response(
                request,
                code="TRACE_ID_REQUIRED",
                message="x-trace-id header is required",
                error_class="validation",
                retryable=False,
                status_code=400,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response
        try:
            header_tenant_explicit = request.headers.get("x-tenant-id")
            if security_cfg.enabled and path.startswith("/api/v1/") and path not in PUBLIC_API_PATHS:
                auth_ctx = parse_and_validate_bearer_token(
                    authorization=request.headers.get("Authorization"),
                    cfg=security_cfg,
                )
                request.state.auth_subject = auth_ctx.subject
                request.state.tenant_id = auth_ctx.tenant_id
                request.state.user_role = auth_ctx.role
                if header_tenant_explicit and header_tenant_explicit != auth_ctx.tenant_id:
                    raise ApiError(
                        code="TENANT_SCOPE_VIOLATION",
                        message="tenant mismatch",
                        error_class="security_sensitive",
                        retryable=False,
                        http_status=403,
                    )
            else:
                request.state.tenant_id = header_tenant_explicit or "tenant_default"
                request.state.user_role = security_cfg.header_role(request.headers.get("x-user-role"))
            response = await call_next(request)
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response
        except ApiError as exc:
            _log_security_block(request, exc)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
            response.headers["x-trace-id"] = trace_id_from_request(request)
            response.headers["x-request-id"] = request_id_from_request(request)
            return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in SECURITY_CODES:
            _log_security_block(request, exc)
        elif exc.http_status >= 500:
            logger.warning(
                "request_failed code=%s path=%s trace_id=%s message=%s",
                exc.code,
                request.url.path,
                trace_id_from_request(request),
                exc.message,
            )
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        fields = _validation_fields(exc)
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
            details={"fields": fields} if fields else None,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(build_records_router(APPLICATION, "/api/v1/applications"))
    app.include_router(build_records_router(SAFETY_REVIEW, "/api/v1/safety-reviews"))
    app.include_router(files.router)
    return app


app = create_app()
