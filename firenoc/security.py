from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from firenoc.errors import ApiError

ADMIN_ROLE = "admin"


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


@dataclass
class AuthContext:
    tenant_id: str
    subject: str
    role: str


@dataclass
class JwtSecurityConfig:
    """Bearer-token settings.

    Tokens are required on ``/api/v1/`` once any of ``JWT_ISSUER``,
    ``JWT_AUDIENCE`` or ``JWT_SHARED_SECRET`` is set. Otherwise the tenant
    comes from ``x-tenant-id`` and ``x-user-role`` is honoured only when
    ``FIRENOC_ALLOW_HEADER_ROLES`` is on.
    """

    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    role_claim: str
    header_roles_allowed: bool
    trace_id_strict_required: bool

    @classmethod
    def from_env(cls) -> "JwtSecurityConfig":
        issuer = os.environ.get("JWT_ISSUER", "").strip()
        audience = os.environ.get("JWT_AUDIENCE", "").strip()
        shared_secret = os.environ.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            role_claim=os.environ.get("JWT_ROLE_CLAIM", "role").strip() or "role",
            header_roles_allowed=_env_bool("FIRENOC_ALLOW_HEADER_ROLES", False),
            trace_id_strict_required=_env_bool("TRACE_ID_STRICT_REQUIRED", False),
        )

    def header_role(self, raw: str | None) -> str:
        if self.enabled or not self.header_roles_allowed:
            return ""
        return (raw or "").strip().lower()


def _decode_segment(raw: str) -> dict[str, Any]:
    try:
        obj = json.loads(_b64url_decode(raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(obj, dict):
        raise _unauthorized("invalid token payload")
    return obj


def _sign(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme != "Bearer" or not token.strip():
        raise _unauthorized("missing Authorization bearer token")
    parts = token.strip().split(".")
    if len(parts) != 3:
        raise _unauthorized("invalid token format")
    header, claims = _decode_segment(parts[0]), _decode_segment(parts[1])
    if str(header.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")
    if not hmac.compare_digest(_sign(cfg.shared_secret, f"{parts[0]}.{parts[1]}"), parts[2]):
        raise _unauthorized("invalid token signature")

    exp = claims.get("exp")
    if isinstance(exp, bool) or not isinstance(exp, (int, float)) or exp <= datetime.now(UTC).timestamp():
        raise _unauthorized("token expired")
    if cfg.issuer and str(claims.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience:
        aud = claims.get("aud")
        audiences = {str(x) for x in aud} if isinstance(aud, list) else {str(aud or "")}
        if cfg.audience not in audiences:
            raise _unauthorized("jwt audience mismatch")

    tenant_id = str(claims.get("tenant_id") or "").strip()
    subject = str(claims.get("sub") or "").strip()
    if not tenant_id or not subject:
        raise _unauthorized("missing tenant or subject claim")
    role = str(claims.get(cfg.role_claim) or "").strip().lower()
    return AuthContext(tenant_id=tenant_id, subject=subject, role=role)
