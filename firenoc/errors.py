from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class ValidationError(ApiError):
    def __init__(self, message: str, *, fields: list[str] | None = None) -> None:
        super().__init__(
            code="REQ_VALIDATION_FAILED",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
            details={"fields": list(fields)} if fields else None,
        )
        self.fields = list(fields or [])


class NotFound(ApiError):
    def __init__(self, message: str = "record not found") -> None:
        super().__init__(
            code="RECORD_NOT_FOUND",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class InvalidStatus(ApiError):
    def __init__(self, value: object, allowed: list[str]) -> None:
        super().__init__(
            code="INVALID_STATUS",
            message=f"invalid status: {value!r}; must be one of: {', '.join(allowed)}",
            error_class="validation",
            retryable=False,
            http_status=400,
            details={"allowed": list(allowed)},
        )


class DuplicateKeyError(ApiError):
    def __init__(self, key: str) -> None:
        super().__init__(
            code="DUPLICATE_KEY",
            message=f"duplicate key: {key}",
            error_class="conflict",
            retryable=True,
            http_status=409,
        )
        self.key = key


class AttachmentError(ApiError):
    def __init__(self, *, slot: str, filename: str, message: str) -> None:
        super().__init__(
            code="ATTACHMENT_REJECTED",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
            details={"slot": slot, "filename": filename},
        )
        self.slot = slot
        self.filename = filename

    def as_dict(self) -> dict[str, Any]:
        return {
            "slot": self.slot,
            "filename": self.filename,
            "code": self.code,
            "message": self.message,
        }


class StoreUnavailableError(ApiError):
    def __init__(self, message: str = "record store unavailable") -> None:
        super().__init__(
            code="STORE_UNAVAILABLE",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=503,
        )


class IdentifierExhausted(ApiError):
    def __init__(self, name: str) -> None:
        super().__init__(
            code="ID_EXHAUSTED",
            message=f"identifier space exhausted for {name}",
            error_class="business_rule",
            retryable=False,
            http_status=503,
        )
