from __future__ import annotations

import re
from datetime import UTC, datetime
from typing import Any

from firenoc.errors import InvalidStatus

SUBMITTED = "Submitted"
UNDER_REVIEW = "UnderReview"
APPROVED = "Approved"
REJECTED = "Rejected"

STATUSES: tuple[str, ...] = (SUBMITTED, UNDER_REVIEW, APPROVED, REJECTED)
DEFAULT_STATUS = SUBMITTED

DISPLAY_CLASSES: dict[str, str] = {
    SUBMITTED: "info",
    UNDER_REVIEW: "warning",
    APPROVED: "success",
    REJECTED: "danger",
}

# keys used by the dashboard summary
SUMMARY_KEYS: dict[str, str] = {
    SUBMITTED: "submitted",
    UNDER_REVIEW: "under_review",
    APPROVED: "approved",
    REJECTED: "rejected",
}

_LOOKUP = {status.lower(): status for status in STATUSES}
_SEPARATORS = re.compile(r"[\s_\-]+")


def normalize_status(value: object) -> str:
    """Map caller input onto the canonical casing, or raise InvalidStatus.

    Comparison ignores case, whitespace, underscores and hyphens, so
    ``"under review"``, ``"UNDER_REVIEW"`` and ``"UnderReview"`` are the
    same status.
    """
    if not isinstance(value, str):
        raise InvalidStatus(value, list(STATUSES))
    key = _SEPARATORS.sub("", value.strip()).lower()
    status = _LOOKUP.get(key)
    if status is None:
        raise InvalidStatus(value, list(STATUSES))
    return status


def display_class(status: str) -> str:
    return DISPLAY_CLASSES[normalize_status(status)]


def status_patch(
    new_status: object,
    *,
    remarks: str | None = None,
    reviewed_by: str | None = None,
    now: str | None = None,
) -> dict[str, Any]:
    canonical = normalize_status(new_status)
    ts = now or datetime.now(UTC).isoformat()
    patch: dict[str, Any] = {
        "status": canonical,
        "last_updated": ts,
        "reviewed_at": ts,
    }
    if remarks is not None:
        patch["remarks"] = remarks
    if reviewed_by is not None:
        patch["reviewed_by"] = reviewed_by
    return patch


def transition(
    record: dict[str, Any],
    new_status: object,
    *,
    remarks: str | None = None,
    reviewed_by: str | None = None,
    now: str | None = None,
) -> dict[str, Any]:
    # Any canonical status may follow any other; re-opening an approved or
    # rejected record is allowed.
    updated = dict(record)
    updated.update(status_patch(new_status, remarks=remarks, reviewed_by=reviewed_by, now=now))
    return updated
