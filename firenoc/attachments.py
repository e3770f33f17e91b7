from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import PurePath
from typing import Any

from firenoc.errors import AttachmentError
from firenoc.file_storage import FileStorageBackend
from firenoc.record_kinds import RecordKind

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = frozenset({".pdf", ".jpg", ".jpeg", ".png"})
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024


@dataclass(frozen=True)
class Upload:
    slot: str
    filename: str
    content: bytes
    content_type: str | None = None


@dataclass
class ReleaseResult:
    removed: list[str]
    missing: list[str]
    failed: list[str]


def referenced_files(attachments: dict[str, Any] | None) -> list[str]:
    names: list[str] = []
    for value in (attachments or {}).values():
        if isinstance(value, list):
            names.extend(str(x) for x in value if x)
        elif value:
            names.append(str(value))
    return names


class AttachmentManager:
    def __init__(
        self,
        *,
        storage: FileStorageBackend,
        max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
        millis: Callable[[], int] | None = None,
    ) -> None:
        self._storage = storage
        self._max_bytes = max_bytes
        self._millis = millis or (lambda: time.time_ns() // 1_000_000)

    def stored_filename(self, *, slot: str, original_filename: str) -> str:
        extension = PurePath(original_filename or "").suffix.lower()
        suffix = f"{secrets.randbelow(10**9):09d}"
        return f"{slot}-{self._millis()}-{suffix}{extension}"

    def store_upload(self, upload: Upload) -> str:
        original = upload.filename or ""
        extension = PurePath(original).suffix.lower()
        if extension not in ALLOWED_EXTENSIONS:
            raise AttachmentError(
                slot=upload.slot,
                filename=original,
                message="only PDF, JPG, JPEG and PNG files are allowed",
            )
        if len(upload.content) > self._max_bytes:
            raise AttachmentError(
                slot=upload.slot,
                filename=original,
                message=f"file exceeds the {self._max_bytes} byte limit",
            )
        filename = self.stored_filename(slot=upload.slot, original_filename=original)
        return self._storage.put_file(
            filename=filename,
            content_bytes=upload.content,
            content_type=upload.content_type,
        )

    @staticmethod
    def bind(kind: RecordKind, attachments: dict[str, Any], slot: str, filename: str) -> bool:
        """Attach a stored file to its slot; unknown slots are ignored."""
        if slot not in kind.slots:
            return False
        if kind.is_multi_slot(slot):
            current = attachments.setdefault(slot, [])
            if len(current) >= kind.multi_slots[slot]:
                return False
            current.append(filename)
            return True
        if attachments.get(slot):
            return False
        attachments[slot] = filename
        return True

    def bind_uploads(
        self,
        kind: RecordKind,
        uploads: Iterable[Upload],
    ) -> tuple[dict[str, Any], list[AttachmentError]]:
        attachments = kind.empty_attachments()
        errors: list[AttachmentError] = []
        for upload in uploads:
            if upload.slot not in kind.slots:
                logger.debug("attachment_slot_ignored kind=%s slot=%s", kind.name, upload.slot)
                continue
            if not self._has_room(kind, attachments, upload.slot):
                errors.append(
                    AttachmentError(
                        slot=upload.slot,
                        filename=upload.filename,
                        message="too many files for this slot",
                    )
                )
                continue
            try:
                filename = self.store_upload(upload)
            except AttachmentError as exc:
                errors.append(exc)
                continue
            self.bind(kind, attachments, upload.slot, filename)
        return attachments, errors

    @staticmethod
    def _has_room(kind: RecordKind, attachments: dict[str, Any], slot: str) -> bool:
        if kind.is_multi_slot(slot):
            return len(attachments.get(slot) or []) < kind.multi_slots[slot]
        return not attachments.get(slot)

    def release(self, record: dict[str, Any]) -> ReleaseResult:
        """Delete every file a record references; never raises."""
        result = ReleaseResult(removed=[], missing=[], failed=[])
        for filename in referenced_files(record.get("attachments")):
            try:
                deleted = self._storage.delete_file(filename=filename)
            except Exception as exc:
                logger.warning(
                    "attachment_release_failed business_id=%s filename=%s error=%s",
                    record.get("business_id"),
                    filename,
                    exc,
                )
                result.failed.append(filename)
                continue
            if deleted:
                result.removed.append(filename)
            else:
                logger.warning(
                    "attachment_missing business_id=%s filename=%s",
                    record.get("business_id"),
                    filename,
                )
                result.missing.append(filename)
        return result
