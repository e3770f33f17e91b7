from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from firenoc.attachments import DEFAULT_MAX_UPLOAD_BYTES, AttachmentManager, Upload, referenced_files
from firenoc.db.postgres import PostgresTxRunner
from firenoc.errors import ApiError, DuplicateKeyError, NotFound, ValidationError
from firenoc.file_storage import create_file_storage_from_env
from firenoc.identifiers import create_identifier_generator
from firenoc.query import build_query
from firenoc.record_kinds import RecordKind
from firenoc.repositories import (
    InMemoryRecordsRepository,
    PostgresRecordsRepository,
    SqliteRecordsRepository,
)
from firenoc.resolver import BUSINESS_ID_FIELD, PRIMARY_KEY_FIELD, new_primary_key, resolve
from firenoc.runtime_profile import persistent_store_required
from firenoc.status import DEFAULT_STATUS, STATUSES, SUMMARY_KEYS, display_class, status_patch
from firenoc.subject_fields import merge_subject_fields, parse_subject_fields

logger = logging.getLogger(__name__)

UPLOADS_URL_PREFIX = "/uploads"


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


class InMemoryStore:
    """Record lifecycle over an injected records repository.

    Subclasses only change where records live; creation, lookup, status
    updates and attachment handling are shared.
    """

    DEFAULT_ID_MAX_ATTEMPTS = 5
    backend_name = "memory"

    def __init__(self) -> None:
        self._idempotency_lock = threading.Lock()
        self.idempotency_records: dict[tuple[str, str], IdempotencyRecord] = {}
        self.records: dict[str, dict[str, Any]] = {}
        self.sequences: dict[str, int] = {}
        self._configure()
        self._bind_repositories()

    def _configure(self) -> None:
        self.id_max_attempts = self._env_int(
            "FIRENOC_ID_MAX_ATTEMPTS",
            default=self.DEFAULT_ID_MAX_ATTEMPTS,
            minimum=1,
        )
        self.upload_max_bytes = self._env_int(
            "FIRENOC_UPLOAD_MAX_BYTES",
            default=DEFAULT_MAX_UPLOAD_BYTES,
            minimum=1,
        )
        self.file_storage = create_file_storage_from_env(os.environ)
        self.attachments = AttachmentManager(storage=self.file_storage, max_bytes=self.upload_max_bytes)

    def _bind_repositories(self) -> None:
        self.records_repository = InMemoryRecordsRepository(self.records, self.sequences)

    def reset(self) -> None:
        self._configure()
        reset_fn = getattr(self.file_storage, "reset", None)
        if callable(reset_fn):
            reset_fn()
        self.idempotency_records.clear()
        self.records.clear()
        self.sequences.clear()
        self._bind_repositories()

    @staticmethod
    def _env_int(name: str, *, default: int, minimum: int = 0) -> int:
        raw = os.environ.get(name, "").strip()
        if not raw:
            return default
        try:
            value = int(raw)
        except ValueError:
            return default
        return max(minimum, value)

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).isoformat()

    def run_idempotent(
        self,
        *,
        endpoint: str,
        tenant_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        key = (f"{tenant_id}:{endpoint}", idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        with self._idempotency_lock:
            if key in self.idempotency_records:
                record = self.idempotency_records[key]
                if record.fingerprint != current_fingerprint:
                    raise ApiError(
                        code="IDEMPOTENCY_CONFLICT",
                        message="same key with different payload",
                        error_class="validation",
                        retryable=False,
                        http_status=409,
                    )
                return record.data

            data = execute()
            self.idempotency_records[key] = IdempotencyRecord(
                fingerprint=current_fingerprint,
                data=data,
            )
            return data

    def render_record(self, record: dict[str, Any]) -> dict[str, Any]:
        data = dict(record)
        data["display_class"] = display_class(record["status"])
        urls: dict[str, Any] = {}
        for slot, value in (record.get("attachments") or {}).items():
            if isinstance(value, list):
                urls[slot] = [f"{UPLOADS_URL_PREFIX}/{x}" for x in value]
            else:
                urls[slot] = f"{UPLOADS_URL_PREFIX}/{value}" if value else None
        data["attachment_urls"] = urls
        return data

    def summary_record(self, kind: RecordKind, record: dict[str, Any]) -> dict[str, Any]:
        fields = record.get("fields") or {}
        return {
            PRIMARY_KEY_FIELD: record[PRIMARY_KEY_FIELD],
            BUSINESS_ID_FIELD: record[BUSINESS_ID_FIELD],
            "fields": {name: fields[name] for name in kind.summary_fields if name in fields},
            "status": record["status"],
            "display_class": display_class(record["status"]),
            "created_at": record["created_at"],
        }

    def _insert_with_new_identifier(self, kind: RecordKind, record: dict[str, Any]) -> dict[str, Any]:
        generator = create_identifier_generator(kind, sequences=self.records_repository)
        last_error: DuplicateKeyError | None = None
        for attempt in range(1, self.id_max_attempts + 1):
            candidate = dict(record)
            candidate[PRIMARY_KEY_FIELD] = new_primary_key()
            candidate[BUSINESS_ID_FIELD] = generator.generate()
            try:
                return self.records_repository.insert(record=candidate)
            except DuplicateKeyError as exc:
                logger.warning(
                    "record_id_collision kind=%s business_id=%s attempt=%s",
                    kind.name,
                    candidate[BUSINESS_ID_FIELD],
                    attempt,
                )
                last_error = exc
        raise ApiError(
            code="ID_CONFLICT",
            message=f"could not allocate a unique {kind.label.lower()} id after {self.id_max_attempts} attempts",
            error_class="conflict",
            retryable=True,
            http_status=409,
        ) from last_error

    def _discard_files(self, attachments: dict[str, Any]) -> None:
        if referenced_files(attachments):
            self.attachments.release({"business_id": None, "attachments": attachments})

    def create_record(
        self,
        *,
        kind: RecordKind,
        tenant_id: str,
        raw_fields: Mapping[str, Any],
        uploads: Iterable[Upload] = (),
    ) -> dict[str, Any]:
        fields = parse_subject_fields(kind.fields, raw_fields)
        attachments, errors = self.attachments.bind_uploads(kind, uploads)

        required_errors = [e for e in errors if e.slot in kind.required_slots]
        if required_errors:
            self._discard_files(attachments)
            raise required_errors[0]
        missing = sorted(slot for slot in kind.required_slots if not attachments.get(slot))
        if missing:
            self._discard_files(attachments)
            raise ValidationError(
                f"missing required attachments: {', '.join(missing)}",
                fields=missing,
            )

        now = self._utcnow_iso()
        record: dict[str, Any] = {
            "kind": kind.name,
            "tenant_id": tenant_id,
            "fields": fields,
            "attachments": attachments,
            "status": DEFAULT_STATUS,
            "remarks": "",
            "reviewed_by": "",
            "reviewed_at": None,
            "created_at": now,
            "last_updated": now,
        }
        try:
            stored = self._insert_with_new_identifier(kind, record)
        except ApiError:
            self._discard_files(attachments)
            raise
        logger.info(
            "record_created kind=%s tenant_id=%s business_id=%s attachment_errors=%s",
            kind.name,
            tenant_id,
            stored[BUSINESS_ID_FIELD],
            len(errors),
        )
        data = self.render_record(stored)
        data["attachment_errors"] = [e.as_dict() for e in errors]
        return data

    def _not_found(self, kind: RecordKind) -> NotFound:
        return NotFound(f"{kind.label.lower()} not found")

    def get_record(self, *, kind: RecordKind, tenant_id: str, record_id: str) -> dict[str, Any]:
        key = resolve(record_id)
        record = self.records_repository.find(tenant_id=tenant_id, kind=kind.name, key=key)
        if record is None:
            raise self._not_found(kind)
        return self.render_record(record)

    def list_records(
        self,
        *,
        kind: RecordKind,
        tenant_id: str,
        status: str | None = None,
        search: str | None = None,
    ) -> dict[str, Any]:
        query = build_query(kind, status_filter=status, search_text=search)
        rows = self.records_repository.find_many(tenant_id=tenant_id, query=query)
        items = [self.summary_record(kind, row) for row in rows]
        return {"items": items, "total": len(items)}

    def update_status(
        self,
        *,
        kind: RecordKind,
        tenant_id: str,
        record_id: str,
        status: object,
        remarks: str | None = None,
        reviewed_by: str | None = None,
    ) -> dict[str, Any]:
        patch = status_patch(status, remarks=remarks, reviewed_by=reviewed_by, now=self._utcnow_iso())
        key = resolve(record_id)
        updated = self.records_repository.update(tenant_id=tenant_id, kind=kind.name, key=key, patch=patch)
        if updated is None:
            raise self._not_found(kind)
        logger.info(
            "record_status_updated kind=%s business_id=%s status=%s",
            kind.name,
            updated[BUSINESS_ID_FIELD],
            updated["status"],
        )
        return self.render_record(updated)

    def update_record(
        self,
        *,
        kind: RecordKind,
        tenant_id: str,
        record_id: str,
        raw_fields: Mapping[str, Any],
    ) -> dict[str, Any]:
        key = resolve(record_id)
        current = self.records_repository.find(tenant_id=tenant_id, kind=kind.name, key=key)
        if current is None:
            raise self._not_found(kind)
        fields = merge_subject_fields(kind.fields, current.get("fields") or {}, raw_fields)
        updated = self.records_repository.update(
            tenant_id=tenant_id,
            kind=kind.name,
            key=key,
            patch={"fields": fields, "last_updated": self._utcnow_iso()},
        )
        if updated is None:
            raise self._not_found(kind)
        return self.render_record(updated)

    def delete_record(self, *, kind: RecordKind, tenant_id: str, record_id: str) -> dict[str, Any]:
        key = resolve(record_id)
        deleted = self.records_repository.delete(tenant_id=tenant_id, kind=kind.name, key=key)
        if deleted is None:
            raise self._not_found(kind)
        released = self.attachments.release(deleted)
        logger.info(
            "record_deleted kind=%s business_id=%s files_removed=%s files_missing=%s",
            kind.name,
            deleted[BUSINESS_ID_FIELD],
            len(released.removed),
            len(released.missing) + len(released.failed),
        )
        return {
            "deleted": True,
            PRIMARY_KEY_FIELD: deleted[PRIMARY_KEY_FIELD],
            BUSINESS_ID_FIELD: deleted[BUSINESS_ID_FIELD],
            "files_removed": released.removed,
            "files_missing": released.missing + released.failed,
        }

    def stats_summary(self, *, kind: RecordKind, tenant_id: str) -> dict[str, int]:
        summary = {"total": self.records_repository.count(tenant_id=tenant_id, kind=kind.name)}
        for status in STATUSES:
            summary[SUMMARY_KEYS[status]] = self.records_repository.count(
                tenant_id=tenant_id,
                kind=kind.name,
                status=status,
            )
        return summary

    def read_upload(self, filename: str) -> bytes:
        try:
            return self.file_storage.get_file(filename=filename)
        except FileNotFoundError:
            raise ApiError(
                code="REQ_NOT_FOUND",
                message="file not found",
                error_class="validation",
                retryable=False,
                http_status=404,
            ) from None


class SqliteBackedStore(InMemoryStore):
    backend_name = "sqlite"

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        super().__init__()

    def _bind_repositories(self) -> None:
        self.records_repository = SqliteRecordsRepository(self._db_path)

    def reset(self) -> None:
        super().reset()
        self.records_repository.reset()


class PostgresBackedStore(InMemoryStore):
    backend_name = "postgres"

    def __init__(self, *, dsn: str, table_name: str = "records") -> None:
        self._tx_runner = PostgresTxRunner(dsn)
        self._table_name = table_name
        self._schema_ready = False
        super().__init__()

    def _bind_repositories(self) -> None:
        self.records_repository = PostgresRecordsRepository(
            tx_runner=self._tx_runner,
            table_name=self._table_name,
            sequences_table=f"{self._table_name}_sequences",
        )
        if not self._schema_ready:
            self.records_repository.ensure_schema()
            self._schema_ready = True


def create_store_from_env(environ: Mapping[str, str] | None = None) -> InMemoryStore:
    env = os.environ if environ is None else environ
    backend = env.get("FIRENOC_STORE_BACKEND", "memory").strip().lower() or "memory"
    if persistent_store_required(env) and backend == "memory":
        raise RuntimeError("FIRENOC_STORE_BACKEND must be sqlite or postgres when FIRENOC_REQUIRE_PERSISTENT_STORE=true")
    if backend == "sqlite":
        db_path = env.get("FIRENOC_STORE_SQLITE_PATH", ".local/firenoc.sqlite3")
        return SqliteBackedStore(db_path)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when FIRENOC_STORE_BACKEND=postgres")
        table_name = env.get("FIRENOC_RECORDS_TABLE", "firenoc_records").strip() or "firenoc_records"
        return PostgresBackedStore(dsn=dsn, table_name=table_name)
    if backend != "memory":
        raise ValueError(f"unknown FIRENOC_STORE_BACKEND: {backend}")
    return InMemoryStore()


store = create_store_from_env()
