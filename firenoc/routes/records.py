from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Header, Query, Request
from fastapi.responses import JSONResponse
from starlette.datastructures import UploadFile

from firenoc.attachments import Upload
from firenoc.errors import ValidationError
from firenoc.record_kinds import RecordKind
from firenoc.routes._deps import (
    require_admin,
    subject_from_request,
    tenant_id_from_request,
    trace_id_from_request,
)
from firenoc.schemas import StatusUpdateRequest, success_envelope
from firenoc.store import store


async def _read_json_object(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("request body must be valid JSON") from None
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


async def read_submission(request: Request) -> tuple[dict[str, Any], list[Upload]]:
    """Split a submission into raw subject fields and uploaded files.

    Multipart forms carry fields and files side by side; a JSON body carries
    fields only.
    """
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith("application/json"):
        return await _read_json_object(request), []

    form = await request.form()
    raw: dict[str, Any] = {}
    uploads: list[Upload] = []
    for name, value in form.multi_items():
        if isinstance(value, UploadFile):
            content = await value.read()
            if not value.filename and not content:
                # browsers send empty parts for untouched file inputs
                continue
            uploads.append(
                Upload(
                    slot=name,
                    filename=value.filename or "",
                    content=content,
                    content_type=value.content_type,
                )
            )
        else:
            raw[name] = value
    return raw, uploads


def _upload_fingerprint(upload: Upload) -> dict[str, Any]:
    return {"slot": upload.slot, "filename": upload.filename, "size": len(upload.content)}


def build_records_router(kind: RecordKind, prefix: str) -> APIRouter:
    router = APIRouter(prefix=prefix, tags=[kind.name])
    endpoint = f"POST:{prefix}"

    @router.post("")
    async def create_record(
        request: Request,
        idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    ):
        tenant_id = tenant_id_from_request(request)
        raw_fields, uploads = await read_submission(request)

        def _execute() -> dict[str, Any]:
            return store.create_record(
                kind=kind,
                tenant_id=tenant_id,
                raw_fields=raw_fields,
                uploads=uploads,
            )

        if idempotency_key:
            data = store.run_idempotent(
                endpoint=endpoint,
                tenant_id=tenant_id,
                idempotency_key=idempotency_key,
                payload={
                    "fields": raw_fields,
                    "uploads": [_upload_fingerprint(x) for x in uploads],
                },
                execute=_execute,
            )
        else:
            data = _execute()
        return JSONResponse(
            status_code=201,
            content=success_envelope(
                data,
                trace_id_from_request(request),
                message=f"{kind.label} submitted successfully",
            ),
        )

    @router.get("")
    def list_records(
        request: Request,
        status: str | None = Query(default=None),
        search: str | None = Query(default=None),
        q: str | None = Query(default=None),
    ):
        require_admin(request)
        data = store.list_records(
            kind=kind,
            tenant_id=tenant_id_from_request(request),
            status=status,
            search=search if search is not None else q,
        )
        return success_envelope(data, trace_id_from_request(request))

    @router.get("/stats/summary")
    def stats_summary(request: Request):
        require_admin(request)
        data = store.stats_summary(kind=kind, tenant_id=tenant_id_from_request(request))
        return success_envelope(data, trace_id_from_request(request))

    @router.get("/{record_id}")
    def get_record(record_id: str, request: Request):
        data = store.get_record(
            kind=kind,
            tenant_id=tenant_id_from_request(request),
            record_id=record_id,
        )
        return success_envelope(data, trace_id_from_request(request))

    @router.api_route("/{record_id}/status", methods=["PUT", "PATCH"])
    def update_status(record_id: str, payload: StatusUpdateRequest, request: Request):
        require_admin(request)
        reviewed_by = payload.reviewed_by
        if reviewed_by is None:
            reviewed_by = subject_from_request(request) or None
        data = store.update_status(
            kind=kind,
            tenant_id=tenant_id_from_request(request),
            record_id=record_id,
            status=payload.status,
            remarks=payload.remarks,
            reviewed_by=reviewed_by,
        )
        return success_envelope(
            data,
            trace_id_from_request(request),
            message=f"{kind.label} status updated to {data['status']}",
        )

    @router.put("/{record_id}")
    async def update_record(record_id: str, request: Request):
        require_admin(request)
        raw_fields = await _read_json_object(request)
        data = store.update_record(
            kind=kind,
            tenant_id=tenant_id_from_request(request),
            record_id=record_id,
            raw_fields=raw_fields,
        )
        return success_envelope(data, trace_id_from_request(request), message=f"{kind.label} updated")

    @router.delete("/{record_id}")
    def delete_record(record_id: str, request: Request):
        require_admin(request)
        data = store.delete_record(
            kind=kind,
            tenant_id=tenant_id_from_request(request),
            record_id=record_id,
        )
        return success_envelope(data, trace_id_from_request(request), message=f"{kind.label} deleted")

    return router
