from __future__ import annotations

import mimetypes

from fastapi import APIRouter, Response

from firenoc.store import store

router = APIRouter(tags=["uploads"])


@router.get("/uploads/{filename}")
def get_upload(filename: str):
    payload = store.read_upload(filename)
    content_type, _ = mimetypes.guess_type(filename)
    return Response(content=payload, media_type=content_type or "application/octet-stream")
