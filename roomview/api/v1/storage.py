"""
Local Object Endpoint - Signed URL Target for LocalStorage

GET /api/v1/storage/objects/{key}?expires=&sig=  - Read an object
PUT /api/v1/storage/objects/{key}?expires=&sig=  - Write an object (room uploads)

Only served when the active backend is LocalStorage; Azure SAS URLs point
straight at the blob service.
"""

import mimetypes

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from roomview.core.config import settings
from roomview.core.logging import get_logger
from roomview.core.storage import IStorage, LocalStorage, get_storage

logger = get_logger(__name__)
router = APIRouter()


def _local(storage: IStorage) -> LocalStorage:
    if not isinstance(storage, LocalStorage):
        raise HTTPException(status_code=404, detail="Object endpoint is only available for local storage")
    return storage


def _check(storage: LocalStorage, method: str, key: str, expires: int, sig: str):
    if not storage.verify_signature(method, key, expires, sig):
        logger.warning("signed_url_rejected", method=method, key=key)
        raise HTTPException(status_code=403, detail="Invalid or expired signature")


@router.get("/objects/{key:path}")
async def read_object(
    key: str,
    expires: int = Query(...),
    sig: str = Query(...),
    storage: IStorage = Depends(get_storage)
):
    local = _local(storage)
    _check(local, "GET", key, expires, sig)
    data = await local.get(key)
    media_type = mimetypes.guess_type(key)[0] or "application/octet-stream"
    return Response(content=data, media_type=media_type)


@router.put("/objects/{key:path}", status_code=201)
async def write_object(
    key: str,
    request: Request,
    expires: int = Query(...),
    sig: str = Query(...),
    storage: IStorage = Depends(get_storage)
):
    local = _local(storage)
    _check(local, "PUT", key, expires, sig)

    data = await request.body()
    if not data:
        raise HTTPException(status_code=400, detail="Empty upload")
    if len(data) > settings.MAX_ROOM_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail=f"Upload exceeds {settings.MAX_ROOM_IMAGE_BYTES} bytes")

    content_type = request.headers.get("content-type") or "application/octet-stream"
    await local.put(data, key, content_type=content_type)
    return {"key": key, "size_bytes": len(data)}
