"""
Room Endpoints - Shopper Room Photos

POST /api/v1/rooms                       - New session + signed upload URL
POST /api/v1/rooms/{session_id}/confirm  - Verify the upload landed
POST /api/v1/rooms/{session_id}/cleanup  - Remove masked objects
"""

import base64
import binascii

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from roomview.api.dependencies import get_room_service, get_tenant_id
from roomview.core.exceptions import InvalidInputError
from roomview.pipeline.rooms import RoomService

router = APIRouter()


class CleanupRequest(BaseModel):
    mask_base64: str = Field(..., description="Base64 PNG; non-zero pixels mark what to remove")


@router.post("", status_code=201)
async def create_room(
    tenant_id: str = Depends(get_tenant_id),
    rooms: RoomService = Depends(get_room_service)
):
    """Upload the photo with the returned method and headers to write_url."""
    return await rooms.create_upload_target(tenant_id)


@router.get("/{session_id}")
async def get_room(
    session_id: str,
    tenant_id: str = Depends(get_tenant_id),
    rooms: RoomService = Depends(get_room_service)
):
    room = await rooms.get_session(tenant_id, session_id)
    return room.to_response_dict()


@router.post("/{session_id}/confirm")
async def confirm_room_upload(
    session_id: str,
    tenant_id: str = Depends(get_tenant_id),
    rooms: RoomService = Depends(get_room_service)
):
    return await rooms.confirm_upload(tenant_id, session_id)


@router.post("/{session_id}/cleanup")
async def cleanup_room(
    session_id: str,
    request: CleanupRequest,
    tenant_id: str = Depends(get_tenant_id),
    rooms: RoomService = Depends(get_room_service)
):
    """Synchronous; counts against the tenant's cleanup_run quota on success."""
    try:
        mask = base64.b64decode(request.mask_base64, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidInputError("mask_base64 is not valid base64", field="mask")
    return await rooms.cleanup(tenant_id, session_id, mask)
