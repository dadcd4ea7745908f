"""
Room Intake & Cleanup

Shoppers upload room photos straight to object storage through a
short-lived write URL; only the key is persisted. Cleanup always starts
from the original photo and writes its result under a new key.
"""

import io
import uuid
from typing import Optional, Dict, Any

from PIL import Image, UnidentifiedImageError
from sqlalchemy import update

from roomview.core.config import settings
from roomview.core.events import EventBus, PipelineEvent, get_event_bus
from roomview.core.exceptions import (
    InvalidInputError,
    NotFoundError,
    ObjectNotFoundError,
    QuotaExceededError,
)
from roomview.core.logging import get_logger, LogContext
from roomview.core.metrics import record_job_status, track_stage_latency
from roomview.core.rate_limit import SessionRateLimiter
from roomview.core.storage import IStorage
from roomview.core.timestamps import utc_now
from roomview.engines.ai.providers import IAIAdapter
from roomview.engines.ai.schemas import ImageRef, RenderInstructions, RenderMode
from roomview.modules.quota.ledger import QuotaLedger, PlanLimitResolver
from roomview.modules.quota.models import QuotaCategory
from roomview.modules.rooms.models import RoomSession
from roomview.pipeline.keys import room_original_key, room_mask_key, room_cleaned_key
from roomview.pipeline.retry import call_with_retries

logger = get_logger(__name__)


def _decode(data: bytes, field: str) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
        return image
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
        raise InvalidInputError(f"Could not decode {field}: {e}", field=field)


class RoomService:
    """Room session intake, confirmation and object-removal cleanup."""

    def __init__(
        self,
        session_factory,
        storage: IStorage,
        adapter: IAIAdapter,
        limits: Optional[PlanLimitResolver] = None,
        bus: Optional[EventBus] = None,
        rate_limiter: Optional[SessionRateLimiter] = None,
        max_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.adapter = adapter
        self.limits = limits or PlanLimitResolver()
        self.bus = bus or get_event_bus()
        self.rate_limiter = rate_limiter
        self.max_attempts = max_attempts or settings.RENDER_MAX_ATTEMPTS
        self.retry_base_delay = (
            settings.RENDER_RETRY_BASE_DELAY_SECONDS if retry_base_delay is None else retry_base_delay
        )

    async def create_upload_target(self, tenant_id: str) -> Dict[str, Any]:
        """Create a session and a signed write URL for its original photo."""
        session_id = str(uuid.uuid4())
        key = room_original_key(tenant_id, session_id)

        async with self.session_factory() as session:
            session.add(RoomSession(id=session_id, tenant_id=tenant_id, original_room_image_key=key))
            await session.commit()

        target = await self.storage.signed_write_url(key)
        self.bus.publish(PipelineEvent.ROOM_CREATED, tenant_id, session_id=session_id)
        return {
            "session_id": session_id,
            "key": key,
            "write_url": target["url"],
            "method": target["method"],
            "headers": target["headers"],
            "expires_in": target["expires_in"],
        }

    async def get_session(self, tenant_id: str, session_id: str) -> RoomSession:
        async with self.session_factory() as session:
            room = await session.get(RoomSession, session_id, populate_existing=True)
        if room is None or room.tenant_id != tenant_id:
            raise NotFoundError("room_session", session_id)
        return room

    async def _touch(self, session_id: str, **values):
        async with self.session_factory() as session:
            await session.execute(
                update(RoomSession)
                .where(RoomSession.id == session_id)
                .values(last_used_at=utc_now(), **values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()

    async def confirm_upload(self, tenant_id: str, session_id: str) -> Dict[str, Any]:
        """Verify the shopper's upload landed and hand back a fresh read URL."""
        room = await self.get_session(tenant_id, session_id)
        if not await self.storage.exists(room.original_room_image_key):
            raise InvalidInputError("Room image has not been uploaded", field="session_id")

        await self._touch(session_id)
        return {
            "session_id": session_id,
            "room_image_key": room.effective_room_image_key,
            "room_image_url": await self.storage.signed_read_url(room.effective_room_image_key),
        }

    async def _load_original(self, room: RoomSession) -> bytes:
        try:
            data = await self.storage.get(room.original_room_image_key)
        except ObjectNotFoundError:
            raise InvalidInputError("Room image has not been uploaded", field="session_id")
        if len(data) == 0:
            raise InvalidInputError("Room image is empty", field="session_id")
        if len(data) > settings.MAX_ROOM_IMAGE_BYTES:
            raise InvalidInputError(f"Room image exceeds {settings.MAX_ROOM_IMAGE_BYTES} bytes", field="session_id")
        return data

    async def cleanup(self, tenant_id: str, session_id: str, mask_bytes: bytes) -> Dict[str, Any]:
        """
        Remove the masked objects from the ORIGINAL room photo.

        The mask must decode and match the room image dimensions. One
        cleanup_run admission hold brackets the provider call; it becomes
        usage only when the cleaned image is stored.
        """
        room = await self.get_session(tenant_id, session_id)
        if self.rate_limiter is not None:
            await self.rate_limiter.hit(session_id)

        if not mask_bytes:
            raise InvalidInputError("Mask is empty", field="mask")
        room_image = _decode(await self._load_original(room), "room_image")
        mask = _decode(mask_bytes, "mask")
        if mask.size != room_image.size:
            raise InvalidInputError(
                f"Mask size {mask.size[0]}x{mask.size[1]} does not match room image "
                f"{room_image.size[0]}x{room_image.size[1]}",
                field="mask"
            )
        mask = mask.convert("L")
        if mask.getbbox() is None:
            raise InvalidInputError("Mask marks nothing to remove", field="mask")

        category = QuotaCategory.CLEANUP_RUN.value
        async with self.session_factory() as session:
            decision = await QuotaLedger(session, self.limits).admit(tenant_id, category)
            await session.commit()
        if not decision.ok:
            self.bus.publish(PipelineEvent.QUOTA_REJECTED, tenant_id, category=category, session_id=session_id)
            raise QuotaExceededError(category, decision.retry_after, decision.limit)

        with LogContext(job_id=session_id, tenant_id=tenant_id, stage="cleanup"):
            try:
                cleaned_key = await self._run_object_removal(room, mask)
            except Exception:
                async with self.session_factory() as session:
                    await QuotaLedger(session, self.limits).release_hold(tenant_id, category, decision.date)
                    await session.commit()
                record_job_status("cleanup", "failed")
                raise

            async with self.session_factory() as session:
                await session.execute(
                    update(RoomSession)
                    .where(RoomSession.id == session_id)
                    .values(cleaned_room_image_key=cleaned_key, last_used_at=utc_now())
                    .execution_options(synchronize_session=False)
                )
                await QuotaLedger(session, self.limits).commit_hold(tenant_id, category, decision.date)
                await session.commit()

        record_job_status("cleanup", "completed")
        self.bus.publish(PipelineEvent.ROOM_CLEANED, tenant_id, session_id=session_id, cleaned_key=cleaned_key)
        return {
            "session_id": session_id,
            "cleaned_room_image_key": cleaned_key,
            "cleaned_room_image_url": await self.storage.signed_read_url(cleaned_key),
        }

    async def _run_object_removal(self, room: RoomSession, mask: Image.Image) -> str:
        buffer = io.BytesIO()
        mask.save(buffer, format="PNG")
        mask_key = await self.storage.put(
            buffer.getvalue(),
            room_mask_key(room.tenant_id, room.id),
            content_type="image/png"
        )

        room_ref = ImageRef(
            url=await self.storage.signed_read_url(room.original_room_image_key),
            storage_key=room.original_room_image_key,
        )
        instructions = RenderInstructions(
            mode=RenderMode.OBJECT_REMOVAL,
            mask=ImageRef(url=await self.storage.signed_read_url(mask_key), storage_key=mask_key),
        )

        with track_stage_latency("cleanup"):
            cleaned = await call_with_retries(
                lambda: self.adapter.generate_composite(room_ref, None, None, instructions),
                self.max_attempts,
                self.retry_base_delay,
            )

        return await self.storage.put(
            cleaned,
            room_cleaned_key(room.tenant_id, room.id),
            content_type="image/png"
        )
