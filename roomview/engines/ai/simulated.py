"""
Simulated AI Provider for Development

Pillow-only stand-ins so the whole pipeline runs without provider
credentials. Output is plausible, not pretty.
"""

import io
import asyncio
from typing import Optional

import httpx
from PIL import Image, ImageChops, ImageFilter, UnidentifiedImageError

from roomview.core.exceptions import AIAdapterError, AIErrorKind
from roomview.core.logging import get_logger
from roomview.core.metrics import record_ai_call
from roomview.core.storage import IStorage, get_storage
from roomview.engines.ai.providers import IAIAdapter, BACKGROUND_REMOVAL, COMPOSITE
from roomview.engines.ai.schemas import ImageRef, Placement, RenderInstructions, RenderMode

logger = get_logger(__name__)

# Pixels at least this bright on every channel count as studio background
BACKGROUND_THRESHOLD = 235


class SimulatedAIAdapter(IAIAdapter):
    """Simulated providers for development."""

    def __init__(self, storage: Optional[IStorage] = None, delay_seconds: float = 0.0):
        self._storage = storage
        self.delay_seconds = delay_seconds

    @property
    def storage(self) -> IStorage:
        return self._storage or get_storage()

    def _open(self, data: bytes, service: str) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
            return image
        except (UnidentifiedImageError, OSError) as e:
            record_ai_call(service, AIErrorKind.INVALID_INPUT.value)
            raise AIAdapterError(
                f"Provider could not decode image: {e}",
                service=service,
                kind=AIErrorKind.INVALID_INPUT
            )

    async def _fetch(self, ref: ImageRef) -> bytes:
        if ref.storage_key:
            return await self.storage.get(ref.storage_key)
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.get(ref.url)
            response.raise_for_status()
            return response.content

    async def remove_background(self, image_bytes: bytes) -> bytes:
        logger.info("background_removal_simulated_starting", input_size=len(image_bytes))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        image = self._open(image_bytes, BACKGROUND_REMOVAL).convert("RGBA")

        # Near-white pixels become transparent
        rgb = image.convert("RGB")
        bright = [band.point(lambda v: 255 if v >= BACKGROUND_THRESHOLD else 0) for band in rgb.split()]
        background = ImageChops.multiply(ImageChops.multiply(bright[0], bright[1]), bright[2])
        alpha = ImageChops.subtract(image.getchannel("A"), background)
        image.putalpha(alpha)

        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        record_ai_call(BACKGROUND_REMOVAL, "success")
        logger.info("background_removal_simulated_completed", output_size=buffer.tell())
        return buffer.getvalue()

    async def generate_composite(
        self,
        room: ImageRef,
        product: Optional[ImageRef],
        placement: Optional[Placement],
        instructions: RenderInstructions
    ) -> bytes:
        logger.info("composite_simulated_starting", mode=instructions.mode.value)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)

        room_image = self._open(await self._fetch(room), COMPOSITE).convert("RGB")

        if instructions.mode == RenderMode.OBJECT_REMOVAL:
            if not instructions.mask:
                raise AIAdapterError("Object removal needs a mask", service=COMPOSITE, kind=AIErrorKind.INVALID_INPUT)
            mask = self._open(await self._fetch(instructions.mask), COMPOSITE).convert("L")
            if mask.size != room_image.size:
                mask = mask.resize(room_image.size)
            filled = room_image.filter(ImageFilter.GaussianBlur(radius=24))
            room_image.paste(filled, (0, 0), mask)
        else:
            if not product or not placement:
                raise AIAdapterError(
                    "Composite needs a product and a placement",
                    service=COMPOSITE,
                    kind=AIErrorKind.INVALID_INPUT
                )
            product_image = self._open(await self._fetch(product), COMPOSITE).convert("RGBA")
            target_width = max(1, int(room_image.width * placement.scale))
            target_height = max(1, int(product_image.height * target_width / product_image.width))
            product_image = product_image.resize((target_width, target_height), Image.Resampling.LANCZOS)

            left = int(placement.x * room_image.width - target_width / 2)
            top = int(placement.y * room_image.height - target_height / 2)
            room_image.paste(product_image, (left, top), product_image)

        buffer = io.BytesIO()
        room_image.save(buffer, format="PNG")
        record_ai_call(COMPOSITE, "success")
        logger.info("composite_simulated_completed", output_size=buffer.tell())
        return buffer.getvalue()
