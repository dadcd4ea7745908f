"""
Asset Preparation Stage Implementations

Each stage is a separate function that can be called independently.
Stages raise classified RoomviewError subclasses; the preparation
pipeline decides whether to retry or fail.
"""

import io
import re
from typing import Optional, Dict, Any

import httpx
from PIL import Image, ImageOps, UnidentifiedImageError

from roomview.core.config import settings
from roomview.core.exceptions import (
    AIAdapterError,
    AIErrorKind,
    InvalidInputError,
    ObjectNotFoundError,
    TransientExternalError,
)
from roomview.core.logging import get_logger, with_logging
from roomview.core.metrics import track_stage_latency
from roomview.core.storage import IStorage
from roomview.engines.ai.providers import IAIAdapter, BACKGROUND_REMOVAL
from roomview.modules.assets.models import SceneRole, ReplacementRule, Surface
from roomview.pipeline.keys import ensure_tenant_key

logger = get_logger(__name__)


def is_url(ref: str) -> bool:
    return ref.startswith("http://") or ref.startswith("https://")


# =============================================================================
# Stage 1: Download
# =============================================================================

@with_logging("download")
async def download_source(
    source_ref: str,
    storage: IStorage,
    tenant_id: str,
    max_bytes: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> bytes:
    """
    Fetch the merchant's source image from a URL or a storage key in
    the tenant's own namespace.

    Raises:
        InvalidInputError: empty, oversized, missing or rejected by origin
        TransientExternalError: origin timed out or is unavailable
    """
    max_bytes = max_bytes or settings.MAX_SOURCE_IMAGE_BYTES

    with track_stage_latency("download"):
        if is_url(source_ref):
            data = await _download_url(source_ref, max_bytes, transport)
        else:
            try:
                data = await storage.get(ensure_tenant_key(tenant_id, source_ref, field="source_image_ref"))
            except ObjectNotFoundError:
                raise InvalidInputError(f"Source object not found: {source_ref}", field="source_image_ref")

    if len(data) == 0:
        raise InvalidInputError("Empty image", field="source_image_ref")
    if len(data) > max_bytes:
        raise InvalidInputError(
            f"Source image exceeds {max_bytes} bytes",
            field="source_image_ref"
        )

    logger.info("source_downloaded", size=len(data))
    return data


async def _download_url(
    url: str,
    max_bytes: int,
    transport: Optional[httpx.AsyncBaseTransport]
) -> bytes:
    try:
        async with httpx.AsyncClient(
            timeout=settings.SOURCE_DOWNLOAD_TIMEOUT_SECONDS,
            follow_redirects=True,
            transport=transport
        ) as client:
            async with client.stream("GET", url) as response:
                status = response.status_code
                if 400 <= status < 500 and status not in (408, 429):
                    raise InvalidInputError(
                        f"Source image fetch rejected: HTTP {status}",
                        field="source_image_ref"
                    )
                if status >= 400:
                    raise TransientExternalError(f"Source image fetch failed: HTTP {status}")

                declared = response.headers.get("content-length")
                if declared and declared.isdigit() and int(declared) > max_bytes:
                    raise InvalidInputError(
                        f"Source image exceeds {max_bytes} bytes",
                        field="source_image_ref"
                    )

                buffer = bytearray()
                async for chunk in response.aiter_bytes():
                    buffer.extend(chunk)
                    if len(buffer) > max_bytes:
                        raise InvalidInputError(
                            f"Source image exceeds {max_bytes} bytes",
                            field="source_image_ref"
                        )
                return bytes(buffer)
    except httpx.TimeoutException:
        raise TransientExternalError("Source image fetch timed out")
    except httpx.HTTPError as e:
        raise TransientExternalError(f"Source image fetch failed: {e}")


# =============================================================================
# Stage 2: Normalize
# =============================================================================

@with_logging("normalize")
def normalize_image(image_bytes: bytes) -> bytes:
    """Decode, apply EXIF orientation, convert to RGBA PNG."""
    with track_stage_latency("normalize"):
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image = ImageOps.exif_transpose(image)
            image = image.convert("RGBA")
        except Image.DecompressionBombError:
            raise InvalidInputError("Source image dimensions are too large", field="source_image_ref")
        except (UnidentifiedImageError, OSError) as e:
            raise InvalidInputError(f"Source is not a decodable image: {e}", field="source_image_ref")

        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        return buffer.getvalue()


# =============================================================================
# Stage 3: Background Removal
# =============================================================================

@with_logging("remove_background")
async def remove_background(image_bytes: bytes, adapter: IAIAdapter) -> bytes:
    cutout = await adapter.remove_background(image_bytes)
    if not cutout:
        raise AIAdapterError(
            "Background removal returned an empty image",
            service=BACKGROUND_REMOVAL,
            kind=AIErrorKind.PROVIDER_ERROR
        )
    return cutout


# =============================================================================
# Stage 4: Upload
# =============================================================================

@with_logging("upload")
async def upload_cutout(cutout_bytes: bytes, storage_key: str, storage: IStorage) -> str:
    with track_stage_latency("upload"):
        return await storage.put(cutout_bytes, storage_key, content_type="image/png")


# =============================================================================
# Stage 5: Placement Metadata (best-effort)
# =============================================================================

SURFACE_KEYWORDS = [
    (Surface.CEILING, ["pendant", "chandelier", "hanging", "ceiling"]),
    (Surface.WALL, ["mirror", "art", "painting", "print", "poster", "frame", "canvas", "clock", "sconce", "wall"]),
    (Surface.TABLE, ["lamp", "vase", "planter", "pot", "candle", "sculpture", "figurine", "bowl", "tray", "ornament"]),
    (Surface.SHELF, ["shelf"]),
]

# Furniture that is itself a surface stands on the floor
FLOOR_FURNITURE = re.compile(r"\b(table|desk|console|credenza|sideboard)\b", re.IGNORECASE)

LARGE_ITEM_KEYWORDS = [
    "sofa", "couch", "sectional", "mirror", "cabinet", "dresser", "bookshelf",
    "bed", "table", "desk", "console", "credenza", "sideboard",
]


def _words(text: str):
    return set(re.findall(r"[a-z]+", text.lower()))


def classify_surface(title: str) -> Surface:
    words = _words(title)
    if FLOOR_FURNITURE.search(title):
        return Surface.FLOOR
    for surface, keywords in SURFACE_KEYWORDS:
        if words.intersection(keywords):
            return surface
    return Surface.FLOOR


@with_logging("placement_metadata")
def derive_placement_metadata(cutout_bytes: bytes, product_title: Optional[str] = None) -> Dict[str, Any]:
    """
    Heuristic placement hints from the cutout geometry and product title.

    Large furniture anchors a scene and may displace similar items; small
    decor blends in and never clears space.
    """
    image = Image.open(io.BytesIO(cutout_bytes)).convert("RGBA")
    bbox = image.getchannel("A").getbbox()
    if bbox is None:
        raise ValueError("cutout is fully transparent")

    left, top, right, bottom = bbox
    width, height = right - left, bottom - top
    title = product_title or ""
    is_large = bool(_words(title).intersection(LARGE_ITEM_KEYWORDS))

    return {
        "scene_role": (SceneRole.DOMINANT if is_large else SceneRole.INTEGRATED).value,
        "replacement_rule": (
            ReplacementRule.SIMILAR_SIZE_OR_POSITION if is_large else ReplacementRule.NONE
        ).value,
        "allow_space_creation": is_large,
        "surface": classify_surface(title).value,
        "aspect_ratio": round(width / height, 4),
        "bbox": [left, top, right, bottom],
        "coverage": round((width * height) / float(image.width * image.height), 4),
        "image_size": [image.width, image.height],
    }
