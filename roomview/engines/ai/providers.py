"""
External AI Provider Adapters

Two operations, each a single bounded call with a binary outcome:
- remove_background(image_bytes) -> cutout PNG bytes
- generate_composite(room, product, placement, instructions) -> image bytes

Failures raise AIAdapterError with a classified kind. Retrying is the
caller's decision; the adapter never retries on its own.
"""

import base64
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

import httpx

from roomview.core.config import settings
from roomview.core.exceptions import AIAdapterError, AIErrorKind, get_circuit_breaker
from roomview.core.logging import get_logger
from roomview.core.metrics import record_ai_call, track_stage_latency
from roomview.engines.ai.schemas import ImageRef, Placement, RenderInstructions

logger = get_logger(__name__)

BACKGROUND_REMOVAL = "background_removal"
COMPOSITE = "composite"

INVALID_INPUT_STATUSES = frozenset({400, 413, 415, 422})


def classify_status(status_code: int) -> Optional[AIErrorKind]:
    """Map a provider HTTP status to an error kind (None for success)."""
    if 200 <= status_code < 300:
        return None
    if status_code == 408:
        return AIErrorKind.TIMEOUT
    if status_code == 429:
        return AIErrorKind.RATE_LIMITED
    if status_code in INVALID_INPUT_STATUSES:
        return AIErrorKind.INVALID_INPUT
    return AIErrorKind.PROVIDER_ERROR


class IAIAdapter(ABC):
    """Interface for generative-AI providers."""

    @abstractmethod
    async def remove_background(self, image_bytes: bytes) -> bytes:
        pass

    @abstractmethod
    async def generate_composite(
        self,
        room: ImageRef,
        product: Optional[ImageRef],
        placement: Optional[Placement],
        instructions: RenderInstructions
    ) -> bytes:
        pass


class HttpAIAdapter(IAIAdapter):
    """JSON-over-HTTP providers, one endpoint per operation."""

    def __init__(
        self,
        background_removal_url: Optional[str] = None,
        background_removal_api_key: Optional[str] = None,
        background_removal_timeout: Optional[float] = None,
        composite_url: Optional[str] = None,
        composite_api_key: Optional[str] = None,
        composite_timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.background_removal_url = background_removal_url or settings.BACKGROUND_REMOVAL_API_URL
        self.background_removal_api_key = background_removal_api_key or settings.BACKGROUND_REMOVAL_API_KEY
        self.background_removal_timeout = background_removal_timeout or settings.BACKGROUND_REMOVAL_TIMEOUT_SECONDS
        self.composite_url = composite_url or settings.COMPOSITE_API_URL
        self.composite_api_key = composite_api_key or settings.COMPOSITE_API_KEY
        self.composite_timeout = composite_timeout or settings.COMPOSITE_TIMEOUT_SECONDS
        self._transport = transport

    async def _post(
        self,
        service: str,
        url: str,
        api_key: Optional[str],
        timeout: float,
        payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        circuit = get_circuit_breaker(service)

        if not circuit.can_execute():
            record_ai_call(service, "circuit_open")
            raise AIAdapterError(
                f"{service} provider is temporarily unavailable",
                service=service,
                kind=AIErrorKind.PROVIDER_ERROR
            )

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException:
            circuit.record_failure()
            record_ai_call(service, AIErrorKind.TIMEOUT.value)
            raise AIAdapterError(
                f"{service} provider timed out after {timeout}s",
                service=service,
                kind=AIErrorKind.TIMEOUT
            )
        except httpx.HTTPError as e:
            circuit.record_failure(e)
            record_ai_call(service, AIErrorKind.PROVIDER_ERROR.value)
            raise AIAdapterError(
                f"{service} provider unreachable: {e}",
                service=service,
                kind=AIErrorKind.PROVIDER_ERROR
            )

        kind = classify_status(response.status_code)
        if kind is not None:
            # Rejected input says nothing about provider health
            if kind != AIErrorKind.INVALID_INPUT:
                circuit.record_failure()
            record_ai_call(service, kind.value)
            raise AIAdapterError(
                f"{service} provider error: HTTP {response.status_code} {response.text[:200]}",
                service=service,
                kind=kind,
                http_status=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            circuit.record_failure()
            record_ai_call(service, AIErrorKind.PROVIDER_ERROR.value)
            raise AIAdapterError(
                f"{service} provider returned a non-JSON body",
                service=service,
                kind=AIErrorKind.PROVIDER_ERROR,
                http_status=response.status_code
            )

        circuit.record_success()
        record_ai_call(service, "success")
        return body

    def _decode_image(self, body: Dict[str, Any], service: str) -> bytes:
        encoded = body.get("image") or body.get("result")
        if not encoded:
            raise AIAdapterError(
                f"{service} provider returned no image",
                service=service,
                kind=AIErrorKind.PROVIDER_ERROR
            )
        try:
            return base64.b64decode(encoded, validate=True)
        except ValueError:
            raise AIAdapterError(
                f"{service} provider returned an undecodable image",
                service=service,
                kind=AIErrorKind.PROVIDER_ERROR
            )

    async def remove_background(self, image_bytes: bytes) -> bytes:
        with track_stage_latency(BACKGROUND_REMOVAL):
            logger.info("background_removal_requested", input_size=len(image_bytes))
            body = await self._post(
                BACKGROUND_REMOVAL,
                self.background_removal_url,
                self.background_removal_api_key,
                self.background_removal_timeout,
                {
                    "image": base64.b64encode(image_bytes).decode("utf-8"),
                    "output_format": "png",
                },
            )
            return self._decode_image(body, BACKGROUND_REMOVAL)

    async def generate_composite(
        self,
        room: ImageRef,
        product: Optional[ImageRef],
        placement: Optional[Placement],
        instructions: RenderInstructions
    ) -> bytes:
        payload = {
            "mode": instructions.mode.value,
            "room_image_url": room.url,
            "product_image_url": product.url if product else None,
            "placement": placement.model_dump() if placement else None,
            "mask_url": instructions.mask.url if instructions.mask else None,
            "style_preset": instructions.style_preset,
            "quality": instructions.quality,
            "prompt": instructions.prompt,
            "product_hints": instructions.product_hints,
        }
        with track_stage_latency(COMPOSITE):
            logger.info("composite_requested", mode=instructions.mode.value)
            body = await self._post(
                COMPOSITE,
                self.composite_url,
                self.composite_api_key,
                self.composite_timeout,
                payload,
            )
            return self._decode_image(body, COMPOSITE)


# =============================================================================
# Adapter selection
# =============================================================================

_adapter: Optional[IAIAdapter] = None


def get_ai_adapter() -> IAIAdapter:
    """Get the configured adapter - ready for FastAPI Depends()."""
    global _adapter
    if _adapter is None:
        if settings.AI_PROVIDER == "http":
            _adapter = HttpAIAdapter()
        else:
            from roomview.engines.ai.simulated import SimulatedAIAdapter
            _adapter = SimulatedAIAdapter()
        logger.info("ai_adapter_initialized", provider=settings.AI_PROVIDER)
    return _adapter


def set_ai_adapter(adapter: Optional[IAIAdapter]):
    """Install a specific adapter (tests, scripts). None resets."""
    global _adapter
    _adapter = adapter
