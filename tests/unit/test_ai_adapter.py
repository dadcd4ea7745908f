import base64
import json

import httpx
import pytest

from roomview.core.exceptions import AIAdapterError, AIErrorKind, ErrorCategory, get_circuit_breaker
from roomview.engines.ai.providers import (
    BACKGROUND_REMOVAL,
    COMPOSITE,
    HttpAIAdapter,
    classify_status,
)
from roomview.engines.ai.schemas import ImageRef, Placement, RenderInstructions, RenderMode

RESULT_BYTES = b"\x89PNG-result"


def _adapter(handler) -> HttpAIAdapter:
    return HttpAIAdapter(
        background_removal_url="https://bg.test/remove",
        background_removal_api_key="bg-key",
        composite_url="https://compose.test/render",
        composite_api_key="compose-key",
        transport=httpx.MockTransport(handler)
    )


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"image": base64.b64encode(RESULT_BYTES).decode()})


@pytest.mark.parametrize("status,kind", [
    (200, None),
    (204, None),
    (408, AIErrorKind.TIMEOUT),
    (429, AIErrorKind.RATE_LIMITED),
    (400, AIErrorKind.INVALID_INPUT),
    (413, AIErrorKind.INVALID_INPUT),
    (422, AIErrorKind.INVALID_INPUT),
    (500, AIErrorKind.PROVIDER_ERROR),
    (503, AIErrorKind.PROVIDER_ERROR),
])
def test_classify_status(status, kind):
    assert classify_status(status) == kind


@pytest.mark.asyncio
async def test_remove_background_sends_base64_and_auth():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return _ok(request)

    result = await _adapter(handler).remove_background(b"raw-image")

    assert result == RESULT_BYTES
    assert seen["auth"] == "Bearer bg-key"
    assert base64.b64decode(seen["body"]["image"]) == b"raw-image"


@pytest.mark.asyncio
async def test_generate_composite_payload():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return _ok(request)

    result = await _adapter(handler).generate_composite(
        ImageRef(url="https://signed/room", storage_key="tenants/t/rooms/s/original.jpg"),
        ImageRef(url="https://signed/product"),
        Placement(x=0.25, y=0.75, scale=0.5),
        RenderInstructions(style_preset="scandi", quality="high", product_hints={"surface": "floor"})
    )

    assert result == RESULT_BYTES
    assert seen["url"] == "https://compose.test/render"
    body = seen["body"]
    assert body["mode"] == "composite"
    assert body["room_image_url"] == "https://signed/room"
    assert body["product_image_url"] == "https://signed/product"
    assert body["placement"] == {"x": 0.25, "y": 0.75, "scale": 0.5}
    assert body["style_preset"] == "scandi"
    assert body["product_hints"] == {"surface": "floor"}
    assert body["mask_url"] is None


@pytest.mark.asyncio
async def test_object_removal_payload_carries_mask():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return _ok(request)

    await _adapter(handler).generate_composite(
        ImageRef(url="https://signed/room"),
        None,
        None,
        RenderInstructions(mode=RenderMode.OBJECT_REMOVAL, mask=ImageRef(url="https://signed/mask"))
    )

    assert seen["body"]["mode"] == "object_removal"
    assert seen["body"]["mask_url"] == "https://signed/mask"
    assert seen["body"]["product_image_url"] is None


@pytest.mark.asyncio
@pytest.mark.parametrize("status,kind,retryable", [
    (429, AIErrorKind.RATE_LIMITED, True),
    (502, AIErrorKind.PROVIDER_ERROR, True),
    (422, AIErrorKind.INVALID_INPUT, False),
])
async def test_http_errors_are_classified(status, kind, retryable):
    adapter = _adapter(lambda request: httpx.Response(status, text="nope"))

    with pytest.raises(AIAdapterError) as exc_info:
        await adapter.remove_background(b"raw")

    error = exc_info.value
    assert error.kind == kind
    assert error.retryable is retryable
    assert error.details["http_status"] == status


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(AIAdapterError) as exc_info:
        await _adapter(handler).remove_background(b"raw")

    assert exc_info.value.kind == AIErrorKind.TIMEOUT
    assert exc_info.value.category == ErrorCategory.TRANSIENT_EXTERNAL


@pytest.mark.asyncio
async def test_connection_error_is_provider_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(AIAdapterError) as exc_info:
        await _adapter(handler).remove_background(b"raw")
    assert exc_info.value.kind == AIErrorKind.PROVIDER_ERROR


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(200, text="<html>oops</html>"),
    httpx.Response(200, json={"status": "done"}),
    httpx.Response(200, json={"image": "***not base64***"}),
])
async def test_malformed_success_bodies(response):
    with pytest.raises(AIAdapterError) as exc_info:
        await _adapter(lambda request: response).generate_composite(
            ImageRef(url="https://signed/room"),
            ImageRef(url="https://signed/product"),
            Placement(x=0.5, y=0.5, scale=0.5),
            RenderInstructions()
        )
    assert exc_info.value.kind == AIErrorKind.PROVIDER_ERROR


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    adapter = _adapter(handler)
    breaker = get_circuit_breaker(BACKGROUND_REMOVAL)

    for _ in range(breaker.failure_threshold):
        with pytest.raises(AIAdapterError):
            await adapter.remove_background(b"raw")
    assert breaker.state == "OPEN"

    with pytest.raises(AIAdapterError) as exc_info:
        await adapter.remove_background(b"raw")
    assert "temporarily unavailable" in exc_info.value.message
    assert len(calls) == breaker.failure_threshold


@pytest.mark.asyncio
async def test_rejected_input_does_not_trip_circuit():
    adapter = _adapter(lambda request: httpx.Response(400, text="bad image"))
    breaker = get_circuit_breaker(COMPOSITE)

    for _ in range(breaker.failure_threshold + 1):
        with pytest.raises(AIAdapterError):
            await adapter.generate_composite(
                ImageRef(url="https://signed/room"),
                ImageRef(url="https://signed/product"),
                Placement(x=0.5, y=0.5, scale=0.5),
                RenderInstructions()
            )
    assert breaker.state == "CLOSED"
