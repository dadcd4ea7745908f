"""Test doubles and image builders shared across the suite."""

import io
from typing import List, Optional

from PIL import Image

from roomview.engines.ai.providers import IAIAdapter
from roomview.modules.quota.ledger import PlanLimitResolver


# =============================================================================
# Images
# =============================================================================

def make_png(size=(64, 48), color=(200, 30, 30, 255), mode="RGBA") -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format="PNG")
    return buffer.getvalue()


def make_jpeg(size=(64, 48), color=(120, 120, 120)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="JPEG")
    return buffer.getvalue()


def make_mask(size=(64, 48), box=(10, 10, 30, 30)) -> bytes:
    mask = Image.new("L", size, 0)
    if box:
        mask.paste(255, box)
    buffer = io.BytesIO()
    mask.save(buffer, format="PNG")
    return buffer.getvalue()


def limits(render: Optional[int] = 100, cleanup: Optional[int] = 100, prep: Optional[int] = None) -> PlanLimitResolver:
    return PlanLimitResolver(
        defaults={"composite_render": render, "cleanup_run": cleanup, "prep_run": prep},
        overrides={}
    )


# =============================================================================
# Fakes
# =============================================================================

class FakeAIAdapter(IAIAdapter):
    """Records calls; raises queued errors before succeeding."""

    def __init__(self):
        self.background_calls = 0
        self.composite_calls: List[dict] = []
        self.background_errors: List[Exception] = []
        self.composite_errors: List[Exception] = []

    async def remove_background(self, image_bytes: bytes) -> bytes:
        self.background_calls += 1
        if self.background_errors:
            raise self.background_errors.pop(0)
        return image_bytes

    async def generate_composite(self, room, product, placement, instructions) -> bytes:
        self.composite_calls.append({
            "room": room,
            "product": product,
            "placement": placement,
            "instructions": instructions,
        })
        if self.composite_errors:
            raise self.composite_errors.pop(0)
        return make_png(color=(10, 120, 10, 255))


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def incr(self, key):
        self.ops.append(("incr", key))

    def ttl(self, key):
        self.ops.append(("ttl", key))

    async def execute(self):
        results = []
        for op, key in self.ops:
            if op == "incr":
                self.redis.values[key] = self.redis.values.get(key, 0) + 1
                results.append(self.redis.values[key])
            else:
                results.append(await self.redis.ttl(key))
        self.ops = []
        return results


class FakeRedis:
    """Just enough of redis.asyncio for the rate limiter."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    async def ttl(self, key):
        if key not in self.values:
            return -2
        return self.ttls.get(key, -1)

    async def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    async def delete(self, key):
        self.values.pop(key, None)
        self.ttls.pop(key, None)
        return 1

    async def ping(self):
        return True


class EventCollector:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def names(self) -> List[str]:
        return [event.name for event in self.events]
