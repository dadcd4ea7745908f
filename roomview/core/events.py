"""
Pipeline Event Bus

Fire-and-forget telemetry. Pipelines publish after their transaction
commits; dispatch happens on the next event loop iteration so a slow or
broken observer never delays or fails the pipeline.
"""

import asyncio
from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Dict, Any

from roomview.core.logging import get_logger
from roomview.core.metrics import record_event
from roomview.core.timestamps import utc_now

logger = get_logger(__name__)


class PipelineEvent(str, Enum):
    ASSET_SUBMITTED = "asset_submitted"
    ASSET_CLAIMED = "asset_claimed"
    ASSET_READY = "asset_ready"
    ASSET_RETRY_SCHEDULED = "asset_retry_scheduled"
    ASSET_FAILED = "asset_failed"
    ASSET_ENABLED = "asset_enabled"
    ASSET_DISABLED = "asset_disabled"
    ROOM_CREATED = "room_created"
    ROOM_CLEANED = "room_cleaned"
    RENDER_QUEUED = "render_queued"
    RENDER_STARTED = "render_started"
    RENDER_COMPLETED = "render_completed"
    RENDER_FAILED = "render_failed"
    QUOTA_REJECTED = "quota_rejected"


@dataclass
class Event:
    name: str
    tenant_id: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utc_now)


Observer = Callable[[Event], None]


class EventBus:
    """In-process publish/subscribe for pipeline telemetry."""

    def __init__(self):
        self._observers: List[Observer] = []

    def subscribe(self, observer: Observer):
        self._observers.append(observer)

    def unsubscribe(self, observer: Observer):
        if observer in self._observers:
            self._observers.remove(observer)

    def publish(self, name: PipelineEvent, tenant_id: Optional[str] = None, **payload):
        event = Event(name=PipelineEvent(name).value, tenant_id=tenant_id, payload=payload)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._dispatch(event)
            return
        loop.call_soon(self._dispatch, event)

    def _dispatch(self, event: Event):
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                logger.warning(
                    "event_observer_failed",
                    event_name=event.name,
                    observer=getattr(observer, "__name__", repr(observer)),
                    error=str(e)
                )


def log_event(event: Event):
    logger.info(event.name, tenant_id=event.tenant_id, **event.payload)


def count_event(event: Event):
    record_event(event.name)


# Global bus with the default observers
event_bus = EventBus()
event_bus.subscribe(log_event)
event_bus.subscribe(count_event)


def get_event_bus() -> EventBus:
    return event_bus
