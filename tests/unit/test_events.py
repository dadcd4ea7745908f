import asyncio

import pytest

from roomview.core.events import EventBus, PipelineEvent
from tests.support import EventCollector


def test_publish_without_loop_dispatches_immediately():
    bus = EventBus()
    collector = EventCollector()
    bus.subscribe(collector)

    bus.publish(PipelineEvent.ASSET_READY, tenant_id="t", asset_id="a1")

    assert collector.names() == ["asset_ready"]
    assert collector.events[0].payload == {"asset_id": "a1"}


@pytest.mark.asyncio
async def test_dispatch_is_deferred_to_next_iteration():
    bus = EventBus()
    collector = EventCollector()
    bus.subscribe(collector)

    bus.publish(PipelineEvent.RENDER_QUEUED, tenant_id="t")
    assert collector.events == []

    await asyncio.sleep(0)
    assert collector.names() == ["render_queued"]


@pytest.mark.asyncio
async def test_failing_observer_does_not_block_others():
    bus = EventBus()
    collector = EventCollector()

    def broken(event):
        raise RuntimeError("observer down")

    bus.subscribe(broken)
    bus.subscribe(collector)

    # Publishing never raises
    bus.publish(PipelineEvent.RENDER_FAILED, tenant_id="t")
    await asyncio.sleep(0)

    assert collector.names() == ["render_failed"]


def test_unknown_event_name_rejected():
    with pytest.raises(ValueError):
        EventBus().publish("not_an_event")


def test_unsubscribe():
    bus = EventBus()
    collector = EventCollector()
    bus.subscribe(collector)
    bus.unsubscribe(collector)
    bus.unsubscribe(collector)

    bus.publish(PipelineEvent.ROOM_CREATED)
    assert collector.events == []
