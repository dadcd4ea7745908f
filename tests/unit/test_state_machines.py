import datetime as dt

import pytest

from roomview.core.exceptions import IllegalTransitionError
from roomview.core.timestamps import utc_now
from roomview.modules.assets.models import AssetStatus, validate_asset_transition
from roomview.modules.renders.models import RenderJob, RenderStatus, validate_render_transition
from roomview.modules.renders.repositories import RenderJobRepository
from roomview.modules.rooms.models import RoomSession


@pytest.mark.parametrize("current,target", [
    ("unprepared", "preparing"),
    ("preparing", "preparing"),
    ("preparing", "ready"),
    ("preparing", "failed"),
    ("ready", "live"),
    ("live", "ready"),
    ("failed", "preparing"),
])
def test_legal_asset_transitions(current, target):
    validate_asset_transition(current, target)


@pytest.mark.parametrize("current,target", [
    ("unprepared", "ready"),
    ("unprepared", "live"),
    ("ready", "preparing"),
    ("live", "preparing"),
    ("failed", "ready"),
    ("live", "failed"),
])
def test_illegal_asset_transitions(current, target):
    with pytest.raises(IllegalTransitionError) as exc_info:
        validate_asset_transition(current, target)
    assert exc_info.value.code == 409


def test_render_transitions_are_forward_only():
    validate_render_transition("queued", "processing")
    validate_render_transition("processing", "completed")
    validate_render_transition("processing", "failed")

    for current, target in [
        ("queued", "completed"),
        ("processing", "queued"),
        ("completed", "processing"),
        ("failed", "queued"),
        ("failed", "processing"),
        ("completed", "failed"),
    ]:
        with pytest.raises(IllegalTransitionError):
            validate_render_transition(current, target)


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        validate_asset_transition("archived", AssetStatus.READY.value)


async def _queued_job(session_factory) -> str:
    async with session_factory() as session:
        session.add(RoomSession(id="room-1", tenant_id="tenant-a", original_room_image_key="k/original.jpg"))
        job = RenderJob(
            tenant_id="tenant-a",
            room_session_id="room-1",
            product_image_ref="k/product.png",
            placement_x=0.5,
            placement_y=0.5,
            placement_scale=0.3,
            quota_date=dt.date.today(),
        )
        await RenderJobRepository(session).add(job)
        await session.commit()
        return job.id


@pytest.mark.asyncio
async def test_render_repository_compare_and_set(session_factory):
    job_id = await _queued_job(session_factory)
    now = utc_now()

    async with session_factory() as session:
        repo = RenderJobRepository(session)
        assert await repo.start(job_id, now)
        # Second worker loses the race
        assert not await repo.start(job_id, now)
        assert await repo.fail(job_id, "transient_external", "boom", now)
        # Terminal: no further writes land
        assert not await repo.complete(job_id, "k/output.png", now)
        await session.commit()

    async with session_factory() as session:
        job = await RenderJobRepository(session).get(job_id)
    assert job.status == RenderStatus.FAILED.value
    assert job.is_terminal
    assert job.output_storage_key is None
    assert job.quota_held is False
