import asyncio
from datetime import date

import pytest

from roomview.core.exceptions import NotFoundError, StorageError
from roomview.core.timestamps import utc_now
from roomview.modules.renders.models import RenderJob
from roomview.modules.renders.repositories import RenderJobRepository
from roomview.modules.rooms.models import RoomSession
from roomview.pipeline.render import RenderOrchestrator
from roomview.pipeline.status import JobStatusService
from tests.support import FakeAIAdapter, limits, make_jpeg


@pytest.fixture
async def job_id(session_factory):
    async with session_factory() as session:
        session.add(RoomSession(
            id="room-1",
            tenant_id="tenant-a",
            original_room_image_key="tenants/tenant-a/rooms/room-1/original.jpg"
        ))
        await session.flush()
        job = RenderJob(
            tenant_id="tenant-a",
            room_session_id="room-1",
            product_image_ref="https://cdn.shop/lamp.png",
            placement_x=0.5,
            placement_y=0.5,
            placement_scale=0.4,
            quota_date=date.today()
        )
        session.add(job)
        await session.commit()
        return job.id


async def _start_and_complete(session_factory, job_id, output_key):
    async with session_factory() as session:
        repo = RenderJobRepository(session)
        assert await repo.start(job_id, utc_now())
        assert await repo.complete(job_id, output_key, utc_now())
        await session.commit()


@pytest.mark.asyncio
async def test_queued_job_has_no_output(session_factory, storage, job_id):
    view = await JobStatusService(session_factory, storage).get(job_id, tenant_id="tenant-a")

    assert view.status == "queued"
    assert view.output_url is None
    assert view.started_at is None
    assert view.created_at


@pytest.mark.asyncio
async def test_completed_job_is_stable_with_fresh_url(session_factory, storage, job_id):
    output_key = f"tenants/tenant-a/renders/{job_id}/output.png"
    await storage.put(b"png", output_key)
    await _start_and_complete(session_factory, job_id, output_key)
    service = JobStatusService(session_factory, storage)

    first = await service.get(job_id)
    second = await service.get(job_id)

    assert first.status == second.status == "completed"
    assert first.output_key == second.output_key == output_key
    assert first.output_url.startswith(f"http://test/api/v1/storage/objects/{output_key}?")
    assert first.completed_at == second.completed_at


@pytest.mark.asyncio
async def test_unknown_job_and_other_tenant_are_not_found(session_factory, storage, job_id):
    service = JobStatusService(session_factory, storage)

    with pytest.raises(NotFoundError):
        await service.get("missing")
    with pytest.raises(NotFoundError):
        await service.get(job_id, tenant_id="tenant-b")


@pytest.mark.asyncio
async def test_signing_failure_keeps_status_readable(session_factory, storage, job_id, monkeypatch):
    output_key = f"tenants/tenant-a/renders/{job_id}/output.png"
    await _start_and_complete(session_factory, job_id, output_key)

    async def broken_signing(key, expires_in=None):
        raise StorageError("signing backend down", key=key)

    monkeypatch.setattr(storage, "signed_read_url", broken_signing)
    view = await JobStatusService(session_factory, storage).get(job_id)

    assert view.status == "completed"
    assert view.output_key == output_key
    assert view.output_url is None


class GatedAdapter(FakeAIAdapter):
    """Holds generate_composite open until the test releases it."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def generate_composite(self, room, product, placement, instructions) -> bytes:
        self.entered.set()
        await self.release.wait()
        return await super().generate_composite(room, product, placement, instructions)


@pytest.mark.asyncio
async def test_polling_while_render_runs_reports_processing(session_factory, storage, bus):
    room_key = "tenants/tenant-a/rooms/room-2/original.jpg"
    await storage.put(make_jpeg(), room_key, content_type="image/jpeg")
    async with session_factory() as session:
        session.add(RoomSession(id="room-2", tenant_id="tenant-a", original_room_image_key=room_key))
        await session.commit()

    adapter = GatedAdapter()
    orchestrator = RenderOrchestrator(
        session_factory, storage, adapter, limits=limits(), bus=bus, dispatcher=lambda job_id: None
    )
    service = JobStatusService(session_factory, storage)
    job = await orchestrator.submit(
        "tenant-a", "room-2", {"x": 0.5, "y": 0.5, "scale": 0.3}, product_image_ref="https://cdn.shop/lamp.png"
    )

    running = asyncio.create_task(orchestrator.run_job(job.id))
    await asyncio.wait_for(adapter.entered.wait(), timeout=5)

    for _ in range(3):
        view = await service.get(job.id, tenant_id="tenant-a")
        assert view.status == "processing"
        assert view.output_url is None
        assert view.output_key is None
        assert view.started_at is not None

    adapter.release.set()
    finished = await asyncio.wait_for(running, timeout=5)
    assert finished.status == "completed"

    polls = [await service.get(job.id, tenant_id="tenant-a") for _ in range(2)]
    assert [view.status for view in polls] == ["completed", "completed"]
    assert polls[0].output_key == polls[1].output_key == f"tenants/tenant-a/renders/{job.id}/output.png"
    assert polls[0].output_url is not None
