import asyncio
from datetime import date

import pytest

from roomview.core.database import build_engine, build_session_maker, create_db_and_tables
from roomview.core.logging import job_id_var
from roomview.core.storage import StorageFactory
from roomview.engines.ai.providers import set_ai_adapter
from roomview.modules.renders.models import RenderJob
from roomview.modules.rooms.models import RoomSession
from roomview.pipeline import tasks
from roomview.pipeline.prepare import AssetPreparationPipeline
from tests.support import make_jpeg, make_png


@pytest.fixture
def worker_env(tmp_path, storage, adapter, monkeypatch):
    """Point the task runner at a scratch database and the test doubles."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}"
    monkeypatch.setattr(tasks.settings, "DATABASE_URL", url)
    StorageFactory.set_storage(storage)
    set_ai_adapter(adapter)

    async def setup():
        engine = build_engine(url)
        await create_db_and_tables(engine)
        await engine.dispose()

    asyncio.run(setup())
    yield url
    StorageFactory.reset()
    set_ai_adapter(None)


def _with_session(url, work):
    async def run():
        engine = build_engine(url)
        try:
            return await work(build_session_maker(engine))
        finally:
            await engine.dispose()
    return asyncio.run(run())


def test_prepare_tick_task_prepares_submitted_asset(worker_env, storage, adapter):
    asyncio.run(storage.put(make_png(), "tenants/tenant-a/uploads/vase.png"))

    async def submit(session_factory):
        pipeline = AssetPreparationPipeline(session_factory, storage, adapter)
        return await pipeline.submit("tenant-a", "vase-1", "tenants/tenant-a/uploads/vase.png")

    _with_session(worker_env, submit)

    summary = tasks.prepare_assets_tick()

    assert summary["claimed"] == 1
    assert summary["ready"] == 1
    assert adapter.background_calls == 1


def test_render_task_runs_job_to_completion(worker_env, storage, adapter):
    room_key = "tenants/tenant-a/rooms/room-1/original.jpg"
    asyncio.run(storage.put(make_jpeg(), room_key))
    asyncio.run(storage.put(make_png(size=(10, 10)), "tenants/tenant-a/uploads/lamp.png"))

    async def create_job(session_factory):
        async with session_factory() as session:
            session.add(RoomSession(id="room-1", tenant_id="tenant-a", original_room_image_key=room_key))
            await session.flush()
            job = RenderJob(
                tenant_id="tenant-a",
                room_session_id="room-1",
                product_image_ref="tenants/tenant-a/uploads/lamp.png",
                placement_x=0.5,
                placement_y=0.5,
                placement_scale=0.3,
                quota_date=date.today(),
                quota_held=False
            )
            session.add(job)
            await session.commit()
            return job.id

    job_id = _with_session(worker_env, create_job)

    result = tasks.run_render_job(job_id)

    assert result == {"job_id": job_id, "status": "completed", "error_code": None}
    assert len(adapter.composite_calls) == 1
    assert job_id_var.get() is None


def test_sweep_task_on_empty_database(worker_env):
    assert tasks.sweep_render_jobs() == {"failed": [], "redispatched": []}
