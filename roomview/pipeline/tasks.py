"""
Celery Tasks for Asset Preparation and Render Orchestration

Each task runs its coroutine on a fresh event loop with a NullPool engine
owned by that loop. The pipelines own their retry budgets; Celery-level
retries are not used.
"""

import asyncio
from typing import Any, Callable, Dict

from roomview.core.celery_app import celery_app
from roomview.core.config import settings
from roomview.core.database import build_engine, build_session_maker
from roomview.core.logging import get_logger, set_job_context, clear_job_context
from roomview.core.storage import StorageFactory
from roomview.engines.ai.providers import get_ai_adapter

logger = get_logger(__name__)


def _run(work: Callable[[Any], Any]):
    """Run work(session_factory) to completion on a private event loop."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    engine = build_engine(settings.DATABASE_URL, worker=True)

    try:
        return loop.run_until_complete(work(build_session_maker(engine)))
    finally:
        # Deliver events published after the last commit
        loop.run_until_complete(asyncio.sleep(0))
        loop.run_until_complete(engine.dispose())
        loop.close()
        asyncio.set_event_loop(None)


@celery_app.task(name="roomview.pipeline.tasks.prepare_assets_tick", acks_late=True)
def prepare_assets_tick() -> Dict[str, int]:
    """Claim and prepare one batch of assets."""
    from roomview.pipeline.prepare import AssetPreparationPipeline

    async def work(session_factory):
        pipeline = AssetPreparationPipeline(session_factory, StorageFactory.get_storage(), get_ai_adapter())
        return await pipeline.run_tick()

    return _run(work)


@celery_app.task(name="roomview.pipeline.tasks.run_render_job", acks_late=True)
def run_render_job(job_id: str) -> Dict[str, Any]:
    """Execute one queued render job to a terminal state."""
    from roomview.pipeline.render import RenderOrchestrator

    set_job_context(job_id, "render")
    logger.info("run_render_job_started", render_job_id=job_id)

    async def work(session_factory):
        orchestrator = RenderOrchestrator(session_factory, StorageFactory.get_storage(), get_ai_adapter())
        job = await orchestrator.run_job(job_id)
        return {"job_id": job.id, "status": job.status, "error_code": job.error_code}

    try:
        result = _run(work)
        logger.info("run_render_job_finished", render_job_id=job_id, status=result["status"])
        return result
    finally:
        clear_job_context()


@celery_app.task(name="roomview.pipeline.tasks.sweep_render_jobs", acks_late=True)
def sweep_render_jobs() -> Dict[str, Any]:
    """Fail abandoned processing jobs and re-dispatch stuck queued ones."""
    from roomview.pipeline.render import RenderOrchestrator

    async def work(session_factory):
        orchestrator = RenderOrchestrator(session_factory, StorageFactory.get_storage(), get_ai_adapter())
        return await orchestrator.sweep()

    return _run(work)
