"""
Render Orchestrator

    submit: validate -> rate limit -> quota admission hold -> queued job
    run_job: queued -> processing -> completed | failed

Admission happens before any external call, so a tenant at its limit is
rejected without touching the AI provider. The job's transition to a
terminal state and the settlement of its hold commit in one short
transaction; no transaction is open while the provider works.
"""

from datetime import datetime, timedelta
from typing import Optional, Dict, Any, Callable, Tuple

from roomview.core.config import settings
from roomview.core.events import EventBus, PipelineEvent, get_event_bus
from roomview.core.exceptions import (
    InvalidInputError,
    InternalInconsistencyError,
    NotFoundError,
    QuotaExceededError,
    ErrorCategory,
    error_category,
    truncate_error,
)
from roomview.core.logging import get_logger, LogContext
from roomview.core.metrics import record_job_status, track_active_job
from roomview.core.rate_limit import SessionRateLimiter
from roomview.core.storage import IStorage
from roomview.core.timestamps import utc_now
from roomview.engines.ai.providers import IAIAdapter
from roomview.engines.ai.schemas import ImageRef, Placement, RenderInstructions, RenderMode
from roomview.modules.assets.repositories import AssetRepository
from roomview.modules.quota.ledger import QuotaLedger, PlanLimitResolver
from roomview.modules.quota.models import QuotaCategory
from roomview.modules.renders.models import RenderJob, RenderStatus
from roomview.modules.renders.repositories import RenderJobRepository
from roomview.modules.rooms.models import RoomSession
from roomview.pipeline.keys import ensure_tenant_key, render_output_key
from roomview.pipeline.retry import call_with_retries
from roomview.pipeline.stages import is_url

logger = get_logger(__name__)

RENDER_QUALITIES = ("draft", "standard", "high")


def validate_placement(x: float, y: float, scale: float) -> Placement:
    """x and y within [0, 1]; scale within (0, 1]."""
    if x is None or not 0.0 <= x <= 1.0:
        raise InvalidInputError("placement.x must be between 0 and 1", field="placement.x")
    if y is None or not 0.0 <= y <= 1.0:
        raise InvalidInputError("placement.y must be between 0 and 1", field="placement.y")
    if scale is None or not 0.0 < scale <= 1.0:
        raise InvalidInputError("placement.scale must be greater than 0 and at most 1", field="placement.scale")
    return Placement(x=x, y=y, scale=scale)


def default_dispatcher(job_id: str):
    """Hand a queued job to the Celery render queue."""
    from roomview.pipeline.tasks import run_render_job
    run_render_job.delay(job_id)


class RenderOrchestrator:
    """Admits, runs and settles composite render jobs."""

    def __init__(
        self,
        session_factory,
        storage: IStorage,
        adapter: IAIAdapter,
        limits: Optional[PlanLimitResolver] = None,
        bus: Optional[EventBus] = None,
        rate_limiter: Optional[SessionRateLimiter] = None,
        dispatcher: Optional[Callable[[str], None]] = None,
        max_attempts: Optional[int] = None,
        retry_base_delay: Optional[float] = None
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.adapter = adapter
        self.limits = limits or PlanLimitResolver()
        self.bus = bus or get_event_bus()
        self.rate_limiter = rate_limiter
        self.dispatcher = dispatcher or default_dispatcher
        self.max_attempts = max_attempts or settings.RENDER_MAX_ATTEMPTS
        self.retry_base_delay = (
            settings.RENDER_RETRY_BASE_DELAY_SECONDS if retry_base_delay is None else retry_base_delay
        )

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit(
        self,
        tenant_id: str,
        session_id: str,
        placement: Dict[str, float],
        product_id: Optional[str] = None,
        product_image_ref: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None
    ) -> RenderJob:
        """
        Admit and queue a render.

        Raises:
            InvalidInputError: bad placement, unknown product, bad config
            NotFoundError: unknown room session
            RateLimitedError: too many submissions for this session
            QuotaExceededError: daily composite_render limit reached
        """
        config = dict(config or {})
        position = validate_placement(placement.get("x"), placement.get("y"), placement.get("scale"))

        quality = config.get("quality", settings.DEFAULT_RENDER_QUALITY)
        if quality not in RENDER_QUALITIES:
            raise InvalidInputError(f"quality must be one of {', '.join(RENDER_QUALITIES)}", field="config.quality")
        style_preset = config.get("style_preset", settings.DEFAULT_STYLE_PRESET)

        async with self.session_factory() as session:
            room = await session.get(RoomSession, session_id, populate_existing=True)
            if room is None or room.tenant_id != tenant_id:
                raise NotFoundError("room_session", session_id)

            asset_id = None
            if product_id:
                asset = await AssetRepository(session).get(tenant_id, product_id)
                if asset is not None and asset.is_live:
                    asset_id = asset.id
            if asset_id is None and not product_image_ref:
                raise InvalidInputError(
                    "Product has no live asset; supply product_image_ref",
                    field="product_id" if product_id else "product_image_ref"
                )
            if asset_id is None and not is_url(product_image_ref):
                ensure_tenant_key(tenant_id, product_image_ref, field="product_image_ref")

        if self.rate_limiter is not None:
            await self.rate_limiter.hit(session_id)

        category = QuotaCategory.COMPOSITE_RENDER.value
        async with self.session_factory() as session:
            decision = await QuotaLedger(session, self.limits).admit(tenant_id, category)
            if not decision.ok:
                await session.commit()
                self.bus.publish(PipelineEvent.QUOTA_REJECTED, tenant_id, category=category, session_id=session_id)
                raise QuotaExceededError(category, decision.retry_after, decision.limit)

            job = RenderJob(
                tenant_id=tenant_id,
                room_session_id=session_id,
                product_id=product_id,
                product_asset_id=asset_id,
                product_image_ref=None if asset_id else product_image_ref,
                placement_x=position.x,
                placement_y=position.y,
                placement_scale=position.scale,
                style_preset=style_preset,
                quality=quality,
                config=config,
                quota_date=decision.date,
                quota_held=True,
            )
            await RenderJobRepository(session).add(job)
            await session.commit()

        record_job_status("render", RenderStatus.QUEUED.value)
        self.bus.publish(PipelineEvent.RENDER_QUEUED, tenant_id, render_job_id=job.id, session_id=session_id)
        self._dispatch(job.id)
        return job

    def _dispatch(self, job_id: str):
        try:
            self.dispatcher(job_id)
        except Exception as e:
            # Job stays queued; the sweep re-dispatches it
            logger.error("render_dispatch_failed", render_job_id=job_id, error=str(e))

    # =========================================================================
    # Execution
    # =========================================================================

    async def _load(self, job_id: str) -> RenderJob:
        async with self.session_factory() as session:
            job = await RenderJobRepository(session).get(job_id)
        if job is None:
            raise NotFoundError("render_job", job_id)
        return job

    async def run_job(self, job_id: str) -> RenderJob:
        """Execute one queued job to a terminal state. Safe to call twice."""
        job = await self._load(job_id)
        if job.status != RenderStatus.QUEUED.value:
            logger.info("render_already_started", render_job_id=job_id, status=job.status)
            return job

        async with self.session_factory() as session:
            started = await RenderJobRepository(session).start(job_id, utc_now())
            await session.commit()
        if not started:
            return await self._load(job_id)

        with LogContext(job_id=job.id, tenant_id=job.tenant_id, stage="render"), track_active_job("render"):
            record_job_status("render", RenderStatus.PROCESSING.value)
            self.bus.publish(PipelineEvent.RENDER_STARTED, job.tenant_id, render_job_id=job.id)

            try:
                room_ref, product_ref, hints = await self._resolve_inputs(job)
                instructions = RenderInstructions(
                    mode=RenderMode.COMPOSITE,
                    style_preset=job.style_preset,
                    quality=job.quality,
                    prompt=job.config.get("prompt") if job.config else None,
                    product_hints=hints,
                )
                placement = Placement(x=job.placement_x, y=job.placement_y, scale=job.placement_scale)

                image = await call_with_retries(
                    lambda: self.adapter.generate_composite(room_ref, product_ref, placement, instructions),
                    self.max_attempts,
                    self.retry_base_delay,
                    on_attempt=lambda attempt: self._record_attempt(job.id),
                )
                output_key = await self.storage.put(
                    image,
                    render_output_key(job.tenant_id, job.id),
                    content_type="image/png"
                )
            except Exception as e:
                await self._finish_failed(job, e)
            else:
                await self._finish_completed(job, output_key)

        return await self._load(job_id)

    async def _record_attempt(self, job_id: str):
        async with self.session_factory() as session:
            await RenderJobRepository(session).record_attempt(job_id, utc_now())
            await session.commit()

    async def _resolve_inputs(self, job: RenderJob) -> Tuple[ImageRef, ImageRef, Dict[str, Any]]:
        async with self.session_factory() as session:
            room = await session.get(RoomSession, job.room_session_id, populate_existing=True)
            asset = None
            if job.product_asset_id:
                asset = await AssetRepository(session).get_by_id(job.product_asset_id)

        if room is None:
            raise InternalInconsistencyError(f"Render job {job.id} references a missing room session")
        room_key = room.cleaned_room_image_key or room.original_room_image_key
        if not room_key:
            raise InternalInconsistencyError(f"Room session {room.id} has no image key")
        if not await self.storage.exists(room_key):
            raise InvalidInputError("Room image has not been uploaded", field="session_id")
        room_ref = ImageRef(url=await self.storage.signed_read_url(room_key), storage_key=room_key)

        hints: Dict[str, Any] = {}
        if job.product_asset_id:
            if asset is None or not asset.cutout_storage_key:
                raise InternalInconsistencyError(f"Asset {job.product_asset_id} has no cutout")
            key = asset.cutout_storage_key
            product_ref = ImageRef(url=await self.storage.signed_read_url(key), storage_key=key)
            hints = asset.placement_metadata or {}
        elif job.product_image_ref and is_url(job.product_image_ref):
            product_ref = ImageRef(url=job.product_image_ref)
        elif job.product_image_ref:
            key = ensure_tenant_key(job.tenant_id, job.product_image_ref, field="product_image_ref")
            product_ref = ImageRef(url=await self.storage.signed_read_url(key), storage_key=key)
        else:
            raise InternalInconsistencyError(f"Render job {job.id} has no product reference")

        return room_ref, product_ref, hints

    async def _finish_completed(self, job: RenderJob, output_key: str):
        async with self.session_factory() as session:
            completed = await RenderJobRepository(session).complete(job.id, output_key, utc_now())
            if completed and job.quota_held:
                await QuotaLedger(session, self.limits).commit_hold(
                    job.tenant_id, QuotaCategory.COMPOSITE_RENDER.value, job.quota_date
                )
            await session.commit()

        if not completed:
            logger.warning("render_completion_lost", render_job_id=job.id)
            return
        record_job_status("render", RenderStatus.COMPLETED.value)
        self.bus.publish(PipelineEvent.RENDER_COMPLETED, job.tenant_id, render_job_id=job.id, output_key=output_key)

    async def _finish_failed(self, job: RenderJob, error: Exception):
        code = error_category(error).value
        message = truncate_error(error, settings.ERROR_MESSAGE_MAX_LENGTH)
        if code == ErrorCategory.INTERNAL_INCONSISTENCY.value:
            logger.error("render_crashed", render_job_id=job.id, error=message, exc_info=error)

        async with self.session_factory() as session:
            failed = await RenderJobRepository(session).fail(job.id, code, message, utc_now())
            if failed and job.quota_held:
                await QuotaLedger(session, self.limits).release_hold(
                    job.tenant_id, QuotaCategory.COMPOSITE_RENDER.value, job.quota_date
                )
            await session.commit()

        if not failed:
            logger.warning("render_failure_lost", render_job_id=job.id)
            return
        record_job_status("render", RenderStatus.FAILED.value)
        self.bus.publish(PipelineEvent.RENDER_FAILED, job.tenant_id, render_job_id=job.id, error_code=code, error=message)

    # =========================================================================
    # Recovery
    # =========================================================================

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Fail jobs stuck in processing (their worker is gone) and re-dispatch
        jobs that have sat in queued too long.
        """
        now = now or utc_now()
        stale_cutoff = now - timedelta(seconds=settings.RENDER_STALE_AFTER_SECONDS)
        redispatch_cutoff = now - timedelta(seconds=settings.RENDER_REDISPATCH_AFTER_SECONDS)
        message = f"Render exceeded {settings.RENDER_STALE_AFTER_SECONDS}s in processing; worker presumed lost"

        failed_jobs = []
        async with self.session_factory() as session:
            repo = RenderJobRepository(session)
            ledger = QuotaLedger(session, self.limits)

            for job in await repo.list_stale(RenderStatus.PROCESSING, stale_cutoff, settings.RENDER_SWEEP_BATCH_SIZE):
                if await repo.fail(job.id, ErrorCategory.INTERNAL_INCONSISTENCY.value, message, now):
                    if job.quota_held:
                        await ledger.release_hold(job.tenant_id, QuotaCategory.COMPOSITE_RENDER.value, job.quota_date)
                    failed_jobs.append(job)

            queued = await repo.list_stale(RenderStatus.QUEUED, redispatch_cutoff, settings.RENDER_SWEEP_BATCH_SIZE)
            await session.commit()

        for job in failed_jobs:
            record_job_status("render", RenderStatus.FAILED.value)
            self.bus.publish(PipelineEvent.RENDER_FAILED, job.tenant_id, render_job_id=job.id, error_code="stale")
        for job in queued:
            self._dispatch(job.id)

        summary = {
            "failed": [job.id for job in failed_jobs],
            "redispatched": [job.id for job in queued],
        }
        if failed_jobs or queued:
            logger.info("render_sweep_completed", failed=len(failed_jobs), redispatched=len(queued))
        return summary
