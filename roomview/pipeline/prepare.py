"""
Asset Preparation Pipeline

Turns a merchant's product photo into a background-removed cutout.

    unprepared -> preparing -> ready <-> live
                      |
                      +-> failed -> preparing (explicit resubmission only)

A worker tick claims a small batch oldest-first with a compare-and-set
lease, then runs each asset through the stages without holding any
transaction. Transient failures consume one retry and release the lease;
the next tick picks the asset up again. Non-retryable failures fail the
asset immediately.
"""

import uuid
import asyncio
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

from sqlalchemy.exc import IntegrityError

from roomview.core.config import settings
from roomview.core.events import EventBus, PipelineEvent, get_event_bus
from roomview.core.exceptions import (
    IllegalTransitionError,
    InvalidInputError,
    InternalInconsistencyError,
    NotFoundError,
    RoomviewError,
    is_retryable,
    truncate_error,
)
from roomview.core.logging import get_logger, LogContext
from roomview.core.metrics import record_job_status, track_active_job
from roomview.core.storage import IStorage
from roomview.core.timestamps import utc_now
from roomview.engines.ai.providers import IAIAdapter
from roomview.modules.assets.models import ProductAsset, AssetStatus
from roomview.modules.assets.repositories import AssetRepository
from roomview.modules.quota.ledger import QuotaLedger, PlanLimitResolver
from roomview.modules.quota.models import QuotaCategory
from roomview.pipeline import stages
from roomview.pipeline.keys import ensure_tenant_key, product_cutout_key

logger = get_logger(__name__)


class AssetPreparationPipeline:
    """Merchant-facing asset operations plus the worker tick."""

    def __init__(
        self,
        session_factory,
        storage: IStorage,
        adapter: IAIAdapter,
        limits: Optional[PlanLimitResolver] = None,
        bus: Optional[EventBus] = None,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
        lease_seconds: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.adapter = adapter
        self.limits = limits or PlanLimitResolver()
        self.bus = bus or get_event_bus()
        self.batch_size = batch_size or settings.PREP_BATCH_SIZE
        self.max_attempts = max_attempts or settings.PREP_MAX_ATTEMPTS
        self.lease_seconds = lease_seconds or settings.PREP_CLAIM_LEASE_SECONDS

    # =========================================================================
    # Merchant operations
    # =========================================================================

    async def submit(
        self,
        tenant_id: str,
        product_id: str,
        source_image_ref: str,
        product_title: Optional[str] = None
    ) -> ProductAsset:
        """
        Request preparation. Idempotent on (tenant, product):
        - ready/live: no-op
        - failed: back to preparing with a fresh retry budget
        - unprepared/preparing: same asset, unchanged
        """
        if not product_id:
            raise InvalidInputError("product_id is required", field="product_id")
        if not source_image_ref:
            raise InvalidInputError("source_image_ref is required", field="source_image_ref")
        if not stages.is_url(source_image_ref):
            ensure_tenant_key(tenant_id, source_image_ref, field="source_image_ref")

        async with self.session_factory() as session:
            repo = AssetRepository(session)
            asset = await repo.get(tenant_id, product_id)

            if asset is None:
                asset = ProductAsset(
                    tenant_id=tenant_id,
                    product_id=product_id,
                    product_title=product_title,
                    source_image_ref=source_image_ref,
                )
                try:
                    await repo.add(asset)
                    await session.commit()
                except IntegrityError:
                    # Concurrent submit created the row first
                    await session.rollback()
                    asset = await repo.get(tenant_id, product_id)
                else:
                    self.bus.publish(PipelineEvent.ASSET_SUBMITTED, tenant_id, asset_id=asset.id, product_id=product_id)
                    return asset

            if asset.status == AssetStatus.FAILED.value:
                if await repo.resubmit_failed(asset, source_image_ref, utc_now()):
                    await session.commit()
                    self.bus.publish(
                        PipelineEvent.ASSET_SUBMITTED,
                        tenant_id,
                        asset_id=asset.id,
                        product_id=product_id,
                        resubmitted=True
                    )
                else:
                    await session.rollback()
                asset = await repo.get_by_id(asset.id)

            return asset

    async def get(self, tenant_id: str, product_id: str) -> ProductAsset:
        async with self.session_factory() as session:
            asset = await AssetRepository(session).get(tenant_id, product_id)
        if asset is None:
            raise NotFoundError("asset", product_id)
        return asset

    async def set_enabled(self, tenant_id: str, product_id: str, enabled: bool) -> ProductAsset:
        """Merchant toggle: ready -> live (enable) or live -> ready (disable)."""
        target = AssetStatus.LIVE.value if enabled else AssetStatus.READY.value

        async with self.session_factory() as session:
            repo = AssetRepository(session)
            asset = await repo.get(tenant_id, product_id)
            if asset is None:
                raise NotFoundError("asset", product_id)
            if asset.status == target and asset.enabled == enabled:
                return asset

            changed = await repo.set_enabled(asset, enabled, utc_now())
            await session.commit()
            asset = await repo.get_by_id(asset.id)
            if not changed and asset.status != target:
                # Lost a race with the worker or another toggle
                raise IllegalTransitionError("asset", asset.status, target)

        if changed:
            self.bus.publish(
                PipelineEvent.ASSET_ENABLED if enabled else PipelineEvent.ASSET_DISABLED,
                tenant_id,
                asset_id=asset.id,
                product_id=product_id
            )
        return asset

    async def is_live(self, tenant_id: str, product_id: str) -> bool:
        async with self.session_factory() as session:
            asset = await AssetRepository(session).get(tenant_id, product_id)
        return asset is not None and asset.is_live

    # =========================================================================
    # Worker
    # =========================================================================

    async def claim_batch(self, now: Optional[datetime] = None) -> List[Tuple[str, str]]:
        """Claim up to batch_size assets. Returns (asset_id, claim_token) pairs."""
        now = now or utc_now()
        claimed = []

        async with self.session_factory() as session:
            repo = AssetRepository(session)
            candidates = await repo.list_claimable(self.batch_size, now, self.max_attempts, self.lease_seconds)
            for asset in candidates:
                token = uuid.uuid4().hex
                if await repo.claim(asset, token, now, self.max_attempts, self.lease_seconds):
                    claimed.append((asset.id, token, asset.tenant_id, asset.retry_count))
            await session.commit()

        for asset_id, _, tenant_id, retry_count in claimed:
            self.bus.publish(PipelineEvent.ASSET_CLAIMED, tenant_id, asset_id=asset_id, retry_count=retry_count)
        return [(asset_id, token) for asset_id, token, _, _ in claimed]

    async def run_tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Claim a batch and process it. Returns outcome counts."""
        claimed = await self.claim_batch(now)
        outcomes = await asyncio.gather(*(self.process_asset(asset_id, token) for asset_id, token in claimed))

        summary = {"claimed": len(claimed), "ready": 0, "retrying": 0, "failed": 0, "skipped": 0}
        for outcome in outcomes:
            summary[outcome] += 1
        if claimed:
            logger.info("prepare_tick_completed", **summary)
        return summary

    async def process_asset(self, asset_id: str, claim_token: str) -> str:
        """Run every stage for one claimed asset. Never raises."""
        async with self.session_factory() as session:
            asset = await AssetRepository(session).get_by_id(asset_id)

        if (
            asset is None
            or asset.status != AssetStatus.PREPARING.value
            or asset.claim_token != claim_token
        ):
            logger.info("asset_skipped_not_leased", asset_id=asset_id)
            return "skipped"

        with LogContext(job_id=asset.id, tenant_id=asset.tenant_id), track_active_job("asset"):
            try:
                if not asset.source_image_ref:
                    raise InternalInconsistencyError(f"Asset {asset.id} has no source image reference")
                cutout_key, metadata = await self._run_stages(asset)
            except Exception as e:
                return await self._record_failure(asset, claim_token, e)

            return await self._record_success(asset, claim_token, cutout_key, metadata)

    async def _run_stages(self, asset: ProductAsset) -> Tuple[str, Optional[Dict[str, Any]]]:
        source = await stages.download_source(asset.source_image_ref, self.storage, asset.tenant_id)
        normalized = stages.normalize_image(source)
        cutout = await stages.remove_background(normalized, self.adapter)

        key = product_cutout_key(asset.tenant_id, asset.product_id, asset.id)
        await stages.upload_cutout(cutout, key, self.storage)

        try:
            metadata = stages.derive_placement_metadata(cutout, asset.product_title)
        except Exception as e:
            logger.warning("placement_metadata_failed", asset_id=asset.id, error=str(e))
            metadata = None

        return key, metadata

    async def _record_success(
        self,
        asset: ProductAsset,
        claim_token: str,
        cutout_key: str,
        metadata: Optional[Dict[str, Any]]
    ) -> str:
        async with self.session_factory() as session:
            marked = await AssetRepository(session).mark_ready(
                asset.id, claim_token, cutout_key, metadata, utc_now()
            )
            if marked:
                await QuotaLedger(session, self.limits).record(asset.tenant_id, QuotaCategory.PREP_RUN.value)
            await session.commit()

        if not marked:
            logger.warning("asset_lease_lost", asset_id=asset.id)
            return "skipped"

        record_job_status("asset", "ready")
        self.bus.publish(
            PipelineEvent.ASSET_READY,
            asset.tenant_id,
            asset_id=asset.id,
            product_id=asset.product_id,
            cutout_key=cutout_key,
            has_metadata=metadata is not None
        )
        return "ready"

    async def _record_failure(self, asset: ProductAsset, claim_token: str, error: Exception) -> str:
        message = truncate_error(error, settings.ERROR_MESSAGE_MAX_LENGTH)
        now = utc_now()

        if not isinstance(error, RoomviewError):
            logger.error("asset_stage_crashed", asset_id=asset.id, error=message, exc_info=error)

        async with self.session_factory() as session:
            repo = AssetRepository(session)
            if is_retryable(error):
                status = await repo.record_retryable_failure(asset.id, claim_token, message, self.max_attempts, now)
            else:
                status = AssetStatus.FAILED.value if await repo.mark_failed(asset.id, claim_token, message, now) else None
            await session.commit()

        if status is None:
            logger.warning("asset_lease_lost", asset_id=asset.id)
            return "skipped"

        if status == AssetStatus.FAILED.value:
            record_job_status("asset", "failed")
            self.bus.publish(
                PipelineEvent.ASSET_FAILED,
                asset.tenant_id,
                asset_id=asset.id,
                product_id=asset.product_id,
                error=message,
                retryable=is_retryable(error)
            )
            return "failed"

        record_job_status("asset", "retrying")
        self.bus.publish(
            PipelineEvent.ASSET_RETRY_SCHEDULED,
            asset.tenant_id,
            asset_id=asset.id,
            product_id=asset.product_id,
            error=message,
            attempt=asset.retry_count + 1
        )
        return "retrying"
