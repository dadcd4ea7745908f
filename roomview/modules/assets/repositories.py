"""
Asset Repository

Every status write is a compare-and-set UPDATE guarded by the expected
status (and, for worker writes, the claim token). Callers own the
transaction and commit.
"""

from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from sqlalchemy import select, update, and_, or_, case
from sqlalchemy.ext.asyncio import AsyncSession

from roomview.core.exceptions import IllegalTransitionError
from roomview.modules.assets.models import (
    ProductAsset,
    AssetStatus,
    validate_asset_transition,
)


class AssetRepository:
    """Repository for ProductAsset rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, tenant_id: str, product_id: str) -> Optional[ProductAsset]:
        result = await self.session.execute(
            select(ProductAsset).where(
                ProductAsset.tenant_id == tenant_id,
                ProductAsset.product_id == product_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def get_by_id(self, asset_id: str) -> Optional[ProductAsset]:
        return await self.session.get(ProductAsset, asset_id, populate_existing=True)

    async def add(self, asset: ProductAsset) -> ProductAsset:
        self.session.add(asset)
        await self.session.flush()
        return asset

    # =========================================================================
    # Worker claim
    # =========================================================================

    def _claimable_clause(self, now: datetime, max_attempts: int, lease_seconds: int):
        lease_cutoff = now - timedelta(seconds=lease_seconds)
        return or_(
            ProductAsset.status == AssetStatus.UNPREPARED.value,
            and_(
                ProductAsset.status == AssetStatus.PREPARING.value,
                ProductAsset.retry_count < max_attempts,
                or_(
                    ProductAsset.claimed_at.is_(None),
                    ProductAsset.claimed_at < lease_cutoff,
                ),
            ),
        )

    async def list_claimable(
        self,
        limit: int,
        now: datetime,
        max_attempts: int,
        lease_seconds: int
    ) -> List[ProductAsset]:
        """Oldest-first candidates for a worker tick."""
        result = await self.session.execute(
            select(ProductAsset)
            .where(self._claimable_clause(now, max_attempts, lease_seconds))
            .order_by(ProductAsset.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim(
        self,
        asset: ProductAsset,
        token: str,
        now: datetime,
        max_attempts: int,
        lease_seconds: int
    ) -> bool:
        """Take the lease on one asset. False if another worker won."""
        validate_asset_transition(asset.status, AssetStatus.PREPARING.value)
        result = await self.session.execute(
            update(ProductAsset)
            .where(
                ProductAsset.id == asset.id,
                ProductAsset.status == asset.status,
                self._claimable_clause(now, max_attempts, lease_seconds),
            )
            .values(
                status=AssetStatus.PREPARING.value,
                claim_token=token,
                claimed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # =========================================================================
    # Worker outcomes (only valid while holding the lease)
    # =========================================================================

    async def mark_ready(
        self,
        asset_id: str,
        token: str,
        cutout_key: str,
        placement_metadata: Optional[Dict[str, Any]],
        now: datetime
    ) -> bool:
        validate_asset_transition(AssetStatus.PREPARING.value, AssetStatus.READY.value)
        result = await self.session.execute(
            update(ProductAsset)
            .where(
                ProductAsset.id == asset_id,
                ProductAsset.status == AssetStatus.PREPARING.value,
                ProductAsset.claim_token == token,
            )
            .values(
                status=AssetStatus.READY.value,
                enabled=False,
                cutout_storage_key=cutout_key,
                placement_metadata=placement_metadata,
                error_message=None,
                retry_count=0,
                claim_token=None,
                claimed_at=None,
                prepared_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_retryable_failure(
        self,
        asset_id: str,
        token: str,
        error_message: str,
        max_attempts: int,
        now: datetime
    ) -> Optional[str]:
        """Consume one retry; fail the asset once the budget is spent.

        Returns the resulting status, or None if the lease was lost.
        """
        result = await self.session.execute(
            update(ProductAsset)
            .where(
                ProductAsset.id == asset_id,
                ProductAsset.status == AssetStatus.PREPARING.value,
                ProductAsset.claim_token == token,
            )
            .values(
                retry_count=ProductAsset.retry_count + 1,
                status=case(
                    (ProductAsset.retry_count + 1 >= max_attempts, AssetStatus.FAILED.value),
                    else_=AssetStatus.PREPARING.value,
                ),
                error_message=error_message,
                claim_token=None,
                claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        status = await self.session.execute(
            select(ProductAsset.status).where(ProductAsset.id == asset_id)
        )
        return status.scalar_one()

    async def mark_failed(
        self,
        asset_id: str,
        token: str,
        error_message: str,
        now: datetime
    ) -> bool:
        """Non-retryable failure; retry_count is left untouched."""
        validate_asset_transition(AssetStatus.PREPARING.value, AssetStatus.FAILED.value)
        result = await self.session.execute(
            update(ProductAsset)
            .where(
                ProductAsset.id == asset_id,
                ProductAsset.status == AssetStatus.PREPARING.value,
                ProductAsset.claim_token == token,
            )
            .values(
                status=AssetStatus.FAILED.value,
                error_message=error_message,
                claim_token=None,
                claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # =========================================================================
    # Merchant-driven transitions
    # =========================================================================

    async def resubmit_failed(self, asset: ProductAsset, source_image_ref: str, now: datetime) -> bool:
        validate_asset_transition(asset.status, AssetStatus.PREPARING.value)
        result = await self.session.execute(
            update(ProductAsset)
            .where(
                ProductAsset.id == asset.id,
                ProductAsset.status == AssetStatus.FAILED.value,
            )
            .values(
                status=AssetStatus.PREPARING.value,
                source_image_ref=source_image_ref,
                retry_count=0,
                error_message=None,
                claim_token=None,
                claimed_at=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_enabled(self, asset: ProductAsset, enabled: bool, now: datetime) -> bool:
        if enabled:
            expected, target = AssetStatus.READY.value, AssetStatus.LIVE.value
        else:
            expected, target = AssetStatus.LIVE.value, AssetStatus.READY.value
        validate_asset_transition(expected, target)
        if asset.status != expected:
            raise IllegalTransitionError("asset", asset.status, target)

        result = await self.session.execute(
            update(ProductAsset)
            .where(
                ProductAsset.id == asset.id,
                ProductAsset.status == expected,
                ProductAsset.cutout_storage_key.is_not(None),
            )
            .values(status=target, enabled=enabled, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
