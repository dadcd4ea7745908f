"""
ProductAsset Model with Preparation State Machine

One row per (tenant, product). Tracks:
- Source reference and prepared cutout key
- Preparation status, retry budget and worker lease
- Merchant enable toggle
"""

import uuid
from enum import Enum
from sqlmodel import SQLModel, Field, Column, JSON
from sqlalchemy import UniqueConstraint
from typing import Optional, Dict, Any, FrozenSet
from datetime import datetime

from roomview.core.exceptions import IllegalTransitionError
from roomview.core.timestamps import UTCDateTime, utc_now


class AssetStatus(str, Enum):
    """Asset preparation states."""
    UNPREPARED = "unprepared"   # Requested, not yet claimed
    PREPARING = "preparing"     # Claimed by a worker (or awaiting retry)
    READY = "ready"             # Cutout stored, not shown to shoppers
    LIVE = "live"               # Enabled by the merchant
    FAILED = "failed"           # Retry budget spent or non-retryable error


ASSET_TRANSITIONS: Dict[AssetStatus, FrozenSet[AssetStatus]] = {
    AssetStatus.UNPREPARED: frozenset({AssetStatus.PREPARING}),
    AssetStatus.PREPARING: frozenset({AssetStatus.PREPARING, AssetStatus.READY, AssetStatus.FAILED}),
    AssetStatus.READY: frozenset({AssetStatus.LIVE}),
    AssetStatus.LIVE: frozenset({AssetStatus.READY}),
    # Only through explicit resubmission
    AssetStatus.FAILED: frozenset({AssetStatus.PREPARING}),
}


def validate_asset_transition(current: str, target: str):
    """Raise IllegalTransitionError unless current -> target is defined."""
    if AssetStatus(target) not in ASSET_TRANSITIONS[AssetStatus(current)]:
        raise IllegalTransitionError("asset", current, target)


class SceneRole(str, Enum):
    """Whether a product anchors the scene or blends into it."""
    DOMINANT = "dominant"
    INTEGRATED = "integrated"


class ReplacementRule(str, Enum):
    """What the composite step may displace to make room."""
    SIMILAR_SIZE_OR_POSITION = "similar_size_or_position"
    NONE = "none"


class Surface(str, Enum):
    """Where the product rests in a room."""
    FLOOR = "floor"
    WALL = "wall"
    TABLE = "table"
    SHELF = "shelf"
    CEILING = "ceiling"


class ProductAsset(SQLModel, table=True):
    """
    Prepared visual asset for a merchant product.

    Invariants:
    - enabled implies status == live
    - status == live implies cutout_storage_key is set
    """
    __tablename__ = "product_assets"
    __table_args__ = (
        UniqueConstraint("tenant_id", "product_id", name="uq_product_assets_tenant_product"),
    )

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    tenant_id: str = Field(index=True)
    product_id: str
    product_title: Optional[str] = None

    # URL or storage key of the merchant's original photo
    source_image_ref: str

    status: str = Field(default=AssetStatus.UNPREPARED.value, index=True)
    retry_count: int = Field(default=0)
    error_message: Optional[str] = None

    cutout_storage_key: Optional[str] = None
    placement_metadata: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))

    enabled: bool = Field(default=False)

    # Worker lease
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime, index=True)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    prepared_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @property
    def is_live(self) -> bool:
        return self.status == AssetStatus.LIVE.value and self.enabled

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "product_id": self.product_id,
            "status": self.status,
            "enabled": self.enabled,
            "retry_count": self.retry_count,
            "error": self.error_message,
            "cutout_storage_key": self.cutout_storage_key,
            "placement_metadata": self.placement_metadata,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "prepared_at": self.prepared_at.isoformat() if self.prepared_at else None,
        }
