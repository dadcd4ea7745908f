"""
RenderJob Model with Forward-Only State Machine

queued -> processing -> completed | failed. No cancellation, failed is
terminal and never retried automatically.
"""

import uuid
from enum import Enum
from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, Dict, Any, FrozenSet
from datetime import datetime, date

from roomview.core.exceptions import IllegalTransitionError
from roomview.core.timestamps import UTCDateTime, utc_now


class RenderStatus(str, Enum):
    """Render job states."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


RENDER_TRANSITIONS: Dict[RenderStatus, FrozenSet[RenderStatus]] = {
    RenderStatus.QUEUED: frozenset({RenderStatus.PROCESSING}),
    RenderStatus.PROCESSING: frozenset({RenderStatus.COMPLETED, RenderStatus.FAILED}),
    RenderStatus.COMPLETED: frozenset(),
    RenderStatus.FAILED: frozenset(),
}

TERMINAL_RENDER_STATUSES = frozenset({RenderStatus.COMPLETED.value, RenderStatus.FAILED.value})


def validate_render_transition(current: str, target: str):
    """Raise IllegalTransitionError unless current -> target is defined."""
    if RenderStatus(target) not in RENDER_TRANSITIONS[RenderStatus(current)]:
        raise IllegalTransitionError("render", current, target)


class RenderJob(SQLModel, table=True):
    """
    One composite render request.

    Exactly one of product_asset_id / product_image_ref is set. While
    quota_held is true the job owns one reserved unit of composite_render
    on quota_date.
    """
    __tablename__ = "render_jobs"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    tenant_id: str = Field(index=True)
    room_session_id: str = Field(foreign_key="room_sessions.id", index=True)

    # Product reference
    product_id: Optional[str] = None
    product_asset_id: Optional[str] = Field(default=None, foreign_key="product_assets.id")
    product_image_ref: Optional[str] = None

    # Placement (normalized to the room image)
    placement_x: float
    placement_y: float
    placement_scale: float

    style_preset: str = Field(default="neutral")
    quality: str = Field(default="standard")
    config: Dict[str, Any] = Field(default={}, sa_column=Column(JSON))

    status: str = Field(default=RenderStatus.QUEUED.value, index=True)
    output_storage_key: Optional[str] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    attempt_count: int = Field(default=0)

    # Outstanding admission hold
    quota_date: date
    quota_held: bool = Field(default=True)

    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime, index=True)
    updated_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RENDER_STATUSES
