"""
QuotaCounter Model

One row per (tenant, UTC day, category), created lazily on first use.
"""

import datetime as dt
from enum import Enum
from sqlmodel import SQLModel, Field
from typing import Optional, Dict, Any

from roomview.core.timestamps import UTCDateTime, utc_now


class QuotaCategory(str, Enum):
    """Metered operation categories."""
    COMPOSITE_RENDER = "composite_render"
    CLEANUP_RUN = "cleanup_run"
    PREP_RUN = "prep_run"


class QuotaCounter(SQLModel, table=True):
    """
    Daily usage counter.

    count is committed usage, reserved is in-flight admission holds.
    count + reserved never exceeds daily_limit; a null limit is unlimited.
    """
    __tablename__ = "quota_counters"

    tenant_id: str = Field(primary_key=True)
    date: dt.date = Field(primary_key=True)
    category: str = Field(primary_key=True)

    count: int = Field(default=0)
    reserved: int = Field(default=0)
    daily_limit: Optional[int] = None

    updated_at: dt.datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "date": self.date.isoformat(),
            "count": self.count,
            "reserved": self.reserved,
            "limit": self.daily_limit,
        }
