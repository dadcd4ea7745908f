"""
RoomSession Model

A shopper's uploaded room photo. The original key is fixed at creation;
cleanup writes a new object and repoints cleaned_room_image_key.
"""

import uuid
from sqlmodel import SQLModel, Field
from typing import Optional, Dict, Any
from datetime import datetime

from roomview.core.timestamps import UTCDateTime, utc_now


class RoomSession(SQLModel, table=True):
    __tablename__ = "room_sessions"

    id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        primary_key=True
    )

    tenant_id: str = Field(index=True)

    # Storage keys, never URLs
    original_room_image_key: str
    cleaned_room_image_key: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)
    last_used_at: datetime = Field(default_factory=utc_now, sa_type=UTCDateTime)

    @property
    def effective_room_image_key(self) -> str:
        """Cleaned image when present, else the original."""
        return self.cleaned_room_image_key or self.original_room_image_key

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "original_room_image_key": self.original_room_image_key,
            "cleaned_room_image_key": self.cleaned_room_image_key,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_used_at": self.last_used_at.isoformat() if self.last_used_at else None,
        }
