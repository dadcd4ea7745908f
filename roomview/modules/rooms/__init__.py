"""
Rooms Module - shopper room photo sessions.
"""

from roomview.modules.rooms.models import RoomSession

__all__ = ["RoomSession"]
