"""
Renders Module - composite render jobs.
"""

from roomview.modules.renders.models import (
    RenderJob,
    RenderStatus,
    TERMINAL_RENDER_STATUSES,
    validate_render_transition,
)
from roomview.modules.renders.repositories import RenderJobRepository

__all__ = [
    "RenderJob",
    "RenderStatus",
    "TERMINAL_RENDER_STATUSES",
    "validate_render_transition",
    "RenderJobRepository",
]
