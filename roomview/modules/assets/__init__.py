"""
Assets Module - prepared product cutouts and their lifecycle.
"""

from roomview.modules.assets.models import (
    ProductAsset,
    AssetStatus,
    SceneRole,
    ReplacementRule,
    Surface,
    validate_asset_transition,
)
from roomview.modules.assets.repositories import AssetRepository

__all__ = [
    "ProductAsset",
    "AssetStatus",
    "SceneRole",
    "ReplacementRule",
    "Surface",
    "validate_asset_transition",
    "AssetRepository",
]
