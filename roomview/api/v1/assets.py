"""
Asset Endpoints - Merchant Product Preparation

POST /api/v1/assets                        - Request preparation (idempotent)
GET  /api/v1/assets/{product_id}           - Current asset state
POST /api/v1/assets/{product_id}/enable    - ready -> live
POST /api/v1/assets/{product_id}/disable   - live -> ready
GET  /api/v1/assets/{product_id}/live      - Shopper-facing availability
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from roomview.api.dependencies import get_asset_pipeline, get_tenant_id
from roomview.core.logging import get_logger
from roomview.pipeline.prepare import AssetPreparationPipeline

logger = get_logger(__name__)
router = APIRouter()


class AssetSubmitRequest(BaseModel):
    product_id: str = Field(..., min_length=1, max_length=255)
    source_image_ref: str = Field(..., min_length=1, description="URL or storage key of the product photo")
    product_title: Optional[str] = Field(default=None, max_length=500)


@router.post("", status_code=202)
async def submit_asset(
    request: AssetSubmitRequest,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AssetPreparationPipeline = Depends(get_asset_pipeline)
):
    """
    Request background removal for a product photo.

    Resubmitting a ready or live product is a no-op; resubmitting a failed
    one starts over with a fresh retry budget.
    """
    asset = await pipeline.submit(
        tenant_id,
        request.product_id,
        request.source_image_ref,
        product_title=request.product_title
    )
    return asset.to_response_dict()


@router.get("/{product_id}")
async def get_asset(
    product_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AssetPreparationPipeline = Depends(get_asset_pipeline)
):
    asset = await pipeline.get(tenant_id, product_id)
    return asset.to_response_dict()


@router.post("/{product_id}/enable")
async def enable_asset(
    product_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AssetPreparationPipeline = Depends(get_asset_pipeline)
):
    asset = await pipeline.set_enabled(tenant_id, product_id, True)
    return asset.to_response_dict()


@router.post("/{product_id}/disable")
async def disable_asset(
    product_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AssetPreparationPipeline = Depends(get_asset_pipeline)
):
    asset = await pipeline.set_enabled(tenant_id, product_id, False)
    return asset.to_response_dict()


@router.get("/{product_id}/live")
async def asset_is_live(
    product_id: str,
    tenant_id: str = Depends(get_tenant_id),
    pipeline: AssetPreparationPipeline = Depends(get_asset_pipeline)
):
    return {"product_id": product_id, "live": await pipeline.is_live(tenant_id, product_id)}
