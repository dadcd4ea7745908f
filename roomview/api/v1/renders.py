"""
Render Endpoints - Composite Renders

POST /api/v1/renders           - Admit and queue a render (201, or 429 over quota)
GET  /api/v1/renders/{job_id}  - Poll status; output URL signed per read
"""

from typing import Optional, Dict, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from roomview.api.dependencies import get_render_orchestrator, get_job_status_service, get_tenant_id
from roomview.pipeline.render import RenderOrchestrator
from roomview.pipeline.status import JobStatusService, JobView

router = APIRouter()


class PlacementRequest(BaseModel):
    """Normalized to the room image; range checks happen in the orchestrator."""
    x: float
    y: float
    scale: float


class RenderSubmitRequest(BaseModel):
    session_id: str
    product_id: Optional[str] = None
    product_image_ref: Optional[str] = None
    placement: PlacementRequest
    config: Dict[str, Any] = Field(default_factory=dict)


class RenderSubmitResponse(BaseModel):
    job_id: str
    status: str
    quota_date: str


@router.post("", status_code=201, response_model=RenderSubmitResponse)
async def submit_render(
    request: RenderSubmitRequest,
    tenant_id: str = Depends(get_tenant_id),
    orchestrator: RenderOrchestrator = Depends(get_render_orchestrator)
):
    job = await orchestrator.submit(
        tenant_id,
        request.session_id,
        placement=request.placement.model_dump(),
        product_id=request.product_id,
        product_image_ref=request.product_image_ref,
        config=request.config
    )
    return RenderSubmitResponse(job_id=job.id, status=job.status, quota_date=job.quota_date.isoformat())


@router.get("/{job_id}", response_model=JobView)
async def get_render_status(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    status_service: JobStatusService = Depends(get_job_status_service)
):
    return await status_service.get(job_id, tenant_id)
