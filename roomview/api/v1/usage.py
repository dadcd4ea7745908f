"""
Usage Endpoint

GET /api/v1/usage - Today's (UTC) quota counters for the calling tenant
"""

from fastapi import APIRouter, Depends

from roomview.api.dependencies import get_session_factory, get_tenant_id
from roomview.modules.quota.ledger import QuotaLedger, utc_today

router = APIRouter()


@router.get("/usage")
async def get_usage(
    tenant_id: str = Depends(get_tenant_id),
    session_factory=Depends(get_session_factory)
):
    day = utc_today()
    async with session_factory() as session:
        usage = await QuotaLedger(session).usage(tenant_id, day)
    return {"tenant_id": tenant_id, "date": day.isoformat(), "usage": usage}
