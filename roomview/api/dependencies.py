"""
FastAPI Dependencies

Provides dependency injection for:
- Session factory (services open their own short transactions)
- Storage and AI adapter singletons
- Redis-backed per-session rate limiter (client from app state)
- Pipeline services, built per request
- Tenant resolution from the X-Tenant-ID header
"""

from typing import Optional

from fastapi import Depends, Header, Request

from roomview.core.config import settings
from roomview.core.database import async_session_maker
from roomview.core.events import EventBus, get_event_bus
from roomview.core.exceptions import InvalidInputError
from roomview.core.rate_limit import SessionRateLimiter
from roomview.core.storage import IStorage, get_storage
from roomview.engines.ai.providers import IAIAdapter, get_ai_adapter
from roomview.pipeline.prepare import AssetPreparationPipeline
from roomview.pipeline.render import RenderOrchestrator
from roomview.pipeline.rooms import RoomService
from roomview.pipeline.status import JobStatusService


# =============================================================================
# Infrastructure
# =============================================================================

def get_session_factory():
    """Returns the process-wide async session factory."""
    return async_session_maker


def get_rate_limiter(request: Request) -> Optional[SessionRateLimiter]:
    """Returns a rate limiter over the Redis client in app state, if any."""
    redis_client = getattr(request.app.state, "redis", None)
    if not settings.RATE_LIMIT_ENABLED or redis_client is None:
        return None
    return SessionRateLimiter(
        redis_client,
        settings.RATE_LIMIT_MAX_REQUESTS,
        settings.RATE_LIMIT_WINDOW_SECONDS
    )


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    """Every tenant-scoped endpoint requires X-Tenant-ID."""
    if not x_tenant_id or not x_tenant_id.strip():
        raise InvalidInputError("X-Tenant-ID header is required", field="X-Tenant-ID")
    return x_tenant_id.strip()


# =============================================================================
# Pipeline Services
# =============================================================================

def get_asset_pipeline(
    session_factory=Depends(get_session_factory),
    storage: IStorage = Depends(get_storage),
    adapter: IAIAdapter = Depends(get_ai_adapter),
    bus: EventBus = Depends(get_event_bus),
) -> AssetPreparationPipeline:
    return AssetPreparationPipeline(session_factory, storage, adapter, bus=bus)


def get_room_service(
    session_factory=Depends(get_session_factory),
    storage: IStorage = Depends(get_storage),
    adapter: IAIAdapter = Depends(get_ai_adapter),
    bus: EventBus = Depends(get_event_bus),
    rate_limiter: Optional[SessionRateLimiter] = Depends(get_rate_limiter),
) -> RoomService:
    return RoomService(session_factory, storage, adapter, bus=bus, rate_limiter=rate_limiter)


def get_render_orchestrator(
    session_factory=Depends(get_session_factory),
    storage: IStorage = Depends(get_storage),
    adapter: IAIAdapter = Depends(get_ai_adapter),
    bus: EventBus = Depends(get_event_bus),
    rate_limiter: Optional[SessionRateLimiter] = Depends(get_rate_limiter),
) -> RenderOrchestrator:
    return RenderOrchestrator(session_factory, storage, adapter, bus=bus, rate_limiter=rate_limiter)


def get_job_status_service(
    session_factory=Depends(get_session_factory),
    storage: IStorage = Depends(get_storage),
) -> JobStatusService:
    return JobStatusService(session_factory, storage)
