"""
API v1 Router Module

All v1 endpoints are prefixed with /api/v1/

- /assets   - merchant product preparation and go-live toggle
- /rooms    - shopper room uploads and object-removal cleanup
- /renders  - composite render submission and status polling
- /usage    - per-tenant daily quota counters
- /storage  - signed-URL target for local storage
- /metrics  - Prometheus
"""

from fastapi import APIRouter

from roomview.api.v1.assets import router as assets_router
from roomview.api.v1.rooms import router as rooms_router
from roomview.api.v1.renders import router as renders_router
from roomview.api.v1.usage import router as usage_router
from roomview.api.v1.storage import router as storage_router
from roomview.api.v1.metrics import router as metrics_router

# Main v1 router
api_v1_router = APIRouter(prefix="/api/v1")

api_v1_router.include_router(assets_router, prefix="/assets", tags=["assets"])
api_v1_router.include_router(rooms_router, prefix="/rooms", tags=["rooms"])
api_v1_router.include_router(renders_router, prefix="/renders", tags=["renders"])
api_v1_router.include_router(usage_router, tags=["usage"])
api_v1_router.include_router(storage_router, prefix="/storage", tags=["storage"])
api_v1_router.include_router(metrics_router, tags=["metrics"])
