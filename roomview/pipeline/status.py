"""
Job Status Service

Read-only view of a render job for polling clients. Output URLs are signed
fresh on every read; only storage keys are ever persisted.
"""

from typing import Optional

from pydantic import BaseModel

from roomview.core.exceptions import NotFoundError, StorageError
from roomview.core.logging import get_logger
from roomview.core.storage import IStorage
from roomview.modules.renders.models import RenderJob, RenderStatus
from roomview.modules.renders.repositories import RenderJobRepository

logger = get_logger(__name__)


class JobView(BaseModel):
    """What a polling client sees."""
    job_id: str
    status: str
    output_key: Optional[str] = None
    output_url: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempt_count: int = 0
    created_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


class JobStatusService:

    def __init__(self, session_factory, storage: IStorage):
        self.session_factory = session_factory
        self.storage = storage

    async def get(self, job_id: str, tenant_id: Optional[str] = None) -> JobView:
        async with self.session_factory() as session:
            job = await RenderJobRepository(session).get(job_id)
        if job is None or (tenant_id is not None and job.tenant_id != tenant_id):
            raise NotFoundError("render_job", job_id)
        return await self._view(job)

    async def _view(self, job: RenderJob) -> JobView:
        output_url = None
        if job.status == RenderStatus.COMPLETED.value and job.output_storage_key:
            try:
                output_url = await self.storage.signed_read_url(job.output_storage_key)
            except StorageError as e:
                # Status stays readable; the client can poll again for a URL
                logger.warning("output_url_signing_failed", render_job_id=job.id, error=str(e))

        return JobView(
            job_id=job.id,
            status=job.status,
            output_key=job.output_storage_key,
            output_url=output_url,
            error=job.error_message,
            error_code=job.error_code,
            attempt_count=job.attempt_count,
            created_at=_iso(job.created_at) or "",
            started_at=_iso(job.started_at),
            completed_at=_iso(job.completed_at),
            updated_at=_iso(job.updated_at),
        )
