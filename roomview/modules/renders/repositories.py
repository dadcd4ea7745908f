"""
Render Job Repository

Compare-and-set transitions for RenderJob. Callers own the transaction.
"""

from datetime import datetime
from typing import Optional, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from roomview.modules.renders.models import (
    RenderJob,
    RenderStatus,
    validate_render_transition,
)


class RenderJobRepository:
    """Repository for RenderJob rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, job: RenderJob) -> RenderJob:
        self.session.add(job)
        await self.session.flush()
        return job

    async def get(self, job_id: str) -> Optional[RenderJob]:
        return await self.session.get(RenderJob, job_id, populate_existing=True)

    async def _transition(self, job_id: str, expected: RenderStatus, target: RenderStatus, **values) -> bool:
        validate_render_transition(expected.value, target.value)
        result = await self.session.execute(
            update(RenderJob)
            .where(RenderJob.id == job_id, RenderJob.status == expected.value)
            .values(status=target.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def start(self, job_id: str, now: datetime) -> bool:
        """queued -> processing. False if someone else already started it."""
        return await self._transition(
            job_id,
            RenderStatus.QUEUED,
            RenderStatus.PROCESSING,
            started_at=now,
            updated_at=now,
        )

    async def complete(self, job_id: str, output_key: str, now: datetime) -> bool:
        return await self._transition(
            job_id,
            RenderStatus.PROCESSING,
            RenderStatus.COMPLETED,
            output_storage_key=output_key,
            quota_held=False,
            error_message=None,
            error_code=None,
            completed_at=now,
            updated_at=now,
        )

    async def fail(self, job_id: str, error_code: str, error_message: str, now: datetime) -> bool:
        return await self._transition(
            job_id,
            RenderStatus.PROCESSING,
            RenderStatus.FAILED,
            error_code=error_code,
            error_message=error_message,
            quota_held=False,
            completed_at=now,
            updated_at=now,
        )

    async def record_attempt(self, job_id: str, now: datetime):
        await self.session.execute(
            update(RenderJob)
            .where(RenderJob.id == job_id, RenderJob.status == RenderStatus.PROCESSING.value)
            .values(attempt_count=RenderJob.attempt_count + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    async def list_stale(self, status: RenderStatus, older_than: datetime, limit: int) -> List[RenderJob]:
        """Jobs stuck in a non-terminal status since before older_than."""
        result = await self.session.execute(
            select(RenderJob)
            .where(RenderJob.status == status.value, RenderJob.updated_at < older_than)
            .order_by(RenderJob.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())
