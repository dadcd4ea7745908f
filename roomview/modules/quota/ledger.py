"""
Quota Ledger

Per-tenant, per-UTC-day counters with atomic admission.

Two ways to consume quota:

1. reserve(): one conditional UPDATE that increments count only while
   count + reserved + n <= limit. Used where the work is already done
   or cannot fail after admission.

2. admit() / commit_hold() / release_hold(): admission takes a hold
   (reserved += n) under the same condition, before any external call.
   Success moves the hold into count, failure drops it. A failed job
   never touches count and a successful one counts exactly once.

The ledger never commits; it runs inside the caller's transaction so a
job transition and its quota settlement land together.
"""

import datetime as dt
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, Mapping

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from roomview.core.config import settings
from roomview.core.logging import get_logger
from roomview.core.metrics import record_quota_decision
from roomview.core.timestamps import as_utc, utc_now
from roomview.modules.quota.models import QuotaCounter, QuotaCategory

logger = get_logger(__name__)


def utc_today(now: Optional[dt.datetime] = None) -> dt.date:
    return as_utc(now or utc_now()).date()


def seconds_until_utc_midnight(now: Optional[dt.datetime] = None) -> int:
    """Seconds until the quota day rolls over (at least 1)."""
    now = as_utc(now or utc_now())
    tomorrow = dt.datetime.combine(now.date() + dt.timedelta(days=1), dt.time.min, tzinfo=dt.timezone.utc)
    return max(1, int((tomorrow - now).total_seconds()))


@dataclass
class QuotaDecision:
    ok: bool
    category: str
    date: dt.date
    used: int
    limit: Optional[int]
    retry_after: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        return data


class PlanLimitResolver:
    """Resolves a tenant's daily limit per category.

    Settings provide the defaults; QUOTA_TENANT_OVERRIDES maps
    tenant -> {category: limit} for plans that differ.
    """

    def __init__(
        self,
        defaults: Optional[Mapping[str, Optional[int]]] = None,
        overrides: Optional[Mapping[str, Mapping[str, Optional[int]]]] = None
    ):
        if defaults is None:
            defaults = {
                QuotaCategory.COMPOSITE_RENDER.value: settings.QUOTA_DAILY_RENDER_LIMIT,
                QuotaCategory.CLEANUP_RUN.value: settings.QUOTA_DAILY_CLEANUP_LIMIT,
                QuotaCategory.PREP_RUN.value: settings.QUOTA_DAILY_PREP_LIMIT,
            }
        self.defaults = dict(defaults)
        self.overrides = dict(overrides if overrides is not None else settings.QUOTA_TENANT_OVERRIDES)

    def limit_for(self, tenant_id: str, category: str) -> Optional[int]:
        tenant_overrides = self.overrides.get(tenant_id, {})
        if category in tenant_overrides:
            return tenant_overrides[category]
        return self.defaults.get(category)


class QuotaLedger:
    """Atomic quota accounting on QuotaCounter rows."""

    def __init__(self, session: AsyncSession, limits: Optional[PlanLimitResolver] = None):
        self.session = session
        self.limits = limits or PlanLimitResolver()

    # =========================================================================
    # Internals
    # =========================================================================

    def _insert(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert(QuotaCounter)
        return sqlite_insert(QuotaCounter)

    async def _ensure_row(self, tenant_id: str, day: dt.date, category: str, limit: Optional[int]):
        stmt = self._insert().values(
            tenant_id=tenant_id,
            date=day,
            category=category,
            count=0,
            reserved=0,
            daily_limit=limit,
            updated_at=utc_now(),
        ).on_conflict_do_nothing(index_elements=["tenant_id", "date", "category"])
        await self.session.execute(stmt)

    def _row_filter(self, tenant_id: str, day: dt.date, category: str):
        return (
            QuotaCounter.tenant_id == tenant_id,
            QuotaCounter.date == day,
            QuotaCounter.category == category,
        )

    async def _read(self, tenant_id: str, day: dt.date, category: str) -> Optional[QuotaCounter]:
        result = await self.session.execute(
            select(QuotaCounter)
            .where(*self._row_filter(tenant_id, day, category))
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()

    async def _conditional_increment(
        self,
        tenant_id: str,
        category: str,
        n: int,
        now: Optional[dt.datetime],
        column: str
    ) -> QuotaDecision:
        if n < 1:
            raise ValueError("quota amount must be positive")

        day = utc_today(now)
        limit = self.limits.limit_for(tenant_id, category)
        await self._ensure_row(tenant_id, day, category, limit)

        stmt = update(QuotaCounter).where(*self._row_filter(tenant_id, day, category))
        if limit is not None:
            stmt = stmt.where(QuotaCounter.count + QuotaCounter.reserved + n <= limit)
        stmt = stmt.values(
            {
                column: getattr(QuotaCounter, column) + n,
                "daily_limit": limit,
                "updated_at": utc_now(),
            }
        ).execution_options(synchronize_session=False)

        result = await self.session.execute(stmt)
        ok = result.rowcount == 1

        counter = await self._read(tenant_id, day, category)
        used = (counter.count + counter.reserved) if counter else 0
        decision = QuotaDecision(
            ok=ok,
            category=category,
            date=day,
            used=used,
            limit=limit,
            retry_after=None if ok else seconds_until_utc_midnight(now),
        )

        record_quota_decision(category, "admitted" if ok else "rejected")
        if not ok:
            logger.info(
                "quota_rejected",
                tenant_id=tenant_id,
                category=category,
                used=used,
                limit=limit,
            )
        return decision

    # =========================================================================
    # Public API
    # =========================================================================

    async def reserve(
        self,
        tenant_id: str,
        category: str,
        n: int = 1,
        now: Optional[dt.datetime] = None
    ) -> QuotaDecision:
        """Consume n units outright if the limit allows."""
        return await self._conditional_increment(tenant_id, category, n, now, "count")

    async def admit(
        self,
        tenant_id: str,
        category: str,
        n: int = 1,
        now: Optional[dt.datetime] = None
    ) -> QuotaDecision:
        """Take an admission hold of n units if the limit allows."""
        return await self._conditional_increment(tenant_id, category, n, now, "reserved")

    async def commit_hold(self, tenant_id: str, category: str, day: dt.date, n: int = 1) -> bool:
        """Convert a hold into committed usage."""
        result = await self.session.execute(
            update(QuotaCounter)
            .where(*self._row_filter(tenant_id, day, category), QuotaCounter.reserved >= n)
            .values(
                reserved=QuotaCounter.reserved - n,
                count=QuotaCounter.count + n,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.error("quota_hold_missing", tenant_id=tenant_id, category=category, date=day.isoformat())
            return False
        return True

    async def release_hold(self, tenant_id: str, category: str, day: dt.date, n: int = 1) -> bool:
        """Drop a hold without counting usage."""
        result = await self.session.execute(
            update(QuotaCounter)
            .where(*self._row_filter(tenant_id, day, category), QuotaCounter.reserved >= n)
            .values(reserved=QuotaCounter.reserved - n, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.error("quota_hold_missing", tenant_id=tenant_id, category=category, date=day.isoformat())
            return False
        return True

    async def record(
        self,
        tenant_id: str,
        category: str,
        n: int = 1,
        now: Optional[dt.datetime] = None
    ):
        """Log usage without enforcing the limit."""
        day = utc_today(now)
        limit = self.limits.limit_for(tenant_id, category)
        await self._ensure_row(tenant_id, day, category, limit)
        await self.session.execute(
            update(QuotaCounter)
            .where(*self._row_filter(tenant_id, day, category))
            .values(count=QuotaCounter.count + n, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        record_quota_decision(category, "recorded")

    async def usage(self, tenant_id: str, day: Optional[dt.date] = None) -> Dict[str, Dict[str, Any]]:
        """Counters for one day, keyed by category. Missing rows read as zero."""
        day = day or utc_today()
        result = await self.session.execute(
            select(QuotaCounter)
            .where(QuotaCounter.tenant_id == tenant_id, QuotaCounter.date == day)
            .execution_options(populate_existing=True)
        )
        rows = {row.category: row for row in result.scalars().all()}

        usage = {}
        for category in QuotaCategory:
            row = rows.get(category.value)
            usage[category.value] = {
                "count": row.count if row else 0,
                "reserved": row.reserved if row else 0,
                "limit": self.limits.limit_for(tenant_id, category.value),
            }
        return usage
