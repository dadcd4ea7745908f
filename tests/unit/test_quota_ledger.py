import asyncio
import datetime as dt

import pytest

from roomview.core.timestamps import utc_now
from roomview.modules.quota.ledger import (
    PlanLimitResolver,
    QuotaLedger,
    seconds_until_utc_midnight,
    utc_today,
)
from roomview.modules.quota.models import QuotaCategory
from tests.support import limits

RENDER = QuotaCategory.COMPOSITE_RENDER.value


async def _admit(session_factory, resolver, tenant="tenant-a", category=RENDER):
    async with session_factory() as session:
        decision = await QuotaLedger(session, resolver).admit(tenant, category)
        await session.commit()
        return decision


async def _usage(session_factory, resolver, tenant="tenant-a"):
    async with session_factory() as session:
        return await QuotaLedger(session, resolver).usage(tenant)


def test_seconds_until_utc_midnight():
    now = dt.datetime(2026, 3, 1, 23, 59, 30)
    assert seconds_until_utc_midnight(now) == 30
    assert seconds_until_utc_midnight(dt.datetime(2026, 3, 1, 0, 0, 0)) == 86400


def test_plan_limit_resolver_prefers_tenant_override():
    resolver = PlanLimitResolver(
        defaults={RENDER: 10},
        overrides={"enterprise": {RENDER: 500}, "unlimited": {RENDER: None}}
    )
    assert resolver.limit_for("starter", RENDER) == 10
    assert resolver.limit_for("enterprise", RENDER) == 500
    assert resolver.limit_for("unlimited", RENDER) is None


@pytest.mark.asyncio
async def test_admit_rejects_at_limit(session_factory):
    resolver = limits(render=2)

    first = await _admit(session_factory, resolver)
    second = await _admit(session_factory, resolver)
    third = await _admit(session_factory, resolver)

    assert first.ok and second.ok
    assert not third.ok
    assert third.used == 2
    assert third.limit == 2
    assert 0 < third.retry_after <= 86400
    assert third.date == utc_today()


@pytest.mark.asyncio
@pytest.mark.parametrize("n", [2, 10, 100])
async def test_concurrent_admissions_never_exceed_limit(session_factory, n):
    limit = max(1, n // 2)
    resolver = limits(render=limit)

    decisions = await asyncio.gather(*(_admit(session_factory, resolver) for _ in range(n)))

    assert sum(1 for d in decisions if d.ok) == limit
    usage = await _usage(session_factory, resolver)
    assert usage[RENDER]["count"] + usage[RENDER]["reserved"] == limit


@pytest.mark.asyncio
@pytest.mark.parametrize("n", [2, 10, 100])
async def test_concurrent_reserves_at_last_unit_admit_exactly_one(session_factory, n):
    limit = 5
    resolver = limits(render=limit)
    async with session_factory() as session:
        await QuotaLedger(session, resolver).record("tenant-a", RENDER, n=limit - 1)
        await session.commit()

    async def reserve():
        async with session_factory() as session:
            decision = await QuotaLedger(session, resolver).reserve("tenant-a", RENDER)
            await session.commit()
            return decision

    decisions = await asyncio.gather(*(reserve() for _ in range(n)))

    assert sum(1 for d in decisions if d.ok) == 1
    assert all(d.retry_after > 0 for d in decisions if not d.ok)
    usage = await _usage(session_factory, resolver)
    assert usage[RENDER] == {"count": limit, "reserved": 0, "limit": limit}


@pytest.mark.asyncio
async def test_commit_and_release_holds(session_factory):
    resolver = limits(render=1)
    decision = await _admit(session_factory, resolver)
    assert decision.ok

    # Released hold frees the slot without counting usage
    async with session_factory() as session:
        assert await QuotaLedger(session, resolver).release_hold("tenant-a", RENDER, decision.date)
        await session.commit()
    usage = await _usage(session_factory, resolver)
    assert usage[RENDER] == {"count": 0, "reserved": 0, "limit": 1}

    decision = await _admit(session_factory, resolver)
    assert decision.ok
    async with session_factory() as session:
        assert await QuotaLedger(session, resolver).commit_hold("tenant-a", RENDER, decision.date)
        await session.commit()

    usage = await _usage(session_factory, resolver)
    assert usage[RENDER] == {"count": 1, "reserved": 0, "limit": 1}
    assert not (await _admit(session_factory, resolver)).ok


@pytest.mark.asyncio
async def test_settling_a_missing_hold_is_refused(session_factory):
    resolver = limits()
    async with session_factory() as session:
        ledger = QuotaLedger(session, resolver)
        assert not await ledger.commit_hold("tenant-a", RENDER, utc_today())
        assert not await ledger.release_hold("tenant-a", RENDER, utc_today())


@pytest.mark.asyncio
async def test_reserve_counts_immediately(session_factory):
    resolver = limits(cleanup=1)
    category = QuotaCategory.CLEANUP_RUN.value

    async with session_factory() as session:
        ledger = QuotaLedger(session, resolver)
        assert (await ledger.reserve("tenant-a", category)).ok
        assert not (await ledger.reserve("tenant-a", category)).ok
        await session.commit()

    usage = await _usage(session_factory, resolver)
    assert usage[category]["count"] == 1


@pytest.mark.asyncio
async def test_record_ignores_limit_and_usage_defaults_to_zero(session_factory):
    resolver = limits(prep=1)
    prep = QuotaCategory.PREP_RUN.value

    async with session_factory() as session:
        ledger = QuotaLedger(session, resolver)
        await ledger.record("tenant-a", prep)
        await ledger.record("tenant-a", prep)
        await session.commit()

    usage = await _usage(session_factory, resolver)
    assert usage[prep]["count"] == 2
    assert usage[RENDER] == {"count": 0, "reserved": 0, "limit": 100}


@pytest.mark.asyncio
async def test_counters_are_per_tenant_and_per_day(session_factory):
    resolver = limits(render=1)
    yesterday = utc_now() - dt.timedelta(days=1)

    async with session_factory() as session:
        ledger = QuotaLedger(session, resolver)
        assert (await ledger.admit("tenant-a", RENDER, now=yesterday)).ok
        assert (await ledger.admit("tenant-a", RENDER)).ok
        assert (await ledger.admit("tenant-b", RENDER)).ok
        await session.commit()


@pytest.mark.asyncio
async def test_amount_must_be_positive(session_factory):
    async with session_factory() as session:
        with pytest.raises(ValueError):
            await QuotaLedger(session, limits()).admit("tenant-a", RENDER, n=0)
