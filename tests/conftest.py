from typing import AsyncGenerator, List

import pytest
from httpx import AsyncClient, ASGITransport

from roomview.core.database import build_engine, build_session_maker, create_db_and_tables
from roomview.core.events import EventBus
from roomview.core.exceptions import circuit_breakers
from roomview.core.storage import LocalStorage
from tests.support import FakeAIAdapter, FakeRedis, EventCollector, limits


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    for breaker in circuit_breakers.values():
        breaker.reset()
    yield


@pytest.fixture
async def engine(tmp_path):
    # File-backed so every connection sees the same database
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'roomview-test.db'}")
    await create_db_and_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_maker(engine)


@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(
        base_path=str(tmp_path / "storage"),
        signing_secret="test-secret",
        public_base_url="http://test"
    )


@pytest.fixture
def adapter() -> FakeAIAdapter:
    return FakeAIAdapter()


@pytest.fixture
def collector() -> EventCollector:
    return EventCollector()


@pytest.fixture
def bus(collector) -> EventBus:
    bus = EventBus()
    bus.subscribe(collector)
    return bus


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def dispatched() -> List[str]:
    return []


@pytest.fixture
async def client(session_factory, storage, adapter, bus, fake_redis, dispatched) -> AsyncGenerator[AsyncClient, None]:
    from roomview.main import app
    from roomview.api import dependencies
    from roomview.core.rate_limit import SessionRateLimiter
    from roomview.core.storage import get_storage
    from roomview.core.events import get_event_bus
    from roomview.engines.ai.providers import get_ai_adapter
    from roomview.pipeline.render import RenderOrchestrator

    app.state.redis = fake_redis
    app.dependency_overrides[dependencies.get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_ai_adapter] = lambda: adapter
    app.dependency_overrides[get_event_bus] = lambda: bus
    app.dependency_overrides[dependencies.get_rate_limiter] = lambda: SessionRateLimiter(fake_redis, 5, 60)
    app.dependency_overrides[dependencies.get_render_orchestrator] = lambda: RenderOrchestrator(
        session_factory,
        storage,
        adapter,
        limits=limits(render=2),
        bus=bus,
        rate_limiter=SessionRateLimiter(fake_redis, 5, 60),
        dispatcher=dispatched.append,
        retry_base_delay=0
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
