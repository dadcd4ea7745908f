from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel
from roomview.core.config import settings

# Import ALL models to ensure they're registered with SQLModel.metadata
from roomview.modules.assets.models import ProductAsset
from roomview.modules.rooms.models import RoomSession
from roomview.modules.renders.models import RenderJob
from roomview.modules.quota.models import QuotaCounter


def _enable_sqlite_immediate_transactions(engine: AsyncEngine):
    """Make every SQLite transaction take the write lock up front.

    pysqlite's deferred BEGIN lets two writers both read, then deadlock on
    the lock upgrade. BEGIN IMMEDIATE plus the busy timeout serializes
    writers instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgres://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def async_database_url(database_url: str) -> str:
    """Swap a plain driver-less URL (as hosting platforms hand out) for its async driver."""
    for prefix, replacement in _ASYNC_DRIVERS.items():
        if database_url.startswith(prefix):
            return replacement + database_url[len(prefix):]
    return database_url



def build_engine(database_url: str, worker: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL.

    Celery workers run each task on a fresh event loop, so they get a
    NullPool engine. SQLite always uses NullPool; connections are cheap and
    must not be shared across transactions.
    """
    database_url = async_database_url(database_url)
    kwargs = {"echo": False, "future": True}
    is_sqlite = database_url.startswith("sqlite")

    if is_sqlite:
        kwargs["connect_args"] = {"timeout": settings.SQLITE_BUSY_TIMEOUT}
    if is_sqlite or worker:
        kwargs["poolclass"] = NullPool

    engine = create_async_engine(database_url, **kwargs)
    if is_sqlite:
        _enable_sqlite_immediate_transactions(engine)
    return engine


def build_session_maker(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# Create async engine
engine = build_engine(settings.DATABASE_URL)

# Create async session factory
async_session_maker = build_session_maker(engine)


async def create_db_and_tables(bind: AsyncEngine = None):
    """Create all tables if they don't exist.

    Uses checkfirst=True to avoid errors when tables already exist.
    """
    bind = bind or engine
    async with bind.begin() as conn:
        await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, checkfirst=True))


__all__ = [
    "engine",
    "async_session_maker",
    "async_database_url",
    "build_engine",
    "build_session_maker",
    "create_db_and_tables",
    "ProductAsset",
    "RoomSession",
    "RenderJob",
    "QuotaCounter",
]
