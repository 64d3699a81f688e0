from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from app.config import settings

# Ensure we use the async driver regardless of how the URL is provided
db_url = settings.DATABASE_URL.replace("postgresql://", "postgresql+asyncpg://")
is_sqlite = db_url.startswith("sqlite")

engine = create_async_engine(
    db_url,
    echo=False,
    **({"poolclass": NullPool} if is_sqlite else {"pool_pre_ping": True}),
)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


if is_sqlite:
    # Take the write lock up front so a second writer waits on the busy
    # timeout instead of failing a SHARED -> RESERVED lock upgrade.
    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def dialect_insert(session: AsyncSession):
    """Return the dialect-specific ``insert`` that supports ON CONFLICT."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite.insert
    return postgresql.insert


async def get_db():
    async with AsyncSessionLocal() as session:
        yield session
