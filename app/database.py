from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlmodel import SQLModel
from app.config import settings

# Table models must be imported so they register on SQLModel.metadata
from app.models import fleet, route, location, ridership, incident, shift  # noqa: F401

def enable_sqlite_savepoints(async_engine: AsyncEngine):
    """
    Let SQLAlchemy own BEGIN on SQLite so SAVEPOINT (begin_nested) works;
    the driver's own transaction handling breaks it.
    """
    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DATABASE_ECHO,
    future=True
)

if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)

# Create async session maker
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

# Create tables
async def create_db_and_tables():
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
