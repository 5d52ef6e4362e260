"""
Preference database.

Only per-user notification preferences are stored here. Queues, rate-limit
windows and metrics belong to the backing store (herald.stores).

SQLite connections run in WAL mode with a busy timeout so preference reads
are never blocked by a concurrent update; close_db() checkpoints the log.
"""
import sqlite3
from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from loguru import logger

from herald.config import settings
from herald.constants import SQLITE_BUSY_TIMEOUT_MS

# NullPool: aiosqlite connections are cheap and must not cross event loops
engine = create_async_engine(settings.database_url, echo=settings.debug, poolclass=NullPool)

AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

Base = declarative_base()


@event.listens_for(Engine, "connect")
def configure_sqlite_connection(dbapi_conn, connection_record):
    if not isinstance(dbapi_conn, sqlite3.Connection):
        return
    cursor = dbapi_conn.cursor()
    for pragma in ("journal_mode=WAL", f"busy_timeout={SQLITE_BUSY_TIMEOUT_MS}", "synchronous=NORMAL"):
        cursor.execute(f"PRAGMA {pragma}")
    cursor.close()


async def init_db():
    """Create the preference table if it does not exist."""
    # Importing registers the models on Base.metadata
    from herald import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug(f"Preference tables ready ({engine.url.get_backend_name()})")


async def close_db():
    """Checkpoint the SQLite write-ahead log and dispose of the engine."""
    if engine.url.get_backend_name() == "sqlite":
        try:
            async with engine.begin() as conn:
                await conn.execute(text("PRAGMA wal_checkpoint(TRUNCATE)"))
        except Exception as e:
            logger.warning(f"WAL checkpoint failed: {e}")
    await engine.dispose()
