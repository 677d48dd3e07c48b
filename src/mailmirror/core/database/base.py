"""Async SQLite engine for the mailbox cache."""

from pathlib import Path
from typing import Optional

from sqlalchemy import MetaData, event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from mailmirror.utils.logging import get_logger

from .config import DatabaseConfig, get_config

logger = get_logger(__name__)

metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "pk": "pk_%(table_name)s",
    }
)

CACHE_PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    "PRAGMA journal_mode=WAL",
    # An acknowledged change must survive power loss, not just a crash
    "PRAGMA synchronous=FULL",
    "PRAGMA temp_store=MEMORY",
)


def create_engine(db_path: Path, config: Optional[DatabaseConfig] = None) -> AsyncEngine:
    """Create the pooled aiosqlite engine for ``db_path``.

    WAL lets snapshot reads run while the sync engine writes. The driver's
    implicit transaction handling is disabled so that every ``begin()``
    issues a real ``BEGIN`` and a read transaction sees one consistent state.
    """
    config = config or get_config()
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=config.echo,
        poolclass=AsyncAdaptedQueuePool,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout,
        pool_recycle=config.pool_recycle,
        pool_pre_ping=True,
        connect_args={"timeout": config.query_timeout, "check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        for pragma in CACHE_PRAGMAS:
            cursor.execute(pragma)
        cursor.close()
        dbapi_conn.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    logger.info(f"Cache database engine created for {db_path} (pool_size={config.pool_size})")
    return engine


async def dispose_engine(engine: AsyncEngine) -> None:
    await engine.dispose()
    logger.info("Cache database engine disposed")
