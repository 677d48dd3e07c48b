"""Owns the cache database engine and hands out transactions."""

import asyncio
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from mailmirror.utils.errors import DatabaseConnectionError
from mailmirror.utils.logging import get_logger

from .base import create_engine, dispose_engine, metadata
from .config import DatabaseConfig, get_config
from .transaction import ReadOnlyTransactionManager, TransactionManager

logger = get_logger(__name__)


class EngineManager:
    """Lazily creates the engine for one database file.

    The local store and the change queue share one manager, and therefore
    one :attr:`write_lock`, so their write transactions never interleave.
    """

    def __init__(self, db_path: Path, config: Optional[DatabaseConfig] = None) -> None:
        self.db_path = Path(db_path)
        self.config = config or get_config()

        self._engine: Optional[AsyncEngine] = None
        self._engine_lock = asyncio.Lock()
        self.write_lock = asyncio.Lock()
        self._schema_ready = False

    async def get_engine(self) -> AsyncEngine:
        """Return the engine, creating it on first use.

        Raises:
            DatabaseConnectionError: The engine could not be created
        """
        async with self._engine_lock:
            if self._engine is None:
                try:
                    self._engine = create_engine(self.db_path, config=self.config)
                except Exception as e:
                    raise DatabaseConnectionError(
                        "Failed to open the mailbox cache",
                        details={"db_path": str(self.db_path), "error": str(e)},
                    ) from e

        return self._engine

    async def create_schema(self) -> None:
        if self._schema_ready:
            return

        async with self.transaction() as tx:
            await tx.connection.run_sync(metadata.create_all)

        self._schema_ready = True
        logger.info(f"Cache schema ready in {self.db_path}")

    @asynccontextmanager
    async def transaction(
        self, timeout: Optional[float] = None
    ) -> AsyncIterator[TransactionManager]:
        """Serialised write transaction.

        Usage:
            async with manager.transaction() as tx:
                await tx.connection.execute(query)
        """
        engine = await self.get_engine()
        async with TransactionManager(engine, timeout=timeout, lock=self.write_lock) as tx:
            yield tx

    @asynccontextmanager
    async def readonly(
        self, timeout: Optional[float] = None
    ) -> AsyncIterator[ReadOnlyTransactionManager]:
        engine = await self.get_engine()
        async with ReadOnlyTransactionManager(engine, timeout=timeout) as tx:
            yield tx

    async def close(self) -> None:
        """Dispose of the engine; the next transaction reopens it."""
        if self._engine is None:
            return

        try:
            await dispose_engine(self._engine)
        except Exception as e:
            logger.error(f"Error disposing cache engine: {e}")
        finally:
            self._engine = None
            self._schema_ready = False
