"""Transaction scopes over the cache database.

Writers share the engine manager's lock so that only one write transaction
is open at a time; readers take no lock and get a snapshot of the last
committed state.
"""

import asyncio
import time
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from mailmirror.utils.errors import DatabaseTransactionError
from mailmirror.utils.logging import get_logger

from .config import get_config

logger = get_logger(__name__)


class TransactionManager:
    """``async with`` scope that commits on success and rolls back on error.

    Driver errors raised inside the block surface as
    :class:`DatabaseTransactionError`; other exceptions propagate unchanged
    after the rollback. A transaction that outlives ``timeout`` is rolled
    back instead of committed.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        timeout: Optional[float] = None,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.engine = engine
        self.config = get_config()
        self.timeout = timeout or self.config.transaction_timeout
        self._lock = lock
        self._connection: Optional[AsyncConnection] = None
        self._transaction = None
        self._started = 0.0

    @property
    def connection(self) -> AsyncConnection:
        if self._connection is None:
            raise RuntimeError("No connection outside the transaction block")
        return self._connection

    async def __aenter__(self) -> "TransactionManager":
        if self._lock is not None:
            await self._lock.acquire()

        self._started = time.monotonic()
        try:
            self._connection = await self.engine.connect()
            self._transaction = await self._connection.begin()
        except Exception as e:
            await self._close()
            raise DatabaseTransactionError(
                "Could not open a cache transaction", details={"error": str(e)}
            ) from e

        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        elapsed = time.monotonic() - self._started

        try:
            if exc_type is not None:
                await self._transaction.rollback()
                logger.warning(
                    f"Transaction rolled back after {elapsed:.2f}s: "
                    f"{exc_type.__name__}: {exc_val}"
                )
                if issubclass(exc_type, SQLAlchemyError):
                    raise DatabaseTransactionError(
                        f"Local storage operation failed: {exc_val}",
                        details={"error_type": exc_type.__name__},
                    ) from exc_val
                return False

            if elapsed > self.timeout:
                await self._transaction.rollback()
                raise DatabaseTransactionError(
                    f"Transaction took {elapsed:.2f}s, over the {self.timeout}s limit",
                    details={"timeout": self.timeout, "duration": elapsed},
                )

            try:
                await self._transaction.commit()
            except SQLAlchemyError as e:
                raise DatabaseTransactionError(
                    "Failed to commit cache transaction", details={"error": str(e)}
                ) from e

            if self.config.log_slow_queries and elapsed > self.config.slow_query_threshold:
                logger.warning(f"Slow cache transaction: {elapsed:.2f}s")
            return False

        finally:
            await self._close()

    async def _close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
        if self._lock is not None and self._lock.locked():
            self._lock.release()


class ReadOnlyTransactionManager(TransactionManager):
    """One consistent view of the cache, always rolled back."""

    def __init__(self, engine: AsyncEngine, timeout: Optional[float] = None):
        super().__init__(engine, timeout=timeout, lock=None)

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        try:
            await self._transaction.rollback()
        finally:
            await self._close()

        if exc_type is not None and issubclass(exc_type, SQLAlchemyError):
            raise DatabaseTransactionError(
                f"Local read failed: {exc_val}",
                details={"error_type": exc_type.__name__},
            ) from exc_val
        return False
