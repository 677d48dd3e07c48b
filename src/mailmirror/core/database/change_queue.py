"""Durable FIFO of local mutations awaiting remote confirmation.

Rows live in the ``pending_changes`` table of the mailbox database, so the
queue survives restarts and the local store can replay outstanding changes
inside its own transactions. Confirmed changes are deleted; permanently
failed ones stay behind with status ``failed`` until acknowledged.
"""

from typing import AsyncIterator, Awaitable, Callable, List, Optional, Set

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncConnection

from mailmirror.core.models.change import ChangeStatus, Mutation, PendingChange
from mailmirror.utils.errors import MessageNotFoundError
from mailmirror.utils.logging import get_logger, log_event

from .engine_manager import EngineManager
from .models import pending_changes
from .utils import row_to_pending_change, to_iso, utcnow

logger = get_logger(__name__)

QueuedHook = Callable[[AsyncConnection, PendingChange], Awaitable[None]]


async def load_outstanding(
    conn: AsyncConnection, message_id: Optional[str] = None
) -> List[PendingChange]:
    """Pending (not failed) changes in sequence order, read on ``conn``."""
    query = select(pending_changes).where(
        pending_changes.c.status == ChangeStatus.PENDING.value
    )
    if message_id is not None:
        query = query.where(pending_changes.c.message_id == message_id)

    rows = (await conn.execute(query.order_by(pending_changes.c.id))).all()
    return [row_to_pending_change(row) for row in rows]


async def delete_change(conn: AsyncConnection, change_id: int) -> None:
    await conn.execute(delete(pending_changes).where(pending_changes.c.id == change_id))


class ChangeQueue:
    """Ordered, coalescing, durable queue of pending changes."""

    def __init__(self, engine_manager: EngineManager):
        self._engine = engine_manager
        # Changes handed out by drain() and not yet settled
        self._in_flight: Set[int] = set()

    async def initialise(self) -> None:
        await self._engine.create_schema()

    async def enqueue(
        self, mutation: Mutation, on_queued: Optional[QueuedHook] = None
    ) -> PendingChange:
        """Append a change, coalescing it with an earlier pending one.

        Outstanding changes for the message are searched newest first for
        one whose order relative to ``mutation`` matters (see
        :meth:`Mutation.overlaps`). The first such change decides:

        - an identical change is returned as is (nothing appended)
        - an exact inverse (adding and removing the same label) is removed
          and the new change comes back with status ``CANCELLED``
        - anything else, or a change already in flight, ends the search and
          the new change is appended

        ``on_queued(conn, change)`` runs on the same connection before the
        commit, so state derived from the queue changes atomically with it.
        """
        await self.initialise()

        async with self._engine.transaction() as tx:
            conn = tx.connection
            change = await self._coalesce(conn, mutation)
            if change is None:
                change = await self._append(conn, mutation)
            if on_queued is not None:
                await on_queued(conn, change)

        return change

    async def _coalesce(
        self, conn: AsyncConnection, mutation: Mutation
    ) -> Optional[PendingChange]:
        for earlier in reversed(await load_outstanding(conn, mutation.message_id)):
            if not earlier.mutation.overlaps(mutation):
                continue

            if earlier.id in self._in_flight:
                return None

            if earlier.mutation.duplicates(mutation):
                logger.debug(f"Coalesced duplicate into {earlier.describe()}")
                return earlier

            if mutation.is_inverse_of(earlier.mutation):
                await delete_change(conn, earlier.id)
                logger.debug(f"Cancelled {earlier.describe()} against its inverse")
                return PendingChange(
                    id=earlier.id, mutation=mutation, status=ChangeStatus.CANCELLED
                )

            return None

        return None

    async def _append(self, conn: AsyncConnection, mutation: Mutation) -> PendingChange:
        created_at = utcnow()
        result = await conn.execute(
            pending_changes.insert().values(
                message_id=mutation.message_id,
                kind=mutation.kind.value,
                label=mutation.label,
                payload=mutation.payload,
                created_at=to_iso(created_at),
                attempts=0,
                status=ChangeStatus.PENDING.value,
            )
        )
        change = PendingChange(
            id=result.inserted_primary_key[0],
            mutation=mutation,
            created_at=created_at,
        )
        logger.info(f"Queued change {change.describe()}")
        return change

    async def drain(self) -> AsyncIterator[PendingChange]:
        """Yield pending changes oldest first, one row read at a time.

        Each yielded change is in flight until it is confirmed, failed,
        has an attempt recorded or is released. Every call starts again from
        the oldest pending change, so a drain stopped part way is simply
        restarted on the next cycle.
        """
        await self.initialise()

        last_id = 0
        current: Optional[int] = None
        try:
            while True:
                async with self._engine.readonly() as tx:
                    row = (
                        await tx.connection.execute(
                            select(pending_changes)
                            .where(
                                pending_changes.c.status == ChangeStatus.PENDING.value,
                                pending_changes.c.id > last_id,
                            )
                            .order_by(pending_changes.c.id)
                            .limit(1)
                        )
                    ).first()

                if row is None:
                    return

                change = row_to_pending_change(row)
                last_id = current = change.id
                self._in_flight.add(change.id)
                yield change
        finally:
            if current is not None:
                self.release(current)

    def release(self, change_id: int) -> None:
        """Return an in-flight change to the coalescible pending set."""
        self._in_flight.discard(change_id)

    def is_in_flight(self, change_id: int) -> bool:
        return change_id in self._in_flight

    async def confirm(self, change_id: int) -> None:
        """Remove a change the remote accepted."""
        async with self._engine.transaction() as tx:
            await delete_change(tx.connection, change_id)
        self.release(change_id)
        logger.debug(f"Change #{change_id} confirmed")

    async def fail_permanently(
        self, change_id: int, reason: str, on_failed: Optional[QueuedHook] = None
    ) -> PendingChange:
        """Move a change out of the pending set into the failure records.

        ``on_failed(conn, change)`` runs inside the same transaction.
        """
        async with self._engine.transaction() as tx:
            conn = tx.connection
            await conn.execute(
                update(pending_changes)
                .where(pending_changes.c.id == change_id)
                .values(
                    status=ChangeStatus.FAILED.value,
                    last_error=reason,
                    attempts=pending_changes.c.attempts + 1,
                )
            )
            change = await self._get(conn, change_id)
            if on_failed is not None:
                await on_failed(conn, change)
        self.release(change_id)

        log_event(
            "sync.change_failed",
            f"Change {change.describe()} rejected: {reason}",
            level="WARNING",
            change_id=change_id,
            message_id=change.message_id,
        )
        return change

    async def record_attempt(self, change_id: int, error: str) -> None:
        """Count a failed attempt; the change stays pending for the next cycle."""
        async with self._engine.transaction() as tx:
            await tx.connection.execute(
                update(pending_changes)
                .where(pending_changes.c.id == change_id)
                .values(
                    attempts=pending_changes.c.attempts + 1,
                    last_error=error,
                )
            )
        self.release(change_id)

    async def outstanding(self, message_id: Optional[str] = None) -> List[PendingChange]:
        """Pending changes in sequence order, optionally for one message."""
        await self.initialise()

        async with self._engine.readonly() as tx:
            return await load_outstanding(tx.connection, message_id)

    async def pending_count(self) -> int:
        await self.initialise()

        async with self._engine.readonly() as tx:
            return (
                await tx.connection.execute(
                    select(func.count())
                    .select_from(pending_changes)
                    .where(pending_changes.c.status == ChangeStatus.PENDING.value)
                )
            ).scalar_one()

    async def failures(self) -> List[PendingChange]:
        """Permanently failed changes awaiting acknowledgement."""
        await self.initialise()

        async with self._engine.readonly() as tx:
            rows = (
                await tx.connection.execute(
                    select(pending_changes)
                    .where(pending_changes.c.status == ChangeStatus.FAILED.value)
                    .order_by(pending_changes.c.id)
                )
            ).all()
        return [row_to_pending_change(row) for row in rows]

    async def acknowledge_failure(self, change_id: int) -> None:
        """Discard a failure record once the user has seen it.

        Raises:
            MessageNotFoundError: If no failure record has that id.
        """
        async with self._engine.transaction() as tx:
            result = await tx.connection.execute(
                delete(pending_changes).where(
                    pending_changes.c.id == change_id,
                    pending_changes.c.status == ChangeStatus.FAILED.value,
                )
            )
            if result.rowcount == 0:
                raise MessageNotFoundError(
                    f"No failed change #{change_id}",
                    details={"change_id": change_id},
                )

    async def clear(self) -> None:
        """Drop every queued change and failure record."""
        await self.initialise()

        async with self._engine.transaction() as tx:
            await tx.connection.execute(delete(pending_changes))
        self._in_flight.clear()

    async def _get(self, conn: AsyncConnection, change_id: int) -> PendingChange:
        row = (
            await conn.execute(
                select(pending_changes).where(pending_changes.c.id == change_id)
            )
        ).first()
        if row is None:
            raise MessageNotFoundError(
                f"No queued change #{change_id}", details={"change_id": change_id}
            )
        return row_to_pending_change(row)
