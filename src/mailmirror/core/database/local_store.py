"""Local mailbox cache: the durable mirror the UI reads from.

Every message row carries two label sets. ``remote_labels`` is the last state
the server confirmed; ``labels`` is what the user sees, which is always
``remote_labels`` with the outstanding queued changes for that message
replayed on top in sequence order. Remote deltas only ever move
``remote_labels``; the visible set is recomputed from it inside the same
transaction, reading the outstanding changes from the ``pending_changes``
table, so a slow sync never clobbers a just-issued action.
"""

from dataclasses import replace
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncConnection

from mailmirror.core.models.change import (
    PendingChange,
    apply_mutation_to_labels,
    replay,
)
from mailmirror.core.models.delta import DeltaKind, RemoteDelta
from mailmirror.core.models.message import (
    Body,
    Label,
    MailboxView,
    Message,
    SystemLabel,
    Thread,
)
from mailmirror.utils.logging import async_log_call, get_logger

from .change_queue import delete_change, load_outstanding
from .engine_manager import EngineManager
from .models import (
    BACKFILL_KEY_PREFIX,
    CURSOR_KEY,
    LAST_SYNC_KEY,
    bodies,
    labels,
    messages,
    sync_state,
)
from .utils import (
    from_iso,
    message_to_values,
    row_to_body,
    row_to_label,
    row_to_message,
    to_iso,
    utcnow,
)

logger = get_logger(__name__)


class BackfillPosition(NamedTuple):
    """Where loading older messages for one label resumes."""

    cursor: Optional[str]
    page_token: Optional[str]
    exhausted: bool = False

_METADATA_COLUMNS = (
    "thread_id",
    "subject",
    "sender",
    "recipients",
    "snippet",
    "received_at",
    "labels",
    "remote_labels",
)


class LocalStore:
    """Durable local cache of messages, bodies, labels and the sync cursor."""

    def __init__(self, engine_manager: EngineManager):
        self._engine = engine_manager
        self.initialised = False

    async def initialise(self) -> None:
        """Create the schema on first use."""
        if self.initialised:
            return
        await self._engine.create_schema()
        self.initialised = True

    async def _ensure_initialised(self) -> None:
        if not self.initialised:
            await self.initialise()

    ## Remote state

    @async_log_call
    async def apply_deltas(
        self, deltas: Sequence[RemoteDelta], cursor: Optional[str] = None
    ) -> int:
        """Merge remote deltas in order and advance the cursor atomically.

        Either every delta and the new cursor commit together, or nothing
        does.

        Returns:
            Number of deltas that touched a cached message.
        """
        await self._ensure_initialised()

        applied = 0
        async with self._engine.transaction() as tx:
            conn = tx.connection
            outstanding = _group_by_message(await load_outstanding(conn))

            for delta in deltas:
                pending = outstanding.get(delta.message_id, [])
                if await self._apply_delta(conn, delta, pending):
                    applied += 1

            if cursor is not None:
                await self._write_state(conn, CURSOR_KEY, cursor)
                await self._write_state(conn, LAST_SYNC_KEY, to_iso(utcnow()))

        logger.info(f"Merged {applied}/{len(deltas)} remote deltas (cursor={cursor})")
        return applied

    async def _apply_delta(
        self,
        conn: AsyncConnection,
        delta: RemoteDelta,
        pending: List[PendingChange],
    ) -> bool:
        if delta.kind is DeltaKind.DELETE:
            result = await conn.execute(
                delete(messages).where(messages.c.id == delta.message_id)
            )
            return result.rowcount > 0

        if delta.kind is DeltaKind.UPSERT:
            remote = frozenset(delta.labels)
            message = replace(
                delta.message, remote_labels=remote, labels=replay(remote, pending)
            )
            await self._upsert(conn, message)
            return True

        row = await self._fetch_row(conn, delta.message_id)
        if row is None:
            logger.debug(f"Label delta for uncached message {delta.message_id}")
            return False

        remote = frozenset(row.remote_labels or ())
        if delta.kind is DeltaKind.LABELS_ADDED:
            remote = remote | delta.labels
        else:
            remote = remote - delta.labels

        await self._write_labels(conn, delta.message_id, remote, replay(remote, pending))
        return True

    @async_log_call
    async def replace_all(self, snapshot: Iterable[Message], cursor: str) -> int:
        """Replace the cached message set with a full remote snapshot.

        Used on first sync and when the cursor has gone stale. Bodies of
        messages that survive the resync are kept.
        """
        await self._ensure_initialised()

        snapshot = list(snapshot)
        keep = {m.id for m in snapshot}

        async with self._engine.transaction() as tx:
            conn = tx.connection
            outstanding = _group_by_message(await load_outstanding(conn))

            existing = (await conn.execute(select(messages.c.id))).scalars().all()
            stale = [message_id for message_id in existing if message_id not in keep]
            if stale:
                await conn.execute(delete(messages).where(messages.c.id.in_(stale)))

            for message in snapshot:
                message = replace(
                    message,
                    labels=replay(message.remote_labels, outstanding.get(message.id, [])),
                )
                await self._upsert(conn, message)

            # Older pages are gone with the messages outside the snapshot
            await conn.execute(
                delete(sync_state).where(sync_state.c.key.startswith(BACKFILL_KEY_PREFIX))
            )
            await self._write_state(conn, CURSOR_KEY, cursor)
            await self._write_state(conn, LAST_SYNC_KEY, to_iso(utcnow()))

        logger.info(
            f"Full resync stored {len(snapshot)} messages, dropped {len(stale)} "
            f"(cursor={cursor})"
        )
        return len(snapshot)

    ## Local overlay

    async def apply_local_mutation(self, change: PendingChange) -> bool:
        """Apply a just-queued change to the visible state.

        Returns:
            False when the message is not cached (e.g. a raw outgoing send).
        """
        await self._ensure_initialised()

        async with self._engine.transaction() as tx:
            conn = tx.connection
            row = await self._fetch_row(conn, change.message_id)
            if row is None:
                return False

            visible = apply_mutation_to_labels(
                frozenset(row.labels or ()), change.mutation
            )
            await conn.execute(
                update(messages)
                .where(messages.c.id == change.message_id)
                .values(labels=sorted(visible))
            )

        logger.debug(f"Local overlay applied: {change.describe()}")
        return True

    async def rebase(self, message_id: str) -> Optional[Message]:
        """Recompute visible state as remote state plus outstanding changes."""
        await self._ensure_initialised()

        async with self._engine.transaction() as tx:
            row = await self._fetch_row(tx.connection, message_id)
            if row is None:
                return None
            visible = await self._rebase(tx.connection, row)

        message = row_to_message(row)
        message.labels = visible
        return message

    async def refresh_visible(self, conn: AsyncConnection, change: PendingChange) -> None:
        """Recompute the visible labels of the message ``change`` targets.

        Meant as a queue hook: it runs on the queue's connection, inside the
        transaction that added, cancelled or failed the change.
        """
        row = await self._fetch_row(conn, change.message_id)
        if row is not None:
            await self._rebase(conn, row)

    async def _rebase(self, conn: AsyncConnection, row) -> frozenset:
        pending = await load_outstanding(conn, row.id)
        remote = frozenset(row.remote_labels or ())
        visible = replay(remote, pending)
        await self._write_labels(conn, row.id, remote, visible)
        logger.debug(f"Rebased {row.id} onto {len(pending)} outstanding changes")
        return visible

    async def confirm_mutation(self, change: PendingChange) -> None:
        """Fold a change the server accepted into the confirmed state.

        The queue row is deleted in the same transaction, so a change is
        either still pending or already part of ``remote_labels``.
        """
        await self._ensure_initialised()

        async with self._engine.transaction() as tx:
            conn = tx.connection
            await delete_change(conn, change.id)

            row = await self._fetch_row(conn, change.message_id)
            if row is None:
                return

            remote = apply_mutation_to_labels(
                frozenset(row.remote_labels or ()), change.mutation
            )
            pending = await load_outstanding(conn, change.message_id)
            await self._write_labels(
                conn, change.message_id, remote, replay(remote, pending)
            )

    ## Older messages

    async def backfill_position(self, label: str) -> BackfillPosition:
        await self._ensure_initialised()

        async with self._engine.readonly() as tx:
            state = await self._read_state(tx.connection)

        stored = state.get(BACKFILL_KEY_PREFIX + label)
        return BackfillPosition(
            cursor=state.get(CURSOR_KEY),
            page_token=stored or None,
            exhausted=stored == "",
        )

    @async_log_call
    async def upsert_messages(
        self,
        batch: Iterable[Message],
        position: Optional[BackfillPosition] = None,
        label: Optional[str] = None,
        next_page_token: Optional[str] = None,
    ) -> Optional[int]:
        """Store messages fetched outside the history stream.

        The cursor is left where it is. When ``position`` is given the batch
        only commits if no sync has moved the cursor since it was read, and
        the label's next page token is saved with it.

        Returns:
            Number of messages stored, or None when the batch was discarded.
        """
        await self._ensure_initialised()

        batch = list(batch)
        async with self._engine.transaction() as tx:
            conn = tx.connection

            if position is not None:
                current = (await self._read_state(conn)).get(CURSOR_KEY)
                if current != position.cursor:
                    logger.info(
                        f"Discarded {len(batch)} older messages: cursor moved "
                        f"from {position.cursor} to {current}"
                    )
                    return None

            outstanding = _group_by_message(await load_outstanding(conn))
            for message in batch:
                remote = frozenset(message.remote_labels)
                await self._upsert(
                    conn,
                    replace(
                        message,
                        remote_labels=remote,
                        labels=replay(remote, outstanding.get(message.id, [])),
                    ),
                )

            if label is not None:
                await self._write_state(
                    conn, BACKFILL_KEY_PREFIX + label, next_page_token or ""
                )

        logger.info(f"Stored {len(batch)} older messages (label={label})")
        return len(batch)

    ## Reads

    async def read_snapshot(self, label: Optional[str] = None) -> MailboxView:
        """Build a consistent view of the cache in one read-only transaction.

        Without ``label`` every message outside Trash and Spam is returned;
        with it, only messages currently carrying that label.
        """
        await self._ensure_initialised()

        async with self._engine.readonly() as tx:
            conn = tx.connection
            rows = (
                await conn.execute(
                    select(messages).order_by(
                        messages.c.received_at.desc(), messages.c.id
                    )
                )
            ).all()
            catalog = (
                await conn.execute(select(labels).order_by(labels.c.name))
            ).all()
            state = await self._read_state(conn)

        every = [row_to_message(row) for row in rows]

        unread_counts: Dict[str, int] = {}
        for message in every:
            if message.is_unread:
                for label_id in message.labels:
                    unread_counts[label_id] = unread_counts.get(label_id, 0) + 1

        if label is None:
            visible = [m for m in every if not (m.labels & SystemLabel.HIDDEN)]
        else:
            visible = [m for m in every if label in m.labels]

        return MailboxView(
            messages=visible,
            threads=Thread.group(visible),
            unread_counts=unread_counts,
            labels=[row_to_label(row) for row in catalog],
            cursor=state.get(CURSOR_KEY),
            last_sync=from_iso(state.get(LAST_SYNC_KEY)),
        )

    async def get_message(
        self, message_id: str, include_body: bool = False
    ) -> Optional[Message]:
        await self._ensure_initialised()

        async with self._engine.readonly() as tx:
            row = await self._fetch_row(tx.connection, message_id)
            if row is None:
                return None
            body = None
            if include_body:
                body_row = (
                    await tx.connection.execute(
                        select(bodies).where(bodies.c.message_id == message_id)
                    )
                ).first()
                body = row_to_body(body_row) if body_row else None

        return row_to_message(row, body)

    async def message_count(self) -> int:
        await self._ensure_initialised()

        async with self._engine.readonly() as tx:
            ids = (await tx.connection.execute(select(messages.c.id))).scalars().all()
        return len(ids)

    ## Bodies

    async def store_body(self, body: Body) -> bool:
        """Cache a fetched body.

        Returns:
            False when the message has left the cache in the meantime.
        """
        await self._ensure_initialised()

        values = {
            "message_id": body.message_id,
            "text": body.text,
            "html": body.html,
            "fetched_at": to_iso(body.fetched_at or utcnow()),
        }

        async with self._engine.transaction() as tx:
            conn = tx.connection
            if await self._fetch_row(conn, body.message_id) is None:
                return False

            stmt = insert(bodies).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[bodies.c.message_id], set_=values
            )
            await conn.execute(stmt)

        return True

    async def get_body(self, message_id: str) -> Optional[Body]:
        await self._ensure_initialised()

        async with self._engine.readonly() as tx:
            row = (
                await tx.connection.execute(
                    select(bodies).where(bodies.c.message_id == message_id)
                )
            ).first()

        return row_to_body(row) if row else None

    ## Labels catalog

    async def save_labels(self, catalog: Iterable[Label]) -> None:
        """Replace the label catalog."""
        await self._ensure_initialised()

        async with self._engine.transaction() as tx:
            conn = tx.connection
            await conn.execute(delete(labels))
            for label in catalog:
                await conn.execute(
                    labels.insert().values(id=label.id, name=label.name, type=label.type)
                )

    async def get_labels(self) -> List[Label]:
        await self._ensure_initialised()

        async with self._engine.readonly() as tx:
            rows = (
                await tx.connection.execute(select(labels).order_by(labels.c.name))
            ).all()
        return [row_to_label(row) for row in rows]

    ## Cursor

    async def get_cursor(self) -> Optional[str]:
        await self._ensure_initialised()

        async with self._engine.readonly() as tx:
            return (await self._read_state(tx.connection)).get(CURSOR_KEY)

    async def set_cursor(self, cursor: Optional[str]) -> None:
        """Set or clear the cursor. Clearing forces a full resync."""
        await self._ensure_initialised()

        async with self._engine.transaction() as tx:
            if cursor is None:
                await tx.connection.execute(
                    delete(sync_state).where(sync_state.c.key == CURSOR_KEY)
                )
            else:
                await self._write_state(tx.connection, CURSOR_KEY, cursor)

    async def clear(self) -> None:
        """Drop every cached message, label and the cursor."""
        await self._ensure_initialised()

        async with self._engine.transaction() as tx:
            conn = tx.connection
            await conn.execute(delete(messages))
            await conn.execute(delete(labels))
            await conn.execute(delete(sync_state))

        logger.info("Local cache cleared")

    ## Helpers

    async def _fetch_row(self, conn: AsyncConnection, message_id: str):
        return (
            await conn.execute(select(messages).where(messages.c.id == message_id))
        ).first()

    async def _upsert(self, conn: AsyncConnection, message: Message) -> None:
        values = message_to_values(message)
        stmt = insert(messages).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[messages.c.id],
            set_={column: values[column] for column in _METADATA_COLUMNS},
        )
        await conn.execute(stmt)

    async def _write_labels(
        self,
        conn: AsyncConnection,
        message_id: str,
        remote: frozenset,
        visible: frozenset,
    ) -> None:
        await conn.execute(
            update(messages)
            .where(messages.c.id == message_id)
            .values(labels=sorted(visible), remote_labels=sorted(remote))
        )

    async def _write_state(self, conn: AsyncConnection, key: str, value: str) -> None:
        stmt = insert(sync_state).values(key=key, value=value)
        stmt = stmt.on_conflict_do_update(
            index_elements=[sync_state.c.key], set_={"value": value}
        )
        await conn.execute(stmt)

    async def _read_state(self, conn: AsyncConnection) -> Dict[str, str]:
        rows = (await conn.execute(select(sync_state))).all()
        return {row.key: row.value for row in rows}


def _group_by_message(
    changes: Iterable[PendingChange],
) -> Dict[str, List[PendingChange]]:
    grouped: Dict[str, List[PendingChange]] = {}
    for change in changes:
        grouped.setdefault(change.message_id, []).append(change)
    return grouped
