"""One reconciliation cycle between the local cache and the remote mailbox.

A cycle pushes the pending changes first, oldest first, then pulls the
remote changes since the stored cursor and merges them together with the new
cursor in a single local transaction. The cursor therefore only ever moves
with the data it describes, and local intent reaches the server before the
server's view is pulled back over it.
"""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, List, Optional, TypeVar

from mailmirror.core.database.change_queue import ChangeQueue
from mailmirror.core.database.local_store import LocalStore
from mailmirror.core.models.change import PendingChange
from mailmirror.core.remote.client import RemoteClient
from mailmirror.security.credentials import CredentialStore
from mailmirror.utils.errors import (
    AuthenticationError,
    AuthExpiredError,
    DatabaseError,
    KeyStoreError,
    RateLimitedError,
    RejectedError,
    RemoteError,
    StaleCursorError,
    TransientRemoteError,
)
from mailmirror.utils.logging import get_logger, log_event

from .events import EventSink, SyncEvent, SyncEventKind, describe_confirmation

logger = get_logger(__name__)

T = TypeVar("T")


async def call_with_auth_retry(
    credentials: CredentialStore, call: Callable[[], Awaitable[T]]
) -> T:
    """Run a remote call, refreshing the token once if it is refused.

    A second refusal right after a refresh is treated as transient.
    """
    try:
        return await call()
    except AuthExpiredError:
        logger.info("Access token refused, refreshing and retrying once")
        await credentials.invalidate()
        try:
            return await call()
        except AuthExpiredError as e:
            raise TransientRemoteError(
                "Access token refused again after refresh",
                details={"status": e.status_code},
                status_code=e.status_code,
            ) from e


class SyncState(Enum):
    IDLE = "idle"
    DRAINING = "draining"
    PULLING = "pulling"
    MERGING = "merging"
    BACKOFF = "backoff"


class CycleOutcome(Enum):
    OK = "ok"
    BACKOFF = "backoff"
    AUTH_REQUIRED = "auth_required"
    CANCELLED = "cancelled"


@dataclass
class CycleReport:
    """What one sync cycle did and how it ended."""

    outcome: CycleOutcome = CycleOutcome.OK
    confirmed: List[int] = field(default_factory=list)
    rejected: List[PendingChange] = field(default_factory=list)
    deltas_merged: int = 0
    full_resync: bool = False
    retry_after: Optional[float] = None
    error: Optional[Exception] = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @property
    def ok(self) -> bool:
        return self.outcome is CycleOutcome.OK

    @property
    def duration(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


class _Cancelled(Exception):
    """Cooperative cancellation reached a step boundary."""


class SyncEngine:
    """Runs sync cycles. Holds no mailbox state of its own."""

    def __init__(
        self,
        store: LocalStore,
        queue: ChangeQueue,
        remote: RemoteClient,
        credentials: CredentialStore,
        notify: Optional[EventSink] = None,
    ):
        self._store = store
        self._queue = queue
        self._remote = remote
        self._credentials = credentials
        self._notify = notify
        self._state = SyncState.IDLE

    @property
    def state(self) -> SyncState:
        return self._state

    def _set_state(self, state: SyncState) -> None:
        if state is not self._state:
            logger.debug(f"Sync state {self._state.value} -> {state.value}")
            self._state = state

    def _emit(self, event: SyncEvent) -> None:
        if self._notify is None:
            return
        try:
            self._notify(event)
        except Exception as e:
            logger.error(f"Sync event subscriber failed: {e}")

    async def run_cycle(self, cancel: Optional[asyncio.Event] = None) -> CycleReport:
        """Run one full cycle.

        ``cancel`` is checked between steps and between drained changes; a
        merge already under way always completes.
        """
        report = CycleReport()

        def check_cancel() -> None:
            if cancel is not None and cancel.is_set():
                raise _Cancelled()

        try:
            self._set_state(SyncState.DRAINING)
            await self._drain(report, check_cancel)
            check_cancel()

            self._set_state(SyncState.PULLING)
            await self._pull_and_merge(report, check_cancel)

            self._finish(report, CycleOutcome.OK)
            self._emit(
                SyncEvent(
                    SyncEventKind.CYCLE_COMPLETED,
                    f"Sync complete ({report.deltas_merged} changes merged)",
                    details={
                        "confirmed": len(report.confirmed),
                        "rejected": len(report.rejected),
                        "full_resync": report.full_resync,
                    },
                )
            )

        except _Cancelled:
            logger.info("Sync cycle cancelled at a safe point")
            self._finish(report, CycleOutcome.CANCELLED)

        except AuthenticationError as e:
            report.error = e
            self._finish(report, CycleOutcome.AUTH_REQUIRED)
            log_event("sync.auth_required", "Sync stopped: sign-in required", level="WARNING")
            self._emit(SyncEvent(SyncEventKind.AUTH_REQUIRED, e.user_message))

        except RateLimitedError as e:
            report.error = e
            report.retry_after = e.retry_after
            self._finish(report, CycleOutcome.BACKOFF)
            logger.warning(f"Sync rate limited (retry_after={e.retry_after})")

        except (RemoteError, DatabaseError, KeyStoreError) as e:
            report.error = e
            self._finish(report, CycleOutcome.BACKOFF)
            logger.warning(f"Sync cycle failed: {e.message}")
            self._emit(
                SyncEvent(
                    SyncEventKind.SYNC_ERROR,
                    e.user_message,
                    details=e.to_dict(),
                )
            )

        finally:
            if report.finished_at is None:
                # Task cancellation
                self._set_state(SyncState.IDLE)

        log_event(
            "sync.cycle",
            f"Sync cycle finished: {report.outcome.value}",
            outcome=report.outcome.value,
            confirmed=len(report.confirmed),
            rejected=len(report.rejected),
            deltas=report.deltas_merged,
            duration=round(report.duration, 3),
        )
        return report

    def _finish(self, report: CycleReport, outcome: CycleOutcome) -> None:
        report.outcome = outcome
        report.finished_at = datetime.now(timezone.utc)
        self._set_state(
            SyncState.BACKOFF if outcome is CycleOutcome.BACKOFF else SyncState.IDLE
        )

    async def _with_auth_retry(self, call: Callable[[], Awaitable[T]]) -> T:
        return await call_with_auth_retry(self._credentials, call)

    ## Draining

    async def _drain(self, report: CycleReport, check_cancel: Callable[[], None]) -> None:
        token_provider = self._credentials.get_access_token

        async with aclosing(self._queue.drain()) as changes:
            async for change in changes:
                check_cancel()

                try:
                    await self._with_auth_retry(
                        lambda: self._remote.apply_mutation(change, token_provider)
                    )

                except RejectedError as e:
                    failed = await self._queue.fail_permanently(
                        change.id, e.message, on_failed=self._store.refresh_visible
                    )
                    report.rejected.append(failed)
                    self._emit(
                        SyncEvent(
                            SyncEventKind.CHANGE_FAILED,
                            f"Change could not be applied: {e.message}",
                            message_id=change.message_id,
                            change_id=change.id,
                        )
                    )
                    continue

                except RemoteError as e:
                    # Transient, rate limited or otherwise retryable later
                    await self._queue.record_attempt(change.id, e.message)
                    logger.info(f"Stopped draining at {change.describe()}: {e.message}")
                    raise

                await self._store.confirm_mutation(change)
                self._queue.release(change.id)
                report.confirmed.append(change.id)
                self._emit(
                    SyncEvent(
                        SyncEventKind.CHANGE_CONFIRMED,
                        describe_confirmation(change),
                        message_id=change.message_id,
                        change_id=change.id,
                    )
                )

    ## Pulling and merging

    async def _pull_and_merge(
        self, report: CycleReport, check_cancel: Callable[[], None]
    ) -> None:
        token_provider = self._credentials.get_access_token
        cursor = await self._store.get_cursor()

        if cursor is not None:
            try:
                deltas, new_cursor = await self._with_auth_retry(
                    lambda: self._remote.list_changes(cursor, token_provider)
                )
            except StaleCursorError:
                log_event(
                    "sync.stale_cursor",
                    f"Cursor {cursor} expired, falling back to a full resync",
                    level="WARNING",
                )
            else:
                check_cancel()
                self._set_state(SyncState.MERGING)
                report.deltas_merged = await self._shielded(
                    self._store.apply_deltas(deltas, new_cursor)
                )
                return

        messages, new_cursor = await self._with_auth_retry(
            lambda: self._remote.full_snapshot(token_provider)
        )
        catalog = await self._with_auth_retry(
            lambda: self._remote.fetch_labels(token_provider)
        )
        check_cancel()

        self._set_state(SyncState.MERGING)
        report.full_resync = True
        report.deltas_merged = await self._shielded(
            self._store.replace_all(messages, new_cursor)
        )
        await self._store.save_labels(catalog)

    async def _shielded(self, work: Awaitable[T]) -> T:
        """Run ``work`` to completion even if the calling task is cancelled."""
        merge = asyncio.ensure_future(work)
        try:
            return await asyncio.shield(merge)
        except asyncio.CancelledError:
            await merge
            raise
