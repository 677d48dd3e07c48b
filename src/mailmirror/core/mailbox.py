"""Core API used by the terminal UI and the CLI.

Reads are served from the local cache only and never wait on the network.
Mutations take effect locally at once and are pushed to the server in the
background by the sync scheduler.
"""

import asyncio
from email.message import EmailMessage
from email.utils import formatdate, make_msgid
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union
from uuid import uuid4

from mailmirror.security.credentials import (
    AuthStatus,
    ClientSecret,
    CredentialStore,
    OAuthFlow,
    TokenSet,
)
from mailmirror.security.key_store import KeyStore
from mailmirror.utils.config import AppConfig, ConfigManager
from mailmirror.utils.errors import (
    MessageNotFoundError,
    RejectedError,
    TransientRemoteError,
    ValidationError,
)
from mailmirror.utils.logging import get_logger

from .database import EngineManager, open_database
from .database.change_queue import ChangeQueue
from .database.local_store import LocalStore
from .models.change import Mutation, MutationKind, PendingChange
from .models.message import Body, MailboxView, Message, SystemLabel
from .remote.client import RemoteClient
from .sync.engine import CycleReport, SyncEngine, call_with_auth_retry
from .sync.events import SyncEvent, SyncEventKind
from .sync.scheduler import BackoffPolicy, SyncScheduler

logger = get_logger(__name__)

Subscriber = Callable[[SyncEvent], None]

OUTBOX_PREFIX = "outbox-"


class MailboxService:
    """Facade over the local cache, change queue and sync machinery."""

    def __init__(
        self,
        store: LocalStore,
        queue: ChangeQueue,
        remote: RemoteClient,
        credentials: CredentialStore,
        engine_manager: Optional[EngineManager] = None,
        interval_seconds: int = 300,
        backoff: Optional[BackoffPolicy] = None,
        auto_sync: bool = True,
        sender: str = "",
    ):
        self.store = store
        self.queue = queue
        self.remote = remote
        self.credentials = credentials
        self.sender = sender
        self._engine_manager = engine_manager

        self._subscribers: List[Subscriber] = []
        self._body_tasks: Dict[str, asyncio.Task] = {}

        self.engine = SyncEngine(store, queue, remote, credentials, notify=self._publish)
        self.scheduler = SyncScheduler(
            self.engine,
            interval_seconds=interval_seconds,
            backoff=backoff,
            auto_sync=auto_sync,
            notify=self._publish,
        )

    @classmethod
    def from_config(
        cls,
        config: Optional[AppConfig] = None,
        key_store: Optional[KeyStore] = None,
        remote: Optional[RemoteClient] = None,
    ) -> "MailboxService":
        """Wire every component from the persisted application config."""
        config = config or ConfigManager().config
        account, sync = config.account, config.sync

        engine_manager, store, queue = open_database(
            Path(config.database.database_path).expanduser()
        )
        remote = remote or RemoteClient(
            base_url=account.api_base_url,
            user_id=account.user_id,
            token_uri=account.token_uri,
            timeout=account.request_timeout,
            page_size=sync.page_size,
            full_sync_limit=sync.full_sync_limit,
        )
        credentials = CredentialStore(
            key_store or KeyStore(service_name=account.keyring_service),
            remote,
            safety_margin=sync.token_safety_margin_seconds,
            scopes=account.scopes,
        )

        return cls(
            store,
            queue,
            remote,
            credentials,
            engine_manager=engine_manager,
            interval_seconds=sync.interval_seconds,
            backoff=BackoffPolicy(
                base=sync.backoff_base_seconds,
                factor=sync.backoff_factor,
                cap=sync.backoff_cap_seconds,
            ),
            auto_sync=sync.auto_sync,
        )

    ## Lifecycle

    async def start(self, sync_now: bool = True) -> None:
        """Open the cache and start background sync."""
        await self.store.initialise()
        await self.scheduler.start(sync_now=sync_now)
        logger.info("Mailbox service started")

    async def close(self) -> None:
        await self.scheduler.stop()

        for task in list(self._body_tasks.values()):
            task.cancel()
        if self._body_tasks:
            await asyncio.gather(*self._body_tasks.values(), return_exceptions=True)
        self._body_tasks.clear()

        await self.remote.close()
        if self._engine_manager is not None:
            await self._engine_manager.close()
        logger.info("Mailbox service closed")

    async def __aenter__(self) -> "MailboxService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.close()
        return False

    ## Notifications

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register for sync events. Returns a function that unsubscribes."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _publish(self, event: SyncEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber {callback!r} failed: {e}")

    ## Reads

    async def read_mailbox_snapshot(self, label: Optional[str] = None) -> MailboxView:
        """Consistent view of the local cache. Never touches the network."""
        return await self.store.read_snapshot(label)

    async def get_message(self, message_id: str) -> Message:
        message = await self.store.get_message(message_id, include_body=True)
        if message is None:
            raise MessageNotFoundError(
                f"Message {message_id} is not cached", details={"message_id": message_id}
            )
        return message

    ## Mutations

    async def enqueue_mutation(
        self,
        message_id: str,
        kind: Union[MutationKind, str],
        label: Optional[str] = None,
        payload: Optional[dict] = None,
    ) -> Optional[PendingChange]:
        """Queue a change and apply it to the visible state at once.

        Returns:
            The queued change (status ``CANCELLED`` when it undid a queued
            inverse), or None when the change would not alter anything.

        Raises:
            ValidationError: The mutation is malformed.
            MessageNotFoundError: The target message is not cached.
        """
        if isinstance(kind, str):
            try:
                kind = MutationKind.from_string(kind)
            except ValueError as e:
                raise ValidationError(str(e)) from e

        try:
            mutation = Mutation(message_id, kind, label, payload)
        except ValueError as e:
            raise ValidationError(str(e), details={"message_id": message_id}) from e

        if kind is not MutationKind.SEND_DRAFT:
            message = await self.store.get_message(message_id)
            if message is None:
                raise MessageNotFoundError(
                    f"Message {message_id} is not cached",
                    details={"message_id": message_id},
                )
            if _is_noop(message, mutation):
                logger.debug(f"Skipping no-op {kind.value} on {message_id}")
                return None

        change = await self.queue.enqueue(mutation, on_queued=self.store.refresh_visible)

        self.scheduler.notify_mutation()
        return change

    async def mark_read(self, message_id: str) -> Optional[PendingChange]:
        return await self.enqueue_mutation(
            message_id, MutationKind.LABEL_REMOVE, SystemLabel.UNREAD
        )

    async def mark_unread(self, message_id: str) -> Optional[PendingChange]:
        return await self.enqueue_mutation(
            message_id, MutationKind.LABEL_ADD, SystemLabel.UNREAD
        )

    async def archive(self, message_id: str) -> Optional[PendingChange]:
        return await self.enqueue_mutation(
            message_id, MutationKind.LABEL_REMOVE, SystemLabel.INBOX
        )

    async def delete(self, message_id: str) -> Optional[PendingChange]:
        return await self.enqueue_mutation(message_id, MutationKind.DELETE)

    async def star(self, message_id: str) -> Optional[PendingChange]:
        return await self.enqueue_mutation(
            message_id, MutationKind.LABEL_ADD, SystemLabel.STARRED
        )

    async def unstar(self, message_id: str) -> Optional[PendingChange]:
        return await self.enqueue_mutation(
            message_id, MutationKind.LABEL_REMOVE, SystemLabel.STARRED
        )

    async def add_label(self, message_id: str, label: str) -> Optional[PendingChange]:
        return await self.enqueue_mutation(message_id, MutationKind.LABEL_ADD, label)

    async def remove_label(
        self, message_id: str, label: str
    ) -> Optional[PendingChange]:
        return await self.enqueue_mutation(message_id, MutationKind.LABEL_REMOVE, label)

    async def send_draft(self, message_id: str, draft_id: str) -> PendingChange:
        """Queue sending an existing draft."""
        return await self.enqueue_mutation(
            message_id, MutationKind.SEND_DRAFT, payload={"draft_id": draft_id}
        )

    async def send(
        self,
        to: Sequence[str],
        subject: str,
        body: str,
        cc: Optional[Sequence[str]] = None,
        bcc: Optional[Sequence[str]] = None,
    ) -> PendingChange:
        """Compose a plain-text message and queue it for sending."""
        if not to:
            raise ValidationError("At least one recipient is required")

        message = EmailMessage()
        if self.sender:
            message["From"] = self.sender
        message["To"] = ", ".join(to)
        if cc:
            message["Cc"] = ", ".join(cc)
        if bcc:
            message["Bcc"] = ", ".join(bcc)
        message["Subject"] = subject
        message["Date"] = formatdate(localtime=True)
        message["Message-ID"] = make_msgid()
        message.set_content(body)

        return await self.enqueue_mutation(
            f"{OUTBOX_PREFIX}{uuid4().hex}",
            MutationKind.SEND_DRAFT,
            payload={"raw": message.as_string()},
        )

    async def failures(self) -> List[PendingChange]:
        """Changes the server refused for good, for the notification area."""
        return await self.queue.failures()

    async def acknowledge_failure(self, change_id: int) -> None:
        await self.queue.acknowledge_failure(change_id)

    async def pending_count(self) -> int:
        return await self.queue.pending_count()

    ## Bodies

    async def request_fetch_body(self, message_id: str, wait: bool = True) -> Body:
        """Return the cached body, fetching it in the background on a miss.

        Concurrent requests for the same message share one fetch. With
        ``wait=False``, or when the fetch fails transiently, a placeholder
        built from the snippet is returned.

        Raises:
            MessageNotFoundError: The server no longer has the message.
            ReauthRequiredError: The user must sign in again.
        """
        cached = await self.store.get_body(message_id)
        if cached is not None:
            return cached

        task = self._body_tasks.get(message_id)
        if task is None:
            task = asyncio.ensure_future(self._fetch_body(message_id))
            self._body_tasks[message_id] = task
            task.add_done_callback(
                lambda t, mid=message_id: self._body_fetch_done(mid, t)
            )

        if not wait:
            return await self._placeholder(message_id)

        try:
            return await asyncio.shield(task)
        except TransientRemoteError as e:
            logger.info(f"Body fetch for {message_id} deferred: {e.message}")
            return await self._placeholder(message_id)
        except RejectedError as e:
            raise MessageNotFoundError(
                f"Message {message_id} is no longer on the server",
                details={"message_id": message_id},
            ) from e

    async def _fetch_body(self, message_id: str) -> Body:
        body = await call_with_auth_retry(
            self.credentials,
            lambda: self.remote.fetch_body(message_id, self.credentials.get_access_token),
        )
        await self.store.store_body(body)
        self._publish(
            SyncEvent(SyncEventKind.BODY_FETCHED, "Message body downloaded", message_id=message_id)
        )
        return body

    def _body_fetch_done(self, message_id: str, task: asyncio.Task) -> None:
        if self._body_tasks.get(message_id) is task:
            del self._body_tasks[message_id]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background body fetch for {message_id} failed: {error}")

    async def _placeholder(self, message_id: str) -> Body:
        message = await self.store.get_message(message_id)
        return Body(
            message_id=message_id,
            text=message.snippet if message else "",
            is_placeholder=True,
        )

    ## Older messages

    async def load_more(self, label: str = SystemLabel.INBOX) -> int:
        """Fetch the next page of older messages carrying ``label``.

        The page is stored without moving the sync cursor. A page fetched
        while a sync merged newer state is dropped and fetched again on the
        next call.

        Returns:
            Number of messages stored; 0 once the label has no older pages.

        Raises:
            TransientRemoteError: The server could not be reached.
            ReauthRequiredError: The user must sign in again.
        """
        await self.store.initialise()

        position = await self.store.backfill_position(label)
        if position.exhausted:
            logger.debug(f"No older messages left for {label}")
            return 0

        batch, next_page = await call_with_auth_retry(
            self.credentials,
            lambda: self.remote.list_older(
                label, position.page_token, self.credentials.get_access_token
            ),
        )
        stored = await self.store.upsert_messages(
            batch, position=position, label=label, next_page_token=next_page
        )
        if stored is None:
            return 0

        self._publish(
            SyncEvent(
                SyncEventKind.OLDER_LOADED,
                f"Loaded {stored} older messages",
                details={"label": label, "more": next_page is not None},
            )
        )
        return stored

    ## Sync and credentials

    def request_sync_now(self) -> None:
        """Run a sync cycle as soon as possible, cutting any backoff short."""
        self.scheduler.request_sync_now()

    async def sync_once(self) -> CycleReport:
        """Run one cycle in the foreground (CLI use, scheduler not started)."""
        await self.store.initialise()
        return await self.engine.run_cycle()

    async def auth_status(self) -> AuthStatus:
        return await self.credentials.status()

    async def reset_credentials(self) -> None:
        """Forget every stored secret; the next sync will ask for sign-in."""
        await self.credentials.clear()
        logger.info("Credentials reset")

    async def import_client_secret(self, path: Path) -> ClientSecret:
        return await self.credentials.import_client_secret(path)

    async def authorize(self, flow: Optional[OAuthFlow] = None) -> TokenSet:
        """Run the OAuth flow and unblock sync if it was waiting for sign-in."""
        tokens = await self.credentials.authorize(flow)
        self.scheduler.resume()
        return tokens


def _is_noop(message: Message, mutation: Mutation) -> bool:
    """True when the mutation would leave the visible state unchanged."""
    if mutation.kind is MutationKind.LABEL_ADD:
        return mutation.label in message.labels
    if mutation.kind is MutationKind.LABEL_REMOVE:
        return mutation.label not in message.labels
    if mutation.kind is MutationKind.DELETE:
        return message.is_deleted and not message.in_inbox
    return False
