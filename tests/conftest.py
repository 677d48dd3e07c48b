"""
Shared test fixtures and configuration for pytest
"""
import asyncio
import json
import os
import tempfile
from collections import defaultdict
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

# Keep config, logs and secrets out of the real home directory
os.environ.setdefault("MAILMIRROR_HOME", tempfile.mkdtemp(prefix="mailmirror-tests-"))

import pytest

from mailmirror.core.database import EngineManager, reset_config
from mailmirror.core.database.change_queue import ChangeQueue
from mailmirror.core.database.local_store import LocalStore
from mailmirror.core.mailbox import MailboxService
from mailmirror.core.models import (
    Body,
    Label,
    Message,
    MutationKind,
    PendingChange,
    RemoteDelta,
    SystemLabel,
)
from mailmirror.core.sync.engine import SyncEngine
from mailmirror.core.sync.scheduler import BackoffPolicy
from mailmirror.security.backends.base import SecretBackend
from mailmirror.security.credentials import (
    KEY_CLIENT_SECRET,
    KEY_TOKEN,
    ClientSecret,
    CredentialStore,
    TokenSet,
)
from mailmirror.security.key_store import KeyStore
from mailmirror.utils.config import ConfigManager
from mailmirror.utils.errors import RejectedError, StaleCursorError

BASE_TIME = datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

TEST_CLIENT = ClientSecret(client_id="test-client.apps", client_secret="s3cret")


def make_message(
    message_id: str,
    labels=(SystemLabel.INBOX, SystemLabel.UNREAD),
    thread_id: Optional[str] = None,
    subject: Optional[str] = None,
    minutes: int = 0,
) -> Message:
    """Message as the server reports it (visible labels == remote labels)."""
    return Message(
        id=message_id,
        thread_id=thread_id or message_id,
        subject=subject or f"Subject {message_id}",
        sender="alice@example.com",
        recipients="me@example.com",
        snippet=f"Snippet of {message_id}",
        received_at=BASE_TIME + timedelta(minutes=minutes),
        labels=frozenset(labels),
        remote_labels=frozenset(labels),
    )


class MemoryBackend(SecretBackend):
    """Secret backend holding everything in a dict."""

    def __init__(self):
        self.entries: Dict[str, str] = {}

    @property
    def name(self) -> str:
        return "Memory"

    @property
    def priority(self) -> int:
        return 0

    async def is_available(self) -> bool:
        return True

    async def store(self, service: str, key: str, value: str) -> None:
        self.entries[f"{service}:{key}"] = value

    async def retrieve(self, service: str, key: str) -> Optional[str]:
        return self.entries.get(f"{service}:{key}")

    async def delete(self, service: str, key: str) -> None:
        self.entries.pop(f"{service}:{key}", None)


class FakeMailServer:
    """In-memory mailbox speaking the RemoteClient interface.

    Every server-side change is appended to ``history`` under an increasing
    history id, the same way the real API numbers its history records.
    Errors queued with :meth:`fail` are raised by the next call of that
    method, after the access token has been requested.
    """

    def __init__(self):
        self.messages: Dict[str, Message] = {}
        self.bodies: Dict[str, Body] = {}
        self.labels = [
            Label(SystemLabel.INBOX, "INBOX", "system"),
            Label(SystemLabel.UNREAD, "UNREAD", "system"),
            Label(SystemLabel.STARRED, "STARRED", "system"),
            Label(SystemLabel.TRASH, "TRASH", "system"),
            Label("Label_1", "Work", "user"),
        ]
        self.history: List[tuple] = []
        self.history_id = 100
        self.oldest_history_id = 0

        self.errors: Dict[str, List[Exception]] = defaultdict(list)
        self.calls: List[str] = []
        self.tokens: List[str] = []
        self.applied: List[PendingChange] = []
        self.refresh_count = 0
        self.refresh_delay = 0.0
        self.page_size = 2
        self.body_gate: Optional[asyncio.Event] = None
        self.closed = False

    ## Test controls

    def fail(self, method: str, *errors: Exception) -> None:
        self.errors[method].extend(errors)

    def add_message(self, message_id: str, body_text: Optional[str] = None, **kwargs) -> Message:
        message = make_message(message_id, **kwargs)
        self.messages[message_id] = message
        self.bodies[message_id] = Body(
            message_id=message_id,
            text=body_text or f"Body of {message_id}",
            fetched_at=BASE_TIME,
        )
        self._record(RemoteDelta.upsert(replace(message)))
        return message

    def update_message(self, message_id: str, **changes) -> Message:
        message = replace(self.messages[message_id], **changes)
        self.messages[message_id] = message
        self._record(RemoteDelta.upsert(replace(message)))
        return message

    def change_labels(self, message_id: str, add=(), remove=()) -> None:
        message = self.messages[message_id]
        labels = (message.remote_labels | frozenset(add)) - frozenset(remove)
        self.messages[message_id] = replace(message, labels=labels, remote_labels=labels)
        if add:
            self._record(RemoteDelta.labels_added(message_id, add))
        if remove:
            self._record(RemoteDelta.labels_removed(message_id, remove))

    def remove_message(self, message_id: str) -> None:
        del self.messages[message_id]
        self.bodies.pop(message_id, None)
        self._record(RemoteDelta.deleted(message_id))

    def expire_history(self) -> None:
        """Forget every history record so older cursors go stale."""
        self.oldest_history_id = self.history_id
        self.history.clear()

    def _record(self, delta: RemoteDelta) -> None:
        self.history_id += 1
        self.history.append((self.history_id, delta))

    async def _enter(self, method: str, token_provider=None) -> None:
        self.calls.append(method)
        if token_provider is not None:
            self.tokens.append(await token_provider())
        if self.errors[method]:
            raise self.errors[method].pop(0)

    ## RemoteClient interface

    async def list_changes(self, since, token_provider):
        await self._enter("list_changes", token_provider)
        if int(since) < self.oldest_history_id:
            raise StaleCursorError("History cursor is no longer available", {"status": 404}, 404)

        deltas = []
        for history_id, delta in self.history:
            if history_id <= int(since):
                continue
            if delta.message is not None:
                delta = RemoteDelta.upsert(replace(delta.message))
            deltas.append(delta)
        return deltas, str(self.history_id)

    async def full_snapshot(self, token_provider):
        await self._enter("full_snapshot", token_provider)
        return [replace(m) for m in self.messages.values()], str(self.history_id)

    async def list_older(self, label, page_token, token_provider):
        await self._enter("list_older", token_provider)
        matching = sorted(
            (m for m in self.messages.values() if label in m.remote_labels),
            key=lambda m: (m.received_at, m.id),
            reverse=True,
        )
        start = int(page_token or 0)
        end = start + self.page_size
        next_page = str(end) if end < len(matching) else None
        return [replace(m) for m in matching[start:end]], next_page

    async def fetch_labels(self, token_provider):
        await self._enter("fetch_labels", token_provider)
        return list(self.labels)

    async def fetch_body(self, message_id, token_provider):
        await self._enter("fetch_body", token_provider)
        if self.body_gate is not None:
            await self.body_gate.wait()
        if message_id not in self.bodies:
            raise RejectedError("Requested entity was not found.", {"status": 404}, 404)
        return replace(self.bodies[message_id])

    async def apply_mutation(self, change, token_provider):
        await self._enter("apply_mutation", token_provider)

        if change.kind is MutationKind.SEND_DRAFT:
            self.applied.append(change)
            if change.message_id in self.messages:
                self.remove_message(change.message_id)
            sent_id = f"sent-{len(self.applied)}"
            self.add_message(sent_id, labels=(SystemLabel.SENT,))
            return {"id": sent_id}

        if change.message_id not in self.messages:
            raise RejectedError("Requested entity was not found.", {"status": 404}, 404)

        self.applied.append(change)
        if change.kind is MutationKind.DELETE:
            self.change_labels(
                change.message_id, add=[SystemLabel.TRASH], remove=[SystemLabel.INBOX]
            )
        elif change.kind is MutationKind.LABEL_ADD:
            self.change_labels(change.message_id, add=[change.label])
        else:
            self.change_labels(change.message_id, remove=[change.label])
        return {"id": change.message_id}

    async def refresh_access_token(self, client, refresh_token):
        self.calls.append("refresh_access_token")
        self.refresh_count += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.errors["refresh_access_token"]:
            raise self.errors["refresh_access_token"].pop(0)
        return TokenSet(
            access_token=f"access-{self.refresh_count + 1}",
            expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        )

    async def close(self) -> None:
        self.closed = True


## Fixtures


@pytest.fixture(autouse=True)
def reset_singletons(tmp_path):
    """Fresh configuration for every test"""
    ConfigManager.reset_instance()
    reset_config()
    yield
    ConfigManager.reset_instance()
    reset_config()


@pytest.fixture
def message_factory():
    return make_message


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "mailbox.db"


@pytest.fixture
async def engine_manager(db_path):
    """Engine over a temporary database with the schema created."""
    manager = EngineManager(db_path)
    await manager.create_schema()

    yield manager

    await manager.close()


@pytest.fixture
def store(engine_manager):
    return LocalStore(engine_manager)


@pytest.fixture
def queue(engine_manager):
    return ChangeQueue(engine_manager)


@pytest.fixture
def server():
    return FakeMailServer()


@pytest.fixture
def backend():
    return MemoryBackend()


@pytest.fixture
async def key_store(backend):
    """Key store holding a client secret and a valid token set."""
    key_store = KeyStore(backend=backend)
    await key_store.store(KEY_CLIENT_SECRET, json.dumps(TEST_CLIENT.to_google_json()))
    await key_store.store(
        KEY_TOKEN,
        TokenSet(
            access_token="access-1",
            refresh_token="refresh-1",
            expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        ).to_json(),
    )
    return key_store


@pytest.fixture
def credentials(key_store, server):
    return CredentialStore(key_store, server)


@pytest.fixture
def events():
    return []


@pytest.fixture
def engine(store, queue, server, credentials, events):
    return SyncEngine(store, queue, server, credentials, notify=events.append)


@pytest.fixture
async def service(engine_manager, store, queue, server, credentials):
    """MailboxService over the fake server with short backoff delays."""
    service = MailboxService(
        store,
        queue,
        server,
        credentials,
        engine_manager=engine_manager,
        interval_seconds=3600,
        backoff=BackoffPolicy(base=0.05, factor=2.0, cap=1.0),
    )

    yield service

    await service.close()
