"""Mailbox domain models"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, FrozenSet, List, Optional


_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


class SystemLabel:
    """Label ids the remote mailbox reserves."""

    INBOX = "INBOX"
    UNREAD = "UNREAD"
    STARRED = "STARRED"
    IMPORTANT = "IMPORTANT"
    SENT = "SENT"
    DRAFT = "DRAFT"
    TRASH = "TRASH"
    SPAM = "SPAM"

    HIDDEN = frozenset({TRASH, SPAM})


@dataclass
class Label:
    """Entry of the remote label catalog."""

    id: str
    name: str
    type: str = "user"

    @property
    def is_system(self) -> bool:
        return self.type == "system"


@dataclass
class Body:
    """Message body, lazily fetched and cached locally."""

    message_id: str
    text: str = ""
    html: Optional[str] = None
    fetched_at: Optional[datetime] = None
    is_placeholder: bool = False

    def get_preview(self, max_length: int = 100) -> str:
        """Get preview of the body text."""
        text = self.text or re.sub(r"<[^>]+>", "", self.html or "")
        text = " ".join(text.split())

        if len(text) <= max_length:
            return text

        return text[: max_length - 3] + "..."


@dataclass
class Message:
    """A cached remote message.

    ``labels`` is what the user sees (remote state with pending local changes
    replayed on top); ``remote_labels`` is the last state the server confirmed.
    """

    id: str
    thread_id: str
    subject: str = ""
    sender: str = ""
    recipients: str = ""
    snippet: str = ""
    received_at: Optional[datetime] = None
    labels: FrozenSet[str] = field(default_factory=frozenset)
    remote_labels: FrozenSet[str] = field(default_factory=frozenset)
    body: Optional[Body] = None

    def __post_init__(self):
        if not self.id or not self.id.strip():
            raise ValueError("Message ID cannot be empty")
        self.thread_id = self.thread_id or self.id
        self.labels = frozenset(self.labels)
        self.remote_labels = frozenset(self.remote_labels)
        if self.received_at is not None and self.received_at.tzinfo is None:
            self.received_at = self.received_at.replace(tzinfo=timezone.utc)

    @property
    def is_unread(self) -> bool:
        return SystemLabel.UNREAD in self.labels

    @property
    def is_starred(self) -> bool:
        return SystemLabel.STARRED in self.labels

    @property
    def is_deleted(self) -> bool:
        return SystemLabel.TRASH in self.labels

    @property
    def in_inbox(self) -> bool:
        return SystemLabel.INBOX in self.labels

    @property
    def has_body(self) -> bool:
        return self.body is not None and not self.body.is_placeholder


@dataclass
class Thread:
    """Messages sharing a thread id. Derived, never persisted."""

    id: str
    messages: List[Message]

    @property
    def subject(self) -> str:
        return self.messages[0].subject if self.messages else ""

    @property
    def latest_at(self) -> Optional[datetime]:
        dates = [m.received_at for m in self.messages if m.received_at]
        return max(dates) if dates else None

    @property
    def is_unread(self) -> bool:
        return any(m.is_unread for m in self.messages)

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @classmethod
    def group(cls, messages: List[Message]) -> List["Thread"]:
        """Group messages by thread, oldest message first, newest thread first."""
        by_thread: Dict[str, List[Message]] = {}
        for message in messages:
            by_thread.setdefault(message.thread_id, []).append(message)

        threads = [
            cls(
                id=thread_id,
                messages=sorted(
                    items, key=lambda m: (m.received_at or _OLDEST, m.id)
                ),
            )
            for thread_id, items in by_thread.items()
        ]
        threads.sort(key=lambda t: (t.latest_at or _OLDEST, t.id), reverse=True)
        return threads


@dataclass
class MailboxView:
    """Consistent, local-only view of the mailbox handed to the UI."""

    messages: List[Message]
    threads: List[Thread]
    unread_counts: Dict[str, int]
    labels: List[Label] = field(default_factory=list)
    cursor: Optional[str] = None
    last_sync: Optional[datetime] = None

    @property
    def unread_total(self) -> int:
        return sum(1 for m in self.messages if m.is_unread)

    def get_message(self, message_id: str) -> Optional[Message]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None
