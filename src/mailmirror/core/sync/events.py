"""Notifications published to the UI about background sync activity."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

from mailmirror.core.models.change import MutationKind, PendingChange
from mailmirror.core.models.message import SystemLabel


class SyncEventKind(Enum):
    CYCLE_COMPLETED = "cycle_completed"
    CHANGE_CONFIRMED = "change_confirmed"
    CHANGE_FAILED = "change_failed"
    BACKOFF = "backoff"
    AUTH_REQUIRED = "auth_required"
    SYNC_ERROR = "sync_error"
    BODY_FETCHED = "body_fetched"
    OLDER_LOADED = "older_loaded"


@dataclass(frozen=True)
class SyncEvent:
    kind: SyncEventKind
    message: str
    message_id: Optional[str] = None
    change_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventSink = Callable[[SyncEvent], None]


def describe_confirmation(change: PendingChange) -> str:
    """Short user-facing text for a change the server accepted."""
    kind, label = change.kind, change.label

    if kind is MutationKind.DELETE:
        return "Message moved to trash"
    if kind is MutationKind.SEND_DRAFT:
        return "Message sent"
    if kind is MutationKind.LABEL_REMOVE and label == SystemLabel.INBOX:
        return "Message archived"
    if label == SystemLabel.UNREAD:
        return "Marked unread" if kind is MutationKind.LABEL_ADD else "Marked read"
    if label == SystemLabel.STARRED:
        return "Starred" if kind is MutationKind.LABEL_ADD else "Unstarred"
    if kind is MutationKind.LABEL_ADD:
        return f"Label {label} synced"
    return f"Label {label} removed"
