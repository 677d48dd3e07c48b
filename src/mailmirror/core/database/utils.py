"""Database utilities."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from mailmirror.core.models.change import (
    ChangeStatus,
    Mutation,
    MutationKind,
    PendingChange,
)
from mailmirror.core.models.message import Body, Label, Message


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def message_to_values(message: Message) -> Dict[str, Any]:
    """Column values for a message row (the body lives in its own table)."""
    # Stored in UTC so the ISO strings sort chronologically
    received_at = message.received_at
    if received_at is not None:
        received_at = received_at.astimezone(timezone.utc)

    return {
        "id": message.id,
        "thread_id": message.thread_id,
        "subject": message.subject,
        "sender": message.sender,
        "recipients": message.recipients,
        "snippet": message.snippet,
        "received_at": to_iso(received_at),
        "labels": sorted(message.labels),
        "remote_labels": sorted(message.remote_labels),
    }


def row_to_message(row, body: Optional[Body] = None) -> Message:
    """Convert database row to Message domain object."""
    return Message(
        id=row.id,
        thread_id=row.thread_id,
        subject=row.subject or "",
        sender=row.sender or "",
        recipients=row.recipients or "",
        snippet=row.snippet or "",
        received_at=from_iso(row.received_at),
        labels=frozenset(row.labels or ()),
        remote_labels=frozenset(row.remote_labels or ()),
        body=body,
    )


def row_to_body(row) -> Body:
    return Body(
        message_id=row.message_id,
        text=row.text or "",
        html=row.html,
        fetched_at=from_iso(row.fetched_at),
    )


def row_to_label(row) -> Label:
    return Label(id=row.id, name=row.name, type=row.type)


def row_to_pending_change(row) -> PendingChange:
    """Convert a pending_changes row to a PendingChange."""
    mutation = Mutation(
        message_id=row.message_id,
        kind=MutationKind(row.kind),
        label=row.label,
        payload=row.payload,
    )
    return PendingChange(
        id=row.id,
        mutation=mutation,
        created_at=from_iso(row.created_at),
        attempts=row.attempts,
        status=ChangeStatus(row.status),
        last_error=row.last_error,
    )
