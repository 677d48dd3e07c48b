"""Remote-reported changes since a sync cursor"""

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, Optional

from .message import Message


class DeltaKind(Enum):
    """Kinds of change the remote history reports."""

    UPSERT = "upsert"
    DELETE = "delete"
    LABELS_ADDED = "labels_added"
    LABELS_REMOVED = "labels_removed"


@dataclass(frozen=True)
class RemoteDelta:
    """One entry of the remote history, applied in order by the local store.

    ``UPSERT`` carries the full message (metadata and label set); the label
    deltas carry only the label ids that changed.
    """

    kind: DeltaKind
    message_id: str
    labels: FrozenSet[str] = field(default_factory=frozenset)
    message: Optional[Message] = None

    @classmethod
    def upsert(cls, message: Message) -> "RemoteDelta":
        return cls(DeltaKind.UPSERT, message.id, frozenset(message.remote_labels), message)

    @classmethod
    def deleted(cls, message_id: str) -> "RemoteDelta":
        return cls(DeltaKind.DELETE, message_id)

    @classmethod
    def labels_added(cls, message_id: str, labels: Iterable[str]) -> "RemoteDelta":
        return cls(DeltaKind.LABELS_ADDED, message_id, frozenset(labels))

    @classmethod
    def labels_removed(cls, message_id: str, labels: Iterable[str]) -> "RemoteDelta":
        return cls(DeltaKind.LABELS_REMOVED, message_id, frozenset(labels))
