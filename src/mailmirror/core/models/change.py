"""Queued local mutations and their effect on label state"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional

from .message import SystemLabel


class MutationKind(Enum):
    """Kinds of change the user can queue against the remote mailbox."""

    LABEL_ADD = "label_add"
    LABEL_REMOVE = "label_remove"
    DELETE = "delete"
    SEND_DRAFT = "send_draft"

    @classmethod
    def from_string(cls, value: str) -> "MutationKind":
        """Create MutationKind from string.

        Raises:
            ValueError: If the kind is unknown.
        """
        try:
            return cls(value.lower().replace("-", "_"))
        except ValueError:
            raise ValueError(f"Invalid mutation kind: {value}")

    @property
    def inverse(self) -> Optional["MutationKind"]:
        if self is MutationKind.LABEL_ADD:
            return MutationKind.LABEL_REMOVE
        if self is MutationKind.LABEL_REMOVE:
            return MutationKind.LABEL_ADD
        return None

    @property
    def needs_label(self) -> bool:
        return self in (MutationKind.LABEL_ADD, MutationKind.LABEL_REMOVE)


class ChangeStatus(Enum):
    """Lifecycle of a queued change."""

    PENDING = "pending"
    FAILED = "failed"
    CANCELLED = "cancelled"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class Mutation:
    """What the user asked for, before it is queued."""

    message_id: str
    kind: MutationKind
    label: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not self.message_id or not self.message_id.strip():
            raise ValueError("Mutation needs a target message id")
        if self.kind.needs_label and not self.label:
            raise ValueError(f"{self.kind.value} needs a label")
        if not self.kind.needs_label and self.label is not None:
            raise ValueError(f"{self.kind.value} does not take a label")

    def duplicates(self, other: "Mutation") -> bool:
        return (
            self.message_id == other.message_id
            and self.kind is other.kind
            and self.label == other.label
            and self.payload == other.payload
        )

    def is_inverse_of(self, other: "Mutation") -> bool:
        return (
            self.kind.inverse is not None
            and self.message_id == other.message_id
            and self.kind.inverse is other.kind
            and self.label == other.label
        )

    @property
    def touched_labels(self) -> FrozenSet[str]:
        """Labels whose presence this mutation can change."""
        if self.kind.needs_label:
            return frozenset({self.label})
        if self.kind is MutationKind.DELETE:
            return frozenset({SystemLabel.INBOX, SystemLabel.TRASH})
        return frozenset({SystemLabel.DRAFT, SystemLabel.SENT})

    def overlaps(self, other: "Mutation") -> bool:
        """True when the order of the two mutations matters."""
        return self.message_id == other.message_id and bool(
            self.touched_labels & other.touched_labels
        )


@dataclass
class PendingChange:
    """A mutation durably queued until the remote confirms it."""

    id: int
    mutation: Mutation
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0
    status: ChangeStatus = ChangeStatus.PENDING
    last_error: Optional[str] = None

    @property
    def message_id(self) -> str:
        return self.mutation.message_id

    @property
    def kind(self) -> MutationKind:
        return self.mutation.kind

    @property
    def label(self) -> Optional[str]:
        return self.mutation.label

    def describe(self) -> str:
        target = f" {self.label}" if self.label else ""
        return f"#{self.id} {self.kind.value}{target} on {self.message_id}"


def apply_mutation_to_labels(
    labels: FrozenSet[str], mutation: Mutation
) -> FrozenSet[str]:
    """Return the label set after ``mutation`` takes effect."""
    if mutation.kind is MutationKind.LABEL_ADD:
        return labels | {mutation.label}

    if mutation.kind is MutationKind.LABEL_REMOVE:
        return labels - {mutation.label}

    if mutation.kind is MutationKind.DELETE:
        return (labels - {SystemLabel.INBOX}) | {SystemLabel.TRASH}

    if mutation.kind is MutationKind.SEND_DRAFT:
        if SystemLabel.DRAFT not in labels:
            return labels
        return (labels - {SystemLabel.DRAFT}) | {SystemLabel.SENT}

    return labels


def replay(
    remote_labels: FrozenSet[str], changes: Iterable[PendingChange]
) -> FrozenSet[str]:
    """Visible labels: the remote state with outstanding changes applied in order."""
    labels = frozenset(remote_labels)
    for change in sorted(changes, key=lambda c: c.id):
        labels = apply_mutation_to_labels(labels, change.mutation)
    return labels
