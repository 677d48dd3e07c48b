"""Domain models."""

from .change import (
    ChangeStatus,
    Mutation,
    MutationKind,
    PendingChange,
    apply_mutation_to_labels,
    replay,
)
from .delta import DeltaKind, RemoteDelta
from .message import Body, Label, MailboxView, Message, SystemLabel, Thread

__all__ = [
    "Body",
    "ChangeStatus",
    "DeltaKind",
    "Label",
    "MailboxView",
    "Message",
    "Mutation",
    "MutationKind",
    "PendingChange",
    "RemoteDelta",
    "SystemLabel",
    "Thread",
    "apply_mutation_to_labels",
    "replay",
]
