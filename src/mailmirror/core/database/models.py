"""SQLAlchemy table definitions with proper types and constraints."""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
)

from .base import metadata

messages = Table(
    "messages",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("thread_id", String(255), nullable=False, index=True),
    Column("subject", String(1000), nullable=False, default="", server_default=""),
    Column("sender", String(500), nullable=False, default="", server_default=""),
    Column("recipients", Text, nullable=False, default="", server_default=""),
    Column("snippet", Text, nullable=False, default="", server_default=""),
    Column("received_at", String(32), nullable=True),  # ISO8601 with timezone
    # Visible label set (remote state with pending changes replayed on top)
    Column("labels", JSON, nullable=False, default=list),
    # Last label set the server confirmed
    Column("remote_labels", JSON, nullable=False, default=list),
    Index("ix_messages_received_at", "received_at"),
)

bodies = Table(
    "bodies",
    metadata,
    Column(
        "message_id",
        String(255),
        ForeignKey("messages.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("text", Text, nullable=False, default="", server_default=""),
    Column("html", Text, nullable=True),
    Column("fetched_at", String(32), nullable=False),
)

labels = Table(
    "labels",
    metadata,
    Column("id", String(255), primary_key=True),
    Column("name", String(500), nullable=False),
    Column("type", String(20), nullable=False, default="user", server_default="user"),
)

sync_state = Table(
    "sync_state",
    metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Text, nullable=True),
)

pending_changes = Table(
    "pending_changes",
    metadata,
    # AUTOINCREMENT so a sequence number is never reused after deletion
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("message_id", String(255), nullable=False),
    Column("kind", String(20), nullable=False),
    Column("label", String(255), nullable=True),
    Column("payload", JSON, nullable=True),
    Column("created_at", String(32), nullable=False),
    Column("attempts", Integer, nullable=False, default=0, server_default="0"),
    Column(
        "status", String(20), nullable=False, default="pending", server_default="pending"
    ),
    Column("last_error", Text, nullable=True),
    CheckConstraint(
        "status IN ('pending', 'failed')",
        name="status_values",
    ),
    Index("ix_pending_changes_message_status", "message_id", "status"),
    sqlite_autoincrement=True,
)

# Keys of the sync_state table
CURSOR_KEY = "cursor"
LAST_SYNC_KEY = "last_sync"
# Followed by a label id; holds the next page of older messages, "" once exhausted
BACKFILL_KEY_PREFIX = "backfill:"

ALL_TABLES = {
    "messages": messages,
    "bodies": bodies,
    "labels": labels,
    "sync_state": sync_state,
    "pending_changes": pending_changes,
}
