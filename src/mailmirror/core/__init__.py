"""Mailbox synchronization and local cache engine."""
