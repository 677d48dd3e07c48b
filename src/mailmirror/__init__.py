"""Offline-first mirror of a Gmail mailbox."""

__version__ = "0.1.0"
