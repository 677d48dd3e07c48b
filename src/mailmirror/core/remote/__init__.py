"""Remote mailbox service access."""

from .client import RemoteClient, TokenProvider, raise_for_status
from .parser import parse_body, parse_message

__all__ = ["RemoteClient", "TokenProvider", "parse_body", "parse_message", "raise_for_status"]
