"""Credential lifecycle and secret storage."""

from .credentials import (
    AuthStatus,
    ClientSecret,
    CredentialStore,
    InstalledAppOAuthFlow,
    OAuthFlow,
    TokenSet,
)
from .key_store import KeyStore

__all__ = [
    "AuthStatus",
    "ClientSecret",
    "CredentialStore",
    "InstalledAppOAuthFlow",
    "KeyStore",
    "OAuthFlow",
    "TokenSet",
]
