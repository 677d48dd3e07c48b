"""Secret storage backends."""

from .base import SecretBackend
from .encrypted_file import EncryptedFileBackend
from .keyring import KeyringBackend

__all__ = [
    "SecretBackend",
    "EncryptedFileBackend",
    "KeyringBackend",
]
