"""System keyring backend"""

import asyncio
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from mailmirror.utils.logging import get_logger

from .base import SecretBackend

logger = get_logger(__name__)


class KeyringBackend(SecretBackend):
    """Platform keyring (macOS Keychain, Secret Service, Windows Vault)."""

    @property
    def name(self) -> str:
        return "System Keyring"

    @property
    def priority(self) -> int:
        return 1

    async def is_available(self) -> bool:
        """Check that a real (non-fail) keyring is configured.

        Returns:
            bool: True if keyring is usable, False otherwise.
        """
        try:
            backend = await asyncio.to_thread(keyring.get_keyring)
        except KeyringError as e:
            logger.debug(f"Keyring availability check failed: {e}")
            return False

        # keyring.backends.fail.Keyring has priority 0 and refuses every call
        return getattr(backend, "priority", 0) > 0

    async def store(self, service: str, key: str, value: str) -> None:
        await asyncio.to_thread(keyring.set_password, service, key, value)

    async def retrieve(self, service: str, key: str) -> Optional[str]:
        return await asyncio.to_thread(keyring.get_password, service, key)

    async def delete(self, service: str, key: str) -> None:
        try:
            await asyncio.to_thread(keyring.delete_password, service, key)
        except PasswordDeleteError:
            logger.debug(f"No keyring entry to delete for key: {key}")
