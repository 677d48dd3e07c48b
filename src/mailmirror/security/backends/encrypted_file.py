"""Encrypted file backend"""

import asyncio
import json
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from mailmirror.utils.errors import EncryptionError
from mailmirror.utils.paths import CREDENTIALS_PATH, MASTER_KEY_PATH

from .base import SecretBackend


class EncryptedFileBackend(SecretBackend):
    """Fernet-encrypted JSON file, used when no keyring is available."""

    def __init__(
        self,
        secrets_path: Optional[Path] = None,
        master_key_path: Optional[Path] = None,
    ):
        self._secrets_path = secrets_path or CREDENTIALS_PATH
        self._master_key_path = master_key_path or MASTER_KEY_PATH
        self._master_key: Optional[bytes] = None
        self._lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "Encrypted File"

    @property
    def priority(self) -> int:
        return 99  # Lowest priority (fallback)

    async def is_available(self) -> bool:
        """Always available as fallback."""
        return True

    async def store(self, service: str, key: str, value: str) -> None:
        async with self._lock:
            credentials = await self._load_credentials()
            credentials[f"{service}:{key}"] = value
            await self._save_credentials(credentials)

    async def retrieve(self, service: str, key: str) -> Optional[str]:
        async with self._lock:
            credentials = await self._load_credentials()
        return credentials.get(f"{service}:{key}")

    async def delete(self, service: str, key: str) -> None:
        async with self._lock:
            credentials = await self._load_credentials()
            if credentials.pop(f"{service}:{key}", None) is not None:
                await self._save_credentials(credentials)

    async def _get_master_key(self) -> bytes:
        """Get or create the master encryption key.

        Returns:
            bytes: The master encryption key.
        """
        if self._master_key:
            return self._master_key

        def load_or_create():
            self._master_key_path.parent.mkdir(parents=True, exist_ok=True)

            if self._master_key_path.exists():
                return self._master_key_path.read_bytes()

            key = Fernet.generate_key()
            self._master_key_path.write_bytes(key)
            self._master_key_path.chmod(0o600)
            return key

        self._master_key = await asyncio.to_thread(load_or_create)
        return self._master_key

    async def _load_credentials(self) -> dict:
        """Load and decrypt credentials.

        Returns:
            dict: The decrypted credentials.
        """
        if not self._secrets_path.exists():
            return {}

        def load(master_key):
            encrypted_data = self._secrets_path.read_bytes()
            if not encrypted_data:
                return {}

            try:
                decrypted = Fernet(master_key).decrypt(encrypted_data)
            except InvalidToken as e:
                raise EncryptionError(
                    "Secrets file cannot be decrypted with the current master key",
                    details={"path": str(self._secrets_path)},
                ) from e
            return json.loads(decrypted)

        master_key = await self._get_master_key()
        return await asyncio.to_thread(load, master_key)

    async def _save_credentials(self, credentials: dict) -> None:
        """Encrypt and atomically replace the secrets file.

        Args:
            credentials (dict): The credentials to save.
        """

        def save(master_key):
            self._secrets_path.parent.mkdir(parents=True, exist_ok=True)

            encrypted = Fernet(master_key).encrypt(json.dumps(credentials).encode())

            temp_path = self._secrets_path.with_suffix(".tmp")
            temp_path.write_bytes(encrypted)
            temp_path.chmod(0o600)
            temp_path.replace(self._secrets_path)

        master_key = await self._get_master_key()
        await asyncio.to_thread(save, master_key)
