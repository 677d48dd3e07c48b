"""Secret store used by the credential store.

The first available backend in priority order wins: the system keyring
when one is configured, otherwise a Fernet-encrypted file under the
mailmirror home directory.
"""

from typing import Optional, Sequence

from mailmirror.utils.errors import KeyStoreError, MailMirrorError
from mailmirror.utils.logging import get_logger

from .backends.base import SecretBackend
from .backends.encrypted_file import EncryptedFileBackend
from .backends.keyring import KeyringBackend

logger = get_logger(__name__)


class KeyStore:
    """String secrets addressed by key, under one service name."""

    DEFAULT_BACKENDS = (KeyringBackend, EncryptedFileBackend)

    def __init__(
        self,
        service_name: str = "mailmirror-credentials",
        backend: Optional[SecretBackend] = None,
        candidates: Optional[Sequence[type]] = None,
    ):
        self.service_name = service_name
        self.backend: Optional[SecretBackend] = backend
        self._candidate_classes = list(candidates or self.DEFAULT_BACKENDS)

    async def initialise(self) -> None:
        if self.backend is not None:
            return

        candidates = sorted(
            (backend_class() for backend_class in self._candidate_classes),
            key=lambda b: b.priority,
        )
        for candidate in candidates:
            try:
                available = await candidate.is_available()
            except Exception as e:
                logger.debug(f"Secret backend {candidate.name} unusable: {e}")
                continue
            if available:
                self.backend = candidate
                logger.info(f"Secret backend selected: {candidate.name}")
                return

        raise KeyStoreError("No credential backend available")

    async def store(self, key: str, value: str) -> None:
        backend = await self._backend()
        await self._call(backend.store(self.service_name, key, value), "store", key)
        logger.debug(f"Stored secret '{key}'")

    async def retrieve(self, key: str) -> Optional[str]:
        """Return the stored value, or None when there is no entry.

        Raises:
            KeyStoreError: The backend failed (distinct from "not found").
        """
        backend = await self._backend()
        return await self._call(backend.retrieve(self.service_name, key), "retrieve", key)

    async def delete(self, key: str) -> None:
        backend = await self._backend()
        await self._call(backend.delete(self.service_name, key), "delete", key)
        logger.info(f"Deleted secret '{key}'")

    def get_backend_info(self) -> dict:
        if self.backend is None:
            return {"status": "not_initialised"}
        return {"backend": self.backend.name, "priority": self.backend.priority}

    async def _backend(self) -> SecretBackend:
        if self.backend is None:
            await self.initialise()
        return self.backend

    async def _call(self, operation, action: str, key: str):
        try:
            return await operation
        except MailMirrorError:
            raise
        except Exception as e:
            raise KeyStoreError(
                f"Failed to {action} secret: {e}",
                details={"key": key, "backend": self.backend.name},
            ) from e
