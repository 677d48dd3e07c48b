"""Interface for secret storage backends."""

from abc import ABC, abstractmethod
from typing import Optional


class SecretBackend(ABC):
    """A platform secret store offering get/set/delete of string values.

    Entries are addressed by ``(service, key)``. Implementations must be safe
    to call from the event loop, off-loading blocking work to a thread.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name for display."""

    @property
    @abstractmethod
    def priority(self) -> int:
        """Priority for auto-selection (lower = preferred)."""

    @abstractmethod
    async def is_available(self) -> bool:
        """Check if the backend can be used on this system."""

    @abstractmethod
    async def store(self, service: str, key: str, value: str) -> None:
        """Store a secret value."""

    @abstractmethod
    async def retrieve(self, service: str, key: str) -> Optional[str]:
        """Retrieve a secret value, or None when absent."""

    @abstractmethod
    async def delete(self, service: str, key: str) -> None:
        """Delete a secret value. Deleting a missing entry is not an error."""
