"""
Abstract storage interfaces for device-side persistence.

The concrete backends (OS keychain, encrypted preferences, ...) live
outside this library. Everything here is async so a backend is free to do
I/O.

Example:
    from common.storage import InMemoryTokenStore

    store = InMemoryTokenStore()
    await store.set_access_token("abc")
    token = await store.get_access_token()
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class StorageError(Exception):
    """A storage backend failed to read or write."""


class StorageCorruptionError(StorageError):
    """Persisted data exists but cannot be decoded."""

    def __init__(self, key: str, reason: str = "unreadable value"):
        self.key = key
        self.reason = reason
        super().__init__(f"Corrupted value for '{key}': {reason}")


class TokenStore(ABC):
    """Access/refresh token persistence."""

    @abstractmethod
    async def get_access_token(self) -> Optional[str]:
        pass

    @abstractmethod
    async def get_refresh_token(self) -> Optional[str]:
        pass

    @abstractmethod
    async def set_access_token(self, token: str) -> None:
        pass

    @abstractmethod
    async def set_refresh_token(self, token: Optional[str]) -> None:
        """Store the refresh token; ``None`` removes it."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        """Remove both tokens together."""
        pass


class KeyValueStore(ABC):
    """
    Secure string key-value storage.

    Values are opaque strings; callers serialize structured data themselves.
    """

    @abstractmethod
    async def get_item(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    async def set_item(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    async def delete_item(self, key: str) -> None:
        """Delete a key. Deleting a missing key is not an error."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


class ProfilePinStore(ABC):
    """
    PIN-association records, keyed by profile.

    Several profiles can be remembered at once; one of them is marked as
    the last active profile and is used when no profile is named.
    """

    @abstractmethod
    async def store_profile_pin_data(self, profile_id: str, data: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def get_profile_pin_data(
        self, profile_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Get the record for a profile.

        Args:
            profile_id: Profile to look up; defaults to the last active profile

        Returns:
            The stored record, or None if nothing is stored
        """
        pass

    @abstractmethod
    async def set_last_active_profile(self, profile_id: str) -> None:
        pass

    @abstractmethod
    async def get_last_active_profile_id(self) -> Optional[str]:
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass
