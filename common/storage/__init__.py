"""
Storage module - Device-side token, key-value and PIN-record stores.
"""

from common.storage.base import (
    KeyValueStore,
    ProfilePinStore,
    StorageCorruptionError,
    StorageError,
    TokenStore,
)
from common.storage.memory import (
    InMemoryKeyValueStore,
    InMemoryProfilePinStore,
    InMemoryTokenStore,
)

__all__ = [
    "KeyValueStore",
    "ProfilePinStore",
    "StorageCorruptionError",
    "StorageError",
    "TokenStore",
    "InMemoryKeyValueStore",
    "InMemoryProfilePinStore",
    "InMemoryTokenStore",
]
