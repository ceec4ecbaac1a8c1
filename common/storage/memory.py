"""
In-memory storage backends.

Used by tests, the mock backend tooling and any process that does not need
persistence across restarts.
"""

import copy
from typing import Any, Dict, Optional

from common.storage.base import KeyValueStore, ProfilePinStore, TokenStore


class InMemoryTokenStore(TokenStore):

    def __init__(self, access_token: Optional[str] = None, refresh_token: Optional[str] = None):
        self._access_token = access_token
        self._refresh_token = refresh_token

    async def get_access_token(self) -> Optional[str]:
        return self._access_token

    async def get_refresh_token(self) -> Optional[str]:
        return self._refresh_token

    async def set_access_token(self, token: str) -> None:
        self._access_token = token

    async def set_refresh_token(self, token: Optional[str]) -> None:
        self._refresh_token = token

    async def clear(self) -> None:
        self._access_token = None
        self._refresh_token = None


class InMemoryKeyValueStore(KeyValueStore):

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(initial or {})

    async def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    async def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    async def delete_item(self, key: str) -> None:
        self._items.pop(key, None)

    async def clear(self) -> None:
        self._items.clear()

    def keys(self) -> list:
        return list(self._items)


class InMemoryProfilePinStore(ProfilePinStore):

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._last_active_profile_id: Optional[str] = None

    async def store_profile_pin_data(self, profile_id: str, data: Dict[str, Any]) -> None:
        self._records[profile_id] = copy.deepcopy(data)

    async def get_profile_pin_data(
        self, profile_id: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        key = profile_id or self._last_active_profile_id
        if key is None or key not in self._records:
            return None
        return copy.deepcopy(self._records[key])

    async def set_last_active_profile(self, profile_id: str) -> None:
        self._last_active_profile_id = profile_id

    async def get_last_active_profile_id(self) -> Optional[str]:
        return self._last_active_profile_id

    async def clear(self) -> None:
        self._records.clear()
        self._last_active_profile_id = None
