"""
Persistence for locally remembered accounts.

Accounts are kept as one JSON list in the secure key-value store, keyed
by userId. Each record carries its own token pair so a cold switch can
restore it.
"""

import logging
from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from common.storage import KeyValueStore, StorageCorruptionError
from session_core.schemas import StoredAccount

logger = logging.getLogger(__name__)

ACCOUNTS_KEY = "remembered_accounts"
_accounts_adapter = TypeAdapter(List[StoredAccount])


class AccountsStore:
    """Reads and writes the remembered account list."""

    def __init__(self, secure_store: KeyValueStore):
        self._secure_store = secure_store

    async def list_accounts(self) -> List[StoredAccount]:
        """
        Load every stored account.

        Raises:
            StorageCorruptionError: Stored list cannot be decoded
        """
        raw = await self._secure_store.get_item(ACCOUNTS_KEY)
        if not raw:
            return []
        try:
            return _accounts_adapter.validate_json(raw)
        except ValidationError as e:
            raise StorageCorruptionError(ACCOUNTS_KEY, str(e))

    async def get(self, user_id: str) -> Optional[StoredAccount]:
        for account in await self.list_accounts():
            if account.userId == user_id:
                return account
        return None

    async def save_all(self, accounts: List[StoredAccount]) -> None:
        payload = _accounts_adapter.dump_json(accounts).decode()
        await self._secure_store.set_item(ACCOUNTS_KEY, payload)

    async def upsert(self, account: StoredAccount) -> bool:
        """
        Insert or replace the account with the same userId.

        Returns:
            True if an existing record was replaced
        """
        accounts = await self.list_accounts()
        for index, existing in enumerate(accounts):
            if existing.userId == account.userId:
                accounts[index] = account.model_copy(update={"addedAt": existing.addedAt})
                await self.save_all(accounts)
                return True

        accounts.append(account)
        await self.save_all(accounts)
        return False

    async def remove(self, user_id: str) -> bool:
        accounts = await self.list_accounts()
        remaining = [account for account in accounts if account.userId != user_id]
        if len(remaining) == len(accounts):
            return False
        await self.save_all(remaining)
        return True

    async def clear(self) -> None:
        await self._secure_store.delete_item(ACCOUNTS_KEY)
