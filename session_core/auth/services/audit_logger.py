"""
Audit trail of account switch attempts.

Bounded FIFO kept in the secure key-value store; the oldest entries are
dropped first.
"""

import logging
from typing import List, Optional

from pydantic import TypeAdapter, ValidationError

from common.storage import KeyValueStore
from session_core.clock import Clock, now_ms
from session_core.schemas import AccountSwitchAuditEntry

logger = logging.getLogger(__name__)

AUDIT_LOG_KEY = "account_switch_audit"
_entries_adapter = TypeAdapter(List[AccountSwitchAuditEntry])


class AccountSwitchAuditLogger:

    def __init__(self, secure_store: KeyValueStore, limit: int = 50, clock: Clock = now_ms):
        self._secure_store = secure_store
        self._limit = limit
        self._clock = clock

    async def log_switch(
        self,
        from_user_id: Optional[str],
        to_user_id: str,
        success: bool,
        reason: Optional[str] = None,
    ) -> AccountSwitchAuditEntry:
        entry = AccountSwitchAuditEntry(
            fromUserId=from_user_id,
            toUserId=to_user_id,
            success=success,
            reason=reason,
            timestamp=self._clock(),
        )
        entries = await self.get_entries()
        entries.append(entry)
        entries = entries[-self._limit:]
        await self._secure_store.set_item(
            AUDIT_LOG_KEY, _entries_adapter.dump_json(entries).decode()
        )
        logger.info(
            f"Account switch {from_user_id} -> {to_user_id}: "
            f"{'success' if success else 'failed'}{f' ({reason})' if reason else ''}"
        )
        return entry

    async def get_entries(self) -> List[AccountSwitchAuditEntry]:
        """Oldest first. An unreadable log is discarded and restarted."""
        raw = await self._secure_store.get_item(AUDIT_LOG_KEY)
        if not raw:
            return []
        try:
            return _entries_adapter.validate_json(raw)
        except ValidationError:
            logger.warning("Account switch audit log unreadable, starting a new one")
            await self._secure_store.delete_item(AUDIT_LOG_KEY)
            return []

    async def clear(self) -> None:
        await self._secure_store.delete_item(AUDIT_LOG_KEY)
