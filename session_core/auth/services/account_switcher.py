"""
Multi-account management with cold switches.

A cold switch swaps the whole token pair for another remembered account
and re-establishes its session from the backend, as opposed to a profile
switch inside the same user.
"""

import logging
from typing import List, Optional

from common.auth import BiometricGateway
from common.events import EventBus
from session_core import events
from session_core.auth.services.accounts_store import AccountsStore
from session_core.auth.services.audit_logger import AccountSwitchAuditLogger
from session_core.auth.services.session_manager import SessionManager
from session_core.auth.tokens import is_token_expired
from session_core.clock import Clock, now_ms
from session_core.config import Settings
from session_core.schemas import Account, SessionData, StoredAccount, display_name_for
from session_core.types import AccountOperationResult, AccountSwitchResult, ErrorCode, TokenCheckResult

logger = logging.getLogger(__name__)


class AccountSwitcher:
    """
    Remembers up to MAX_ACCOUNTS accounts per device and switches between them.
    """

    def __init__(
        self,
        store: AccountsStore,
        audit_logger: AccountSwitchAuditLogger,
        session_manager: SessionManager,
        biometric: BiometricGateway,
        settings: Settings,
        bus: Optional[EventBus] = None,
        clock: Clock = now_ms,
    ):
        """
        Initialize AccountSwitcher.

        Args:
            store: Remembered account persistence
            audit_logger: Switch audit trail
            session_manager: Owner of the token pair and session
            biometric: Biometric hardware gateway
            settings: Session core settings
            bus: Event bus for ACCOUNT_SWITCHED
            clock: Epoch-ms clock
        """
        self._store = store
        self._audit = audit_logger
        self._session_manager = session_manager
        self._biometric = biometric
        self._settings = settings
        self._bus = bus
        self._clock = clock
        self._switching = False

    @property
    def is_switching(self) -> bool:
        return self._switching

    async def get_available_accounts(self) -> List[Account]:
        """Remembered accounts, most recently used first. Tokens are not exposed."""
        accounts = await self._store.list_accounts()
        accounts.sort(key=lambda account: account.lastUsedAt, reverse=True)
        return [account.to_account() for account in accounts]

    async def save_current_account(
        self,
        session: SessionData,
        access_token: str,
        refresh_token: Optional[str],
    ) -> AccountOperationResult:
        """
        Remember the signed-in account.

        Re-saving a known userId updates it in place. A new account beyond
        MAX_ACCOUNTS is rejected and nothing is written.
        """
        accounts = await self._store.list_accounts()
        known = any(account.userId == session.userId for account in accounts)

        if not known and len(accounts) >= self._settings.MAX_ACCOUNTS:
            logger.info(f"Not remembering user {session.userId}: account limit reached")
            return AccountOperationResult(
                success=False,
                error_code=ErrorCode.MAX_ACCOUNTS_EXCEEDED,
                message=f"Maximum {self._settings.MAX_ACCOUNTS} accounts. Remove one to add another.",
            )

        now = self._clock()
        await self._store.upsert(StoredAccount(
            userId=session.userId,
            profileId=session.profileId,
            entityId=session.entityId,
            displayName=display_name_for(session),
            email=session.email,
            firstName=session.firstName,
            lastName=session.lastName,
            profileType=session.profileType,
            avatarUrl=session.avatarUrl,
            addedAt=now,
            lastUsedAt=now,
            accessToken=access_token,
            refreshToken=refresh_token,
        ))
        logger.info(f"{'Updated' if known else 'Remembered'} account {session.userId}")
        return AccountOperationResult(success=True)

    async def update_account_tokens(
        self,
        user_id: str,
        access_token: str,
        refresh_token: Optional[str],
    ) -> bool:
        account = await self._store.get(user_id)
        if account is None:
            return False
        await self._store.upsert(
            account.model_copy(update={"accessToken": access_token, "refreshToken": refresh_token})
        )
        return True

    async def switch_account(
        self,
        target_user_id: str,
        current_user_id: Optional[str] = None,
    ) -> AccountSwitchResult:
        """
        Cold-switch to a remembered account.

        Args:
            target_user_id: Account to switch to
            current_user_id: Account being left, if any

        Returns:
            AccountSwitchResult with the restored session on success
        """
        if self._switching:
            return AccountSwitchResult(
                success=False,
                error_code=ErrorCode.SWITCH_IN_PROGRESS,
                message="Account switch already in progress",
            )

        self._switching = True
        try:
            result = await self._switch(target_user_id, current_user_id)
        finally:
            self._switching = False

        if result.error_code != ErrorCode.ALREADY_ACTIVE:
            await self._audit.log_switch(
                current_user_id, target_user_id, result.success, reason=result.error_code
            )
        if result.success and self._bus:
            self._bus.emit(events.ACCOUNT_SWITCHED, result.session)
        return result

    async def _switch(self, target_user_id: str, current_user_id: Optional[str]) -> AccountSwitchResult:
        if target_user_id == current_user_id:
            return AccountSwitchResult(
                success=True,
                session=self._session_manager.get_session(),
                error_code=ErrorCode.ALREADY_ACTIVE,
                message="Already using this account",
            )

        target = await self._store.get(target_user_id)
        if target is None:
            return AccountSwitchResult(
                success=False, error_code=ErrorCode.ACCOUNT_NOT_FOUND, message="Account not found"
            )

        if self._settings.ACCOUNT_SWITCH_REQUIRE_BIOMETRIC:
            failure = await self._verify_biometric(target)
            if failure:
                return failure

        now = self._clock()
        if is_token_expired(target.accessToken, now) and is_token_expired(target.refreshToken, now):
            return AccountSwitchResult(
                success=False,
                error_code=ErrorCode.ACCOUNT_SESSION_EXPIRED,
                message="This account's session has expired. Sign in again.",
            )

        # The active session is not touched until the target pair checks out
        check = await self._session_manager.check_tokens(target.accessToken, target.refreshToken)
        if check.is_valid and check.user.userId != target_user_id:
            check = TokenCheckResult(
                is_valid=False,
                error="Stored tokens belong to a different user",
                error_code=ErrorCode.DIFFERENT_USER,
            )

        if not check.is_valid:
            logger.warning(f"Switch to {target_user_id} failed validation ({check.error_code})")
            return AccountSwitchResult(
                success=False,
                error_code=check.error_code,
                message=check.error or "Could not restore this account",
            )

        # The check may have refreshed the pair, which retires the stored one
        await self._store.upsert(target.model_copy(update={
            "accessToken": check.access_token,
            "refreshToken": check.refresh_token,
            "lastUsedAt": self._clock(),
        }))

        previous_access = await self._session_manager.get_access_token()
        if current_user_id and previous_access:
            await self.update_account_tokens(
                current_user_id, previous_access, await self._session_manager.get_refresh_token()
            )

        await self._session_manager.store_tokens(check.access_token, check.refresh_token)
        self._session_manager.set_session(check.user)

        logger.info(f"Switched account to {target_user_id}")
        return AccountSwitchResult(success=True, session=check.user)

    async def _verify_biometric(self, target: StoredAccount) -> Optional[AccountSwitchResult]:
        if not await self._biometric.is_available():
            return AccountSwitchResult(
                success=False,
                error_code=ErrorCode.BIOMETRIC_UNAVAILABLE,
                message="Biometric authentication is required to switch accounts",
            )

        result = await self._biometric.authenticate(f"Switch to {target.displayName or target.userId}")
        if result.success:
            return None
        if result.cancelled:
            return AccountSwitchResult(
                success=False, error_code=ErrorCode.BIOMETRIC_CANCELLED, message="Cancelled"
            )
        return AccountSwitchResult(
            success=False,
            error_code=ErrorCode.BIOMETRIC_FAILED,
            message="Biometric authentication failed",
        )

    async def remove_account(
        self,
        user_id: str,
        current_user_id: Optional[str] = None,
    ) -> AccountOperationResult:
        """Forget an account. The active account and the last account stay."""
        if user_id == current_user_id:
            return AccountOperationResult(
                success=False,
                error_code=ErrorCode.CANNOT_REMOVE_ACTIVE,
                message="Switch to another account before removing this one",
            )

        accounts = await self._store.list_accounts()
        if not any(account.userId == user_id for account in accounts):
            return AccountOperationResult(
                success=False, error_code=ErrorCode.ACCOUNT_NOT_FOUND, message="Account not found"
            )
        if len(accounts) == 1:
            return AccountOperationResult(
                success=False,
                error_code=ErrorCode.CANNOT_REMOVE_LAST,
                message="Cannot remove the only remembered account",
            )

        await self._store.remove(user_id)
        logger.info(f"Removed account {user_id}")
        return AccountOperationResult(success=True)

    async def clear_all_accounts(self) -> None:
        await self._store.clear()
        await self._audit.clear()
        logger.info("All remembered accounts cleared")

    async def get_audit_log(self):
        return await self._audit.get_entries()
