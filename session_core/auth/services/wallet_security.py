"""
Wallet security tier.

A higher tier than plain authentication that gates financial operations.
An unlock stays valid for WALLET_SESSION_TIMEOUT_MS and survives process
restarts through the persisted unlock timestamp.
"""

import logging
from typing import Optional

from common.auth import BiometricGateway
from common.storage import KeyValueStore
from session_core.auth.services.session_manager import WALLET_UNLOCK_KEY
from session_core.clock import Clock, now_ms
from session_core.config import Settings
from session_core.lock.services.app_lock_service import AppLockService
from session_core.types import AuthLevel, ErrorCode, WalletAccessResult

logger = logging.getLogger(__name__)


class WalletSecurity:
    """Grants and revokes WALLET_UNLOCKED."""

    def __init__(
        self,
        secure_store: KeyValueStore,
        biometric: BiometricGateway,
        app_lock: AppLockService,
        settings: Settings,
        clock: Clock = now_ms,
    ):
        self._secure_store = secure_store
        self._biometric = biometric
        self._app_lock = app_lock
        self._settings = settings
        self._clock = clock
        self._unlocked_at: Optional[int] = None

    @property
    def unlocked_at(self) -> Optional[int]:
        return self._unlocked_at

    def is_session_valid(self) -> bool:
        if self._unlocked_at is None:
            return False
        return self._clock() - self._unlocked_at < self._settings.WALLET_SESSION_TIMEOUT_MS

    def get_remaining_session_time(self) -> int:
        """Milliseconds until the current unlock expires (0 if locked)."""
        if self._unlocked_at is None:
            return 0
        elapsed = self._clock() - self._unlocked_at
        return max(0, self._settings.WALLET_SESSION_TIMEOUT_MS - elapsed)

    async def request_access(self, current_auth_level: AuthLevel) -> WalletAccessResult:
        """
        Upgrade to WALLET_UNLOCKED.

        Only possible from AUTHENTICATED (or an already unlocked wallet).
        Without biometric hardware or enrollment the user is never prompted.

        Args:
            current_auth_level: Level reported by the AuthStateMachine

        Returns:
            WalletAccessResult with the resulting level
        """
        if current_auth_level < AuthLevel.AUTHENTICATED:
            return WalletAccessResult(
                success=False,
                auth_level=current_auth_level,
                error_code=ErrorCode.NOT_AUTHENTICATED,
                message="Sign in to access your wallet",
            )

        if self.is_session_valid():
            return WalletAccessResult(success=True, auth_level=AuthLevel.WALLET_UNLOCKED)

        if self._app_lock.is_configured():
            if self._app_lock.is_locked:
                unlock = await self._app_lock.auto_unlock()
                if not unlock.success:
                    return WalletAccessResult(
                        success=False,
                        auth_level=current_auth_level,
                        error_code=unlock.error_code,
                        message=unlock.message,
                    )
        else:
            if not await self._biometric.has_hardware() or not await self._biometric.is_enrolled():
                logger.info("Wallet access denied: biometric not available")
                return WalletAccessResult(
                    success=False,
                    auth_level=current_auth_level,
                    error_code=ErrorCode.BIOMETRIC_UNAVAILABLE,
                    message="Set up Face ID, Touch ID or fingerprint to access your wallet",
                )

            result = await self._biometric.authenticate("Access your wallet")
            if not result.success:
                code = ErrorCode.BIOMETRIC_CANCELLED if result.cancelled else ErrorCode.BIOMETRIC_FAILED
                return WalletAccessResult(
                    success=False,
                    auth_level=current_auth_level,
                    error_code=code,
                    message="Wallet verification failed",
                )

        await self._grant()
        return WalletAccessResult(success=True, auth_level=AuthLevel.WALLET_UNLOCKED)

    async def lock(self) -> None:
        """Drop back to AUTHENTICATED and forget the unlock timestamp."""
        self._unlocked_at = None
        await self._secure_store.delete_item(WALLET_UNLOCK_KEY)
        logger.info("Wallet locked")

    async def restore_state(self) -> bool:
        """
        Reload the last unlock on process start.

        Returns:
            True if the stored unlock is still within the timeout and the
            app lock is not engaged
        """
        raw = await self._secure_store.get_item(WALLET_UNLOCK_KEY)
        if raw is None:
            return False

        try:
            unlocked_at = int(raw)
        except ValueError:
            logger.warning("Ignoring unreadable wallet unlock timestamp")
            await self._secure_store.delete_item(WALLET_UNLOCK_KEY)
            return False

        elapsed = self._clock() - unlocked_at
        if elapsed >= self._settings.WALLET_SESSION_TIMEOUT_MS or self._app_lock.is_locked:
            self._unlocked_at = None
            return False

        self._unlocked_at = unlocked_at
        logger.info(f"Wallet unlock restored, {self.get_remaining_session_time() // 1000}s remaining")
        return True

    async def _grant(self) -> None:
        now = self._clock()
        self._unlocked_at = now
        await self._secure_store.set_item(WALLET_UNLOCK_KEY, str(now))
        logger.info("Wallet unlocked")
