"""
Idle/background app lock.

Two states, LOCKED and UNLOCKED, decided from wall-clock time rather than
foreground/background flags alone. Works without network access.
"""

import asyncio
import logging
from typing import Callable, Optional

from common.auth import BiometricGateway, PinHasher
from common.events import EventBus
from common.storage import KeyValueStore
from session_core import events
from session_core.clock import Clock, now_ms
from session_core.config import Settings
from session_core.lock.timing import is_background_timeout_expired, lockout_duration_ms
from session_core.types import AppState, ErrorCode, LockMethod, LockState, UnlockResult

logger = logging.getLogger(__name__)

LOCK_METHOD_KEY = "app_lock_method"
PIN_HASH_KEY = "app_lock_pin_hash"
LAST_UNLOCK_KEY = "app_lock_last_unlock"
FAILED_ATTEMPTS_KEY = "app_lock_failed_attempts"
LOCKOUT_UNTIL_KEY = "app_lock_lockout_until"


class AppLockService:
    """
    Locks the app after a long background stay or an expired session.

    Emits APP_LOCKED / APP_UNLOCKED on the event bus. ``lock`` is
    idempotent, so a lock never fires twice for one locked period.
    """

    def __init__(
        self,
        secure_store: KeyValueStore,
        biometric: BiometricGateway,
        settings: Settings,
        bus: EventBus,
        is_authenticated: Callable[[], bool] = lambda: False,
        pin_hasher: Optional[PinHasher] = None,
        clock: Clock = now_ms,
    ):
        """
        Initialize AppLockService.

        Args:
            secure_store: Persists lock method, PIN hash and unlock timestamps
            biometric: Biometric hardware gateway
            settings: Session core settings
            bus: Event bus (listens for SESSION_EXPIRED, emits lock events)
            is_authenticated: Whether a user session exists right now
            pin_hasher: PIN hashing, defaults to bcrypt at PIN_HASH_ROUNDS
            clock: Epoch-ms clock
        """
        self._secure_store = secure_store
        self._biometric = biometric
        self._settings = settings
        self._bus = bus
        self._is_authenticated = is_authenticated
        self._pin_hasher = pin_hasher or PinHasher(rounds=settings.PIN_HASH_ROUNDS)
        self._clock = clock

        self._state = LockState()
        self._method = LockMethod.NONE
        self._failed_attempts = 0
        self._lockout_until: Optional[int] = None
        self._background_timer: Optional[asyncio.TimerHandle] = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._initialized = False

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Load persisted lock settings. Starts locked when a lock is configured."""
        if self._initialized:
            return

        method = await self._secure_store.get_item(LOCK_METHOD_KEY)
        try:
            self._method = LockMethod(method) if method else LockMethod.NONE
        except ValueError:
            logger.warning(f"Unknown stored lock method {method!r}, locking")
            self._method = LockMethod.NONE
            self._state.is_locked = True

        self._state.last_unlock = await self._read_int(LAST_UNLOCK_KEY)
        self._failed_attempts = await self._read_int(FAILED_ATTEMPTS_KEY) or 0
        self._lockout_until = await self._read_int(LOCKOUT_UNTIL_KEY)

        if self.is_configured():
            self._state.is_locked = True

        self._unsubscribe = self._bus.on(events.SESSION_EXPIRED, self._on_session_expired)
        self._initialized = True
        logger.info(
            f"App lock initialized: method={self._method.value}, locked={self._state.is_locked}"
        )

    def dispose(self) -> None:
        self._cancel_background_timer()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        self._initialized = False

    # =========================================================================
    # State
    # =========================================================================

    @property
    def state(self) -> LockState:
        return LockState(
            is_locked=self._state.is_locked,
            backgrounded_at=self._state.backgrounded_at,
            last_unlock=self._state.last_unlock,
        )

    @property
    def is_locked(self) -> bool:
        return self._state.is_locked

    @property
    def lock_method(self) -> LockMethod:
        return self._method

    @property
    def failed_attempts(self) -> int:
        return self._failed_attempts

    def is_configured(self) -> bool:
        return self._method != LockMethod.NONE

    def is_session_expired(self) -> bool:
        """Longer than APP_LOCK_SESSION_TIMEOUT_MS since the last unlock."""
        if not self._state.last_unlock:
            return True
        return self._clock() - self._state.last_unlock > self._settings.APP_LOCK_SESSION_TIMEOUT_MS

    def get_lockout_remaining_ms(self) -> int:
        if self._lockout_until is None:
            return 0
        return max(0, self._lockout_until - self._clock())

    # =========================================================================
    # Setup
    # =========================================================================

    async def setup_biometric(self) -> UnlockResult:
        if not await self._biometric.is_available():
            return UnlockResult(
                success=False,
                error_code=ErrorCode.BIOMETRIC_UNAVAILABLE,
                message="Biometric authentication is not available on this device",
            )

        result = await self._biometric.authenticate("Enable app lock")
        if not result.success:
            code = ErrorCode.BIOMETRIC_CANCELLED if result.cancelled else ErrorCode.BIOMETRIC_FAILED
            return UnlockResult(success=False, error_code=code, message="Biometric verification failed")

        await self._set_method(LockMethod.BIOMETRIC)
        return UnlockResult(success=True)

    async def setup_pin(self, pin: str) -> UnlockResult:
        if not self._is_valid_pin(pin):
            return UnlockResult(
                success=False,
                error_code=ErrorCode.INVALID_PIN_FORMAT,
                message=f"PIN must be exactly {self._settings.PIN_LENGTH} digits",
            )

        await self._secure_store.set_item(PIN_HASH_KEY, self._pin_hasher.hash_pin(pin))
        await self._set_method(LockMethod.PIN)
        return UnlockResult(success=True)

    async def disable(self) -> None:
        await self._secure_store.delete_item(PIN_HASH_KEY)
        await self._set_method(LockMethod.NONE)
        if self._state.is_locked:
            await self._on_unlock_success("disabled")

    async def _set_method(self, method: LockMethod) -> None:
        await self._secure_store.set_item(LOCK_METHOD_KEY, method.value)
        self._method = method
        logger.info(f"App lock method set to {method.value}")

    # =========================================================================
    # Unlock
    # =========================================================================

    async def unlock_with_biometric(self) -> UnlockResult:
        lockout = self._check_lockout()
        if lockout:
            return lockout

        if not await self._biometric.is_available():
            return UnlockResult(
                success=False,
                error_code=ErrorCode.BIOMETRIC_UNAVAILABLE,
                message="Biometric authentication is not available",
            )

        result = await self._biometric.authenticate("Unlock")
        if result.success:
            await self._on_unlock_success(LockMethod.BIOMETRIC.value)
            return UnlockResult(success=True)

        if result.cancelled:
            # A dismissed prompt is not a failed attempt
            return UnlockResult(success=False, error_code=ErrorCode.BIOMETRIC_CANCELLED, message="Cancelled")

        return await self._on_unlock_failed(ErrorCode.BIOMETRIC_FAILED, "Biometric authentication failed")

    async def unlock_with_pin(self, pin: str) -> UnlockResult:
        lockout = self._check_lockout()
        if lockout:
            return lockout

        stored_hash = await self._secure_store.get_item(PIN_HASH_KEY)
        if not stored_hash:
            return UnlockResult(
                success=False, error_code=ErrorCode.APP_LOCK_NOT_CONFIGURED, message="PIN not configured"
            )

        if self._is_valid_pin(pin) and self._pin_hasher.verify_pin(pin, stored_hash):
            await self._on_unlock_success(LockMethod.PIN.value)
            return UnlockResult(success=True)

        return await self._on_unlock_failed(ErrorCode.INVALID_PIN, "Incorrect PIN")

    async def auto_unlock(self) -> UnlockResult:
        """Unlock without user input where the method allows it (biometric)."""
        if not self._state.is_locked:
            return UnlockResult(success=True)
        if self._method == LockMethod.BIOMETRIC:
            return await self.unlock_with_biometric()
        return UnlockResult(success=False, error_code=ErrorCode.PIN_REQUIRED, message="PIN required")

    async def unlock(self) -> None:
        """Unlock after an explicit sign-in, which outranks PIN and biometric."""
        logger.info("App lock bypassed after explicit sign-in")
        await self._on_unlock_success("login")

    async def extend_session(self) -> None:
        if self._state.is_locked:
            return
        now = self._clock()
        self._state.last_unlock = now
        await self._secure_store.set_item(LAST_UNLOCK_KEY, str(now))

    # =========================================================================
    # Lock
    # =========================================================================

    def lock(self, reason: str = "manual") -> bool:
        """
        Lock now.

        Returns:
            False if the app was already locked
        """
        if self._state.is_locked:
            return False
        self._state.is_locked = True
        logger.info(f"App locked ({reason})")
        self._bus.emit(events.APP_LOCKED, reason)
        return True

    def _on_session_expired(self, reason: Optional[str] = None) -> None:
        self.lock(f"session_expired:{reason}" if reason else "session_expired")

    async def handle_app_state_change(self, app_state: AppState) -> None:
        """
        React to a platform lifecycle edge.

        INACTIVE (system dialogs, app switcher) is ignored. Every real edge
        cancels the pending background timer before doing anything else.
        """
        if app_state == AppState.INACTIVE:
            return

        self._cancel_background_timer()

        if app_state == AppState.BACKGROUND:
            self._on_background()
        elif app_state == AppState.ACTIVE:
            self._on_foreground()

    def _on_background(self) -> None:
        if not (self.is_configured() and self._is_authenticated()):
            return

        now = self._clock()
        if self._state.backgrounded_at is None:
            self._state.backgrounded_at = now

        threshold = self._settings.APP_LOCK_BACKGROUND_THRESHOLD_MS
        remaining_ms = max(0, threshold - (now - self._state.backgrounded_at))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._background_timer = loop.call_later(remaining_ms / 1000, self._on_background_timer)

    def _on_background_timer(self) -> None:
        self._background_timer = None
        if self._state.backgrounded_at is not None:
            self.lock("background_timeout")

    def _on_foreground(self) -> None:
        backgrounded_at = self._state.backgrounded_at
        try:
            if (
                backgrounded_at is not None
                and self.is_configured()
                and self._is_authenticated()
                and self.is_background_timeout_expired()
            ):
                self.lock("background_timeout")
        finally:
            self._state.backgrounded_at = None

    def is_background_timeout_expired(self, now: Optional[int] = None) -> bool:
        return is_background_timeout_expired(
            self._clock() if now is None else now,
            self._state.backgrounded_at,
            self._settings.APP_LOCK_BACKGROUND_THRESHOLD_MS,
        )

    def _cancel_background_timer(self) -> None:
        if self._background_timer is not None:
            self._background_timer.cancel()
            self._background_timer = None

    # =========================================================================
    # Reset
    # =========================================================================

    async def reset(self) -> None:
        """Forget every lock setting. Used when the device is handed over."""
        self._cancel_background_timer()
        for key in (LOCK_METHOD_KEY, PIN_HASH_KEY, LAST_UNLOCK_KEY, FAILED_ATTEMPTS_KEY, LOCKOUT_UNTIL_KEY):
            await self._secure_store.delete_item(key)
        self._state = LockState()
        self._method = LockMethod.NONE
        self._failed_attempts = 0
        self._lockout_until = None
        logger.info("App lock reset")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _is_valid_pin(self, pin: Optional[str]) -> bool:
        return bool(pin) and pin.isdigit() and len(pin) == self._settings.PIN_LENGTH

    def _check_lockout(self) -> Optional[UnlockResult]:
        remaining = self.get_lockout_remaining_ms()
        if remaining > 0:
            return UnlockResult(
                success=False,
                error_code=ErrorCode.LOCKED_OUT,
                message=f"Too many attempts. Try again in {-(-remaining // 1000)} seconds",
                attempts_remaining=0,
                lockout_until_ms=self._lockout_until,
            )
        return None

    async def _on_unlock_success(self, method: str) -> None:
        now = self._clock()
        was_locked = self._state.is_locked
        self._state.is_locked = False
        self._state.last_unlock = now
        self._failed_attempts = 0
        self._lockout_until = None
        await self._secure_store.set_item(LAST_UNLOCK_KEY, str(now))
        await self._secure_store.delete_item(FAILED_ATTEMPTS_KEY)
        await self._secure_store.delete_item(LOCKOUT_UNTIL_KEY)
        if was_locked:
            logger.info(f"App unlocked via {method}")
            self._bus.emit(events.APP_UNLOCKED, method)

    async def _on_unlock_failed(self, code: str, message: str) -> UnlockResult:
        max_attempts = self._settings.APP_LOCK_MAX_ATTEMPTS
        self._failed_attempts += 1
        await self._secure_store.set_item(FAILED_ATTEMPTS_KEY, str(self._failed_attempts))

        if self._failed_attempts >= max_attempts:
            duration = lockout_duration_ms(
                self._failed_attempts, max_attempts, self._settings.APP_LOCK_LOCKOUT_BASE_MS
            )
            self._lockout_until = self._clock() + duration
            await self._secure_store.set_item(LOCKOUT_UNTIL_KEY, str(self._lockout_until))
            logger.warning(
                f"Too many failed unlock attempts ({self._failed_attempts}), "
                f"locked out for {duration // 1000}s"
            )
            return UnlockResult(
                success=False,
                error_code=ErrorCode.LOCKED_OUT,
                message=message,
                attempts_remaining=0,
                lockout_until_ms=self._lockout_until,
            )

        return UnlockResult(
            success=False,
            error_code=code,
            message=message,
            attempts_remaining=max_attempts - self._failed_attempts,
        )

    async def _read_int(self, key: str) -> Optional[int]:
        raw = await self._secure_store.get_item(key)
        if raw is None:
            return None
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring unreadable value for {key}")
            await self._secure_store.delete_item(key)
            return None
