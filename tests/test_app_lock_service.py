"""Unit tests for AppLockService and the lock timing rules."""

import asyncio

import pytest
import pytest_asyncio

from common.auth import USER_CANCEL, BiometricResult, StaticBiometricGateway
from session_core import events
from session_core.lock.services.app_lock_service import (
    FAILED_ATTEMPTS_KEY,
    LOCK_METHOD_KEY,
    PIN_HASH_KEY,
    AppLockService,
)
from session_core.lock.timing import is_background_timeout_expired, lockout_duration_ms
from session_core.types import AppState, ErrorCode, LockMethod

THRESHOLD_MS = 20


@pytest.fixture
def lock_settings(settings):
    return settings.model_copy(update={"APP_LOCK_BACKGROUND_THRESHOLD_MS": THRESHOLD_MS})


@pytest.fixture
def signed_in():
    return {"value": True}


@pytest.fixture
def make_service(secure_store, lock_settings, bus, pin_hasher, clock, signed_in):
    def factory(biometric=None):
        return AppLockService(
            secure_store,
            biometric or StaticBiometricGateway(),
            lock_settings,
            bus,
            is_authenticated=lambda: signed_in["value"],
            pin_hasher=pin_hasher,
            clock=clock,
        )

    return factory


@pytest_asyncio.fixture
async def pin_lock(make_service):
    """Initialized service with a PIN configured, unlocked."""
    service = make_service()
    await service.setup_pin("123456")
    await service.initialize()
    await service.unlock_with_pin("123456")
    yield service
    service.dispose()


@pytest.fixture
def lock_events(bus):
    seen = []
    bus.on(events.APP_LOCKED, lambda reason: seen.append(("locked", reason)))
    bus.on(events.APP_UNLOCKED, lambda method: seen.append(("unlocked", method)))
    return seen


# ─────────────────────────────────────────────────────────────────
# Timing rules
# ─────────────────────────────────────────────────────────────────


class TestTiming:
    @pytest.mark.parametrize("now,backgrounded_at,threshold,expected", [
        (1000, None, 180, False),
        (1000, 1000, 180, False),
        (1180, 1000, 180, False),
        (1181, 1000, 180, True),
        (200_000, 0, 180_000, True),
        (100_000, 0, 180_000, False),
    ])
    def test_background_timeout_is_strict(self, now, backgrounded_at, threshold, expected):
        assert is_background_timeout_expired(now, backgrounded_at, threshold) is expected

    @pytest.mark.parametrize("failed,expected", [
        (0, 0),
        (4, 0),
        (5, 30_000),
        (9, 30_000),
        (10, 60_000),
        (15, 120_000),
    ])
    def test_lockout_doubles_per_tier(self, failed, expected):
        assert lockout_duration_ms(failed, 5, 30_000) == expected


# ─────────────────────────────────────────────────────────────────
# Initialization and setup
# ─────────────────────────────────────────────────────────────────


class TestSetup:
    @pytest.mark.asyncio
    async def test_starts_unlocked_without_method(self, make_service):
        service = make_service()
        await service.initialize()

        assert service.is_locked is False
        assert service.is_configured() is False

    @pytest.mark.asyncio
    async def test_starts_locked_when_configured(self, make_service, secure_store):
        await secure_store.set_item(LOCK_METHOD_KEY, LockMethod.BIOMETRIC.value)
        service = make_service()

        await service.initialize()

        assert service.is_locked
        assert service.lock_method == LockMethod.BIOMETRIC

    @pytest.mark.asyncio
    async def test_unknown_method_locks(self, make_service, secure_store):
        await secure_store.set_item(LOCK_METHOD_KEY, "retina")
        service = make_service()

        await service.initialize()

        assert service.is_locked
        assert service.lock_method == LockMethod.NONE

    @pytest.mark.asyncio
    async def test_pin_is_stored_hashed(self, make_service, secure_store):
        service = make_service()

        result = await service.setup_pin("123456")

        stored = await secure_store.get_item(PIN_HASH_KEY)
        assert result.success
        assert stored != "123456"
        assert stored.startswith("$2")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pin", ["1234", "abcdef", "1234567"])
    async def test_bad_pin_rejected(self, make_service, pin):
        result = await make_service().setup_pin(pin)

        assert result.error_code == ErrorCode.INVALID_PIN_FORMAT

    @pytest.mark.asyncio
    async def test_biometric_setup_needs_hardware(self, make_service):
        gateway = StaticBiometricGateway(enrolled=False)

        result = await make_service(gateway).setup_biometric()

        assert result.error_code == ErrorCode.BIOMETRIC_UNAVAILABLE
        assert gateway.prompts == []

    @pytest.mark.asyncio
    async def test_failed_attempts_survive_restart(self, make_service, secure_store):
        await secure_store.set_item(FAILED_ATTEMPTS_KEY, "3")
        service = make_service()

        await service.initialize()

        assert service.failed_attempts == 3


# ─────────────────────────────────────────────────────────────────
# Background / foreground
# ─────────────────────────────────────────────────────────────────


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_background_timer_locks(self, pin_lock, lock_events):
        await pin_lock.handle_app_state_change(AppState.BACKGROUND)
        await asyncio.sleep(THRESHOLD_MS * 3 / 1000)

        assert pin_lock.is_locked
        assert lock_events[-1] == ("locked", "background_timeout")

    @pytest.mark.asyncio
    async def test_quick_return_cancels_timer(self, pin_lock, clock):
        await pin_lock.handle_app_state_change(AppState.BACKGROUND)
        clock.advance(THRESHOLD_MS // 2)
        await pin_lock.handle_app_state_change(AppState.ACTIVE)
        await asyncio.sleep(THRESHOLD_MS * 3 / 1000)

        assert pin_lock.is_locked is False
        assert pin_lock.state.backgrounded_at is None

    @pytest.mark.asyncio
    async def test_foreground_after_threshold_locks(self, pin_lock, clock, lock_events):
        await pin_lock.handle_app_state_change(AppState.BACKGROUND)
        clock.advance(THRESHOLD_MS + 1)
        await pin_lock.handle_app_state_change(AppState.ACTIVE)

        assert pin_lock.is_locked
        assert pin_lock.state.backgrounded_at is None
        assert lock_events.count(("locked", "background_timeout")) == 1

    @pytest.mark.parametrize("away_ms,locked", [(200_000, True), (100_000, False)])
    @pytest.mark.asyncio
    async def test_default_threshold_on_return(
        self, secure_store, settings, bus, pin_hasher, clock, away_ms, locked
    ):
        service = AppLockService(
            secure_store,
            StaticBiometricGateway(),
            settings,
            bus,
            is_authenticated=lambda: True,
            pin_hasher=pin_hasher,
            clock=clock,
        )
        await service.setup_pin("123456")
        await service.initialize()
        await service.unlock_with_pin("123456")

        await service.handle_app_state_change(AppState.BACKGROUND)
        clock.advance(away_ms)
        await service.handle_app_state_change(AppState.ACTIVE)

        assert settings.APP_LOCK_BACKGROUND_THRESHOLD_MS == 180_000
        assert service.is_locked is locked
        assert service.state.backgrounded_at is None
        service.dispose()

    @pytest.mark.asyncio
    async def test_inactive_is_ignored(self, pin_lock, clock):
        await pin_lock.handle_app_state_change(AppState.BACKGROUND)
        await pin_lock.handle_app_state_change(AppState.INACTIVE)

        assert pin_lock.state.backgrounded_at == clock()

    @pytest.mark.asyncio
    async def test_signed_out_never_locks(self, pin_lock, signed_in, clock):
        signed_in["value"] = False
        await pin_lock.handle_app_state_change(AppState.BACKGROUND)
        clock.advance(THRESHOLD_MS * 10)
        await pin_lock.handle_app_state_change(AppState.ACTIVE)

        assert pin_lock.is_locked is False

    @pytest.mark.asyncio
    async def test_lock_fires_once(self, pin_lock, lock_events):
        assert pin_lock.lock() is True
        assert pin_lock.lock() is False

        assert lock_events.count(("locked", "manual")) == 1

    @pytest.mark.asyncio
    async def test_session_expired_event_locks(self, pin_lock, bus):
        bus.emit(events.SESSION_EXPIRED, "refresh_rejected")

        assert pin_lock.is_locked

    @pytest.mark.asyncio
    async def test_session_timeout_since_last_unlock(self, pin_lock, lock_settings, clock):
        assert pin_lock.is_session_expired() is False

        clock.advance(lock_settings.APP_LOCK_SESSION_TIMEOUT_MS + 1)

        assert pin_lock.is_session_expired()


# ─────────────────────────────────────────────────────────────────
# Unlock and lockout
# ─────────────────────────────────────────────────────────────────


class TestUnlock:
    @pytest.mark.asyncio
    async def test_wrong_pin_counts_down(self, pin_lock):
        pin_lock.lock()

        first = await pin_lock.unlock_with_pin("000000")
        second = await pin_lock.unlock_with_pin("000000")

        assert first.error_code == ErrorCode.INVALID_PIN
        assert first.attempts_remaining == 4
        assert second.attempts_remaining == 3
        assert pin_lock.is_locked

    @pytest.mark.asyncio
    async def test_lockout_after_max_attempts(self, pin_lock, lock_settings, clock):
        pin_lock.lock()
        for _ in range(lock_settings.APP_LOCK_MAX_ATTEMPTS - 1):
            await pin_lock.unlock_with_pin("000000")

        final = await pin_lock.unlock_with_pin("000000")
        blocked = await pin_lock.unlock_with_pin("123456")

        assert final.error_code == ErrorCode.LOCKED_OUT
        assert final.lockout_until_ms == clock() + lock_settings.APP_LOCK_LOCKOUT_BASE_MS
        assert blocked.error_code == ErrorCode.LOCKED_OUT
        assert pin_lock.is_locked

        clock.advance(lock_settings.APP_LOCK_LOCKOUT_BASE_MS)
        assert (await pin_lock.unlock_with_pin("123456")).success
        assert pin_lock.failed_attempts == 0

    @pytest.mark.asyncio
    async def test_cancelled_biometric_is_not_an_attempt(self, make_service, secure_store):
        await secure_store.set_item(LOCK_METHOD_KEY, LockMethod.BIOMETRIC.value)
        gateway = StaticBiometricGateway(result=BiometricResult(success=False, error=USER_CANCEL))
        service = make_service(gateway)
        await service.initialize()

        result = await service.unlock_with_biometric()

        assert result.error_code == ErrorCode.BIOMETRIC_CANCELLED
        assert service.failed_attempts == 0
        service.dispose()

    @pytest.mark.asyncio
    async def test_auto_unlock_uses_biometric_only(self, make_service, secure_store, lock_events):
        await secure_store.set_item(LOCK_METHOD_KEY, LockMethod.BIOMETRIC.value)
        service = make_service()
        await service.initialize()

        result = await service.auto_unlock()

        assert result.success
        assert lock_events == [("unlocked", "biometric")]
        service.dispose()

    @pytest.mark.asyncio
    async def test_auto_unlock_with_pin_method(self, pin_lock):
        pin_lock.lock()

        result = await pin_lock.auto_unlock()

        assert result.error_code == ErrorCode.PIN_REQUIRED

    @pytest.mark.asyncio
    async def test_sign_in_unlock_bypasses_lockout(self, pin_lock, lock_events):
        pin_lock.lock()

        await pin_lock.unlock()

        assert pin_lock.is_locked is False
        assert lock_events[-1] == ("unlocked", "login")

    @pytest.mark.asyncio
    async def test_pin_without_configuration(self, make_service):
        service = make_service()
        await service.initialize()

        result = await service.unlock_with_pin("123456")

        assert result.error_code == ErrorCode.APP_LOCK_NOT_CONFIGURED

    @pytest.mark.asyncio
    async def test_disable_unlocks(self, pin_lock, secure_store):
        pin_lock.lock()

        await pin_lock.disable()

        assert pin_lock.is_locked is False
        assert pin_lock.is_configured() is False
        assert await secure_store.get_item(PIN_HASH_KEY) is None

    @pytest.mark.asyncio
    async def test_reset_forgets_everything(self, pin_lock, secure_store):
        await pin_lock.reset()

        assert pin_lock.is_configured() is False
        assert pin_lock.is_locked is False
        assert secure_store.keys() == []
