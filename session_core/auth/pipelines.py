"""
Auth pipelines.

Each pipeline is a plain async function over a SessionCore. It claims the
state machine's operation slot, brackets the work with a loading
operation, calls the service that does the work and records the outcome
on the AuthStateMachine.

Services never touch the state machine themselves.
"""

import logging
from typing import Awaitable, Callable, Optional

from common.storage import StorageCorruptionError
from session_core import events
from session_core.dependencies import SessionCore
from session_core.schemas import SessionData, User
from session_core.types import (
    AccountSwitchResult,
    AuthEvent,
    AuthLevel,
    AuthState,
    ErrorCode,
    LoginResult,
    OperationPriority,
    OperationType,
    ProfileSwitchResult,
    ProfileSwitchState,
    SessionValidationResult,
    WalletAccessResult,
)

logger = logging.getLogger(__name__)

IN_PROGRESS_MESSAGE = "Another sign-in action is in progress"

# Failures the user caused on purpose; no error is recorded for them
EXPECTED_LOGIN_FAILURES = {ErrorCode.BIOMETRIC_CANCELLED}


def _identity(session: SessionData) -> dict:
    return {"user_id": session.userId, "profile_id": session.profileId}


# =============================================================================
# Session check
# =============================================================================

async def check_session(core: SessionCore) -> SessionValidationResult:
    """
    Restore the persisted session at launch or on resume.

    A missing token ends in UNAUTHENTICATED with no error recorded.
    """
    if core.session_manager.is_validating or not core.machine.begin_operation("check_session"):
        return SessionValidationResult(
            is_valid=False,
            error="validation in progress",
            error_code=ErrorCode.VALIDATION_IN_PROGRESS,
        )

    operation_id = core.loading.start_operation(
        OperationType.SESSION_RESTORE, "Restoring session", OperationPriority.HIGH
    )
    try:
        recording = core.machine.transition(AuthEvent.SESSION_REFRESH_START)
        result = await core.session_manager.validate_and_restore_session()

        if result.is_valid:
            core.view.set_user(User.from_session(result.user))
            if recording:
                core.machine.transition(AuthEvent.SESSION_REFRESH_SUCCESS, _identity(result.user))
        else:
            if not result.is_expected_absence:
                logger.info(f"Session check failed: {result.error_code}")
            if recording:
                core.machine.transition(AuthEvent.SESSION_REFRESH_FAILURE, {"reason": result.error})
        return result
    finally:
        core.loading.complete_operation(operation_id)
        core.machine.end_operation()


# =============================================================================
# Login
# =============================================================================

async def login(core: SessionCore, identifier: str, password: str) -> LoginResult:
    return await _run_login(core, "login", lambda: core.login_service.login(identifier, password))


async def login_with_pin(
    core: SessionCore,
    identifier: Optional[str],
    pin: str,
    target_profile_id: Optional[str] = None,
) -> LoginResult:
    return await _run_login(
        core,
        "pin_login",
        lambda: core.login_service.login_with_pin(identifier, pin, target_profile_id),
    )


async def login_with_biometric(core: SessionCore) -> LoginResult:
    return await _run_login(core, "biometric_login", core.login_service.login_with_biometric)


async def _run_login(
    core: SessionCore,
    name: str,
    attempt: Callable[[], Awaitable[LoginResult]],
) -> LoginResult:
    if not core.machine.begin_operation(name):
        return LoginResult(
            success=False, message=IN_PROGRESS_MESSAGE, error_code=ErrorCode.AUTH_OPERATION_IN_PROGRESS
        )

    operation_id = core.loading.start_operation(OperationType.LOGIN, "Signing in", OperationPriority.CRITICAL)
    try:
        result = await attempt()
        if result.success:
            await _after_login(core, result.user)
        else:
            core.machine.transition(AuthEvent.LOGIN_FAILURE, {
                "error": result.message,
                "expected": result.error_code in EXPECTED_LOGIN_FAILURES,
            })
        return result
    finally:
        core.loading.complete_operation(operation_id)
        core.machine.end_operation()


async def _after_login(core: SessionCore, session: SessionData) -> None:
    # An explicit sign-in outranks the app lock
    await core.app_lock.unlock()
    core.machine.transition(AuthEvent.LOGIN_SUCCESS, _identity(session))
    core.view.set_user(User.from_session(session))

    try:
        saved = await core.account_switcher.save_current_account(
            session,
            await core.session_manager.get_access_token(),
            await core.session_manager.get_refresh_token(),
        )
    except StorageCorruptionError as e:
        logger.error(f"Could not remember account {session.userId}: {e}")
        return

    if not saved.success:
        logger.info(f"Account {session.userId} not remembered: {saved.error_code}")


# =============================================================================
# Logout
# =============================================================================

async def logout(core: SessionCore) -> None:
    """
    Sign out.

    State is reset first so the UI leaves protected screens immediately;
    cleanup steps then run one by one and a failing step never stops the
    others.
    """
    core.machine.transition(AuthEvent.LOGOUT)
    core.view.set_user(None)
    operation_id = core.loading.start_operation(OperationType.LOGOUT, "Signing out", OperationPriority.HIGH)

    core.session_manager.stop_periodic_validation()
    cleanup = [
        ("backend session", core.session_manager.clear_session),
        ("cached data", core.clear_all_cached_data),
        ("wallet", core.wallet.lock),
        ("app lock", core.app_lock.unlock),
    ]
    for name, step in cleanup:
        try:
            await step()
        except Exception as e:
            logger.warning(f"Logout cleanup of {name} failed: {e!r}")

    core.loading.complete_operation(operation_id)
    core.bus.emit(events.LOGGED_OUT)
    logger.info("Logged out")


# =============================================================================
# Switching
# =============================================================================

async def switch_account(core: SessionCore, target_user_id: str) -> AccountSwitchResult:
    """Cold-switch to another remembered account."""
    if not core.machine.begin_operation("switch_account"):
        return AccountSwitchResult(
            success=False, error_code=ErrorCode.AUTH_OPERATION_IN_PROGRESS, message=IN_PROGRESS_MESSAGE
        )

    current = core.session_manager.get_session()
    operation_id = core.loading.start_operation(
        OperationType.USER_DATA, "Switching account", OperationPriority.HIGH
    )
    try:
        result = await core.account_switcher.switch_account(
            target_user_id, current.userId if current else None
        )
        if result.success and result.error_code != ErrorCode.ALREADY_ACTIVE:
            await _reset_profile_scope(core)
            core.machine.transition(AuthEvent.LOGIN_SUCCESS, _identity(result.session))
            core.view.set_user(User.from_session(result.session))
        return result
    finally:
        core.loading.complete_operation(operation_id)
        core.machine.end_operation()


async def switch_profile(
    core: SessionCore,
    target_profile_id: str,
    pin: Optional[str] = None,
    require_biometric: bool = True,
    device_fingerprint: Optional[str] = None,
) -> ProfileSwitchResult:
    """Switch to another profile of the signed-in user."""
    if not core.machine.begin_operation("switch_profile"):
        return ProfileSwitchResult(
            success=False,
            state=ProfileSwitchState.ABORTED,
            error_code=ErrorCode.AUTH_OPERATION_IN_PROGRESS,
            message=IN_PROGRESS_MESSAGE,
        )

    operation_id = core.loading.start_operation(
        OperationType.PROFILE_DATA, "Switching profile", OperationPriority.HIGH
    )
    try:
        result = await core.profile_switcher.switch_profile(
            target_profile_id,
            pin=pin,
            require_biometric=require_biometric,
            device_fingerprint=device_fingerprint,
        )
        if result.success:
            await core.wallet.lock()
            core.machine.transition(AuthEvent.LOGIN_SUCCESS, _identity(result.session))
        return result
    finally:
        core.loading.complete_operation(operation_id)
        core.machine.end_operation()


async def _reset_profile_scope(core: SessionCore) -> None:
    try:
        await core.clear_all_cached_data()
    except Exception as e:
        logger.warning(f"Cache clear after account switch failed: {e!r}")
    await core.wallet.lock()


# =============================================================================
# Wallet
# =============================================================================

async def request_wallet_access(core: SessionCore) -> WalletAccessResult:
    """Upgrade to WALLET_UNLOCKED, unlocking the app lock first when needed."""
    level = core.machine.auth_level
    if core.machine.state == AuthState.LOCKED and core.session_manager.get_session() is not None:
        # Locked keeps the identity; the wallet gate will run the app unlock
        level = AuthLevel.AUTHENTICATED

    result = await core.wallet.request_access(level)
    if result.success and core.machine.auth_level < AuthLevel.WALLET_UNLOCKED:
        core.machine.transition(AuthEvent.WALLET_UNLOCK)
    return result


async def lock_wallet(core: SessionCore) -> None:
    await core.wallet.lock()
    if core.machine.auth_level == AuthLevel.WALLET_UNLOCKED:
        core.machine.transition(AuthEvent.WALLET_LOCK)
