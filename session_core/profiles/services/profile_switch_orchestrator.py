"""
Warm profile switching for the same underlying user.

Moves between profiles owned by one person (e.g. personal and business)
without a full logout:

    IDLE -> VALIDATING -> AUTHENTICATING -> APPLYING -> CONFIRMING -> COMMITTED

ABORTED is reachable from every step before COMMITTED.

The target profile is shown optimistically before the backend confirms
and rolled back on any failure. Tokens are stored only at COMMITTED. An
abort after the backend confirmed the switch leaves the source profile
with a freshly issued pair, since confirmation revokes its access token.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional

from common.auth import BiometricGateway
from common.events import EventBus
from common.storage import ProfilePinStore
from session_core import events
from session_core.api import paths
from session_core.api.client import BackendClient
from session_core.api.errors import BackendError
from session_core.auth.services.session_manager import SessionManager
from session_core.clock import Clock, now_ms
from session_core.config import Settings
from session_core.profiles.commands import OptimisticProfileCommand
from session_core.profiles.view_state import ActiveProfileView
from session_core.schemas import (
    AuthTokenResponse,
    AvailableProfile,
    AvailableProfilesResponse,
    ProfilePinData,
    SessionData,
    User,
    display_name_for,
)
from session_core.types import (
    ErrorCode,
    ProfileSwitchContext,
    ProfileSwitchResult,
    ProfileSwitchState,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProfileSwitchState, str], None]
ClearCachedData = Callable[[], Awaitable[None]]

_ORDER = [
    ProfileSwitchState.IDLE,
    ProfileSwitchState.VALIDATING,
    ProfileSwitchState.AUTHENTICATING,
    ProfileSwitchState.APPLYING,
    ProfileSwitchState.CONFIRMING,
    ProfileSwitchState.COMMITTED,
]
_TERMINAL = {ProfileSwitchState.COMMITTED, ProfileSwitchState.ABORTED}


class _Abort(Exception):
    """Internal: stop the switch with a result."""

    def __init__(
        self,
        code: str,
        message: str,
        attempts_remaining: Optional[int] = None,
        locked_until: Optional[str] = None,
    ):
        self.code = code
        self.message = message
        self.attempts_remaining = attempts_remaining
        self.locked_until = locked_until
        super().__init__(message)


class ProfileSwitchOrchestrator:
    """
    Runs one profile switch at a time.

    A second ``switch_profile`` while one is running is rejected, not
    queued.
    """

    def __init__(
        self,
        client: BackendClient,
        session_manager: SessionManager,
        view: ActiveProfileView,
        pin_store: ProfilePinStore,
        biometric: BiometricGateway,
        clear_cached_data: ClearCachedData,
        settings: Settings,
        bus: Optional[EventBus] = None,
        clock: Clock = now_ms,
    ):
        """
        Initialize ProfileSwitchOrchestrator.

        Args:
            client: Backend HTTP client
            session_manager: Owner of the token pair and session
            view: UI-facing active profile
            pin_store: PIN association records
            biometric: Biometric hardware gateway
            clear_cached_data: Invalidates profile-scoped local caches
            settings: Session core settings
            bus: Event bus for PROFILE_SWITCHED
            clock: Epoch-ms clock
        """
        self._client = client
        self._session_manager = session_manager
        self._view = view
        self._pin_store = pin_store
        self._biometric = biometric
        self._clear_cached_data = clear_cached_data
        self._settings = settings
        self._bus = bus
        self._clock = clock

        self._state = ProfileSwitchState.IDLE
        self._context: Optional[ProfileSwitchContext] = None
        self._progress_callback: Optional[ProgressCallback] = None
        self._available_profiles: Dict[str, AvailableProfile] = {}

    @property
    def state(self) -> ProfileSwitchState:
        return self._state

    @property
    def context(self) -> Optional[ProfileSwitchContext]:
        return self._context

    @property
    def is_switching(self) -> bool:
        return self._state not in _TERMINAL and self._state != ProfileSwitchState.IDLE

    def set_progress_callback(self, callback: Optional[ProgressCallback]) -> None:
        self._progress_callback = callback

    # =========================================================================
    # Available profiles
    # =========================================================================

    async def fetch_available_profiles(self) -> List[AvailableProfile]:
        """
        Load the profiles the signed-in user can switch to and cache them.

        Raises:
            BackendError: Backend unavailable or token rejected
        """
        access_token = await self._session_manager.get_access_token()
        response = await self._client.request_model(
            AvailableProfilesResponse, "GET", paths.AVAILABLE_PROFILES, access_token=access_token
        )
        profiles = [item.to_available_profile() for item in response.profiles]
        self._available_profiles = {profile.profileId: profile for profile in profiles}
        return profiles

    # =========================================================================
    # Switch
    # =========================================================================

    async def switch_profile(
        self,
        target_profile_id: str,
        pin: Optional[str] = None,
        require_biometric: bool = True,
        device_fingerprint: Optional[str] = None,
    ) -> ProfileSwitchResult:
        """
        Switch the active profile.

        Args:
            target_profile_id: Profile to switch to
            pin: PIN, used when biometric is unavailable or not required
            require_biometric: Ask for a fresh biometric assertion
            device_fingerprint: Forwarded to the backend with the assertion

        Returns:
            ProfileSwitchResult; on failure the prior session is intact
        """
        if self.is_switching:
            logger.info(f"Profile switch to {target_profile_id} rejected: switch in progress")
            return ProfileSwitchResult(
                success=False,
                state=self._state,
                error_code=ErrorCode.SWITCH_IN_PROGRESS,
                message="A profile switch is already in progress",
            )

        source = self._session_manager.get_session()
        if source is None:
            return ProfileSwitchResult(
                success=False,
                state=self._state,
                error_code=ErrorCode.NOT_AUTHENTICATED,
                message="Sign in before switching profiles",
            )

        self._state = ProfileSwitchState.IDLE
        self._context = ProfileSwitchContext(
            target_profile_id=target_profile_id,
            source_user_id=source.userId,
            require_biometric=require_biometric,
        )
        command: Optional[OptimisticProfileCommand] = None
        previous_access: Optional[str] = None
        previous_refresh: Optional[str] = None
        grant: Optional[AuthTokenResponse] = None
        biometric_verified = False

        try:
            # VALIDATING
            self._advance(ProfileSwitchState.VALIDATING, "Checking profile")
            target = await self._validate_target(source)

            # AUTHENTICATING
            self._advance(ProfileSwitchState.AUTHENTICATING, "Verifying identity")
            biometric_verified = await self._authenticate(target, pin)

            # APPLYING
            self._advance(ProfileSwitchState.APPLYING, f"Switching to {target.displayName or target.profileId}")
            command = OptimisticProfileCommand(self._view, target)
            command.apply()

            # CONFIRMING
            self._advance(ProfileSwitchState.CONFIRMING, "Confirming with server")
            previous_access = await self._session_manager.get_access_token()
            previous_refresh = await self._session_manager.get_refresh_token()
            grant = await self._confirm(pin, biometric_verified, device_fingerprint, previous_access)

            # Nothing is stored until the new grant is verified and caches are gone
            if grant.user_id:
                self._check_same_user(grant.user_id)
            session = await self._fetch_confirmed_session(grant.access_token)

            try:
                await self._clear_cached_data()
            except Exception as e:
                logger.error(f"Cache invalidation failed during profile switch: {e!r}")
                raise _Abort(ErrorCode.CACHE_INVALIDATION_FAILED, "Could not clear data for the previous profile")

            # COMMITTED
            await self._session_manager.store_tokens(grant.access_token, grant.refresh_token or previous_refresh)
            self._session_manager.set_session(session)
            command.commit(User.from_session(session))
            self._advance(ProfileSwitchState.COMMITTED, "Profile switched")

        except _Abort as abort:
            await self._abort(command, source, abort, grant, previous_access, previous_refresh, biometric_verified)
            return ProfileSwitchResult(
                success=False,
                state=ProfileSwitchState.ABORTED,
                error_code=abort.code,
                message=abort.message,
                attempts_remaining=abort.attempts_remaining,
                locked_until=abort.locked_until,
            )
        except Exception:
            logger.exception("Profile switch failed unexpectedly, restoring previous profile")
            await self._abort(
                command, source, _Abort(ErrorCode.INVALID_RESPONSE, "Profile switch failed"),
                grant, previous_access, previous_refresh, biometric_verified,
            )
            raise
        finally:
            self._context = None

        await self._remember_profile(session, pin)
        if self._bus:
            self._bus.emit(events.PROFILE_SWITCHED, session)
        logger.info(f"Profile switched to {session.profileId} for user {session.userId}")
        return ProfileSwitchResult(success=True, state=ProfileSwitchState.COMMITTED, session=session)

    # =========================================================================
    # Steps
    # =========================================================================

    async def _validate_target(self, source: SessionData) -> AvailableProfile:
        target_id = self._context.target_profile_id
        if target_id == source.profileId:
            raise _Abort(ErrorCode.ALREADY_ACTIVE, "This profile is already active")

        target = self._available_profiles.get(target_id)
        if target is None:
            try:
                await self.fetch_available_profiles()
            except BackendError as e:
                raise _Abort(e.code, e.message)
            target = self._available_profiles.get(target_id)

        if target is None:
            raise _Abort(ErrorCode.PROFILE_NOT_FOUND, "Profile not found")

        self._check_same_user(target.userId)
        return target

    async def _authenticate(self, target: AvailableProfile, pin: Optional[str]) -> bool:
        """Returns whether a biometric assertion was obtained."""
        if self._context.require_biometric and await self._biometric.is_available():
            result = await self._biometric.authenticate(
                f"Switch to {target.displayName or 'profile'}"
            )
            if result.success:
                return True
            if pin is None:
                message = "Cancelled" if result.cancelled else "Biometric authentication failed"
                raise _Abort(ErrorCode.BIOMETRIC_FAILED, message)
            # Biometric refused but a PIN was supplied; fall back to it

        if pin is None:
            if self._context.require_biometric or target.requiresPin:
                raise _Abort(ErrorCode.PIN_REQUIRED, "Enter your PIN to switch profiles")
            return False

        if not pin.isdigit() or len(pin) != self._settings.PIN_LENGTH:
            raise _Abort(ErrorCode.INVALID_PIN_FORMAT, f"PIN must be {self._settings.PIN_LENGTH} digits")
        return False

    async def _confirm(
        self,
        pin: Optional[str],
        biometric_verified: bool,
        device_fingerprint: Optional[str],
        access_token: Optional[str],
    ) -> AuthTokenResponse:
        body = {
            "targetProfileId": self._context.target_profile_id,
            "biometricVerified": biometric_verified,
        }
        if pin is not None:
            body["pin"] = pin
        if device_fingerprint:
            body["deviceFingerprint"] = device_fingerprint

        try:
            grant = await self._client.request_model(
                AuthTokenResponse, "POST", paths.SWITCH_PROFILE, json=body, access_token=access_token
            )
        except BackendError as e:
            raise self._abort_for_backend_error(e)
        return grant

    async def _fetch_confirmed_session(self, access_token: str) -> SessionData:
        try:
            session = await self._session_manager.fetch_session(access_token)
        except BackendError as e:
            raise _Abort(e.code, e.message)

        self._check_same_user(session.userId)
        return session

    def _check_same_user(self, user_id: str) -> None:
        source_user_id = self._context.source_user_id
        if user_id != source_user_id:
            logger.error(
                f"Profile switch aborted: target belongs to user {user_id}, "
                f"session belongs to {source_user_id}"
            )
            raise _Abort(
                ErrorCode.DIFFERENT_USER,
                "This profile belongs to a different account. You have been returned to your profile.",
            )

    def _abort_for_backend_error(self, error: BackendError) -> _Abort:
        locked_until = error.detail("lockedUntil")
        attempts_remaining = error.detail("attemptsRemaining")
        message = error.message

        if locked_until:
            return _Abort(
                ErrorCode.PROFILE_LOCKED,
                message or "Too many attempts. Please try again later.",
                attempts_remaining=0,
                locked_until=str(locked_until),
            )
        if isinstance(attempts_remaining, int) and attempts_remaining > 0:
            message = f"{message} ({attempts_remaining} attempts remaining)"
        return _Abort(error.code, message, attempts_remaining=attempts_remaining)

    async def _abort(
        self,
        command: Optional[OptimisticProfileCommand],
        source: SessionData,
        abort: _Abort,
        grant: Optional[AuthTokenResponse],
        previous_access: Optional[str],
        previous_refresh: Optional[str],
        biometric_verified: bool,
    ) -> None:
        if grant is not None:
            await self._reinstate_source_tokens(
                source, grant, previous_access, previous_refresh, biometric_verified
            )
        self._session_manager.set_session(source)
        if command is not None:
            command.rollback()

        self._state = ProfileSwitchState.ABORTED
        self._report(ProfileSwitchState.ABORTED, abort.message)
        logger.warning(f"Profile switch aborted: {abort.code}")

    async def _reinstate_source_tokens(
        self,
        source: SessionData,
        grant: AuthTokenResponse,
        previous_access: Optional[str],
        previous_refresh: Optional[str],
        biometric_verified: bool,
    ) -> None:
        """
        Get a working token pair for the source profile after the backend
        confirmed a switch that was then aborted.

        Confirmation revokes the source access token, so the stored pair
        cannot be kept as is. The source refresh token is exchanged first;
        failing that, the confirmed grant switches back to the source profile.
        """
        check = await self._session_manager.check_tokens(
            previous_access, previous_refresh, force_refresh=True
        )
        if check.is_valid and check.user.profileId == source.profileId:
            await self._session_manager.store_tokens(check.access_token, check.refresh_token)
            await self._revoke(grant.access_token)
            logger.info(f"Reissued tokens for profile {source.profileId} after aborted switch")
            return

        if grant.user_id and grant.user_id != source.userId:
            await self._revoke(grant.access_token)
            logger.error(f"Could not reinstate profile {source.profileId}: {check.error_code}")
            return

        try:
            back = await self._client.request_model(
                AuthTokenResponse,
                "POST",
                paths.SWITCH_PROFILE,
                json={"targetProfileId": source.profileId, "biometricVerified": biometric_verified},
                access_token=grant.access_token,
            )
        except BackendError as e:
            logger.error(f"Could not reinstate profile {source.profileId}: {e.code}")
            return

        if back.profile_id and back.profile_id != source.profileId:
            logger.error(f"Switch back landed on profile {back.profile_id}, keeping prior tokens")
            return
        await self._session_manager.store_tokens(back.access_token, back.refresh_token or grant.refresh_token)
        logger.info(f"Switched back to profile {source.profileId} after aborted switch")

    async def _revoke(self, access_token: str) -> None:
        try:
            await self._client.post(paths.LOGOUT, access_token=access_token)
        except BackendError as e:
            logger.warning(f"Could not revoke abandoned profile grant: {e.code}")

    def _advance(self, state: ProfileSwitchState, message: str) -> None:
        if _ORDER.index(state) != _ORDER.index(self._state) + 1:
            raise RuntimeError(f"Illegal profile switch step {self._state.value} -> {state.value}")
        self._state = state
        self._report(state, message)

    def _report(self, state: ProfileSwitchState, message: str) -> None:
        if self._progress_callback is None:
            return
        try:
            self._progress_callback(state, message)
        except Exception:
            logger.exception("Profile switch progress callback failed")

    async def _remember_profile(self, session: SessionData, pin: Optional[str]) -> None:
        # Read before moving the last-active marker; it still points at the old profile
        existing = await self._pin_store.get_profile_pin_data()
        await self._pin_store.set_last_active_profile(session.profileId)
        if pin is None:
            return

        identifier = existing["identifier"] if existing else session.email or session.username
        if not identifier:
            return
        pin_data = ProfilePinData(
            identifier=identifier,
            userId=session.userId,
            profileId=session.profileId,
            profileType=session.profileType,
            displayName=display_name_for(session),
            storedAt=self._clock(),
        )
        await self._pin_store.store_profile_pin_data(session.profileId, pin_data.model_dump())
