"""
Login strategies behind one result shape.

Password (unified identifier), 6-digit PIN and biometric logins all end
in the same place: a stored token pair, a fresh SessionData and a PIN
association for the profile that was signed into.
"""

import logging
import re
from typing import Optional

from common.auth import BiometricGateway
from common.storage import KeyValueStore, ProfilePinStore
from session_core.api import paths
from session_core.api.client import BackendClient
from session_core.api.errors import BackendError
from session_core.auth.services.session_manager import SessionManager
from session_core.clock import Clock, generate_session_id, now_ms
from session_core.config import Settings
from session_core.schemas import (
    AuthTokenResponse,
    BiometricEnrollResponse,
    ProfilePinData,
    SessionData,
    display_name_for,
)
from session_core.types import ErrorCode, LoginResult

logger = logging.getLogger(__name__)

BIOMETRIC_DEVICE_TOKEN_KEY = "biometric_device_token"

PIN_NOT_SET_UP_MESSAGE = "PIN not set up for this account"
INVALID_PIN_MESSAGE = "Invalid PIN or PIN not set up for this account."


class LoginService:
    """
    Performs logins and reports normalized results.

    Never raises for expected failures; the caller records the outcome on
    the AuthStateMachine.
    """

    def __init__(
        self,
        client: BackendClient,
        session_manager: SessionManager,
        pin_store: ProfilePinStore,
        secure_store: KeyValueStore,
        biometric: BiometricGateway,
        settings: Settings,
        clock: Clock = now_ms,
    ):
        """
        Initialize LoginService.

        Args:
            client: Backend HTTP client
            session_manager: Owner of the token pair and session
            pin_store: PIN association records
            secure_store: Holds the biometric device token
            biometric: Biometric hardware gateway
            settings: Session core settings
            clock: Epoch-ms clock
        """
        self._client = client
        self._session_manager = session_manager
        self._pin_store = pin_store
        self._secure_store = secure_store
        self._biometric = biometric
        self._settings = settings
        self._clock = clock
        self._pin_pattern = re.compile(rf"^\d{{{settings.PIN_LENGTH}}}$")

    # =========================================================================
    # Password
    # =========================================================================

    async def login(self, identifier: str, password: str) -> LoginResult:
        """
        Sign in with an email, phone or username plus password.

        The backend decides whether the identifier is a personal or a
        business profile; the resolved type is relayed as ``user_type``.

        Args:
            identifier: Email, phone number or username
            password: Account password

        Returns:
            LoginResult
        """
        logger.info(f"Unified login for {identifier}")
        try:
            grant = await self._client.request_model(
                AuthTokenResponse,
                "POST",
                paths.UNIFIED_LOGIN,
                json={"identifier": identifier, "password": password},
            )
        except BackendError as e:
            return self._failure(e, "Login failed", unauthorized_code=ErrorCode.INVALID_CREDENTIALS)

        return await self._complete_login(grant, identifier)

    # =========================================================================
    # PIN
    # =========================================================================

    async def login_with_pin(
        self,
        identifier: Optional[str],
        pin: str,
        target_profile_id: Optional[str] = None,
    ) -> LoginResult:
        """
        Sign in with a PIN for a previously remembered profile.

        Args:
            identifier: Identifier the PIN belongs to; defaults to the stored one
            pin: 6-digit PIN
            target_profile_id: Profile to sign into; defaults to the last active one

        Returns:
            LoginResult; NO_PIN_USER when no association exists for the identifier
        """
        record = await self._pin_store.get_profile_pin_data(target_profile_id)
        pin_data = ProfilePinData.model_validate(record) if record else None

        if pin_data is None or (identifier and pin_data.identifier != identifier):
            logger.info("PIN login attempted without a stored PIN association")
            return LoginResult(
                success=False, message=PIN_NOT_SET_UP_MESSAGE, error_code=ErrorCode.NO_PIN_USER
            )

        if not self._pin_pattern.match(pin or ""):
            return LoginResult(
                success=False,
                message=f"PIN must be {self._settings.PIN_LENGTH} digits",
                error_code=ErrorCode.INVALID_PIN_FORMAT,
            )

        try:
            grant = await self._client.request_model(
                AuthTokenResponse,
                "POST",
                paths.PIN_LOGIN,
                json={
                    "identifier": pin_data.identifier,
                    "pin": pin,
                    "profile_id": pin_data.profileId,
                },
            )
        except BackendError as e:
            if e.status_code == 401:
                logger.info("PIN rejected by backend")
                return LoginResult(
                    success=False, message=INVALID_PIN_MESSAGE, error_code=ErrorCode.INVALID_PIN
                )
            return self._failure(e, "PIN login failed")

        return await self._complete_login(grant, pin_data.identifier)

    # =========================================================================
    # Biometric
    # =========================================================================

    async def login_with_biometric(self) -> LoginResult:
        """
        Exchange a biometric assertion for a session.

        Uses the secure device token issued by ``enable_biometric_login``.
        No password is stored or read.
        """
        device_token = await self._secure_store.get_item(BIOMETRIC_DEVICE_TOKEN_KEY)
        if not device_token:
            return LoginResult(
                success=False,
                message="Biometric login is not set up on this device",
                error_code=ErrorCode.BIOMETRIC_NOT_ENABLED,
            )

        failure = await self._prompt_biometric("Sign in")
        if failure:
            return failure

        try:
            grant = await self._client.request_model(
                AuthTokenResponse,
                "POST",
                paths.BIOMETRIC_LOGIN,
                json={"device_token": device_token},
            )
        except BackendError as e:
            if e.is_auth_failure:
                logger.info("Biometric device token rejected, removing it")
                await self.clear_biometric_credentials()
                return LoginResult(
                    success=False,
                    message="Biometric login expired. Sign in with your password.",
                    error_code=ErrorCode.BIOMETRIC_NOT_ENABLED,
                )
            return self._failure(e, "Biometric login failed")

        if grant.device_token:
            await self._secure_store.set_item(BIOMETRIC_DEVICE_TOKEN_KEY, grant.device_token)

        pin_data = await self._pin_store.get_profile_pin_data()
        identifier = pin_data["identifier"] if pin_data else None
        return await self._complete_login(grant, identifier)

    async def enable_biometric_login(self) -> LoginResult:
        """
        Enroll this device for biometric login. Idempotent.

        Requires a signed-in session and a successful biometric prompt.
        """
        if await self.is_biometric_login_enabled():
            return LoginResult(success=True, user=self._session_manager.get_session())

        access_token = await self._session_manager.get_access_token()
        if not access_token or self._session_manager.get_session() is None:
            return LoginResult(
                success=False, message="Sign in first", error_code=ErrorCode.NOT_AUTHENTICATED
            )

        failure = await self._prompt_biometric("Enable biometric login")
        if failure:
            return failure

        try:
            enrollment = await self._client.request_model(
                BiometricEnrollResponse, "POST", paths.BIOMETRIC_ENROLL, access_token=access_token
            )
        except BackendError as e:
            return self._failure(e, "Could not enable biometric login")

        await self._secure_store.set_item(BIOMETRIC_DEVICE_TOKEN_KEY, enrollment.device_token)
        logger.info("Biometric login enabled")
        return LoginResult(success=True, user=self._session_manager.get_session())

    async def is_biometric_login_enabled(self) -> bool:
        return bool(await self._secure_store.get_item(BIOMETRIC_DEVICE_TOKEN_KEY))

    async def clear_biometric_credentials(self) -> None:
        """Forget the device token. Idempotent."""
        await self._secure_store.delete_item(BIOMETRIC_DEVICE_TOKEN_KEY)

    async def _prompt_biometric(self, prompt: str) -> Optional[LoginResult]:
        """Run a prompt; returns a failure result, or None on success."""
        if not await self._biometric.is_available():
            return LoginResult(
                success=False,
                message="Biometric authentication is not available",
                error_code=ErrorCode.BIOMETRIC_UNAVAILABLE,
            )

        result = await self._biometric.authenticate(prompt)
        if result.success:
            return None
        if result.cancelled:
            return LoginResult(
                success=False, message="Cancelled", error_code=ErrorCode.BIOMETRIC_CANCELLED
            )
        return LoginResult(
            success=False,
            message="Biometric authentication failed",
            error_code=ErrorCode.BIOMETRIC_FAILED,
        )

    # =========================================================================
    # Shared completion
    # =========================================================================

    async def _complete_login(self, grant: AuthTokenResponse, identifier: Optional[str]) -> LoginResult:
        await self._session_manager.store_tokens(grant.access_token, grant.refresh_token)

        try:
            session = await self._session_manager.fetch_session(grant.access_token)
        except BackendError as e:
            logger.warning(f"Login succeeded but profile fetch failed ({e.code}), using token grant")
            session = self._session_from_grant(grant, identifier)

        self._session_manager.set_session(session)

        if identifier:
            await self._remember_pin_user(session, identifier)

        logger.info(f"Login completed for user {session.userId} ({session.profileType})")
        return LoginResult(success=True, user=session, user_type=grant.user_type)

    def _session_from_grant(self, grant: AuthTokenResponse, identifier: Optional[str]) -> SessionData:
        now = self._clock()
        return SessionData(
            userId=grant.user_id or "",
            profileId=grant.profile_id or "",
            entityId=grant.entity_id,
            email=identifier if identifier and "@" in identifier else None,
            profileType=grant.user_type,
            sessionId=generate_session_id(self._clock),
            createdAt=now,
            lastValidated=now,
        )

    async def _remember_pin_user(self, session: SessionData, identifier: str) -> None:
        pin_data = ProfilePinData(
            identifier=identifier,
            userId=session.userId,
            profileId=session.profileId,
            profileType=session.profileType,
            displayName=display_name_for(session),
            storedAt=self._clock(),
        )
        await self._pin_store.store_profile_pin_data(session.profileId, pin_data.model_dump())
        await self._pin_store.set_last_active_profile(session.profileId)

    @staticmethod
    def _failure(
        error: BackendError,
        default_message: str,
        unauthorized_code: Optional[str] = None,
    ) -> LoginResult:
        code = error.code
        if unauthorized_code and error.status_code == 401 and code == "UNAUTHORIZED":
            code = unauthorized_code
        logger.warning(f"{default_message}: {code}")
        return LoginResult(success=False, message=error.message or default_message, error_code=code)
