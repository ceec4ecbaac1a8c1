"""
Session management for the signed-in user.

Owns the normalized SessionData and is the gatekeeper for the shared
access/refresh token pair.
"""

import asyncio
import logging
from typing import Optional

from common.events import EventBus
from common.storage import KeyValueStore, TokenStore
from session_core import events
from session_core.api import paths
from session_core.api.client import BackendClient
from session_core.api.errors import BackendError
from session_core.auth.tokens import is_token_expired
from session_core.clock import Clock, generate_session_id, now_ms
from session_core.config import Settings
from session_core.schemas import AuthTokenResponse, ProfileResponse, SessionData
from session_core.types import NO_ACCESS_TOKEN, ErrorCode, SessionValidationResult, TokenCheckResult

logger = logging.getLogger(__name__)

WALLET_UNLOCK_KEY = "last_wallet_unlock"


class SessionManager:
    """
    Validates and restores persisted sessions.

    Only this class writes the token pair directly; LoginService and
    AccountSwitcher go through ``store_tokens``.
    """

    def __init__(
        self,
        client: BackendClient,
        token_store: TokenStore,
        secure_store: KeyValueStore,
        settings: Settings,
        bus: Optional[EventBus] = None,
        clock: Clock = now_ms,
    ):
        """
        Initialize SessionManager.

        Args:
            client: Backend HTTP client
            token_store: Persisted access/refresh tokens
            secure_store: Secure key-value store (wallet unlock timestamp lives here)
            settings: Session core settings
            bus: Event bus for SESSION_EXPIRED
            clock: Epoch-ms clock
        """
        self._client = client
        self._token_store = token_store
        self._secure_store = secure_store
        self._settings = settings
        self._bus = bus
        self._clock = clock
        self._session: Optional[SessionData] = None
        self._validating = False
        self._validation_task: Optional[asyncio.Task] = None

    # =========================================================================
    # Session state
    # =========================================================================

    def get_session(self) -> Optional[SessionData]:
        return self._session

    def set_session(self, session: Optional[SessionData]) -> None:
        self._session = session
        if session:
            logger.info(f"Session set for user {session.userId} (profile {session.profileId})")

    @property
    def is_validating(self) -> bool:
        return self._validating

    # =========================================================================
    # Tokens
    # =========================================================================

    async def get_access_token(self) -> Optional[str]:
        return await self._token_store.get_access_token()

    async def get_refresh_token(self) -> Optional[str]:
        return await self._token_store.get_refresh_token()

    async def store_tokens(self, access_token: str, refresh_token: Optional[str]) -> None:
        """
        Write both tokens or neither.

        On a failed write the previous pair is put back before the error
        propagates.

        Args:
            access_token: New access token
            refresh_token: New refresh token (None removes it)
        """
        previous_access = await self._token_store.get_access_token()
        previous_refresh = await self._token_store.get_refresh_token()
        try:
            await self._token_store.set_access_token(access_token)
            await self._token_store.set_refresh_token(refresh_token)
        except Exception:
            logger.error("Token write failed, restoring previous token pair")
            await self._restore_tokens(previous_access, previous_refresh)
            raise

    async def _restore_tokens(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        if access_token is None:
            await self._token_store.clear()
            return
        await self._token_store.set_access_token(access_token)
        await self._token_store.set_refresh_token(refresh_token)

    async def refresh_access_token(self) -> bool:
        """
        Exchange the refresh token for a new pair.

        A rejected refresh token drops the local tokens and emits
        SESSION_EXPIRED.

        Returns:
            True if a new pair was stored
        """
        refresh_token = await self._token_store.get_refresh_token()
        if not refresh_token:
            return False

        try:
            grant = await self._exchange_refresh_token(refresh_token)
        except BackendError as e:
            if e.is_auth_failure:
                logger.info(f"Refresh token rejected ({e.code}), session expired")
                await self._token_store.clear()
                if self._bus:
                    self._bus.emit(events.SESSION_EXPIRED, "refresh_rejected")
            else:
                logger.warning(f"Token refresh failed: {e.code}")
            return False

        await self.store_tokens(grant.access_token, grant.refresh_token or refresh_token)
        logger.info("Access token refreshed")
        return True

    async def _exchange_refresh_token(self, refresh_token: str) -> AuthTokenResponse:
        return await self._client.request_model(
            AuthTokenResponse, "POST", paths.REFRESH, json={"refresh_token": refresh_token}
        )

    # =========================================================================
    # Validation
    # =========================================================================

    async def validate_and_restore_session(self) -> SessionValidationResult:
        """
        Validate the stored session against the backend.

        Returns:
            SessionValidationResult. A missing token gives
            error="no access token" and is not a failure.
        """
        if self._validating:
            return SessionValidationResult(
                is_valid=False,
                error="validation in progress",
                error_code=ErrorCode.VALIDATION_IN_PROGRESS,
            )

        self._validating = True
        try:
            return await self._validate()
        finally:
            self._validating = False

    async def _validate(self) -> SessionValidationResult:
        access_token = await self._token_store.get_access_token()
        if not access_token:
            logger.info("No stored access token, starting as guest")
            return SessionValidationResult(
                is_valid=False, error=NO_ACCESS_TOKEN, error_code=ErrorCode.NO_ACCESS_TOKEN
            )

        threshold_ms = self._settings.TOKEN_REFRESH_THRESHOLD_SECONDS * 1000
        if is_token_expired(access_token, self._clock(), leeway_ms=threshold_ms):
            logger.info("Access token expiring, refreshing before validation")
            if await self.refresh_access_token():
                access_token = await self._token_store.get_access_token()
            elif not await self._token_store.get_access_token():
                self._session = None
                return SessionValidationResult(
                    is_valid=False, error="session expired", error_code=ErrorCode.SESSION_EXPIRED
                )

        try:
            session = await self.fetch_session(access_token)
        except BackendError as e:
            if e.status_code == 401:
                logger.info("Stored session rejected by backend, clearing")
                await self.clear_session(revoke=False)
            else:
                logger.warning(f"Session validation failed: {e.code}")
            return SessionValidationResult(is_valid=False, error=e.message, error_code=e.code)

        self._session = session
        logger.info(f"Session restored for user {session.userId}")
        return SessionValidationResult(is_valid=True, user=session)

    async def check_tokens(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        force_refresh: bool = False,
    ) -> TokenCheckResult:
        """
        Check a token pair that is not the stored one.

        Nothing is stored, cleared or emitted, so a failure leaves the
        active session untouched. An expiring access token is exchanged
        with the given refresh token and the resulting pair is returned
        for the caller to adopt.

        Args:
            access_token: Candidate access token
            refresh_token: Candidate refresh token
            force_refresh: Exchange the refresh token even if the access token is fresh

        Returns:
            TokenCheckResult with the projected session and the pair to store
        """
        now = self._clock()
        threshold_ms = self._settings.TOKEN_REFRESH_THRESHOLD_SECONDS * 1000
        expiring = is_token_expired(access_token, now, leeway_ms=threshold_ms)
        if (force_refresh or expiring) and refresh_token:
            try:
                grant = await self._exchange_refresh_token(refresh_token)
            except BackendError as e:
                if e.is_auth_failure:
                    logger.info(f"Candidate refresh token rejected ({e.code})")
                    return TokenCheckResult(
                        is_valid=False, error="session expired", error_code=ErrorCode.SESSION_EXPIRED
                    )
                if is_token_expired(access_token, now):
                    return TokenCheckResult(is_valid=False, error=e.message, error_code=e.code)
                logger.warning(f"Candidate refresh failed ({e.code}), trying current access token")
            else:
                access_token = grant.access_token
                refresh_token = grant.refresh_token or refresh_token

        if is_token_expired(access_token, now):
            return TokenCheckResult(
                is_valid=False, error="session expired", error_code=ErrorCode.SESSION_EXPIRED
            )

        try:
            profile = await self._client.request_model(
                ProfileResponse, "GET", paths.ME, access_token=access_token
            )
        except BackendError as e:
            return TokenCheckResult(is_valid=False, error=e.message, error_code=e.code)

        return TokenCheckResult(
            is_valid=True,
            user=self._project(profile),
            access_token=access_token,
            refresh_token=refresh_token,
        )

    async def fetch_session(self, access_token: str) -> SessionData:
        """
        Fetch the current profile and project it into a new SessionData.

        Raises:
            BackendError: Backend rejected the token or could not be reached
        """
        profile = await self._client.request_model(
            ProfileResponse, "GET", paths.ME, access_token=access_token
        )
        return self._project(profile)

    def _project(self, profile: ProfileResponse) -> SessionData:
        now = self._clock()
        is_business = profile.type == "business"
        previous = self._session
        same_profile = previous is not None and previous.profileId == profile.profile_id

        return SessionData(
            userId=profile.user_id or profile.id or "",
            profileId=profile.profile_id or profile.id or "",
            entityId=profile.entity_id,
            email=(profile.business_email or profile.email) if is_business else profile.email,
            username=profile.username,
            firstName=profile.business_name if is_business else profile.first_name,
            lastName=None if is_business else profile.last_name,
            businessName=profile.business_name,
            avatarUrl=profile.avatar_url or profile.logo_url,
            profileType=profile.type,
            sessionId=previous.sessionId if same_profile else generate_session_id(self._clock),
            createdAt=previous.createdAt if same_profile else now,
            lastValidated=now,
        )

    # =========================================================================
    # Periodic validation
    # =========================================================================

    def start_periodic_validation(self) -> None:
        """Re-validate every SESSION_VALIDATION_INTERVAL_SECONDS. Replaces a running loop."""
        self.stop_periodic_validation()
        self._validation_task = asyncio.create_task(self._validation_loop())

    def stop_periodic_validation(self) -> None:
        if self._validation_task and not self._validation_task.done():
            self._validation_task.cancel()
        self._validation_task = None

    async def _validation_loop(self) -> None:
        interval = self._settings.SESSION_VALIDATION_INTERVAL_SECONDS
        while True:
            await asyncio.sleep(interval)
            if self._session is None:
                continue
            result = await self.validate_and_restore_session()
            if not result.is_valid and result.error_code != ErrorCode.VALIDATION_IN_PROGRESS:
                logger.info(f"Periodic validation failed: {result.error_code}")

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def clear_session(self, revoke: bool = True) -> None:
        """
        Revoke (best effort) and forget the local session.

        Safe to call repeatedly and when nothing is stored.
        """
        access_token = await self._token_store.get_access_token()
        if revoke and access_token:
            try:
                await self._client.post(paths.LOGOUT, access_token=access_token)
            except BackendError as e:
                logger.warning(f"Backend logout failed ({e.code}), clearing locally")

        await self._token_store.clear()
        await self._secure_store.delete_item(WALLET_UNLOCK_KEY)
        self._session = None
        logger.info("Session cleared")

    async def emergency_cleanup(self) -> bool:
        """
        Wipe every stored token and secure value. Debug builds only.

        Returns:
            False if refused outside DEBUG
        """
        if not self._settings.DEBUG:
            logger.warning("Emergency cleanup refused: DEBUG is disabled")
            return False

        self.stop_periodic_validation()
        await self._token_store.clear()
        await self._secure_store.clear()
        self._session = None
        logger.warning("Emergency cleanup wiped all local session data")
        return True
