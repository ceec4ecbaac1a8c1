"""
Authentication state machine.

Single source of truth for the coarse auth level and the serialization
point for auth operations. It never calls the network: services report
what happened and the machine records it.

Levels:
    GUEST -> AUTHENTICATED -> WALLET_UNLOCKED

Logout and app lock drop back to GUEST; wallet lock drops back to
AUTHENTICATED.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from session_core.types import (
    NO_ACCESS_TOKEN,
    AuthEvent,
    AuthLevel,
    AuthSnapshot,
    AuthState,
)

logger = logging.getLogger(__name__)

StateListener = Callable[[AuthSnapshot], None]
Outcome = Optional[Tuple[AuthState, AuthLevel]]


class AuthStateMachine:
    """
    Records auth transitions and publishes snapshots.

    ``transition`` returns True when the event was committed. Unknown events,
    events that are illegal in the current state, and events raised from
    inside a listener are rejected with False. Nothing here raises.
    """

    def __init__(self):
        self._state = AuthState.INITIALIZING
        self._level = AuthLevel.GUEST
        self._navigating = False
        self._operation: Optional[str] = None
        self._notifying = False
        self._user_id: Optional[str] = None
        self._profile_id: Optional[str] = None
        self._last_error: Optional[str] = None
        self._listeners: List[StateListener] = []

        self._handlers: Dict[AuthEvent, Callable[[Dict[str, Any]], Outcome]] = {
            AuthEvent.SESSION_REFRESH_START: self._on_refresh_start,
            AuthEvent.SESSION_REFRESH_SUCCESS: self._on_refresh_success,
            AuthEvent.SESSION_REFRESH_FAILURE: self._on_refresh_failure,
            AuthEvent.LOGOUT: self._on_logout,
            AuthEvent.LOGIN_SUCCESS: self._on_login_success,
            AuthEvent.LOGIN_FAILURE: self._on_login_failure,
            AuthEvent.NAVIGATION_START: self._on_navigation_start,
            AuthEvent.NAVIGATION_END: self._on_navigation_end,
            AuthEvent.WALLET_UNLOCK: self._on_wallet_unlock,
            AuthEvent.WALLET_LOCK: self._on_wallet_lock,
            AuthEvent.APP_LOCK: self._on_app_lock,
            AuthEvent.APP_UNLOCK: self._on_app_unlock,
            AuthEvent.AUTH_ERROR: self._on_auth_error,
            AuthEvent.RESET: self._on_reset,
        }

    # =========================================================================
    # Queries
    # =========================================================================

    @property
    def state(self) -> AuthState:
        return self._state

    @property
    def auth_level(self) -> AuthLevel:
        return self._level

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    @property
    def is_navigating(self) -> bool:
        return self._navigating

    @property
    def is_authenticated(self) -> bool:
        return self._level >= AuthLevel.AUTHENTICATED

    @property
    def is_transition_in_flight(self) -> bool:
        """A session check or an auth operation has started and not committed."""
        return self._state == AuthState.REFRESHING or self._operation is not None

    def can_perform_auth_operation(self) -> bool:
        """False while a transition is in flight or the UI is mid-navigation."""
        return not self.is_transition_in_flight and not self._navigating and not self._notifying

    def snapshot(self, previous_state: Optional[AuthState] = None, event: Optional[AuthEvent] = None) -> AuthSnapshot:
        return AuthSnapshot(
            state=self._state,
            auth_level=self._level,
            previous_state=previous_state or self._state,
            event=event,
            is_navigating=self._navigating,
            in_flight=self.is_transition_in_flight,
            user_id=self._user_id,
            profile_id=self._profile_id,
            error=self._last_error,
        )

    # =========================================================================
    # Operations
    # =========================================================================

    def begin_operation(self, name: str) -> bool:
        """
        Claim the auth serialization slot for a multi-step operation.

        Args:
            name: Operation name for logs (e.g. "login")

        Returns:
            False if another operation holds the slot or one cannot start now
        """
        if not self.can_perform_auth_operation():
            logger.info(f"Auth operation '{name}' rejected: another transition is in flight")
            return False
        self._operation = name
        self._notify(self.snapshot())
        return True

    def end_operation(self) -> None:
        if self._operation is None:
            return
        self._operation = None
        self._notify(self.snapshot())

    def transition(self, event: Any, payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Apply an event.

        Args:
            event: AuthEvent (or its string value)
            payload: Optional details - user_id, profile_id, reason/error

        Returns:
            True if the transition was committed
        """
        try:
            auth_event = AuthEvent(event)
        except ValueError:
            logger.error(f"Unknown auth event {event!r} ignored in state {self._state.value}")
            return False

        if self._notifying:
            logger.warning(f"{auth_event.value} rejected: issued while notifying listeners")
            return False

        data = payload if isinstance(payload, dict) else {}
        previous = self._state
        try:
            outcome = self._handlers[auth_event](data)
        except Exception:
            logger.exception(f"{auth_event.value} handler failed in state {previous.value}")
            return False

        if outcome is None:
            logger.warning(f"{auth_event.value} not allowed in state {previous.value}")
            return False

        self._state, self._level = outcome
        if previous != self._state:
            logger.info(f"Auth {previous.value} -> {self._state.value} ({auth_event.value}, level {self._level.name})")
        else:
            logger.debug(f"Auth {auth_event.value} committed in {self._state.value}, level {self._level.name}")

        self._notify(self.snapshot(previous_state=previous, event=auth_event))
        return True

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """
        Subscribe to committed transitions.

        Returns:
            Unsubscribe function
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, snapshot: AuthSnapshot) -> None:
        self._notifying = True
        try:
            for listener in list(self._listeners):
                try:
                    listener(snapshot)
                except Exception:
                    logger.exception("Auth state listener failed")
        finally:
            self._notifying = False

    # =========================================================================
    # Event handlers: return (state, level) or None when illegal
    # =========================================================================

    def _on_refresh_start(self, payload: Dict[str, Any]) -> Outcome:
        if self._state in (AuthState.REFRESHING, AuthState.LOCKED):
            return None
        return AuthState.REFRESHING, self._level

    def _on_refresh_success(self, payload: Dict[str, Any]) -> Outcome:
        if self._state != AuthState.REFRESHING:
            return None
        self._set_identity(payload)
        self._last_error = None
        return AuthState.AUTHENTICATED, max(self._level, AuthLevel.AUTHENTICATED)

    def _on_refresh_failure(self, payload: Dict[str, Any]) -> Outcome:
        if self._state != AuthState.REFRESHING:
            return None
        reason = payload.get("reason") or payload.get("error")
        # Nothing stored yet is the normal first-launch path
        self._last_error = None if reason in (None, NO_ACCESS_TOKEN) else str(reason)
        self._clear_identity()
        return AuthState.UNAUTHENTICATED, AuthLevel.GUEST

    def _on_logout(self, payload: Dict[str, Any]) -> Outcome:
        self._clear_identity()
        self._last_error = None
        return AuthState.UNAUTHENTICATED, AuthLevel.GUEST

    def _on_login_success(self, payload: Dict[str, Any]) -> Outcome:
        if self._state == AuthState.REFRESHING:
            return None
        self._set_identity(payload)
        self._last_error = None
        return AuthState.AUTHENTICATED, AuthLevel.AUTHENTICATED

    def _on_login_failure(self, payload: Dict[str, Any]) -> Outcome:
        if self._state in (AuthState.REFRESHING, AuthState.AUTHENTICATED):
            return None
        if not payload.get("expected"):
            error = payload.get("error") or payload.get("reason")
            self._last_error = str(error) if error else None
        if self._state == AuthState.LOCKED:
            return AuthState.LOCKED, self._level
        return AuthState.UNAUTHENTICATED, self._level

    def _on_navigation_start(self, payload: Dict[str, Any]) -> Outcome:
        self._navigating = True
        return self._state, self._level

    def _on_navigation_end(self, payload: Dict[str, Any]) -> Outcome:
        self._navigating = False
        return self._state, self._level

    def _on_wallet_unlock(self, payload: Dict[str, Any]) -> Outcome:
        if self._state != AuthState.AUTHENTICATED or self._level < AuthLevel.AUTHENTICATED:
            return None
        return AuthState.AUTHENTICATED, AuthLevel.WALLET_UNLOCKED

    def _on_wallet_lock(self, payload: Dict[str, Any]) -> Outcome:
        if self._state != AuthState.AUTHENTICATED:
            return None
        return AuthState.AUTHENTICATED, AuthLevel.AUTHENTICATED

    def _on_app_lock(self, payload: Dict[str, Any]) -> Outcome:
        # Identity is kept so the user resumes in place after unlocking
        if self._state != AuthState.AUTHENTICATED:
            return None
        return AuthState.LOCKED, AuthLevel.GUEST

    def _on_app_unlock(self, payload: Dict[str, Any]) -> Outcome:
        if self._state != AuthState.LOCKED:
            return None
        return AuthState.AUTHENTICATED, AuthLevel.AUTHENTICATED

    def _on_auth_error(self, payload: Dict[str, Any]) -> Outcome:
        error = payload.get("error") or payload.get("reason") or "authentication error"
        self._last_error = str(error)
        self._clear_identity()
        return AuthState.ERROR, AuthLevel.GUEST

    def _on_reset(self, payload: Dict[str, Any]) -> Outcome:
        self._clear_identity()
        self._last_error = None
        self._navigating = False
        self._operation = None
        return AuthState.INITIALIZING, AuthLevel.GUEST

    def _set_identity(self, payload: Dict[str, Any]) -> None:
        if payload.get("user_id"):
            self._user_id = payload["user_id"]
        if payload.get("profile_id"):
            self._profile_id = payload["profile_id"]

    def _clear_identity(self) -> None:
        self._user_id = None
        self._profile_id = None
