"""
Loading readiness aggregator.

Tracks named in-flight operations and the auth transition, and publishes
a single LoadingState telling the presentation layer whether it may
render. The phase is always derived from the current inputs:

    AUTH_COMPLETING      auth transition in flight
    DATA_LOADING         any data-loading operation active
    UI_PREPARING         after an auth-to-app transition, before first paint
    TRANSITION_COMPLETE  first paint acknowledged, decays to IDLE
    IDLE                 nothing to coordinate
"""

import asyncio
import logging
import secrets
from typing import Callable, Dict, List, Optional

from session_core.clock import Clock, now_ms
from session_core.config import Settings
from session_core.types import (
    DATA_LOADING_OPERATIONS,
    AuthEvent,
    AuthSnapshot,
    AuthState,
    LoadingState,
    OperationDescriptor,
    OperationPriority,
    OperationType,
    TransitionPhase,
)

logger = logging.getLogger(__name__)

LoadingListener = Callable[[LoadingState], None]


class LoadingOrchestrator:
    """
    Owns LoadingState.

    Every mutation rebuilds the whole snapshot before any listener runs.
    Operations expire on their own timer when a loop is running, or on the
    next mutation otherwise.
    Nothing here raises; listener failures are logged.
    """

    def __init__(self, settings: Settings, clock: Clock = now_ms):
        self._settings = settings
        self._clock = clock
        self._operations: Dict[str, OperationDescriptor] = {}
        self._listeners: List[LoadingListener] = []
        self._auth_in_flight = False
        self._awaiting_first_paint = False
        self._transition_complete = False
        self._decay_timer: Optional[asyncio.TimerHandle] = None
        self._expiry_timers: Dict[str, asyncio.TimerHandle] = {}
        self._state = self._derive()

    # =========================================================================
    # Operations
    # =========================================================================

    def start_operation(
        self,
        operation_type: OperationType,
        description: str = "",
        priority: OperationPriority = OperationPriority.NORMAL,
    ) -> str:
        """
        Register an operation the UI must wait for.

        Returns:
            Operation id to pass to ``complete_operation``
        """
        operation_id = f"loading_{self._clock()}_{secrets.token_hex(4)}"
        self._operations[operation_id] = OperationDescriptor(
            id=operation_id,
            type=operation_type,
            description=description or operation_type.value.lower(),
            priority=priority,
            started_at=self._clock(),
        )
        logger.debug(f"Loading operation started: {operation_type.value} ({operation_id})")
        self._schedule_expiry(operation_id)
        self._update()
        return operation_id

    def complete_operation(self, operation_id: str) -> bool:
        operation = self._operations.pop(operation_id, None)
        self._cancel_expiry(operation_id)
        if operation is None:
            logger.warning(f"Completing unknown or expired loading operation {operation_id}")
            return False

        logger.debug(
            f"Loading operation completed: {operation.type.value} "
            f"after {self._clock() - operation.started_at}ms"
        )
        self._update()
        return True

    # =========================================================================
    # Auth-to-app transition
    # =========================================================================

    def coordinate_auth_to_app_transition(self) -> None:
        """Hold the UI in UI_PREPARING until the first paint is acknowledged."""
        self._cancel_decay()
        self._awaiting_first_paint = True
        self._transition_complete = False
        logger.debug("Coordinating auth-to-app transition")
        self._update()

    def acknowledge_first_paint(self) -> None:
        """The presentation layer has rendered the app after a transition."""
        if not self._awaiting_first_paint:
            return

        self._awaiting_first_paint = False
        self._transition_complete = True
        self._schedule_decay()
        self._update()

    def _schedule_decay(self) -> None:
        self._cancel_decay()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._transition_complete = False
            return
        self._decay_timer = loop.call_later(
            self._settings.LOADING_TRANSITION_DELAY_MS / 1000, self._on_decay
        )

    def _on_decay(self) -> None:
        self._decay_timer = None
        if self._transition_complete:
            self._transition_complete = False
            self._update()

    def _cancel_decay(self) -> None:
        if self._decay_timer is not None:
            self._decay_timer.cancel()
            self._decay_timer = None

    # =========================================================================
    # Auth coupling
    # =========================================================================

    def handle_auth_state_change(self, snapshot: AuthSnapshot) -> None:
        """AuthStateMachine listener."""
        self._auth_in_flight = snapshot.in_flight

        if snapshot.state == AuthState.UNAUTHENTICATED:
            if self._operations:
                logger.info(f"Signed out, dropping {len(self._operations)} loading operation(s)")
            self._cancel_all_expiry()
            self._operations.clear()
            self._awaiting_first_paint = False
            self._transition_complete = False
            self._cancel_decay()
        elif snapshot.state == AuthState.AUTHENTICATED and snapshot.event == AuthEvent.LOGIN_SUCCESS:
            self._cancel_decay()
            self._awaiting_first_paint = True
            self._transition_complete = False

        self._update()

    # =========================================================================
    # Expiry
    # =========================================================================

    def _schedule_expiry(self, operation_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._expiry_timers[operation_id] = loop.call_later(
            self._settings.LOADING_OPERATION_EXPIRATION_MS / 1000, self._on_expiry, operation_id
        )

    def _on_expiry(self, operation_id: str) -> None:
        self._expiry_timers.pop(operation_id, None)
        operation = self._operations.pop(operation_id, None)
        if operation is None:
            return
        logger.warning(f"Loading operation expired: {operation.type.value} ({operation.description})")
        self._update()

    def _cancel_expiry(self, operation_id: str) -> None:
        timer = self._expiry_timers.pop(operation_id, None)
        if timer is not None:
            timer.cancel()

    def _cancel_all_expiry(self) -> None:
        for timer in self._expiry_timers.values():
            timer.cancel()
        self._expiry_timers.clear()

    # =========================================================================
    # State
    # =========================================================================

    def get_state(self) -> LoadingState:
        """Current snapshot. Reading it never expires operations or notifies listeners."""
        return self._state

    @property
    def can_show_ui(self) -> bool:
        return self._state.can_show_ui

    def on_state_change(self, listener: LoadingListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def reset(self) -> None:
        self._cancel_decay()
        self._cancel_all_expiry()
        self._operations.clear()
        self._auth_in_flight = False
        self._awaiting_first_paint = False
        self._transition_complete = False
        self._update()

    def _update(self) -> None:
        self._expire_stale()
        new_state = self._derive()
        if new_state == self._state:
            return

        self._state = new_state
        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                logger.exception("Loading state listener failed")

    def _expire_stale(self) -> None:
        cutoff = self._clock() - self._settings.LOADING_OPERATION_EXPIRATION_MS
        expired = [op for op in self._operations.values() if op.started_at <= cutoff]
        for operation in expired:
            del self._operations[operation.id]
            self._cancel_expiry(operation.id)
            logger.warning(f"Loading operation expired: {operation.type.value} ({operation.description})")

    def _derive(self) -> LoadingState:
        active = sorted(self._operations.values(), key=lambda op: (-op.priority, op.started_at))

        if self._auth_in_flight:
            phase = TransitionPhase.AUTH_COMPLETING
        elif any(op.type in DATA_LOADING_OPERATIONS for op in active):
            phase = TransitionPhase.DATA_LOADING
        elif self._awaiting_first_paint:
            phase = TransitionPhase.UI_PREPARING
        elif self._transition_complete:
            phase = TransitionPhase.TRANSITION_COMPLETE
        else:
            phase = TransitionPhase.IDLE

        return LoadingState(
            is_loading=bool(active),
            can_show_ui=not active and not self._auth_in_flight,
            transition_phase=phase,
            active_operations=active,
            primary_operation=active[0] if active else None,
        )
