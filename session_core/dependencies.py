"""
Explicit wiring for the session core.

``build_session_core`` creates one isolated set of services per call.
The application builds it once at startup and passes it to consumers;
tests build a fresh one per case.
"""

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import httpx

from common.auth import BiometricGateway, PinHasher
from common.events import EventBus
from common.storage import KeyValueStore, ProfilePinStore, TokenStore
from session_core import events
from session_core.api.client import BackendClient
from session_core.auth.services.account_switcher import AccountSwitcher
from session_core.auth.services.accounts_store import AccountsStore
from session_core.auth.services.audit_logger import AccountSwitchAuditLogger
from session_core.auth.services.login_service import LoginService
from session_core.auth.services.session_manager import SessionManager
from session_core.auth.services.wallet_security import WalletSecurity
from session_core.auth.state_machine import AuthStateMachine
from session_core.clock import Clock, now_ms
from session_core.config import Settings, get_settings
from session_core.loading.orchestrator import LoadingOrchestrator
from session_core.lock.services.app_lock_service import AppLockService
from session_core.profiles.services.profile_switch_orchestrator import ProfileSwitchOrchestrator
from session_core.profiles.view_state import ActiveProfileView
from session_core.types import AuthEvent, AuthState

logger = logging.getLogger(__name__)

CacheClear = Callable[[], Awaitable[None]]


# ─────────────────────────────────────────────────────────────────
# Profile-scoped caches
# ─────────────────────────────────────────────────────────────────

class CachedDataRegistry:
    """Profile-scoped caches that must be dropped on profile switch and logout."""

    def __init__(self):
        self._clears: List[CacheClear] = []

    def register(self, clear: CacheClear) -> Callable[[], None]:
        self._clears.append(clear)

        def unregister() -> None:
            if clear in self._clears:
                self._clears.remove(clear)

        return unregister

    async def clear_all(self) -> None:
        """
        Run every registered clear.

        Raises:
            Exception: The first failure, after every clear has been attempted
        """
        first_error: Optional[Exception] = None
        for clear in list(self._clears):
            try:
                await clear()
            except Exception as e:
                logger.warning(f"Cache clear failed: {e!r}")
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error


# ─────────────────────────────────────────────────────────────────
# Container
# ─────────────────────────────────────────────────────────────────

@dataclass
class SessionCore:
    """Every service of the session core, wired together."""

    settings: Settings
    bus: EventBus
    client: BackendClient
    machine: AuthStateMachine
    session_manager: SessionManager
    login_service: LoginService
    account_switcher: AccountSwitcher
    profile_switcher: ProfileSwitchOrchestrator
    wallet: WalletSecurity
    app_lock: AppLockService
    loading: LoadingOrchestrator
    view: ActiveProfileView
    caches: CachedDataRegistry
    _unsubscribers: List[Callable[[], None]] = field(default_factory=list)

    async def initialize(self) -> None:
        """Load persisted lock and wallet state. Call once before the first session check."""
        await self.app_lock.initialize()
        await self.wallet.restore_state()
        logger.info(f"Session core initialized ({self.settings.ENVIRONMENT})")

    async def clear_all_cached_data(self) -> None:
        await self.caches.clear_all()

    async def shutdown(self) -> None:
        self.session_manager.stop_periodic_validation()
        self.app_lock.dispose()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.bus.drain()
        logger.info("Session core shut down")


# ─────────────────────────────────────────────────────────────────
# Builder
# ─────────────────────────────────────────────────────────────────

def build_session_core(
    token_store: TokenStore,
    secure_store: KeyValueStore,
    pin_store: ProfilePinStore,
    biometric: BiometricGateway,
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    pin_hasher: Optional[PinHasher] = None,
    clock: Clock = now_ms,
) -> SessionCore:
    """
    Build and wire a SessionCore.

    Args:
        token_store: Persisted access/refresh tokens
        secure_store: Secure key-value store
        pin_store: PIN association records
        biometric: Biometric hardware gateway
        settings: Defaults to ``get_settings()``
        transport: Optional httpx transport for the backend client
        pin_hasher: App-lock PIN hashing
        clock: Epoch-ms clock

    Returns:
        SessionCore; call ``initialize()`` before use

    Raises:
        ValueError: Settings are out of range
    """
    settings = settings or get_settings()
    settings.validate_required()
    bus = EventBus()
    client = BackendClient(
        base_url=settings.API_BASE_URL,
        timeout_seconds=settings.API_TIMEOUT_SECONDS,
        max_retries=settings.API_MAX_RETRIES,
        retry_backoff_seconds=settings.API_RETRY_BACKOFF_SECONDS,
        transport=transport,
    )

    machine = AuthStateMachine()
    session_manager = SessionManager(client, token_store, secure_store, settings, bus=bus, clock=clock)
    login_service = LoginService(
        client, session_manager, pin_store, secure_store, biometric, settings, clock=clock
    )
    account_switcher = AccountSwitcher(
        AccountsStore(secure_store),
        AccountSwitchAuditLogger(secure_store, limit=settings.ACCOUNT_AUDIT_LOG_LIMIT, clock=clock),
        session_manager,
        biometric,
        settings,
        bus=bus,
        clock=clock,
    )
    app_lock = AppLockService(
        secure_store,
        biometric,
        settings,
        bus,
        is_authenticated=lambda: session_manager.get_session() is not None,
        pin_hasher=pin_hasher,
        clock=clock,
    )
    wallet = WalletSecurity(secure_store, biometric, app_lock, settings, clock=clock)
    view = ActiveProfileView()
    caches = CachedDataRegistry()
    profile_switcher = ProfileSwitchOrchestrator(
        client,
        session_manager,
        view,
        pin_store,
        biometric,
        caches.clear_all,
        settings,
        bus=bus,
        clock=clock,
    )
    loading = LoadingOrchestrator(settings, clock=clock)

    core = SessionCore(
        settings=settings,
        bus=bus,
        client=client,
        machine=machine,
        session_manager=session_manager,
        login_service=login_service,
        account_switcher=account_switcher,
        profile_switcher=profile_switcher,
        wallet=wallet,
        app_lock=app_lock,
        loading=loading,
        view=view,
        caches=caches,
    )

    def on_app_locked(reason: Optional[str] = None) -> None:
        if machine.state == AuthState.AUTHENTICATED:
            machine.transition(AuthEvent.APP_LOCK, {"reason": reason})

    def on_app_unlocked(method: Optional[str] = None) -> None:
        if machine.state == AuthState.LOCKED:
            machine.transition(AuthEvent.APP_UNLOCK)

    core._unsubscribers.extend([
        machine.on_state_change(loading.handle_auth_state_change),
        bus.on(events.APP_LOCKED, on_app_locked),
        bus.on(events.APP_UNLOCKED, on_app_unlocked),
    ])
    return core
