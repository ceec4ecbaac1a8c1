"""
Type definitions for the session core.

Contains the enums, result values and snapshots shared across services.
Results are returned for expected failures instead of raising.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List, Optional

from session_core.schemas import SessionData


# Reason reported when there is simply no stored session. Not an error.
NO_ACCESS_TOKEN = "no access token"


class ErrorCode(str, Enum):
    NO_ACCESS_TOKEN = "NO_ACCESS_TOKEN"
    VALIDATION_IN_PROGRESS = "VALIDATION_IN_PROGRESS"
    AUTH_OPERATION_IN_PROGRESS = "AUTH_OPERATION_IN_PROGRESS"
    UNAUTHORIZED = "UNAUTHORIZED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_PIN = "INVALID_PIN"
    INVALID_PIN_FORMAT = "INVALID_PIN_FORMAT"
    NO_PIN_USER = "NO_PIN_USER"
    BIOMETRIC_NOT_ENABLED = "BIOMETRIC_NOT_ENABLED"
    BIOMETRIC_UNAVAILABLE = "BIOMETRIC_UNAVAILABLE"
    BIOMETRIC_CANCELLED = "BIOMETRIC_CANCELLED"
    BIOMETRIC_FAILED = "BIOMETRIC_FAILED"
    MAX_ACCOUNTS_EXCEEDED = "MAX_ACCOUNTS_EXCEEDED"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ACCOUNT_SESSION_EXPIRED = "ACCOUNT_SESSION_EXPIRED"
    SWITCH_IN_PROGRESS = "SWITCH_IN_PROGRESS"
    CANNOT_REMOVE_ACTIVE = "CANNOT_REMOVE_ACTIVE"
    CANNOT_REMOVE_LAST = "CANNOT_REMOVE_LAST"
    PROFILE_NOT_FOUND = "PROFILE_NOT_FOUND"
    DIFFERENT_USER = "DIFFERENT_USER"
    ALREADY_ACTIVE = "ALREADY_ACTIVE"
    PIN_REQUIRED = "PIN_REQUIRED"
    PROFILE_LOCKED = "PROFILE_LOCKED"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    APP_LOCK_NOT_CONFIGURED = "APP_LOCK_NOT_CONFIGURED"
    LOCKED_OUT = "LOCKED_OUT"
    CACHE_INVALIDATION_FAILED = "CACHE_INVALIDATION_FAILED"


# =============================================================================
# Auth state
# =============================================================================

class AuthLevel(IntEnum):
    """Coarse authorization tier."""
    GUEST = 0
    AUTHENTICATED = 1
    WALLET_UNLOCKED = 2


class AuthState(str, Enum):
    INITIALIZING = "INITIALIZING"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    REFRESHING = "REFRESHING"
    AUTHENTICATED = "AUTHENTICATED"
    LOCKED = "LOCKED"
    ERROR = "ERROR"


class AuthEvent(str, Enum):
    SESSION_REFRESH_START = "SESSION_REFRESH_START"
    SESSION_REFRESH_SUCCESS = "SESSION_REFRESH_SUCCESS"
    SESSION_REFRESH_FAILURE = "SESSION_REFRESH_FAILURE"
    LOGOUT = "LOGOUT"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    NAVIGATION_START = "NAVIGATION_START"
    NAVIGATION_END = "NAVIGATION_END"
    WALLET_UNLOCK = "WALLET_UNLOCK"
    WALLET_LOCK = "WALLET_LOCK"
    APP_LOCK = "APP_LOCK"
    APP_UNLOCK = "APP_UNLOCK"
    AUTH_ERROR = "AUTH_ERROR"
    RESET = "RESET"


@dataclass(frozen=True)
class AuthSnapshot:
    """State published to AuthStateMachine listeners after each commit."""
    state: AuthState
    auth_level: AuthLevel
    previous_state: AuthState
    event: Optional[AuthEvent]
    is_navigating: bool = False
    in_flight: bool = False
    user_id: Optional[str] = None
    profile_id: Optional[str] = None
    error: Optional[str] = None


# =============================================================================
# Results
# =============================================================================

@dataclass
class SessionValidationResult:
    is_valid: bool
    user: Optional[SessionData] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @property
    def is_expected_absence(self) -> bool:
        """True for the first-launch, nothing-stored case."""
        return self.error_code == ErrorCode.NO_ACCESS_TOKEN


@dataclass
class TokenCheckResult:
    """A token pair checked against the backend without being adopted."""

    is_valid: bool
    user: Optional[SessionData] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


@dataclass
class LoginResult:
    success: bool
    user: Optional[SessionData] = None
    message: Optional[str] = None
    error_code: Optional[str] = None
    user_type: Optional[str] = None


@dataclass
class AccountOperationResult:
    success: bool
    error_code: Optional[str] = None
    message: Optional[str] = None


@dataclass
class AccountSwitchResult:
    success: bool
    session: Optional[SessionData] = None
    error_code: Optional[str] = None
    message: Optional[str] = None


@dataclass
class WalletAccessResult:
    success: bool
    auth_level: AuthLevel
    error_code: Optional[str] = None
    message: Optional[str] = None


@dataclass
class UnlockResult:
    success: bool
    error_code: Optional[str] = None
    message: Optional[str] = None
    attempts_remaining: Optional[int] = None
    lockout_until_ms: Optional[int] = None


# =============================================================================
# App lock
# =============================================================================

class LockMethod(str, Enum):
    BIOMETRIC = "biometric"
    PIN = "pin"
    NONE = "none"


class AppState(str, Enum):
    """Platform app lifecycle state. INACTIVE covers system dialogs and the app switcher."""
    ACTIVE = "active"
    BACKGROUND = "background"
    INACTIVE = "inactive"


@dataclass
class LockState:
    is_locked: bool = False
    backgrounded_at: Optional[int] = None
    last_unlock: Optional[int] = None


# =============================================================================
# Loading
# =============================================================================

class OperationType(str, Enum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    SESSION_REFRESH = "SESSION_REFRESH"
    SESSION_RESTORE = "SESSION_RESTORE"
    USER_DATA = "USER_DATA"
    KYC_DATA = "KYC_DATA"
    PROFILE_DATA = "PROFILE_DATA"
    INTERACTIONS_DATA = "INTERACTIONS_DATA"
    ROUTE_TRANSITION = "ROUTE_TRANSITION"
    APP_INITIALIZATION = "APP_INITIALIZATION"
    NETWORK_REQUEST = "NETWORK_REQUEST"
    FILE_UPLOAD = "FILE_UPLOAD"


DATA_LOADING_OPERATIONS = frozenset({
    OperationType.USER_DATA,
    OperationType.KYC_DATA,
    OperationType.PROFILE_DATA,
    OperationType.INTERACTIONS_DATA,
    OperationType.SESSION_RESTORE,
})


class OperationPriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


class TransitionPhase(str, Enum):
    AUTH_COMPLETING = "AUTH_COMPLETING"
    DATA_LOADING = "DATA_LOADING"
    UI_PREPARING = "UI_PREPARING"
    TRANSITION_COMPLETE = "TRANSITION_COMPLETE"
    IDLE = "IDLE"


@dataclass(frozen=True)
class OperationDescriptor:
    id: str
    type: OperationType
    description: str
    priority: OperationPriority
    started_at: int


@dataclass(frozen=True)
class LoadingState:
    """Fully derived readiness snapshot. Rebuilt on every change."""
    is_loading: bool
    can_show_ui: bool
    transition_phase: TransitionPhase
    active_operations: List[OperationDescriptor] = field(default_factory=list)
    primary_operation: Optional[OperationDescriptor] = None


# =============================================================================
# Profile switching
# =============================================================================

class ProfileSwitchState(str, Enum):
    IDLE = "IDLE"
    VALIDATING = "VALIDATING"
    AUTHENTICATING = "AUTHENTICATING"
    APPLYING = "APPLYING"
    CONFIRMING = "CONFIRMING"
    COMMITTED = "COMMITTED"
    ABORTED = "ABORTED"


@dataclass(frozen=True)
class ProfileSwitchContext:
    """Lives for exactly one switch_profile call."""
    target_profile_id: str
    source_user_id: str
    require_biometric: bool = True


@dataclass
class ProfileSwitchResult:
    success: bool
    state: ProfileSwitchState
    session: Optional[SessionData] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    attempts_remaining: Optional[int] = None
    locked_until: Optional[str] = None
