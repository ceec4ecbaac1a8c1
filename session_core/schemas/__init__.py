"""
Pydantic models for sessions, accounts, profiles and backend payloads.
"""

from session_core.schemas.session import (
    Account,
    AccountSwitchAuditEntry,
    AvailableProfile,
    ProfilePinData,
    ProfileType,
    SessionData,
    StoredAccount,
    User,
    display_name_for,
)
from session_core.schemas.backend import (
    AuthTokenResponse,
    AvailableProfileResponse,
    AvailableProfilesResponse,
    BiometricEnrollResponse,
    ProfileResponse,
)

__all__ = [
    "Account",
    "AccountSwitchAuditEntry",
    "AvailableProfile",
    "ProfilePinData",
    "ProfileType",
    "SessionData",
    "StoredAccount",
    "User",
    "display_name_for",
    "AuthTokenResponse",
    "AvailableProfileResponse",
    "AvailableProfilesResponse",
    "BiometricEnrollResponse",
    "ProfileResponse",
]
