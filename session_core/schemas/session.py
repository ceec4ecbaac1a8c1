"""
Session, account and profile models.

Field names are camelCase, matching the JSON the presentation layer
consumes. Timestamps are epoch milliseconds.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ProfileType = Literal["personal", "business"]


class SessionData(BaseModel):
    """Normalized session, owned by SessionManager. Immutable; use model_copy to derive."""
    model_config = ConfigDict(frozen=True)

    userId: str = Field(..., description="Underlying user (person) ID")
    profileId: str = Field(..., description="Active profile ID")
    entityId: Optional[str] = Field(None, description="Entity owning the active profile")
    email: Optional[str] = None
    username: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    businessName: Optional[str] = None
    avatarUrl: Optional[str] = None
    profileType: ProfileType = "personal"
    sessionId: str
    createdAt: int
    lastValidated: int


class User(BaseModel):
    """UI-facing, read-only projection of the active session."""
    model_config = ConfigDict(frozen=True)

    id: str
    profileId: str
    entityId: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    businessName: Optional[str] = None
    avatarUrl: Optional[str] = None
    displayName: str = ""
    profileType: ProfileType = "personal"

    @classmethod
    def from_session(cls, session: SessionData) -> "User":
        return cls(
            id=session.userId,
            profileId=session.profileId,
            entityId=session.entityId,
            email=session.email,
            username=session.username,
            firstName=session.firstName,
            lastName=session.lastName,
            businessName=session.businessName,
            avatarUrl=session.avatarUrl,
            displayName=display_name_for(session),
            profileType=session.profileType,
        )


class AvailableProfile(BaseModel):
    """A profile the signed-in user may switch to, as cached from the backend."""
    profileId: str
    userId: str
    entityId: Optional[str] = None
    type: ProfileType = "personal"
    displayName: str = ""
    email: Optional[str] = None
    businessName: Optional[str] = None
    avatarUrl: Optional[str] = None
    requiresPin: bool = False


class Account(BaseModel):
    """A locally remembered login context."""
    userId: str
    profileId: str
    entityId: Optional[str] = None
    displayName: str = ""
    email: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    profileType: ProfileType = "personal"
    avatarUrl: Optional[str] = None
    addedAt: int = 0
    lastUsedAt: int = 0


class StoredAccount(Account):
    """Account plus its token pair. Never leaves AccountSwitcher."""
    accessToken: str
    refreshToken: Optional[str] = None

    def to_account(self) -> Account:
        return Account(**self.model_dump(exclude={"accessToken", "refreshToken"}))


class ProfilePinData(BaseModel):
    """PIN-to-identifier association written after a successful login."""
    identifier: str
    userId: str
    profileId: str
    profileType: ProfileType = "personal"
    displayName: str = ""
    storedAt: int


class AccountSwitchAuditEntry(BaseModel):
    fromUserId: Optional[str] = None
    toUserId: str
    success: bool
    reason: Optional[str] = None
    timestamp: int


def display_name_for(session: SessionData) -> str:
    """Business name for business profiles, otherwise full name, username or email."""
    if session.profileType == "business" and session.businessName:
        return session.businessName
    full_name = " ".join(part for part in (session.firstName, session.lastName) if part)
    return full_name or session.username or session.email or ""
