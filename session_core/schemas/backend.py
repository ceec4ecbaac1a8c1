"""
Backend wire models.

These mirror the snake_case JSON the auth endpoints return. Unknown keys
are ignored so the backend can add fields freely.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from session_core.schemas.session import AvailableProfile, ProfileType


class AuthTokenResponse(BaseModel):
    """Token grant returned by every login and switch endpoint."""
    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: Optional[str] = None
    user_type: ProfileType = "personal"
    user_id: Optional[str] = None
    profile_id: Optional[str] = None
    entity_id: Optional[str] = None
    # Rotated biometric device token, biometric login only
    device_token: Optional[str] = None


class ProfileResponse(BaseModel):
    """Payload of the session-check endpoint."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    user_id: Optional[str] = None
    profile_id: Optional[str] = None
    entity_id: Optional[str] = None
    type: ProfileType = "personal"
    email: Optional[str] = None
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    business_name: Optional[str] = None
    business_email: Optional[str] = None
    avatar_url: Optional[str] = None
    logo_url: Optional[str] = None


class AvailableProfileResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    profile_id: str
    user_id: str
    entity_id: Optional[str] = None
    type: ProfileType = "personal"
    display_name: str = ""
    email: Optional[str] = None
    business_name: Optional[str] = None
    avatar_url: Optional[str] = None
    requires_pin: bool = False

    def to_available_profile(self) -> AvailableProfile:
        return AvailableProfile(
            profileId=self.profile_id,
            userId=self.user_id,
            entityId=self.entity_id,
            type=self.type,
            displayName=self.display_name,
            email=self.email,
            businessName=self.business_name,
            avatarUrl=self.avatar_url,
            requiresPin=self.requires_pin,
        )


class AvailableProfilesResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    profiles: List[AvailableProfileResponse] = []


class BiometricEnrollResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    device_token: str
