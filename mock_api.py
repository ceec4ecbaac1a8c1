"""
Session Core Mock Auth API

A FastAPI mock server that simulates the auth endpoints the session core
talks to, for local development and end-to-end tests.

Seed data: one user with a personal and a business profile, and a
second user with a personal profile. Tokens are real HS256 JWTs.

Run with: uvicorn mock_api:app --port 5002 --reload
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from pydantic import BaseModel

from common.auth import PinHasher
from common.config import configure_logging
from common.utils import (
    APIException,
    BadRequestException,
    ForbiddenException,
    NotFoundException,
    UnauthorizedException,
    error_response,
    success_response,
)
from session_core.config import get_settings

logger = logging.getLogger(__name__)


# =============================================================================
# APP SETUP
# =============================================================================

app = FastAPI(
    title="Session Core Mock Auth API",
    description="Mock auth backend for session core development",
    version="1.0.0",
)


@app.exception_handler(APIException)
async def api_exception_handler(request: Request, exc: APIException):
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(exc.message, exc.code, exc.details),
        headers=exc.headers,
    )


# =============================================================================
# TOKENS
# =============================================================================

JWT_SECRET = "mock-session-core-secret"
JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)

MAX_PIN_ATTEMPTS = 3
PIN_LOCKOUT = timedelta(minutes=5)

_hasher = PinHasher(rounds=4)


def create_token(user_id: str, profile_id: str, token_type: str, ttl: timedelta) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "pid": profile_id,
        "typ": token_type,
        "jti": secrets.token_hex(8),
        "iat": now,
        "exp": now + ttl,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def verify_token(token: Optional[str], token_type: str) -> Dict:
    if not token:
        raise UnauthorizedException("Missing token")
    try:
        claims = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except JWTError:
        raise UnauthorizedException("Invalid or expired token")

    if claims.get("typ") != token_type or claims.get("jti") in revoked_jtis:
        raise UnauthorizedException("Invalid or expired token")
    return claims


def issue_grant(user_id: str, profile_id: str, **extra) -> Dict:
    profile = PROFILES[profile_id]
    return {
        "access_token": create_token(user_id, profile_id, "access", ACCESS_TOKEN_TTL),
        "refresh_token": create_token(user_id, profile_id, "refresh", REFRESH_TOKEN_TTL),
        "user_type": profile["type"],
        "user_id": user_id,
        "profile_id": profile_id,
        "entity_id": profile["entity_id"],
        **extra,
    }


def require_auth(authorization: Optional[str]) -> Dict:
    token = authorization.replace("Bearer ", "") if authorization else None
    return verify_token(token, "access")


# =============================================================================
# MOCK DATA
# =============================================================================

PROFILES: Dict[str, Dict] = {
    "prof_personal_1": {
        "id": "prof_personal_1",
        "user_id": "usr_1",
        "profile_id": "prof_personal_1",
        "entity_id": "ent_personal_1",
        "type": "personal",
        "email": "ana@example.com",
        "username": "ana",
        "first_name": "Ana",
        "last_name": "Lind",
        "avatar_url": None,
    },
    "prof_business_1": {
        "id": "prof_business_1",
        "user_id": "usr_1",
        "profile_id": "prof_business_1",
        "entity_id": "ent_business_1",
        "type": "business",
        "email": "ana@example.com",
        "username": "lindtrading",
        "business_name": "Lind Trading AB",
        "business_email": "billing@lindtrading.example",
        "logo_url": "https://cdn.example.com/logos/lind.png",
    },
    "prof_personal_2": {
        "id": "prof_personal_2",
        "user_id": "usr_2",
        "profile_id": "prof_personal_2",
        "entity_id": "ent_personal_2",
        "type": "personal",
        "email": "omar@example.com",
        "username": "omar",
        "first_name": "Omar",
        "last_name": "Haddad",
    },
}

# identifier -> profile it signs into
IDENTIFIERS = {
    "ana@example.com": "prof_personal_1",
    "ana": "prof_personal_1",
    "+46700000001": "prof_personal_1",
    "billing@lindtrading.example": "prof_business_1",
    "lindtrading": "prof_business_1",
    "omar@example.com": "prof_personal_2",
    "omar": "prof_personal_2",
}

PASSWORD_HASHES = {
    "usr_1": _hasher.hash_pin("password123"),
    "usr_2": _hasher.hash_pin("password456"),
}

PIN_HASHES = {
    "prof_personal_1": _hasher.hash_pin("123456"),
    "prof_business_1": _hasher.hash_pin("654321"),
    "prof_personal_2": _hasher.hash_pin("111111"),
}

revoked_jtis: set = set()
device_tokens: Dict[str, Tuple[str, str]] = {}
pin_failures: Dict[str, int] = {}
pin_locked_until: Dict[str, datetime] = {}


def reset_mock_state() -> None:
    """Forget revocations, devices and PIN counters."""
    revoked_jtis.clear()
    device_tokens.clear()
    pin_failures.clear()
    pin_locked_until.clear()


def check_pin(profile_id: str, pin: Optional[str]) -> None:
    """Verify a profile PIN with attempt counting and a temporary lock."""
    locked_until = pin_locked_until.get(profile_id)
    if locked_until and locked_until > datetime.now(timezone.utc):
        raise ForbiddenException(
            "Too many PIN attempts. Please try again later.",
            code="PROFILE_LOCKED",
            details={"lockedUntil": locked_until.isoformat(), "attemptsRemaining": 0},
        )

    if pin and _hasher.verify_pin(pin, PIN_HASHES.get(profile_id, "")):
        pin_failures.pop(profile_id, None)
        pin_locked_until.pop(profile_id, None)
        return

    failures = pin_failures.get(profile_id, 0) + 1
    pin_failures[profile_id] = failures
    if failures >= MAX_PIN_ATTEMPTS:
        locked_until = datetime.now(timezone.utc) + PIN_LOCKOUT
        pin_locked_until[profile_id] = locked_until
        pin_failures.pop(profile_id, None)
        raise ForbiddenException(
            "Too many PIN attempts. Please try again later.",
            code="PROFILE_LOCKED",
            details={"lockedUntil": locked_until.isoformat(), "attemptsRemaining": 0},
        )

    raise UnauthorizedException(
        "Invalid PIN",
        code="INVALID_PIN",
        details={"attemptsRemaining": MAX_PIN_ATTEMPTS - failures},
    )


# =============================================================================
# REQUEST MODELS
# =============================================================================


class UnifiedLoginRequest(BaseModel):
    identifier: str
    password: str


class PinLoginRequest(BaseModel):
    identifier: str
    pin: str
    profile_id: Optional[str] = None


class BiometricLoginRequest(BaseModel):
    device_token: str


class RefreshRequest(BaseModel):
    refresh_token: str


class SwitchProfileRequest(BaseModel):
    targetProfileId: str
    biometricVerified: bool = False
    pin: Optional[str] = None
    deviceFingerprint: Optional[str] = None


# =============================================================================
# SESSION ENDPOINTS
# =============================================================================


@app.get("/health")
async def health_check():
    return {
        "status": "ok",
        "service": "session-core-mock-api",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/auth/me")
async def me(authorization: Optional[str] = Header(None)):
    claims = require_auth(authorization)
    profile = PROFILES.get(claims["pid"])
    if not profile:
        raise UnauthorizedException("Profile no longer exists")
    return success_response(profile)


@app.post("/auth/refresh")
async def refresh(request: RefreshRequest):
    claims = verify_token(request.refresh_token, "refresh")
    # Refresh tokens are single use
    revoked_jtis.add(claims["jti"])
    return success_response(issue_grant(claims["sub"], claims["pid"]))


@app.post("/auth/logout")
async def logout(authorization: Optional[str] = Header(None)):
    claims = require_auth(authorization)
    revoked_jtis.add(claims["jti"])
    return success_response(message="Logged out")


# =============================================================================
# LOGIN ENDPOINTS
# =============================================================================


@app.post("/auth/unified-login")
async def unified_login(request: UnifiedLoginRequest):
    profile_id = IDENTIFIERS.get(request.identifier.strip().lower())
    user_id = PROFILES[profile_id]["user_id"] if profile_id else None

    if not user_id or not _hasher.verify_pin(request.password, PASSWORD_HASHES[user_id]):
        raise UnauthorizedException("Invalid credentials")

    logger.info(f"Mock login for {user_id} ({profile_id})")
    return success_response(issue_grant(user_id, profile_id))


@app.post("/auth/pin-login")
async def pin_login(request: PinLoginRequest):
    profile_id = request.profile_id or IDENTIFIERS.get(request.identifier.strip().lower())
    profile = PROFILES.get(profile_id) if profile_id else None
    if not profile:
        raise UnauthorizedException("Invalid PIN or PIN not set up for this account.")

    check_pin(profile_id, request.pin)
    return success_response(issue_grant(profile["user_id"], profile_id))


@app.post("/auth/biometric/enroll")
async def biometric_enroll(authorization: Optional[str] = Header(None)):
    claims = require_auth(authorization)
    device_token = secrets.token_urlsafe(24)
    device_tokens[device_token] = (claims["sub"], claims["pid"])
    return success_response({"device_token": device_token})


@app.post("/auth/biometric-login")
async def biometric_login(request: BiometricLoginRequest):
    enrolled = device_tokens.pop(request.device_token, None)
    if not enrolled:
        raise UnauthorizedException("Biometric login is not enabled on this device")

    user_id, profile_id = enrolled
    rotated = secrets.token_urlsafe(24)
    device_tokens[rotated] = enrolled
    return success_response(issue_grant(user_id, profile_id, device_token=rotated))


# =============================================================================
# PROFILE ENDPOINTS
# =============================================================================


@app.get("/auth/available-profiles")
async def available_profiles(authorization: Optional[str] = Header(None)):
    claims = require_auth(authorization)
    profiles = []
    for profile in PROFILES.values():
        if profile["user_id"] != claims["sub"]:
            continue
        is_business = profile["type"] == "business"
        profiles.append({
            "profile_id": profile["profile_id"],
            "user_id": profile["user_id"],
            "entity_id": profile["entity_id"],
            "type": profile["type"],
            "display_name": profile["business_name"] if is_business else profile["first_name"],
            "email": profile.get("business_email") if is_business else profile["email"],
            "business_name": profile.get("business_name"),
            "avatar_url": profile.get("logo_url") if is_business else profile.get("avatar_url"),
            "requires_pin": profile["profile_id"] in PIN_HASHES,
        })
    return success_response({"profiles": profiles})


@app.post("/auth/switch-profile")
async def switch_profile(request: SwitchProfileRequest, authorization: Optional[str] = Header(None)):
    claims = require_auth(authorization)
    target = PROFILES.get(request.targetProfileId)
    if not target:
        raise NotFoundException("Profile not found", code="PROFILE_NOT_FOUND")
    if target["user_id"] != claims["sub"]:
        raise ForbiddenException("Profile belongs to a different user")
    if target["profile_id"] == claims["pid"]:
        raise BadRequestException("Profile is already active", code="ALREADY_ACTIVE")

    if not request.biometricVerified:
        check_pin(target["profile_id"], request.pin)

    revoked_jtis.add(claims["jti"])
    return success_response(issue_grant(claims["sub"], target["profile_id"]))


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    configure_logging(get_settings().get_log_level())
    uvicorn.run(app, host="0.0.0.0", port=5002)
