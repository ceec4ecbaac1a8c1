"""Shared test fixtures for session core tests."""

import pytest
from unittest.mock import AsyncMock, MagicMock
from jose import jwt

from common.auth import BiometricResult, PinHasher, StaticBiometricGateway
from common.events import EventBus
from common.storage import InMemoryKeyValueStore, InMemoryProfilePinStore, InMemoryTokenStore
from session_core.api.client import BackendClient
from session_core.config import Settings
from session_core.schemas import SessionData

T0 = 1_760_000_000_000


class FakeClock:
    """Epoch-ms clock the test moves by hand."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_jwt(sub: str = "usr_1", exp_ms: int = None, **claims) -> str:
    """Unsigned-for-our-purposes JWT; only the claims are ever read locally."""
    payload = {"sub": sub, **claims}
    if exp_ms is not None:
        payload["exp"] = exp_ms // 1000
    return jwt.encode(payload, "test-secret", algorithm="HS256")


def make_session(
    user_id: str = "usr_1",
    profile_id: str = "prof_personal_1",
    profile_type: str = "personal",
    **overrides,
) -> SessionData:
    data = {
        "userId": user_id,
        "profileId": profile_id,
        "entityId": f"ent_{profile_id}",
        "email": "ana@example.com",
        "firstName": "Ana",
        "lastName": "Lind",
        "profileType": profile_type,
        "sessionId": f"session_{T0}_abcd1234",
        "createdAt": T0,
        "lastValidated": T0,
    }
    data.update(overrides)
    return SessionData(**data)


def profile_payload(
    user_id: str = "usr_1",
    profile_id: str = "prof_personal_1",
    profile_type: str = "personal",
    **overrides,
) -> dict:
    """Body of GET /auth/me after envelope unwrapping."""
    data = {
        "id": profile_id,
        "user_id": user_id,
        "profile_id": profile_id,
        "entity_id": f"ent_{profile_id}",
        "type": profile_type,
        "email": "ana@example.com",
        "username": "ana",
        "first_name": "Ana",
        "last_name": "Lind",
    }
    data.update(overrides)
    return data


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(
        API_BASE_URL="http://testserver",
        API_RETRY_BACKOFF_SECONDS=0,
        PIN_HASH_ROUNDS=4,
        DEBUG=False,
    )


@pytest.fixture
def pin_hasher():
    return PinHasher(rounds=4)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def token_store():
    return InMemoryTokenStore()


@pytest.fixture
def secure_store():
    return InMemoryKeyValueStore()


@pytest.fixture
def pin_store():
    return InMemoryProfilePinStore()


@pytest.fixture
def biometric():
    return StaticBiometricGateway()


@pytest.fixture
def failing_biometric():
    return StaticBiometricGateway(result=BiometricResult(success=False, error="authentication_failed"))


@pytest.fixture
def mock_client():
    """BackendClient double; configure request_model/post per test."""
    client = MagicMock(spec=BackendClient)
    client.request_model = AsyncMock()
    client.request = AsyncMock()
    client.post = AsyncMock(return_value=None)
    client.get = AsyncMock()
    return client
