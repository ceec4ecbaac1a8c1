"""Unit tests for SessionManager validation, refresh and cleanup."""

import pytest
from unittest.mock import AsyncMock

from conftest import T0, make_jwt, make_session, profile_payload
from session_core import events
from session_core.api import paths
from session_core.api.errors import BackendError, NetworkError
from session_core.auth.services.session_manager import WALLET_UNLOCK_KEY, SessionManager
from session_core.schemas import AuthTokenResponse, ProfileResponse
from session_core.types import NO_ACCESS_TOKEN, ErrorCode

HOUR_MS = 3_600_000


def backend(me=None, refresh=None):
    """request_model side effect dispatching on path."""

    async def handler(model, method, path, json=None, access_token=None):
        outcome = me if path == paths.ME else refresh
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(access_token=access_token, json=json)
        return model.model_validate(outcome)

    return handler


@pytest.fixture
def manager(mock_client, token_store, secure_store, settings, bus, clock):
    return SessionManager(mock_client, token_store, secure_store, settings, bus=bus, clock=clock)


@pytest.fixture
def fresh_access():
    return make_jwt("usr_1", exp_ms=T0 + HOUR_MS)


# ─────────────────────────────────────────────────────────────────
# validate_and_restore_session
# ─────────────────────────────────────────────────────────────────


class TestValidateAndRestoreSession:
    @pytest.mark.asyncio
    async def test_no_token_is_expected_absence(self, manager, mock_client):
        result = await manager.validate_and_restore_session()

        assert result.is_valid is False
        assert result.error == NO_ACCESS_TOKEN
        assert result.is_expected_absence
        mock_client.request_model.assert_not_called()

    @pytest.mark.asyncio
    async def test_valid_token_restores_session(self, manager, mock_client, token_store, fresh_access):
        await token_store.set_access_token(fresh_access)
        mock_client.request_model.side_effect = backend(me=profile_payload())

        result = await manager.validate_and_restore_session()

        assert result.is_valid
        assert result.user.userId == "usr_1"
        assert result.user.profileId == "prof_personal_1"
        assert result.user.sessionId.startswith(f"session_{T0}_")
        assert manager.get_session() == result.user

    @pytest.mark.asyncio
    async def test_business_profile_projection(self, manager, mock_client, token_store, fresh_access):
        await token_store.set_access_token(fresh_access)
        mock_client.request_model.side_effect = backend(me=profile_payload(
            profile_id="prof_business_1",
            profile_type="business",
            business_name="Lind Trading AB",
            business_email="billing@lindtrading.example",
            logo_url="https://cdn.example.com/lind.png",
        ))

        result = await manager.validate_and_restore_session()

        session = result.user
        assert session.profileType == "business"
        assert session.email == "billing@lindtrading.example"
        assert session.firstName == "Lind Trading AB"
        assert session.lastName is None
        assert session.avatarUrl == "https://cdn.example.com/lind.png"

    @pytest.mark.asyncio
    async def test_revalidation_keeps_session_id(self, manager, mock_client, token_store, clock, fresh_access):
        await token_store.set_access_token(fresh_access)
        mock_client.request_model.side_effect = backend(me=profile_payload())

        first = (await manager.validate_and_restore_session()).user
        clock.advance(60_000)
        second = (await manager.validate_and_restore_session()).user

        assert second.sessionId == first.sessionId
        assert second.createdAt == first.createdAt
        assert second.lastValidated == T0 + 60_000

    @pytest.mark.asyncio
    async def test_unauthorized_clears_session(self, manager, mock_client, token_store, secure_store, fresh_access):
        await token_store.set_access_token(fresh_access)
        await secure_store.set_item(WALLET_UNLOCK_KEY, str(T0))
        mock_client.request_model.side_effect = backend(
            me=BackendError("Unauthorized", "UNAUTHORIZED", status_code=401)
        )

        result = await manager.validate_and_restore_session()

        assert result.is_valid is False
        assert result.error_code == "UNAUTHORIZED"
        assert await token_store.get_access_token() is None
        assert await secure_store.get_item(WALLET_UNLOCK_KEY) is None
        # A rejected token is not revoked again
        mock_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_network_error_keeps_tokens(self, manager, mock_client, token_store, fresh_access):
        await token_store.set_access_token(fresh_access)
        mock_client.request_model.side_effect = backend(me=NetworkError())

        result = await manager.validate_and_restore_session()

        assert result.error_code == "NETWORK_ERROR"
        assert await token_store.get_access_token() == fresh_access

    @pytest.mark.asyncio
    async def test_concurrent_validation_rejected(self, manager, token_store, fresh_access):
        await token_store.set_access_token(fresh_access)
        manager._validating = True

        result = await manager.validate_and_restore_session()

        assert result.error_code == ErrorCode.VALIDATION_IN_PROGRESS


# ─────────────────────────────────────────────────────────────────
# Refresh
# ─────────────────────────────────────────────────────────────────


class TestRefresh:
    @pytest.mark.asyncio
    async def test_expiring_token_refreshed_before_check(self, manager, mock_client, token_store):
        expiring = make_jwt("usr_1", exp_ms=T0 + 60_000)
        renewed = make_jwt("usr_1", exp_ms=T0 + HOUR_MS)
        await token_store.set_access_token(expiring)
        await token_store.set_refresh_token("refresh-1")
        seen_tokens = []

        def me(access_token, json):
            seen_tokens.append(access_token)
            return ProfileResponse.model_validate(profile_payload())

        mock_client.request_model.side_effect = backend(
            me=me, refresh={"access_token": renewed, "refresh_token": "refresh-2"}
        )

        result = await manager.validate_and_restore_session()

        assert result.is_valid
        assert seen_tokens == [renewed]
        assert await token_store.get_refresh_token() == "refresh-2"

    @pytest.mark.asyncio
    async def test_rejected_refresh_expires_session(self, manager, mock_client, token_store, bus):
        await token_store.set_access_token(make_jwt("usr_1", exp_ms=T0 - 1000))
        await token_store.set_refresh_token("refresh-1")
        mock_client.request_model.side_effect = backend(
            refresh=BackendError("Invalid", "UNAUTHORIZED", status_code=401)
        )
        expired = []
        bus.on(events.SESSION_EXPIRED, expired.append)

        result = await manager.validate_and_restore_session()

        assert result.error_code == ErrorCode.SESSION_EXPIRED
        assert expired == ["refresh_rejected"]
        assert await token_store.get_access_token() is None
        assert await token_store.get_refresh_token() is None

    @pytest.mark.asyncio
    async def test_refresh_keeps_old_refresh_token_when_not_rotated(self, manager, mock_client, token_store):
        await token_store.set_refresh_token("refresh-1")
        mock_client.request_model.side_effect = backend(refresh={"access_token": "new-access"})

        assert await manager.refresh_access_token()
        assert await token_store.get_access_token() == "new-access"
        assert await token_store.get_refresh_token() == "refresh-1"

    @pytest.mark.asyncio
    async def test_no_refresh_token(self, manager, mock_client):
        assert await manager.refresh_access_token() is False
        mock_client.request_model.assert_not_called()


# ─────────────────────────────────────────────────────────────────
# check_tokens
# ─────────────────────────────────────────────────────────────────


class TestCheckTokens:
    @pytest.mark.asyncio
    async def test_rejected_refresh_leaves_stored_session(
        self, manager, mock_client, token_store, secure_store, bus, fresh_access
    ):
        await manager.store_tokens(fresh_access, "refresh-active")
        await secure_store.set_item(WALLET_UNLOCK_KEY, str(T0))
        manager.set_session(make_session("usr_1"))
        mock_client.request_model.side_effect = backend(
            refresh=BackendError("Invalid", "UNAUTHORIZED", status_code=401)
        )
        expired = []
        bus.on(events.SESSION_EXPIRED, expired.append)

        result = await manager.check_tokens(make_jwt("usr_2", exp_ms=T0 - 1000), "refresh-other")

        assert result.is_valid is False
        assert result.error_code == ErrorCode.SESSION_EXPIRED
        assert expired == []
        assert await token_store.get_access_token() == fresh_access
        assert await token_store.get_refresh_token() == "refresh-active"
        assert await secure_store.get_item(WALLET_UNLOCK_KEY) == str(T0)
        assert manager.get_session().userId == "usr_1"

    @pytest.mark.asyncio
    async def test_unauthorized_profile_fetch_keeps_wallet_unlock(
        self, manager, mock_client, token_store, secure_store, fresh_access
    ):
        await manager.store_tokens(fresh_access, "refresh-active")
        await secure_store.set_item(WALLET_UNLOCK_KEY, str(T0))
        mock_client.request_model.side_effect = backend(
            me=BackendError("Revoked", "UNAUTHORIZED", status_code=401)
        )

        result = await manager.check_tokens(make_jwt("usr_2", exp_ms=T0 + HOUR_MS), "refresh-other")

        assert result.error_code == "UNAUTHORIZED"
        assert await secure_store.get_item(WALLET_UNLOCK_KEY) == str(T0)
        assert await token_store.get_access_token() == fresh_access

    @pytest.mark.asyncio
    async def test_expiring_pair_is_exchanged_not_stored(self, manager, mock_client, token_store):
        renewed = make_jwt("usr_2", exp_ms=T0 + HOUR_MS)
        mock_client.request_model.side_effect = backend(
            me=profile_payload(user_id="usr_2", profile_id="prof_personal_2"),
            refresh={"access_token": renewed, "refresh_token": "refresh-2b"},
        )

        result = await manager.check_tokens(make_jwt("usr_2", exp_ms=T0 + 60_000), "refresh-2")

        assert result.is_valid
        assert result.user.userId == "usr_2"
        assert (result.access_token, result.refresh_token) == (renewed, "refresh-2b")
        assert await token_store.get_access_token() is None
        assert manager.get_session() is None

    @pytest.mark.asyncio
    async def test_forced_refresh_of_fresh_token(self, manager, mock_client, fresh_access):
        mock_client.request_model.side_effect = backend(
            me=profile_payload(), refresh={"access_token": "access-b"}
        )

        result = await manager.check_tokens(fresh_access, "refresh-1", force_refresh=True)

        assert (result.access_token, result.refresh_token) == ("access-b", "refresh-1")

    @pytest.mark.asyncio
    async def test_refresh_outage_falls_back_to_live_access_token(self, manager, mock_client):
        almost = make_jwt("usr_1", exp_ms=T0 + 60_000)
        mock_client.request_model.side_effect = backend(me=profile_payload(), refresh=NetworkError())

        result = await manager.check_tokens(almost, "refresh-1")

        assert result.is_valid
        assert result.access_token == almost

    @pytest.mark.asyncio
    async def test_refresh_outage_with_dead_access_token(self, manager, mock_client):
        mock_client.request_model.side_effect = backend(refresh=NetworkError())

        result = await manager.check_tokens(make_jwt("usr_1", exp_ms=T0 - 1000), "refresh-1")

        assert result.error_code == "NETWORK_ERROR"


# ─────────────────────────────────────────────────────────────────
# Tokens and cleanup
# ─────────────────────────────────────────────────────────────────


class TestTokensAndCleanup:
    @pytest.mark.asyncio
    async def test_store_tokens_restores_pair_on_failure(self, manager, token_store):
        await token_store.set_access_token("old-access")
        await token_store.set_refresh_token("old-refresh")
        token_store.set_refresh_token = AsyncMock(side_effect=[OSError("keychain"), None])

        with pytest.raises(OSError):
            await manager.store_tokens("new-access", "new-refresh")

        assert await token_store.get_access_token() == "old-access"

    @pytest.mark.asyncio
    async def test_clear_session_revokes_and_is_idempotent(self, manager, mock_client, token_store):
        await token_store.set_access_token("access")
        manager.set_session(make_session())

        await manager.clear_session()
        await manager.clear_session()

        mock_client.post.assert_awaited_once_with(paths.LOGOUT, access_token="access")
        assert manager.get_session() is None
        assert await token_store.get_access_token() is None

    @pytest.mark.asyncio
    async def test_clear_session_survives_backend_failure(self, manager, mock_client, token_store):
        await token_store.set_access_token("access")
        mock_client.post.side_effect = NetworkError()

        await manager.clear_session()

        assert await token_store.get_access_token() is None

    @pytest.mark.asyncio
    async def test_emergency_cleanup_refused_outside_debug(self, manager, token_store):
        await token_store.set_access_token("access")

        assert await manager.emergency_cleanup() is False
        assert await token_store.get_access_token() == "access"

    @pytest.mark.asyncio
    async def test_emergency_cleanup_in_debug(self, mock_client, token_store, secure_store, settings, clock):
        debug_settings = settings.model_copy(update={"DEBUG": True})
        manager = SessionManager(mock_client, token_store, secure_store, debug_settings, clock=clock)
        await token_store.set_access_token("access")
        await secure_store.set_item("anything", "1")

        assert await manager.emergency_cleanup() is True
        assert await token_store.get_access_token() is None
        assert secure_store.keys() == []


def test_auth_token_response_ignores_unknown_keys():
    grant = AuthTokenResponse.model_validate({"access_token": "a", "surprise": 1})
    assert grant.access_token == "a"
