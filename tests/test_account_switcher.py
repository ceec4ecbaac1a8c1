"""Unit tests for AccountSwitcher, AccountsStore and the switch audit log."""

import pytest
import pytest_asyncio

from common.auth import USER_CANCEL, BiometricResult, StaticBiometricGateway
from common.storage import StorageCorruptionError
from conftest import T0, make_jwt, make_session, profile_payload
from session_core import events
from session_core.api import paths
from session_core.api.errors import BackendError
from session_core.auth.services.account_switcher import AccountSwitcher
from session_core.auth.services.accounts_store import ACCOUNTS_KEY, AccountsStore
from session_core.auth.services.audit_logger import AUDIT_LOG_KEY, AccountSwitchAuditLogger
from session_core.auth.services.session_manager import WALLET_UNLOCK_KEY, SessionManager
from session_core.types import ErrorCode

HOUR_MS = 3_600_000


@pytest.fixture
def session_manager(mock_client, token_store, secure_store, settings, clock):
    return SessionManager(mock_client, token_store, secure_store, settings, clock=clock)


@pytest.fixture
def store(secure_store):
    return AccountsStore(secure_store)


@pytest.fixture
def audit(secure_store, clock):
    return AccountSwitchAuditLogger(secure_store, limit=50, clock=clock)


@pytest.fixture
def make_switcher(store, audit, session_manager, settings, bus, clock):
    def factory(biometric=None, **overrides):
        return AccountSwitcher(
            store,
            audit,
            session_manager,
            biometric or StaticBiometricGateway(),
            settings.model_copy(update=overrides) if overrides else settings,
            bus=bus,
            clock=clock,
        )

    return factory


@pytest.fixture
def tokens():
    return {
        "usr_1": (make_jwt("usr_1", exp_ms=T0 + HOUR_MS), "refresh-usr_1"),
        "usr_2": (make_jwt("usr_2", exp_ms=T0 + HOUR_MS), "refresh-usr_2"),
    }


@pytest_asyncio.fixture
async def two_accounts(make_switcher, tokens, session_manager, clock):
    """usr_1 is active, usr_2 is remembered."""
    switcher = make_switcher()
    await switcher.save_current_account(
        make_session("usr_2", "prof_personal_2", firstName="Omar"), *tokens["usr_2"]
    )
    clock.advance(1000)
    active = make_session("usr_1", "prof_personal_1")
    await switcher.save_current_account(active, *tokens["usr_1"])
    await session_manager.store_tokens(*tokens["usr_1"])
    session_manager.set_session(active)
    return switcher


def me_for(tokens):
    """GET /auth/me answering with the profile the bearer token belongs to."""
    owners = {access: user_id for user_id, (access, _) in tokens.items()}

    async def handler(model, method, path, json=None, access_token=None):
        assert path == paths.ME
        user_id = owners.get(access_token)
        if user_id is None:
            raise BackendError("Unauthorized", "UNAUTHORIZED", status_code=401)
        return model.model_validate(profile_payload(user_id, f"prof_personal_{user_id[-1]}"))

    return handler


# ─────────────────────────────────────────────────────────────────
# Saving accounts
# ─────────────────────────────────────────────────────────────────


class TestSaveAccounts:
    @pytest.mark.asyncio
    async def test_resave_updates_in_place(self, make_switcher, store, clock):
        switcher = make_switcher()
        session = make_session()
        await switcher.save_current_account(session, "access-1", "refresh-1")
        clock.advance(5000)
        await switcher.save_current_account(session, "access-2", "refresh-2")

        accounts = await store.list_accounts()
        assert len(accounts) == 1
        assert accounts[0].accessToken == "access-2"
        assert accounts[0].addedAt == T0
        assert accounts[0].lastUsedAt == T0 + 5000

    @pytest.mark.asyncio
    async def test_limit_rejects_new_account_without_writing(self, make_switcher, store):
        switcher = make_switcher(MAX_ACCOUNTS=2)
        await switcher.save_current_account(make_session("usr_1"), "a1", "r1")
        await switcher.save_current_account(make_session("usr_2"), "a2", "r2")

        result = await switcher.save_current_account(make_session("usr_3"), "a3", "r3")

        assert result.success is False
        assert result.error_code == ErrorCode.MAX_ACCOUNTS_EXCEEDED
        assert [a.userId for a in await store.list_accounts()] == ["usr_1", "usr_2"]

    @pytest.mark.asyncio
    async def test_known_account_can_be_resaved_at_limit(self, make_switcher):
        switcher = make_switcher(MAX_ACCOUNTS=1)
        await switcher.save_current_account(make_session("usr_1"), "a1", "r1")

        result = await switcher.save_current_account(make_session("usr_1"), "a1b", "r1b")

        assert result.success

    @pytest.mark.asyncio
    async def test_available_accounts_hide_tokens_and_sort_by_recent_use(self, two_accounts):
        accounts = await two_accounts.get_available_accounts()

        assert [a.userId for a in accounts] == ["usr_1", "usr_2"]
        assert not hasattr(accounts[0], "accessToken")

    @pytest.mark.asyncio
    async def test_corrupt_store_raises(self, store, secure_store):
        await secure_store.set_item(ACCOUNTS_KEY, "{not json")

        with pytest.raises(StorageCorruptionError):
            await store.list_accounts()

    @pytest.mark.asyncio
    async def test_wrong_shape_store_raises(self, store, secure_store):
        await secure_store.set_item(ACCOUNTS_KEY, '{"userId": "usr_1"}')

        with pytest.raises(StorageCorruptionError):
            await store.list_accounts()

    @pytest.mark.asyncio
    async def test_store_keeps_tokens_as_json_list(self, two_accounts, store, secure_store, tokens):
        raw = await secure_store.get_item(ACCOUNTS_KEY)
        accounts = {account.userId: account for account in await store.list_accounts()}

        assert raw.startswith("[")
        assert accounts["usr_2"].accessToken == tokens["usr_2"][0]
        assert accounts["usr_2"].firstName == "Omar"


# ─────────────────────────────────────────────────────────────────
# switch_account
# ─────────────────────────────────────────────────────────────────


class TestSwitchAccount:
    @pytest.mark.asyncio
    async def test_successful_switch(self, two_accounts, mock_client, tokens, session_manager, bus):
        mock_client.request_model.side_effect = me_for(tokens)
        switched = []
        bus.on(events.ACCOUNT_SWITCHED, switched.append)

        result = await two_accounts.switch_account("usr_2", current_user_id="usr_1")

        assert result.success
        assert result.session.userId == "usr_2"
        assert session_manager.get_session().userId == "usr_2"
        assert await session_manager.get_access_token() == tokens["usr_2"][0]
        assert [s.userId for s in switched] == ["usr_2"]

        entries = await two_accounts.get_audit_log()
        assert entries[-1].fromUserId == "usr_1"
        assert entries[-1].toUserId == "usr_2"
        assert entries[-1].success

    @pytest.mark.asyncio
    async def test_same_account_is_noop(self, two_accounts, mock_client):
        result = await two_accounts.switch_account("usr_1", current_user_id="usr_1")

        assert result.success
        assert result.error_code == ErrorCode.ALREADY_ACTIVE
        mock_client.request_model.assert_not_called()
        assert await two_accounts.get_audit_log() == []

    @pytest.mark.asyncio
    async def test_unknown_account(self, two_accounts):
        result = await two_accounts.switch_account("usr_9", current_user_id="usr_1")

        assert result.error_code == ErrorCode.ACCOUNT_NOT_FOUND

    @pytest.mark.asyncio
    async def test_biometric_cancel_blocks_switch(
        self, make_switcher, two_accounts, session_manager, mock_client, tokens
    ):
        gateway = StaticBiometricGateway(result=BiometricResult(success=False, error=USER_CANCEL))
        switcher = make_switcher(gateway)

        result = await switcher.switch_account("usr_2", current_user_id="usr_1")

        assert result.error_code == ErrorCode.BIOMETRIC_CANCELLED
        assert await session_manager.get_access_token() == tokens["usr_1"][0]
        mock_client.request_model.assert_not_called()

    @pytest.mark.asyncio
    async def test_biometric_not_required_when_disabled(self, make_switcher, two_accounts, mock_client, tokens):
        gateway = StaticBiometricGateway(has_hardware=False)
        switcher = make_switcher(gateway, ACCOUNT_SWITCH_REQUIRE_BIOMETRIC=False)
        mock_client.request_model.side_effect = me_for(tokens)

        result = await switcher.switch_account("usr_2", current_user_id="usr_1")

        assert result.success
        assert gateway.prompts == []

    @pytest.mark.asyncio
    async def test_expired_stored_tokens(self, make_switcher, store, clock, session_manager):
        switcher = make_switcher()
        await switcher.save_current_account(
            make_session("usr_2"), make_jwt("usr_2", exp_ms=T0 - 1000), make_jwt("usr_2", exp_ms=T0 - 1000)
        )

        result = await switcher.switch_account("usr_2", current_user_id="usr_1")

        assert result.error_code == ErrorCode.ACCOUNT_SESSION_EXPIRED

    @pytest.mark.asyncio
    async def test_failed_validation_rolls_back(self, two_accounts, mock_client, tokens, session_manager):
        async def network_down(model, method, path, json=None, access_token=None):
            raise BackendError("Server error", "SERVER_ERROR", status_code=503)

        mock_client.request_model.side_effect = network_down

        result = await two_accounts.switch_account("usr_2", current_user_id="usr_1")

        assert result.success is False
        assert result.error_code == "SERVER_ERROR"
        assert await session_manager.get_access_token() == tokens["usr_1"][0]
        assert session_manager.get_session().userId == "usr_1"

        entries = await two_accounts.get_audit_log()
        assert entries[-1].success is False
        assert entries[-1].reason == "SERVER_ERROR"

    @pytest.mark.asyncio
    async def test_rejected_target_refresh_leaves_active_session_alone(
        self, two_accounts, mock_client, tokens, session_manager, secure_store, bus
    ):
        stale = make_jwt("usr_2", exp_ms=T0 - 1000)
        await two_accounts.update_account_tokens("usr_2", stale, make_jwt("usr_2", exp_ms=T0 + HOUR_MS))
        await secure_store.set_item(WALLET_UNLOCK_KEY, str(T0))
        expired = []
        bus.on(events.SESSION_EXPIRED, expired.append)

        async def refresh_rejected(model, method, path, json=None, access_token=None):
            assert path == paths.REFRESH
            raise BackendError("Invalid or expired token", "UNAUTHORIZED", status_code=401)

        mock_client.request_model.side_effect = refresh_rejected

        result = await two_accounts.switch_account("usr_2", current_user_id="usr_1")

        assert result.error_code == ErrorCode.SESSION_EXPIRED
        assert expired == []
        assert await session_manager.get_access_token() == tokens["usr_1"][0]
        assert await session_manager.get_refresh_token() == tokens["usr_1"][1]
        assert session_manager.get_session().userId == "usr_1"
        assert await secure_store.get_item(WALLET_UNLOCK_KEY) == str(T0)

    @pytest.mark.asyncio
    async def test_rejected_target_token_keeps_wallet_state(
        self, two_accounts, mock_client, tokens, session_manager, secure_store
    ):
        await secure_store.set_item(WALLET_UNLOCK_KEY, str(T0))
        mock_client.request_model.side_effect = me_for({"usr_1": tokens["usr_1"]})

        result = await two_accounts.switch_account("usr_2", current_user_id="usr_1")

        assert result.error_code == "UNAUTHORIZED"
        assert await session_manager.get_access_token() == tokens["usr_1"][0]
        assert await secure_store.get_item(WALLET_UNLOCK_KEY) == str(T0)

    @pytest.mark.asyncio
    async def test_refreshed_target_pair_is_adopted_and_remembered(
        self, two_accounts, store, mock_client, session_manager
    ):
        stale = make_jwt("usr_2", exp_ms=T0 - 1000)
        await two_accounts.update_account_tokens("usr_2", stale, "refresh-usr_2")
        fresh = make_jwt("usr_2", exp_ms=T0 + HOUR_MS, jti="second")

        async def handler(model, method, path, json=None, access_token=None):
            if path == paths.REFRESH:
                assert json == {"refresh_token": "refresh-usr_2"}
                return model.model_validate({"access_token": fresh, "refresh_token": "refresh-usr_2-b"})
            assert access_token == fresh
            return model.model_validate(profile_payload("usr_2", "prof_personal_2"))

        mock_client.request_model.side_effect = handler

        result = await two_accounts.switch_account("usr_2", current_user_id="usr_1")

        assert result.success
        assert await session_manager.get_access_token() == fresh
        assert await session_manager.get_refresh_token() == "refresh-usr_2-b"
        remembered = await store.get("usr_2")
        assert (remembered.accessToken, remembered.refreshToken) == (fresh, "refresh-usr_2-b")

    @pytest.mark.asyncio
    async def test_tokens_of_another_user_rejected(self, two_accounts, mock_client, tokens, session_manager):
        async def wrong_owner(model, method, path, json=None, access_token=None):
            return model.model_validate(profile_payload("usr_3", "prof_personal_3"))

        mock_client.request_model.side_effect = wrong_owner

        result = await two_accounts.switch_account("usr_2", current_user_id="usr_1")

        assert result.error_code == ErrorCode.DIFFERENT_USER
        assert await session_manager.get_access_token() == tokens["usr_1"][0]

    @pytest.mark.asyncio
    async def test_concurrent_switch_rejected(self, two_accounts):
        two_accounts._switching = True

        result = await two_accounts.switch_account("usr_2", current_user_id="usr_1")

        assert result.error_code == ErrorCode.SWITCH_IN_PROGRESS


# ─────────────────────────────────────────────────────────────────
# remove_account / audit log
# ─────────────────────────────────────────────────────────────────


class TestRemoveAndAudit:
    @pytest.mark.asyncio
    async def test_cannot_remove_active(self, two_accounts):
        result = await two_accounts.remove_account("usr_1", current_user_id="usr_1")
        assert result.error_code == ErrorCode.CANNOT_REMOVE_ACTIVE

    @pytest.mark.asyncio
    async def test_cannot_remove_last(self, make_switcher):
        switcher = make_switcher()
        await switcher.save_current_account(make_session("usr_2"), "a2", "r2")

        result = await switcher.remove_account("usr_2", current_user_id=None)

        assert result.error_code == ErrorCode.CANNOT_REMOVE_LAST

    @pytest.mark.asyncio
    async def test_remove_other_account(self, two_accounts):
        result = await two_accounts.remove_account("usr_2", current_user_id="usr_1")

        assert result.success
        assert [a.userId for a in await two_accounts.get_available_accounts()] == ["usr_1"]

    @pytest.mark.asyncio
    async def test_audit_log_is_bounded_fifo(self, secure_store, clock):
        audit = AccountSwitchAuditLogger(secure_store, limit=3, clock=clock)
        for index in range(5):
            await audit.log_switch("usr_1", f"usr_{index}", True)

        entries = await audit.get_entries()
        assert [e.toUserId for e in entries] == ["usr_2", "usr_3", "usr_4"]

    @pytest.mark.asyncio
    async def test_unreadable_audit_log_restarts(self, audit, secure_store):
        await secure_store.set_item(AUDIT_LOG_KEY, "garbage")

        assert await audit.get_entries() == []
        assert await secure_store.get_item(AUDIT_LOG_KEY) is None

    @pytest.mark.asyncio
    async def test_audit_entry_with_bad_field_restarts(self, audit, secure_store):
        await secure_store.set_item(AUDIT_LOG_KEY, '[{"toUserId": "usr_2", "success": "maybe", "timestamp": 1}]')

        assert await audit.get_entries() == []
        assert await secure_store.get_item(AUDIT_LOG_KEY) is None

    @pytest.mark.asyncio
    async def test_clear_all_accounts(self, two_accounts):
        await two_accounts.clear_all_accounts()

        assert await two_accounts.get_available_accounts() == []
