"""Tests for TokenManager refresh, deactivation and disconnect behaviour."""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlmodel import Session, select

from fleetsync.models.connection import RiseXConnection
from fleetsync.models.sync import utc_now
from fleetsync.risex.auth import AuthorizationFailedError, TokenManager
from fleetsync.risex.client import UpstreamResponse, UpstreamUnavailableError

TOKEN_BODY = {
    "access_token": "access-2",
    "refresh_token": "refresh-2",
    "expires_in": 3600,
    "token_type": "Bearer",
    "scope": "openid offline_access",
}


@pytest.fixture(name="client")
def client_fixture():
    client = AsyncMock()
    client.refresh_token.return_value = UpstreamResponse(200, dict(TOKEN_BODY))
    client.revoke_token.return_value = UpstreamResponse(200, "")
    return client


@pytest.fixture(name="manager")
def manager_fixture(engine, vault, client):
    return TokenManager(engine, vault, client)


def _expire(engine, user_id="user-1", delta=timedelta(minutes=2)):
    """Move the stored expiry to now + delta."""
    with Session(engine) as s:
        row = s.exec(select(RiseXConnection).where(RiseXConnection.user_id == user_id)).first()
        row.token_expires_at = utc_now() + delta
        s.add(row)
        s.commit()


class TestStoreConnection:
    def test_encrypts_and_activates(self, manager, vault):
        conn = manager.store_connection("user-9", TOKEN_BODY, {"sub": "abc", "email": "a@b.c"})
        assert conn.is_active
        assert conn.access_token_encrypted != "access-2"
        assert vault.decrypt(conn.access_token_encrypted) == "access-2"
        assert vault.decrypt(conn.refresh_token_encrypted) == "refresh-2"
        assert conn.upstream_email == "a@b.c"
        assert conn.scope_list == ["openid", "offline_access"]

    def test_reactivates_existing(self, manager, seeded_connection):
        manager.mark_connection_inactive("user-1", "revoked")
        conn = manager.store_connection("user-1", TOKEN_BODY)
        assert conn.id == seeded_connection.id
        assert conn.is_active
        assert conn.deactivated_reason is None
        # profile absent: email kept
        assert conn.upstream_email == "diver@example.com"

    def test_rejects_missing_access_token(self, manager):
        with pytest.raises(AuthorizationFailedError):
            manager.store_connection("user-9", {"refresh_token": "r"})

    def test_default_expiry(self, manager):
        conn = manager.store_connection("user-9", {"access_token": "a"})
        remaining = conn.token_expires_at - utc_now()
        assert timedelta(minutes=59) < remaining <= timedelta(hours=1)


class TestCompleteAuthorization:
    @pytest.mark.asyncio
    async def test_exchanges_and_stores(self, manager, client, vault):
        client.exchange_code.return_value = UpstreamResponse(200, dict(TOKEN_BODY))
        client.get_user_info.return_value = UpstreamResponse(200, {"sub": "s-1", "email": "x@y.z"})
        conn = await manager.complete_authorization("user-7", "code", "https://cb", "verifier")
        assert vault.decrypt(conn.access_token_encrypted) == "access-2"
        assert conn.upstream_user_id == "s-1"
        client.exchange_code.assert_awaited_once_with("code", "https://cb", "verifier")

    @pytest.mark.asyncio
    async def test_profile_failure_still_stores(self, manager, client):
        client.exchange_code.return_value = UpstreamResponse(200, dict(TOKEN_BODY))
        client.get_user_info.side_effect = UpstreamUnavailableError("down")
        conn = await manager.complete_authorization("user-7", "code", "https://cb", "verifier")
        assert conn.is_active
        assert conn.upstream_email is None

    @pytest.mark.asyncio
    async def test_rejected_code(self, manager, client):
        client.exchange_code.return_value = UpstreamResponse(400, {"error": "invalid_grant"})
        with pytest.raises(AuthorizationFailedError, match="invalid_grant"):
            await manager.complete_authorization("user-7", "bad", "https://cb", "v")
        assert manager.get_connection("user-7") is None


class TestGetValidAccessToken:
    @pytest.mark.asyncio
    async def test_no_connection(self, manager):
        assert await manager.get_valid_access_token("nobody") is None

    @pytest.mark.asyncio
    async def test_fresh_token_no_refresh(self, manager, client, seeded_connection):
        assert await manager.get_valid_access_token("user-1") == "access-1"
        client.refresh_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_refreshes_inside_buffer(self, manager, client, engine, vault, seeded_connection):
        _expire(engine)
        assert await manager.get_valid_access_token("user-1") == "access-2"
        client.refresh_token.assert_awaited_once_with("refresh-1")

        conn = manager.get_connection("user-1")
        assert vault.decrypt(conn.refresh_token_encrypted) == "refresh-2"
        assert conn.last_token_refresh_at is not None
        assert conn.token_expires_at > utc_now() + timedelta(minutes=55)

    @pytest.mark.asyncio
    async def test_concurrent_callers_refresh_once(self, manager, client, engine, seeded_connection):
        _expire(engine)

        async def slow_refresh(token):
            await asyncio.sleep(0.01)
            return UpstreamResponse(200, dict(TOKEN_BODY))

        client.refresh_token.side_effect = slow_refresh
        tokens = await asyncio.gather(
            *(manager.get_valid_access_token("user-1") for _ in range(5))
        )
        assert tokens == ["access-2"] * 5
        assert client.refresh_token.await_count == 1

    @pytest.mark.asyncio
    async def test_rejected_refresh_deactivates(self, manager, client, engine, seeded_connection):
        _expire(engine)
        client.refresh_token.return_value = UpstreamResponse(
            400, {"error": "invalid_grant", "error_description": "Refresh token revoked"}
        )
        assert await manager.get_valid_access_token("user-1") is None

        conn = manager.get_connection("user-1")
        assert not conn.is_active
        assert "Refresh token revoked" in conn.deactivated_reason

        # inactive connection is never retried
        assert await manager.get_valid_access_token("user-1") is None
        assert client.refresh_token.await_count == 1

    @pytest.mark.asyncio
    async def test_network_failure_keeps_connection(self, manager, client, engine, seeded_connection):
        _expire(engine)
        client.refresh_token.side_effect = UpstreamUnavailableError("connect failed")
        assert await manager.get_valid_access_token("user-1") is None
        assert manager.get_connection("user-1").is_active

    @pytest.mark.asyncio
    async def test_missing_refresh_token_deactivates(self, manager, client, engine, seeded_connection):
        with Session(engine) as s:
            row = s.get(RiseXConnection, seeded_connection.id)
            row.refresh_token_encrypted = None
            row.token_expires_at = utc_now() - timedelta(minutes=1)
            s.add(row)
            s.commit()

        assert await manager.get_valid_access_token("user-1") is None
        assert not manager.get_connection("user-1").is_active
        client.refresh_token.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unreadable_access_token_deactivates(self, manager, engine, seeded_connection):
        with Session(engine) as s:
            row = s.get(RiseXConnection, seeded_connection.id)
            row.access_token_encrypted = "garbage"
            s.add(row)
            s.commit()

        assert await manager.get_valid_access_token("user-1") is None
        assert not manager.get_connection("user-1").is_active


class TestConnectionsNeedingSync:
    def test_never_synced_first_then_oldest(self, manager):
        for user in ("a", "b", "c", "d"):
            manager.store_connection(user, {"access_token": "t"})
        manager.update_last_sync("b")  # just synced: excluded
        manager.mark_connection_inactive("d", "revoked")

        with Session(manager.engine) as s:
            row = s.exec(select(RiseXConnection).where(RiseXConnection.user_id == "c")).first()
            row.last_sync_at = utc_now() - timedelta(hours=2)
            s.add(row)
            s.commit()

        assert manager.connections_needing_sync(older_than_minutes=15) == ["a", "c"]

    def test_limit(self, manager):
        for user in ("a", "b", "c"):
            manager.store_connection(user, {"access_token": "t"})
        assert len(manager.connections_needing_sync(limit=2)) == 2


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_revokes_and_deletes(self, manager, client, seeded_connection):
        assert await manager.disconnect("user-1") is True
        client.revoke_token.assert_awaited_once_with("access-1")
        assert manager.get_connection("user-1") is None

    @pytest.mark.asyncio
    async def test_revocation_failure_still_deletes(self, manager, client, seeded_connection):
        client.revoke_token.side_effect = UpstreamUnavailableError("down")
        assert await manager.disconnect("user-1") is True
        assert manager.get_connection("user-1") is None

    @pytest.mark.asyncio
    async def test_unknown_user(self, manager, client):
        assert await manager.disconnect("nobody") is False
        client.revoke_token.assert_not_awaited()
