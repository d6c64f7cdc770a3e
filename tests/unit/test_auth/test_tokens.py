"""Tests for token storage and the coalescing token broker."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from calsync.auth.credentials import AccountCredentials, CalDAVCredentials
from calsync.auth.oauth import OAuthTokens
from calsync.auth.tokens import InMemoryTokenStore, SQLAlchemyTokenStore, StoredToken, TokenBroker
from calsync.integrations.exceptions import AuthError, TransientNetworkError

ACCOUNT = "me@example.com"


def expired_token() -> StoredToken:
    return StoredToken(
        access_token="old-access",
        refresh_token="refresh-1",
        expiry=datetime.now(timezone.utc) - timedelta(minutes=1),
    )


def new_tokens(access_token: str = "new-access") -> OAuthTokens:
    return OAuthTokens(
        access_token=access_token,
        refresh_token=None,
        expires_in=3600,
        token_type="Bearer",
        scope="",
    )


class TestStoredToken:
    """Tests for expiry checks."""

    def test_fresh(self):
        token = StoredToken("a", expiry=datetime.now(timezone.utc) + timedelta(hours=1))
        assert token.is_expired is False
        assert token.needs_refresh is False

    def test_expiring_soon(self):
        """Tokens inside the refresh buffer are refreshed early."""
        token = StoredToken("a", expiry=datetime.now(timezone.utc) + timedelta(minutes=2))
        assert token.is_expired is False
        assert token.needs_refresh is True

    def test_no_expiry(self):
        assert StoredToken("a").needs_refresh is False


class TestTokenBroker:
    """Tests for bearer token retrieval."""

    @pytest.mark.asyncio
    async def test_fresh_token_returned(self):
        store = InMemoryTokenStore({ACCOUNT: StoredToken("valid")})
        refresher = AsyncMock()

        assert await TokenBroker(store, refresher).get_bearer_token(ACCOUNT) == "valid"
        refresher.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_account(self):
        with pytest.raises(AuthError):
            await TokenBroker(InMemoryTokenStore(), AsyncMock()).get_bearer_token(ACCOUNT)

    @pytest.mark.asyncio
    async def test_expired_without_refresh_token(self):
        store = InMemoryTokenStore({ACCOUNT: StoredToken("old", expiry=datetime.now(timezone.utc))})
        with pytest.raises(AuthError):
            await TokenBroker(store, AsyncMock()).get_bearer_token(ACCOUNT)

    @pytest.mark.asyncio
    async def test_refresh_saves_token(self):
        """The refreshed token is stored and the refresh token kept."""
        store = InMemoryTokenStore({ACCOUNT: expired_token()})
        refresher = AsyncMock(return_value=new_tokens())

        token = await TokenBroker(store, refresher).get_bearer_token(ACCOUNT)

        assert token == "new-access"
        refresher.assert_awaited_once_with("refresh-1")
        saved = store.get(ACCOUNT)
        assert saved.access_token == "new-access"
        assert saved.refresh_token == "refresh-1"
        assert saved.needs_refresh is False

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_coalesce(self):
        """Concurrent callers share one in-flight refresh."""
        store = InMemoryTokenStore({ACCOUNT: expired_token()})
        calls = 0

        async def refresher(refresh_token: str) -> OAuthTokens:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return new_tokens()

        broker = TokenBroker(store, refresher)
        tokens = await asyncio.gather(*(broker.get_bearer_token(ACCOUNT) for _ in range(5)))

        assert tokens == ["new-access"] * 5
        assert calls == 1

    @pytest.mark.asyncio
    async def test_refresh_failure_becomes_auth_error(self):
        store = InMemoryTokenStore({ACCOUNT: expired_token()})
        refresher = AsyncMock(side_effect=TransientNetworkError("down"))

        with pytest.raises(AuthError) as exc_info:
            await TokenBroker(store, refresher).get_bearer_token(ACCOUNT)

        assert isinstance(exc_info.value.original_error, TransientNetworkError)
        assert store.get(ACCOUNT).access_token == "old-access"

    def test_forget(self):
        store = InMemoryTokenStore({ACCOUNT: StoredToken("a")})
        TokenBroker(store, AsyncMock()).forget(ACCOUNT)
        assert store.get(ACCOUNT) is None


class TestSQLAlchemyTokenStore:
    """Tests for the database-backed token store."""

    def test_save_and_get(self, session_factory):
        store = SQLAlchemyTokenStore(session_factory)
        expiry = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        store.save(ACCOUNT, StoredToken("access-1", "refresh-1", expiry))
        token = store.get(ACCOUNT)

        assert token == StoredToken("access-1", "refresh-1", expiry)

    def test_update_keeps_refresh_token(self, session_factory):
        store = SQLAlchemyTokenStore(session_factory)
        store.save(ACCOUNT, StoredToken("access-1", "refresh-1"))

        store.save(ACCOUNT, StoredToken("access-2"))

        token = store.get(ACCOUNT)
        assert token.access_token == "access-2"
        assert token.refresh_token == "refresh-1"

    def test_delete(self, session_factory):
        store = SQLAlchemyTokenStore(session_factory)
        store.save(ACCOUNT, StoredToken("access-1"))

        store.delete(ACCOUNT)

        assert store.get(ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_broker_refreshes_into_database(self, session_factory):
        """The broker reads and writes the database store from worker threads."""
        store = SQLAlchemyTokenStore(session_factory)
        store.save(ACCOUNT, expired_token())
        refresher = AsyncMock(return_value=new_tokens("db-access"))
        broker = TokenBroker(store, refresher)

        assert await broker.get_bearer_token(ACCOUNT) == "db-access"
        assert await broker.get_bearer_token(ACCOUNT) == "db-access"

        refresher.assert_awaited_once_with("refresh-1")
        assert store.get(ACCOUNT).access_token == "db-access"


class TestAccountCredentials:
    """Tests for the combined credential provider."""

    @pytest.mark.asyncio
    async def test_caldav_credentials(self):
        creds = CalDAVCredentials("https://dav.example.com", "me", "secret")
        provider = AccountCredentials(caldav={"me@fastmail.com": creds})

        assert await provider.get_caldav_credentials("me@fastmail.com") == creds
        assert "secret" not in repr(creds)
        with pytest.raises(AuthError):
            await provider.get_caldav_credentials("other@fastmail.com")

    @pytest.mark.asyncio
    async def test_bearer_without_broker(self):
        with pytest.raises(AuthError):
            await AccountCredentials().get_bearer_token(ACCOUNT)

    @pytest.mark.asyncio
    async def test_remove(self):
        store = InMemoryTokenStore({ACCOUNT: StoredToken("a")})
        provider = AccountCredentials(
            token_broker=TokenBroker(store, AsyncMock()),
            caldav={ACCOUNT: CalDAVCredentials("https://dav.example.com", "me", "pw")},
        )

        provider.remove(ACCOUNT)

        assert store.get(ACCOUNT) is None
        with pytest.raises(AuthError):
            await provider.get_caldav_credentials(ACCOUNT)
