"""
Access token storage and coalesced refresh for REST accounts.

The TokenBroker is the ``get_bearer_token`` half of the credential
provider contract: it returns a stored access token while it is fresh and
refreshes it otherwise, making sure concurrent callers for one account
share a single in-flight refresh.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from calsync.auth.oauth import GoogleTokenRefresher, OAuthTokens
from calsync.database import session_scope
from calsync.integrations.exceptions import AuthError
from calsync.models.base import as_utc
from calsync.models.tokens import AccountToken

logger = logging.getLogger(__name__)

# Refresh if expiring within this window
REFRESH_BUFFER = timedelta(minutes=5)


@dataclass(frozen=True)
class StoredToken:
    """OAuth tokens stored for one account."""

    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        """Check if the access token is expired."""
        if self.expiry is None:
            return False
        return datetime.now(timezone.utc) >= self.expiry

    @property
    def needs_refresh(self) -> bool:
        """Check if token should be refreshed (expired or expiring soon)."""
        if self.expiry is None:
            return False
        return datetime.now(timezone.utc) >= (self.expiry - REFRESH_BUFFER)


class AccountTokenStore(Protocol):
    """Persistence for per-account OAuth tokens."""

    def get(self, account_id: str) -> Optional[StoredToken]:
        ...

    def save(self, account_id: str, token: StoredToken) -> None:
        ...

    def delete(self, account_id: str) -> None:
        ...


class InMemoryTokenStore:
    """Dict-backed AccountTokenStore."""

    def __init__(self, tokens: Optional[dict[str, StoredToken]] = None):
        self._tokens: dict[str, StoredToken] = dict(tokens or {})

    def get(self, account_id: str) -> Optional[StoredToken]:
        return self._tokens.get(account_id)

    def save(self, account_id: str, token: StoredToken) -> None:
        self._tokens[account_id] = token

    def delete(self, account_id: str) -> None:
        self._tokens.pop(account_id, None)


class SQLAlchemyTokenStore:
    """AccountTokenStore backed by the ``account_tokens`` table."""

    def __init__(self, session_factory: sessionmaker, provider: str = "google"):
        self._session_factory = session_factory
        self._provider = provider

    def _find(self, session, account_id: str) -> Optional[AccountToken]:
        return session.execute(
            select(AccountToken).where(AccountToken.account_id == account_id)
        ).scalar_one_or_none()

    def get(self, account_id: str) -> Optional[StoredToken]:
        with session_scope(self._session_factory) as session:
            record = self._find(session, account_id)
            if record is None:
                return None
            return StoredToken(
                access_token=record.access_token,
                refresh_token=record.refresh_token,
                expiry=as_utc(record.token_expiry),
            )

    def save(self, account_id: str, token: StoredToken) -> None:
        with session_scope(self._session_factory) as session:
            record = self._find(session, account_id)
            if record is None:
                record = AccountToken(account_id=account_id, provider=self._provider)
                session.add(record)
                logger.info(f"Created OAuth token for {account_id}")
            record.access_token = token.access_token
            if token.refresh_token:
                record.refresh_token = token.refresh_token
            record.token_expiry = token.expiry

    def delete(self, account_id: str) -> None:
        with session_scope(self._session_factory) as session:
            session.execute(delete(AccountToken).where(AccountToken.account_id == account_id))
        logger.info(f"Deleted OAuth token for {account_id}")


Refresher = Callable[[str], Awaitable[OAuthTokens]]


class TokenBroker:
    """
    Hands out valid bearer tokens, refreshing at most once per account at a time.

    Usage:
        broker = TokenBroker(store)
        token = await broker.get_bearer_token("me@example.com")
    """

    def __init__(
        self,
        store: AccountTokenStore,
        refresher: Optional[Refresher] = None,
    ):
        self._store = store
        self._refresher = refresher
        self._in_flight: dict[str, asyncio.Task] = {}

    def _refresh_fn(self) -> Refresher:
        if self._refresher is None:
            self._refresher = GoogleTokenRefresher().refresh
        return self._refresher

    async def get_bearer_token(self, account_id: str) -> str:
        """
        Get a valid access token for an account, refreshing if necessary.

        Raises:
            AuthError: If the account has no token or it cannot be refreshed
        """
        task = self._in_flight.get(account_id)
        if task is not None:
            logger.debug(f"Joining in-flight token refresh for {account_id}")
            return await asyncio.shield(task)

        loop = asyncio.get_running_loop()
        token = await loop.run_in_executor(None, self._store.get, account_id)
        if token is None:
            raise AuthError(f"No stored credentials for {account_id}")

        if not token.needs_refresh:
            return token.access_token

        if not token.refresh_token:
            raise AuthError(f"Token expired and no refresh token for {account_id}")

        task = self._in_flight.get(account_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(account_id, token))
            self._in_flight[account_id] = task
            task.add_done_callback(lambda _: self._in_flight.pop(account_id, None))
        else:
            logger.debug(f"Joining in-flight token refresh for {account_id}")

        # Shield so one cancelled caller does not cancel the shared refresh
        return await asyncio.shield(task)

    async def _refresh(self, account_id: str, token: StoredToken) -> str:
        try:
            new_tokens = await self._refresh_fn()(token.refresh_token)
        except AuthError:
            logger.error(f"Refresh token rejected for {account_id}")
            raise
        except Exception as e:
            logger.error(f"Failed to refresh token for {account_id}: {e}")
            raise AuthError(f"Failed to refresh token for {account_id}", original_error=e)

        refreshed = replace(
            token,
            access_token=new_tokens.access_token,
            refresh_token=new_tokens.refresh_token or token.refresh_token,
            expiry=new_tokens.expiry,
        )
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._store.save, account_id, refreshed)
        logger.info(f"Token refreshed for {account_id}")
        return refreshed.access_token

    def forget(self, account_id: str) -> None:
        """Drop stored tokens for an account (logout)."""
        self._store.delete(account_id)
