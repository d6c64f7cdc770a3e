"""
Credential provider contract.

Providers never resolve secrets themselves; they ask a CredentialProvider
for a bearer token (REST accounts) or CalDAV credentials.
"""

from dataclasses import dataclass
from typing import Optional, Protocol

from calsync.auth.tokens import TokenBroker
from calsync.integrations.exceptions import AuthError


@dataclass(frozen=True)
class CalDAVCredentials:
    """Credentials for a CalDAV account."""

    server_url: str
    username: str
    password: str

    def __repr__(self) -> str:
        return f"CalDAVCredentials(server_url={self.server_url!r}, username={self.username!r})"


class CredentialProvider(Protocol):
    """Supplies credentials per account."""

    async def get_bearer_token(self, account_id: str) -> str:
        """Valid access token, or AuthError."""
        ...

    async def get_caldav_credentials(self, account_id: str) -> CalDAVCredentials:
        """CalDAV server URL and login, or AuthError."""
        ...


class AccountCredentials:
    """
    CredentialProvider backed by a TokenBroker and a CalDAV credential map.

    Args:
        token_broker: Broker for REST accounts (None if no REST accounts)
        caldav: Mapping of account id to CalDAV credentials
    """

    def __init__(
        self,
        token_broker: Optional[TokenBroker] = None,
        caldav: Optional[dict[str, CalDAVCredentials]] = None,
    ):
        self._token_broker = token_broker
        self._caldav = dict(caldav or {})

    async def get_bearer_token(self, account_id: str) -> str:
        if self._token_broker is None:
            raise AuthError(f"No token source configured for {account_id}")
        return await self._token_broker.get_bearer_token(account_id)

    async def get_caldav_credentials(self, account_id: str) -> CalDAVCredentials:
        credentials = self._caldav.get(account_id)
        if credentials is None:
            raise AuthError(f"No CalDAV credentials for {account_id}")
        return credentials

    def set_caldav_credentials(self, account_id: str, credentials: CalDAVCredentials) -> None:
        self._caldav[account_id] = credentials

    def remove(self, account_id: str) -> None:
        """Forget every credential held for an account."""
        self._caldav.pop(account_id, None)
        if self._token_broker is not None:
            self._token_broker.forget(account_id)
