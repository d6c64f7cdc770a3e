"""
Per-account CalDAV connection registry.
"""

import asyncio
import logging
from typing import Optional

import httpx

from calsync.auth.credentials import CalDAVCredentials, CredentialProvider
from calsync.config import Settings, get_settings
from calsync.integrations.caldav.client import CalDAVClient

logger = logging.getLogger(__name__)


class CalDAVConnectionPool:
    """
    Holds one authenticated CalDAVClient per account.

    Connections are created on first use and reused until ``invalidate``
    is called for the account (logout, credential change).
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        settings: Optional[Settings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._credentials = credentials
        self._settings = settings or get_settings()
        self._transport = transport
        self._clients: dict[str, CalDAVClient] = {}
        self._lock = asyncio.Lock()

    async def get(self, account_id: str) -> CalDAVClient:
        """Get or create the client for an account."""
        client = self._clients.get(account_id)
        if client is not None:
            return client

        async with self._lock:
            client = self._clients.get(account_id)
            if client is None:
                credentials = await self._credentials.get_caldav_credentials(account_id)
                logger.debug(f"Creating CalDAV client for {account_id} ({credentials.server_url})")
                client = self.connect(credentials)
                self._clients[account_id] = client
        return client

    def connect(self, credentials: CalDAVCredentials) -> CalDAVClient:
        """Create an unpooled client; the caller owns and closes it."""
        return CalDAVClient(
            credentials,
            user_agent=self._settings.caldav_user_agent,
            transport=self._transport,
        )

    def __contains__(self, account_id: str) -> bool:
        return account_id in self._clients

    async def invalidate(self, account_id: str) -> None:
        """Close and forget the account's connection."""
        client = self._clients.pop(account_id, None)
        if client is not None:
            await client.close()
            logger.info(f"Closed CalDAV connection for {account_id}")

    async def close_all(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.close()
