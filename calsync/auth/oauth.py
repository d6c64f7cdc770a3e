"""
Google OAuth 2.0 token refresh.

The browser-based authorization flow lives outside this package; it hands
over a refresh token which is exchanged here for short-lived access tokens.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from calsync.config import Settings, get_settings
from calsync.integrations.exceptions import AuthError, TransientNetworkError

logger = logging.getLogger(__name__)

# Calendar API scopes
CALENDAR_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/userinfo.email",
]


@dataclass
class OAuthTokens:
    """OAuth token response from Google."""

    access_token: str
    refresh_token: Optional[str]
    expires_in: int
    token_type: str
    scope: str

    @property
    def expiry(self) -> datetime:
        """Calculate token expiry time."""
        return datetime.now(timezone.utc) + timedelta(seconds=self.expires_in)


class GoogleTokenRefresher:
    """
    Exchanges refresh tokens for new access tokens.

    Usage:
        refresher = GoogleTokenRefresher()
        tokens = await refresher.refresh(stored.refresh_token)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        settings = settings or get_settings()
        self.client_id = settings.google_oauth_client_id
        self.client_secret = settings.google_oauth_client_secret
        self.token_uri = settings.google_token_uri
        self._http_client = http_client

        if not self.client_id or not self.client_secret:
            logger.warning(
                "Google OAuth not configured. Set GOOGLE_OAUTH_CLIENT_ID and "
                "GOOGLE_OAUTH_CLIENT_SECRET in environment."
            )

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        """
        Refresh an expired access token.

        Args:
            refresh_token: The refresh token from initial authorization

        Returns:
            New OAuthTokens with fresh access_token

        Raises:
            AuthError: If the token endpoint rejects the refresh token
            TransientNetworkError: If the token endpoint is unreachable or failing
        """
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.token_uri, data=data)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(self.token_uri, data=data)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Token endpoint unreachable: {e}", original_error=e)

        if response.status_code >= 500:
            raise TransientNetworkError(
                f"Token endpoint failed ({response.status_code})"
            )
        if response.status_code >= 400:
            raise AuthError(
                f"Failed to refresh token ({response.status_code}): {response.text}"
            )

        token_data = response.json()
        logger.info("Successfully refreshed access token")

        return OAuthTokens(
            access_token=token_data["access_token"],
            # Google doesn't return a refresh token on refresh; keep the original
            refresh_token=token_data.get("refresh_token") or refresh_token,
            expires_in=token_data.get("expires_in", 3600),
            token_type=token_data.get("token_type", "Bearer"),
            scope=token_data.get("scope", ""),
        )
