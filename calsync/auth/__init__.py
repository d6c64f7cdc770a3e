"""
Credential handling for calsync.

Provides bearer tokens for REST accounts and login data for CalDAV accounts.
"""

from calsync.auth.credentials import AccountCredentials, CalDAVCredentials, CredentialProvider
from calsync.auth.tokens import InMemoryTokenStore, StoredToken, TokenBroker

__all__ = [
    "AccountCredentials",
    "CalDAVCredentials",
    "CredentialProvider",
    "InMemoryTokenStore",
    "StoredToken",
    "TokenBroker",
]
