"""
OAuth token storage model.

Stores refreshable tokens for REST calendar accounts.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calsync.models.base import TimestampedModel


class AccountToken(TimestampedModel):
    """
    OAuth tokens for one account.

    Attributes:
        account_id: Account email, unique
        provider: OAuth provider (currently only 'google')
        access_token: Current access token
        refresh_token: Refresh token for obtaining new access tokens
        token_expiry: When the access token expires
    """

    __tablename__ = "account_tokens"

    account_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        doc="Account email"
    )

    provider: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="google",
        doc="OAuth provider (google)"
    )

    access_token: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        doc="OAuth access token"
    )

    refresh_token: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="OAuth refresh token"
    )

    token_expiry: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="When the access token expires"
    )

    def __repr__(self) -> str:
        return f"<AccountToken(account_id={self.account_id}, provider={self.provider})>"
