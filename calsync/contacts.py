"""
Display-name lookup for attendee and organizer emails.

Names come from:
1. Display names of connected accounts (your own addresses)
2. An optional JSON contacts file mapping email to name, e.g.
   {"john@example.com": "John Smith"}
"""

import json
import logging
from pathlib import Path
from typing import Iterable, Optional, Protocol, Sequence

from calsync.integrations.base import Account, CalendarEvent

logger = logging.getLogger(__name__)


class ContactResolver(Protocol):
    """Maps an email address to a display name."""

    def resolve(self, email: str) -> Optional[str]:
        ...


class DirectoryContactResolver:
    """
    Resolves names from account display names, then a contacts file.

    Lookups are case-insensitive. The contacts file is read once, on
    first use; a missing or unreadable file resolves nothing.
    """

    def __init__(
        self,
        accounts: Iterable[Account] = (),
        contacts_file: Optional[str] = None,
    ):
        self._account_names = {
            account.id.lower(): account.display_name
            for account in accounts
            if account.display_name
        }
        self._contacts_file = contacts_file
        self._contacts: Optional[dict[str, str]] = None

    def _load_contacts(self) -> dict[str, str]:
        if self._contacts is not None:
            return self._contacts

        self._contacts = {}
        if not self._contacts_file:
            return self._contacts

        path = Path(self._contacts_file).expanduser()
        if not path.exists():
            logger.debug(f"No contacts file at {path}")
            return self._contacts

        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read contacts file {path}: {e}")
            return self._contacts

        if not isinstance(data, dict):
            logger.warning(f"Contacts file {path} is not a JSON object, ignoring it")
            return self._contacts

        self._contacts = {
            str(email).lower(): str(name)
            for email, name in data.items()
            if name
        }
        logger.debug(f"Loaded {len(self._contacts)} contacts from {path}")
        return self._contacts

    def resolve(self, email: str) -> Optional[str]:
        if not email:
            return None
        key = email.lower()
        return self._account_names.get(key) or self._load_contacts().get(key)


def _safe_resolve(resolver: ContactResolver, email: str) -> Optional[str]:
    try:
        return resolver.resolve(email)
    except Exception as e:
        logger.warning(f"Display name lookup failed for {email}: {e}")
        return None


def enrich_display_names(events: Sequence[CalendarEvent], resolver: ContactResolver) -> int:
    """
    Fill in missing organizer and attendee display names in place.

    Resolver failures are logged and skipped.

    Returns:
        Number of names filled in
    """
    filled = 0
    for event in events:
        if event.organizer and event.organizer.email and not event.organizer.display_name:
            name = _safe_resolve(resolver, event.organizer.email)
            if name:
                event.organizer.display_name = name
                filled += 1

        for attendee in event.attendees:
            if attendee.email and not attendee.display_name:
                name = _safe_resolve(resolver, attendee.email)
                if name:
                    attendee.display_name = name
                    filled += 1

    if filled:
        logger.debug(f"Filled {filled} display names")
    return filled
