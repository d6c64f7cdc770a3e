"""
Composite event identity.

Provider event ids are only unique within one calendar, and the same
event can appear in several calendars (shared calendars). Every event is
therefore stored under a composite id built from the account, the
calendar and the provider-native id.

CalDAV calendar ids are URLs and account ids are emails, so neither ``:``
nor ``@`` can serve as separator. The ASCII unit separator (0x1F) cannot
occur in either.
"""

from typing import Optional

ID_SEPARATOR = "\x1f"

# Calendar keys identify a (account, calendar) pair in the sync cursor store
CALENDAR_KEY_SEPARATOR = "\t"


def make_composite_id(
    account_id: Optional[str],
    native_id: str,
    calendar_id: Optional[str] = None,
) -> str:
    """
    Build a globally unique event id.

    Args:
        account_id: Account the event was fetched from (None for local-only events)
        native_id: Provider-native event id (Google event id or CalDAV UID)
        calendar_id: Calendar the event belongs to

    Returns:
        ``account SEP calendar SEP native``; ``account SEP SEP native`` when
        no calendar is given; ``native_id`` unchanged when no account is given
    """
    if not account_id:
        return native_id
    if not calendar_id:
        return f"{account_id}{ID_SEPARATOR}{ID_SEPARATOR}{native_id}"
    return f"{account_id}{ID_SEPARATOR}{calendar_id}{ID_SEPARATOR}{native_id}"


def extract_native_id(composite_id: str) -> str:
    """Return the provider-native id (everything after the last separator)."""
    index = composite_id.rfind(ID_SEPARATOR)
    if index == -1:
        return composite_id
    return composite_id[index + 1:]


def extract_account_id(composite_id: str) -> Optional[str]:
    """Return the account id (everything before the first separator), if any."""
    index = composite_id.find(ID_SEPARATOR)
    if index == -1:
        return None
    return composite_id[:index]


def extract_calendar_id(composite_id: str) -> Optional[str]:
    """Return the calendar id segment, or None when absent or empty."""
    first = composite_id.find(ID_SEPARATOR)
    last = composite_id.rfind(ID_SEPARATOR)
    if first == -1 or first == last:
        return None
    return composite_id[first + 1:last] or None


def is_composite_id(value: str) -> bool:
    """Check whether an id already carries an account prefix."""
    return ID_SEPARATOR in value


def calendar_key(account_id: str, calendar_id: str) -> str:
    """Key identifying one calendar of one account."""
    return f"{account_id}{CALENDAR_KEY_SEPARATOR}{calendar_id}"


def parse_calendar_key(key: str) -> Optional[tuple[str, str]]:
    """
    Split a calendar key into (account_id, calendar_id).

    Keys written with the legacy colon separator are still accepted; they
    only round-trip for calendar ids without colons.
    """
    index = key.find(CALENDAR_KEY_SEPARATOR)
    if index == -1:
        index = key.find(":")
        if index == -1:
            return None
    return key[:index], key[index + 1:]
