"""
CalDAV integration for calsync.

Provides WebDAV calendar collections (iCloud, Fastmail, Nextcloud, ...) as a sync backend.
"""

from calsync.integrations.caldav.client import CalDAVClient, CalendarObject, DavCalendar
from calsync.integrations.caldav.pool import CalDAVConnectionPool
from calsync.integrations.caldav.provider import (
    CALDAV_PRESETS,
    CalDAVPreset,
    CalDAVProvider,
    ConnectionCheck,
    normalize_color,
)

__all__ = [
    "CALDAV_PRESETS",
    "CalDAVClient",
    "CalDAVConnectionPool",
    "CalDAVPreset",
    "CalDAVProvider",
    "CalendarObject",
    "ConnectionCheck",
    "DavCalendar",
    "normalize_color",
]
