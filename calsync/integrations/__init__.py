"""
Remote calendar backends for calsync.

Provides the provider protocol shared by the Google Calendar and CalDAV backends.
"""

from calsync.integrations.base import CalendarEvent, CalendarProvider

__all__ = ["CalendarEvent", "CalendarProvider"]
