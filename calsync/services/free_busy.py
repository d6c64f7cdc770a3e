"""
Free/busy engine.

Merges busy intervals and finds free slots inside working hours, for
"find a time for everyone" scheduling queries.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, Mapping, Optional

from dateutil import tz

from calsync.integrations.base import BusyPeriod

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FreeSlot:
    """A free interval."""

    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def minutes(self) -> int:
        return int(self.duration.total_seconds() // 60)


@dataclass(frozen=True)
class SlotSearchOptions:
    """
    Constraints for free-slot search.

    Attributes:
        min_duration: Shortest gap worth reporting
        working_hours_start: Hour the working day starts (0-23)
        working_hours_end: Hour the working day ends (1-24)
        include_weekends: Search Saturdays and Sundays too
        time_zone: IANA zone the working hours are expressed in (None = UTC)
    """

    min_duration: timedelta = timedelta(minutes=30)
    working_hours_start: int = 9
    working_hours_end: int = 17
    include_weekends: bool = False
    time_zone: Optional[str] = None

    def zone(self):
        if not self.time_zone:
            return timezone.utc
        zone = tz.gettz(self.time_zone)
        if zone is None:
            logger.warning(f"Unknown time zone {self.time_zone!r}, using UTC")
            return timezone.utc
        return zone


def merge_busy_periods(periods: Iterable[BusyPeriod]) -> list[BusyPeriod]:
    """
    Merge overlapping or touching busy periods.

    Returns:
        Non-overlapping periods sorted by start
    """
    merged: list[BusyPeriod] = []
    for period in sorted(periods, key=lambda p: p.start):
        if merged and period.start <= merged[-1].end:
            if period.end > merged[-1].end:
                merged[-1] = BusyPeriod(start=merged[-1].start, end=period.end)
        else:
            merged.append(BusyPeriod(start=period.start, end=period.end))
    return merged


def combine_busy_periods(busy_by_person: Mapping[str, Iterable[BusyPeriod]]) -> list[BusyPeriod]:
    """Merge several people's busy periods into one list."""
    all_busy: list[BusyPeriod] = []
    for periods in busy_by_person.values():
        all_busy.extend(periods)
    return merge_busy_periods(all_busy)


def _gaps(
    start: datetime,
    end: datetime,
    busy: list[BusyPeriod],
    min_duration: timedelta,
) -> list[FreeSlot]:
    """Free gaps in ``[start, end)`` given merged, sorted busy periods."""
    slots = []
    cursor = start
    for period in busy:
        if period.end <= start or period.start >= end:
            continue
        if period.start > cursor and period.start - cursor >= min_duration:
            slots.append(FreeSlot(start=cursor, end=period.start))
        if period.end > cursor:
            cursor = period.end
    if end > cursor and end - cursor >= min_duration:
        slots.append(FreeSlot(start=cursor, end=end))
    return slots


def find_free_slots(
    busy: Iterable[BusyPeriod],
    range_start: datetime,
    range_end: datetime,
    options: Optional[SlotSearchOptions] = None,
    now: Optional[datetime] = None,
) -> list[FreeSlot]:
    """
    Find free slots within working hours.

    Each day in the range is clipped to working hours, to the range, and
    to ``now`` (nothing in the past is offered), then busy periods are
    subtracted and gaps shorter than ``min_duration`` dropped.

    Args:
        busy: Busy periods (any order, may overlap)
        range_start: Start of the search range (aware)
        range_end: End of the search range (aware)
        options: Working hours and minimum duration
        now: Current time (defaults to the real clock)

    Returns:
        Free slots sorted by start
    """
    options = options or SlotSearchOptions()
    zone = options.zone()
    now = now or datetime.now(timezone.utc)
    merged = merge_busy_periods(busy)
    earliest = max(range_start, now)

    slots: list[FreeSlot] = []
    day = range_start.astimezone(zone).date()
    last_day = range_end.astimezone(zone).date()

    while day <= last_day:
        if not options.include_weekends and day.weekday() >= 5:
            day += timedelta(days=1)
            continue

        day_start = datetime.combine(day, time(hour=options.working_hours_start), tzinfo=zone)
        if options.working_hours_end >= 24:
            day_end = datetime.combine(day + timedelta(days=1), time(), tzinfo=zone)
        else:
            day_end = datetime.combine(day, time(hour=options.working_hours_end), tzinfo=zone)

        window_start = max(day_start, earliest)
        window_end = min(day_end, range_end)
        if window_start < window_end:
            slots.extend(_gaps(window_start, window_end, merged, options.min_duration))

        day += timedelta(days=1)

    return slots


def split_into_meeting_slots(
    free_slots: Iterable[FreeSlot],
    duration: timedelta,
    gap: Optional[timedelta] = None,
) -> list[FreeSlot]:
    """
    Tile free slots into fixed-length meeting candidates.

    Args:
        free_slots: Free intervals
        duration: Meeting length
        gap: Step between candidate starts (defaults to ``duration``)

    Returns:
        Candidate meeting slots, each exactly ``duration`` long
    """
    if duration <= timedelta(0):
        raise ValueError("Meeting duration must be positive")
    step = gap if gap is not None and gap > timedelta(0) else duration

    meeting_slots = []
    for slot in free_slots:
        start = slot.start
        while start + duration <= slot.end:
            meeting_slots.append(FreeSlot(start=start, end=start + duration))
            start += step
    return meeting_slots
