"""
Scheduling services built on top of synced calendar data.
"""

from calsync.services.free_busy import (
    FreeSlot,
    SlotSearchOptions,
    combine_busy_periods,
    find_free_slots,
    merge_busy_periods,
    split_into_meeting_slots,
)

__all__ = [
    "FreeSlot",
    "SlotSearchOptions",
    "combine_busy_periods",
    "find_free_slots",
    "merge_busy_periods",
    "split_into_meeting_slots",
]
