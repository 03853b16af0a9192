"""
Delivery scheduling.

Computes a recipient's next delivery instant from its frequency and preferred
time-of-day bucket. All arithmetic is UTC: the recipient's stored timezone
does not shift the canonical hour.

"three-times-week" is approximated as every two days; a fixed day offset
cannot express an evenly spaced thrice-weekly calendar.
"""
from datetime import datetime, timedelta
from enum import Enum


class Frequency(str, Enum):
    DAILY = "daily"
    EVERY_OTHER_DAY = "every-other-day"
    THREE_TIMES_WEEK = "three-times-week"
    WEEKLY = "weekly"
    BI_WEEKLY = "bi-weekly"


class TimeOfDay(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"
    NIGHT = "night"


FREQUENCY_DAYS = {
    Frequency.DAILY: 1,
    Frequency.EVERY_OTHER_DAY: 2,
    Frequency.THREE_TIMES_WEEK: 2,
    Frequency.WEEKLY: 7,
    Frequency.BI_WEEKLY: 14,
}

CANONICAL_HOURS = {
    TimeOfDay.MORNING: 9,
    TimeOfDay.AFTERNOON: 13,
    TimeOfDay.EVENING: 18,
    TimeOfDay.NIGHT: 22,
}

DEFAULT_DAY_OFFSET = 1
DEFAULT_HOUR = 12


def _lookup(table: dict, enum_cls, value, default: int) -> int:
    try:
        return table[enum_cls(value)]
    except ValueError:
        return default


def day_offset(frequency) -> int:
    """Days between deliveries; unknown frequencies count as daily."""
    return _lookup(FREQUENCY_DAYS, Frequency, frequency, DEFAULT_DAY_OFFSET)


def canonical_hour(time_of_day) -> int:
    """UTC hour for a time-of-day bucket; unknown buckets deliver at noon."""
    return _lookup(CANONICAL_HOURS, TimeOfDay, time_of_day, DEFAULT_HOUR)


def compute_next_delivery(frequency, time_of_day, reference: datetime) -> datetime:
    """
    Next delivery after `reference`: the reference day pinned to the bucket's
    canonical hour, plus the frequency's day offset.

    >>> compute_next_delivery("daily", "morning", datetime(2024, 1, 1, 20, 0))
    datetime.datetime(2024, 1, 2, 9, 0)
    """
    pinned = reference.replace(hour=canonical_hour(time_of_day), minute=0, second=0, microsecond=0)
    return pinned + timedelta(days=day_offset(frequency))


def is_due(recipient, now: datetime) -> bool:
    return bool(recipient.is_active) and recipient.next_delivery is not None and recipient.next_delivery <= now
