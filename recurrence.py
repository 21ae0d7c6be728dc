"""Next-occurrence arithmetic for recurring reminders.

Months and years are added on the calendar with ``relativedelta``, which clamps
an overflowing day to the last day of the target month: Jan 31 + 1 month is
Feb 28 (Feb 29 in leap years), Feb 29 + 1 year is Feb 28. The successor is
computed from the fired instance, so a clamped day carries forward
(Jan 31 -> Feb 28 -> Mar 28).

When a timezone is given the arithmetic runs on the local wall clock, so a
daily 09:00 reminder stays at 09:00 across a DST change.
"""

from datetime import datetime, timezone
from typing import Optional

from dateutil.relativedelta import relativedelta
from zoneinfo import ZoneInfo

from models import PATTERNS, Reminder, as_utc


_STEP = {
    "daily": lambda n: relativedelta(days=n),
    "weekly": lambda n: relativedelta(weeks=n),
    "monthly": lambda n: relativedelta(months=n),
    "yearly": lambda n: relativedelta(years=n),
}


def next_occurrence(pattern: str, interval: int, from_instant: datetime, tz_name: Optional[str] = None) -> datetime:
    if pattern not in PATTERNS:
        raise ValueError(f"unknown recurrence pattern: {pattern!r}")
    if interval is None or int(interval) < 1:
        raise ValueError(f"recurrence interval must be >= 1, got {interval!r}")
    start = as_utc(from_instant)
    tz = ZoneInfo(tz_name) if tz_name else timezone.utc
    # arithmetic on naive local wall time, then re-localize
    local = start.astimezone(tz).replace(tzinfo=None)
    nxt = local + _STEP[pattern](int(interval))
    return nxt.replace(tzinfo=tz).astimezone(timezone.utc)


def recurrence_exhausted(reminder: Reminder) -> bool:
    """True when the instance that just fired was the last allowed one."""
    if not reminder.is_recurring:
        return True
    if reminder.max_recurrences is None:
        return False
    return reminder.recurrence_count + 1 >= reminder.max_recurrences


def successor_of(reminder: Reminder) -> Optional[Reminder]:
    """Build (unsaved) the next occurrence, or None when recurrence is over."""
    if recurrence_exhausted(reminder):
        return None
    when = next_occurrence(reminder.pattern, reminder.interval, reminder.scheduled_time, reminder.timezone)
    return Reminder(
        user_id=reminder.user_id,
        title=reminder.title,
        message=reminder.message,
        scheduled_time=when,
        original_scheduled_time=reminder.original_scheduled_time or reminder.scheduled_time,
        timezone=reminder.timezone,
        target_id=reminder.target_id,
        target_type=reminder.target_type,
        is_recurring=True,
        pattern=reminder.pattern,
        interval=reminder.interval,
        max_recurrences=reminder.max_recurrences,
        recurrence_count=reminder.recurrence_count + 1,
        priority=reminder.priority,
        category=reminder.category,
        tags=list(reminder.tags),
        attachments=list(reminder.attachments),
    )
