"""Operating-day arithmetic.

The business day starts at 01:00 local time, not at midnight. A visit logged at
00:40 on the 2nd still belongs to the 1st. Every "today" query goes through
`operating_day_range()` so all readers agree on the same window.

Quota counting is the exception: it uses plain calendar months
(`calendar_month_range()`).
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

CUTOVER_HOUR = 1

DateRange = tuple[datetime, datetime]


def operating_date(now: datetime) -> date:
    """Return the business date `now` belongs to."""
    if now.hour < CUTOVER_HOUR:
        return now.date() - timedelta(days=1)
    return now.date()


def operating_day_range(now: datetime) -> DateRange:
    """Half-open range `[01:00 of operating date, 01:00 of the next date)`."""
    start = datetime.combine(operating_date(now), time(hour=CUTOVER_HOUR))
    return start, start + timedelta(days=1)


def calendar_month_range(now: datetime) -> DateRange:
    """Half-open range covering the calendar month of `now`."""
    start = datetime(now.year, now.month, 1)
    if now.month == 12:
        end = datetime(now.year + 1, 1, 1)
    else:
        end = datetime(now.year, now.month + 1, 1)
    return start, end


def is_within(window: DateRange, ts: datetime) -> bool:
    start, end = window
    return start <= ts < end
