# ==== BUSINESS CLOCK ==== #

"""
Business-hours arithmetic for SLA measurement.

Pure functions that count the minutes of an interval falling inside a weekly
business-hours template, with optional weekend and holiday exclusion. The
current time is always passed in by the caller.

Naive datetimes are treated as UTC. The day walk happens in the calendar's
own timezone so that "09:00" means nine in the morning where the branch is.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional
from zoneinfo import ZoneInfo


WEEKDAY_NAMES = (
    "monday",
    "tuesday",
    "wednesday",
    "thursday",
    "friday",
    "saturday",
    "sunday",
)

MINUTES_PER_DAY = 24 * 60

# Deadline search gives up after this many calendar days
MAX_DEADLINE_SEARCH_DAYS = 3660


# ==== CALENDAR TYPES ==== #


@dataclass(frozen=True)
class BusinessWindow:
    """Open interval of one weekday, in minutes since local midnight."""

    open_minute: int
    close_minute: int

    def __post_init__(self) -> None:
        if not 0 <= self.open_minute < self.close_minute <= MINUTES_PER_DAY:
            raise ValueError(
                f"Invalid business window {self.open_minute}-{self.close_minute}"
            )

    @classmethod
    def from_strings(cls, start: str, end: str) -> "BusinessWindow":
        return cls(parse_hhmm(start), parse_hhmm(end))


@dataclass(frozen=True)
class BusinessCalendar:
    """
    Weekly business-hours template plus exclusion toggles.

    ``weekly_hours`` maps ``date.weekday()`` (Monday is 0) to a window, a
    missing or None entry means the day is closed.
    """

    weekly_hours: Mapping[int, Optional[BusinessWindow]] = field(default_factory=dict)
    use_business_hours: bool = True
    exclude_weekends: bool = True
    exclude_holidays: bool = True
    holidays: FrozenSet[date] = frozenset()
    timezone: str = "UTC"

    @classmethod
    def always_open(cls) -> "BusinessCalendar":
        """24/7 calendar: elapsed time is plain wall-clock time."""
        return cls(use_business_hours=False)

    def window_for(self, day: date) -> Optional[BusinessWindow]:
        if self.exclude_weekends and day.weekday() >= 5:
            return None
        if self.exclude_holidays and day in self.holidays:
            return None
        return self.weekly_hours.get(day.weekday())

    def has_open_time(self) -> bool:
        return any(
            window is not None and not (self.exclude_weekends and weekday >= 5)
            for weekday, window in self.weekly_hours.items()
        )


# ==== PARSING ==== #


def parse_hhmm(value: str) -> int:
    """
    Parse ``HH:MM`` into minutes since midnight. ``24:00`` is end of day.

    Raises:
        ValueError: On malformed input or out of range values
    """
    try:
        hours_str, minutes_str = str(value).strip().split(":")
        hours, minutes = int(hours_str), int(minutes_str)
    except ValueError:
        raise ValueError(f"Invalid time {value!r}, expected HH:MM") from None

    if not (0 <= minutes < 60) or not (0 <= hours <= 24) or (hours == 24 and minutes):
        raise ValueError(f"Invalid time {value!r}, expected HH:MM")
    return hours * 60 + minutes


def parse_business_hours(
    mapping: Optional[Mapping[str, Any]],
) -> Dict[int, Optional[BusinessWindow]]:
    """
    Build a weekly template from ``{"monday": {"start": "09:00", "end": "17:00"}, ...}``.

    Days that are absent or null are closed.

    Raises:
        ValueError: On unknown weekday names or malformed windows
    """
    weekly: Dict[int, Optional[BusinessWindow]] = {}
    for name, window in (mapping or {}).items():
        key = str(name).strip().lower()
        if key not in WEEKDAY_NAMES:
            raise ValueError(f"Unknown weekday {name!r}")

        if window is None:
            weekly[WEEKDAY_NAMES.index(key)] = None
            continue

        if not isinstance(window, Mapping) or "start" not in window or "end" not in window:
            raise ValueError(f"Business hours for {key} need 'start' and 'end'")
        weekly[WEEKDAY_NAMES.index(key)] = BusinessWindow.from_strings(
            window["start"], window["end"]
        )
    return weekly


# ==== TIME CONVERSION ==== #


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_local(value: datetime, tz_name: str) -> datetime:
    """Wall-clock time in ``tz_name`` as a naive datetime."""
    return _to_utc(value).astimezone(ZoneInfo(tz_name)).replace(tzinfo=None)


def _from_local(local: datetime, tz_name: str, aware: bool) -> datetime:
    utc = local.replace(tzinfo=ZoneInfo(tz_name)).astimezone(timezone.utc)
    return utc if aware else utc.replace(tzinfo=None)


def _iter_days(first: date, last: date) -> Iterable[date]:
    day = first
    while day <= last:
        yield day
        day += timedelta(days=1)


def _window_bounds(day: date, window: BusinessWindow) -> tuple[datetime, datetime]:
    midnight = datetime.combine(day, time.min)
    return (
        midnight + timedelta(minutes=window.open_minute),
        midnight + timedelta(minutes=window.close_minute),
    )


# ==== ELAPSED TIME ==== #


def raw_minutes(start: datetime, end: datetime) -> int:
    """Whole wall-clock minutes between two instants, never negative."""
    seconds = (_to_utc(end) - _to_utc(start)).total_seconds()
    return max(int(seconds // 60), 0)


def elapsed_minutes(start: datetime, end: datetime, calendar: BusinessCalendar) -> int:
    """
    Count the minutes of ``[start, end]`` that fall inside business hours.

    Walks the interval day by day in the calendar timezone. Closed weekdays,
    excluded weekends and excluded holidays contribute nothing. Overlaps are
    summed in seconds and floored to whole minutes once, so splitting an
    interval at midnight never loses or double counts time.

    Args:
        start: Beginning of the interval
        end: End of the interval
        calendar: Business calendar to count against

    Returns:
        int: Counted minutes, 0 when ``end`` is not after ``start``
    """
    if not calendar.use_business_hours:
        return raw_minutes(start, end)

    local_start = _to_local(start, calendar.timezone)
    local_end = _to_local(end, calendar.timezone)
    if local_end <= local_start:
        return 0

    counted_seconds = 0.0
    for day in _iter_days(local_start.date(), local_end.date()):
        window = calendar.window_for(day)
        if window is None:
            continue

        window_open, window_close = _window_bounds(day, window)
        overlap_start = max(local_start, window_open)
        overlap_end = min(local_end, window_close)
        if overlap_end > overlap_start:
            counted_seconds += (overlap_end - overlap_start).total_seconds()

    return int(counted_seconds // 60)


def add_business_minutes(
    start: datetime,
    minutes: int,
    calendar: BusinessCalendar,
) -> Optional[datetime]:
    """
    Find the instant at which ``minutes`` business minutes have elapsed.

    The result keeps the timezone style of ``start`` (naive UTC in, naive
    UTC out).

    Returns:
        Optional[datetime]: Deadline, or None when the calendar never opens
    """
    if minutes <= 0:
        return start
    if not calendar.use_business_hours:
        return start + timedelta(minutes=minutes)
    if not calendar.has_open_time():
        return None

    aware = start.tzinfo is not None
    cursor = _to_local(start, calendar.timezone)
    remaining = timedelta(minutes=minutes)

    for offset in range(MAX_DEADLINE_SEARCH_DAYS):
        day = cursor.date() + timedelta(days=offset)
        window = calendar.window_for(day)
        if window is None:
            continue

        window_open, window_close = _window_bounds(day, window)
        available_from = max(cursor, window_open)
        if window_close <= available_from:
            continue

        available = window_close - available_from
        if remaining <= available:
            return _from_local(available_from + remaining, calendar.timezone, aware)
        remaining -= available

    return None


def is_business_time(at: datetime, calendar: BusinessCalendar) -> bool:
    if not calendar.use_business_hours:
        return True

    local = _to_local(at, calendar.timezone)
    window = calendar.window_for(local.date())
    if window is None:
        return False
    minute_of_day = local.hour * 60 + local.minute
    return window.open_minute <= minute_of_day < window.close_minute


def as_naive_utc(value: datetime) -> datetime:
    """Normalise to the naive UTC form used by storage columns."""
    return _to_utc(value).replace(tzinfo=None)
