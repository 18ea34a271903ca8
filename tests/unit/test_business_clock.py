"""Unit tests for business-hours arithmetic."""

import pytest
from datetime import date, datetime, timedelta, timezone

from casewatch.services.business_clock import (
    BusinessCalendar,
    BusinessWindow,
    add_business_minutes,
    elapsed_minutes,
    is_business_time,
    parse_business_hours,
    parse_hhmm,
    raw_minutes,
)


WEEKDAYS_9_TO_5 = {
    "monday": {"start": "09:00", "end": "17:00"},
    "tuesday": {"start": "09:00", "end": "17:00"},
    "wednesday": {"start": "09:00", "end": "17:00"},
    "thursday": {"start": "09:00", "end": "17:00"},
    "friday": {"start": "09:00", "end": "17:00"},
    "saturday": None,
    "sunday": None,
}


def office_calendar(**overrides):
    values = {
        "weekly_hours": parse_business_hours(WEEKDAYS_9_TO_5),
        "use_business_hours": True,
        "exclude_weekends": True,
        "exclude_holidays": True,
        "holidays": frozenset(),
        "timezone": "UTC",
    }
    values.update(overrides)
    return BusinessCalendar(**values)


@pytest.mark.unit
class TestElapsedMinutes:
    """Business minutes between two instants."""

    def test_friday_afternoon_to_monday_morning(self):
        """Weekend contributes nothing: Fri 16:00 → Mon 10:00 is two business hours."""
        start = datetime(2024, 3, 8, 16, 0)
        end = datetime(2024, 3, 11, 10, 0)

        assert elapsed_minutes(start, end, office_calendar()) == 120

    def test_inside_one_window(self):
        start = datetime(2024, 3, 4, 10, 0)
        end = datetime(2024, 3, 4, 11, 30)

        assert elapsed_minutes(start, end, office_calendar()) == 90

    def test_interval_wider_than_window_is_clipped(self):
        start = datetime(2024, 3, 4, 7, 0)
        end = datetime(2024, 3, 4, 19, 0)

        assert elapsed_minutes(start, end, office_calendar()) == 480

    def test_end_before_start_is_zero(self):
        start = datetime(2024, 3, 4, 12, 0)

        assert elapsed_minutes(start, start - timedelta(hours=1), office_calendar()) == 0
        assert elapsed_minutes(start, start, office_calendar()) == 0

    def test_weekend_only_interval_is_zero(self):
        start = datetime(2024, 3, 9, 8, 0)
        end = datetime(2024, 3, 10, 20, 0)

        assert elapsed_minutes(start, end, office_calendar()) == 0

    def test_holiday_is_excluded(self):
        calendar = office_calendar(holidays=frozenset({date(2024, 3, 11)}))
        start = datetime(2024, 3, 8, 16, 0)
        end = datetime(2024, 3, 12, 10, 0)

        assert elapsed_minutes(start, end, calendar) == 120

    def test_holiday_counted_when_exclusion_disabled(self):
        calendar = office_calendar(holidays=frozenset({date(2024, 3, 11)}), exclude_holidays=False)
        start = datetime(2024, 3, 8, 16, 0)
        end = datetime(2024, 3, 12, 10, 0)

        assert elapsed_minutes(start, end, calendar) == 60 + 480 + 60

    def test_weekend_window_respects_exclusion_toggle(self):
        hours = dict(WEEKDAYS_9_TO_5, saturday={"start": "10:00", "end": "14:00"})
        start = datetime(2024, 3, 9, 9, 0)
        end = datetime(2024, 3, 9, 15, 0)

        excluded = office_calendar(weekly_hours=parse_business_hours(hours))
        included = office_calendar(weekly_hours=parse_business_hours(hours), exclude_weekends=False)

        assert elapsed_minutes(start, end, excluded) == 0
        assert elapsed_minutes(start, end, included) == 240

    def test_always_open_counts_wall_clock_minutes(self):
        start = datetime(2024, 3, 9, 8, 0)
        end = start + timedelta(hours=2, minutes=30, seconds=59)

        assert elapsed_minutes(start, end, BusinessCalendar.always_open()) == 150

    def test_seconds_are_floored_once_across_midnight(self):
        """30s before midnight plus 45s after is one minute, not zero."""
        all_day = {name: {"start": "00:00", "end": "24:00"} for name in WEEKDAYS_9_TO_5}
        calendar = office_calendar(weekly_hours=parse_business_hours(all_day), exclude_weekends=False)
        start = datetime(2024, 3, 4, 23, 59, 30)
        end = datetime(2024, 3, 5, 0, 0, 45)

        assert elapsed_minutes(start, end, calendar) == 1

    def test_open_day_into_closed_day_across_midnight(self):
        """A window running to 24:00 counts up to midnight; the closed day after adds nothing."""
        late_shift = dict(WEEKDAYS_9_TO_5, thursday={"start": "18:00", "end": "24:00"}, friday=None)
        calendar = office_calendar(weekly_hours=parse_business_hours(late_shift))
        start = datetime(2024, 3, 7, 22, 30)

        assert elapsed_minutes(start, datetime(2024, 3, 8, 3, 0), calendar) == 90
        assert elapsed_minutes(start, datetime(2024, 3, 8, 23, 59), calendar) == 90
        assert elapsed_minutes(start, datetime(2024, 3, 11, 10, 0), calendar) == 150

    def test_partial_minutes_floor(self):
        start = datetime(2024, 3, 4, 9, 0, 30)
        end = datetime(2024, 3, 4, 9, 2, 10)

        assert elapsed_minutes(start, end, office_calendar()) == 1

    def test_calendar_timezone_is_honoured(self):
        """08:00-10:00 in New York overlaps one business hour."""
        calendar = office_calendar(timezone="America/New_York")
        start = datetime(2024, 3, 4, 13, 0)  # 08:00 EST
        end = datetime(2024, 3, 4, 15, 0)    # 10:00 EST

        assert elapsed_minutes(start, end, calendar) == 60

    def test_aware_and_naive_inputs_agree(self):
        naive_start = datetime(2024, 3, 8, 16, 0)
        aware_end = datetime(2024, 3, 11, 10, 0, tzinfo=timezone.utc)

        assert elapsed_minutes(naive_start, aware_end, office_calendar()) == 120

    def test_raw_minutes_never_negative(self):
        start = datetime(2024, 3, 4, 9, 0)

        assert raw_minutes(start, start - timedelta(minutes=5)) == 0


@pytest.mark.unit
class TestAddBusinessMinutes:
    """Deadline computation."""

    def test_deadline_skips_weekend(self):
        start = datetime(2024, 3, 8, 16, 0)

        assert add_business_minutes(start, 120, office_calendar()) == datetime(2024, 3, 11, 10, 0)

    def test_deadline_from_before_opening(self):
        start = datetime(2024, 3, 4, 6, 0)

        assert add_business_minutes(start, 30, office_calendar()) == datetime(2024, 3, 4, 9, 30)

    def test_deadline_on_always_open_calendar(self):
        start = datetime(2024, 3, 9, 8, 0)

        assert add_business_minutes(start, 90, BusinessCalendar.always_open()) == datetime(2024, 3, 9, 9, 30)

    def test_calendar_without_open_time(self):
        calendar = office_calendar(weekly_hours={})

        assert add_business_minutes(datetime(2024, 3, 4, 9, 0), 10, calendar) is None

    def test_zero_minutes_returns_start(self):
        start = datetime(2024, 3, 9, 8, 0)

        assert add_business_minutes(start, 0, office_calendar()) == start

    def test_deadline_is_consistent_with_elapsed(self):
        calendar = office_calendar()
        start = datetime(2024, 3, 7, 15, 17)
        deadline = add_business_minutes(start, 700, calendar)

        assert elapsed_minutes(start, deadline, calendar) == 700


@pytest.mark.unit
class TestCalendarParsing:
    """Weekly template parsing."""

    def test_parse_hhmm(self):
        assert parse_hhmm("09:30") == 570
        assert parse_hhmm("24:00") == 1440

    @pytest.mark.parametrize("value", ["25:00", "9", "09:60", "24:01", "ab:cd"])
    def test_parse_hhmm_rejects_bad_values(self, value):
        with pytest.raises(ValueError):
            parse_hhmm(value)

    def test_null_day_is_closed(self):
        weekly = parse_business_hours(WEEKDAYS_9_TO_5)

        assert weekly[0] == BusinessWindow(540, 1020)
        assert weekly[5] is None

    def test_unknown_weekday(self):
        with pytest.raises(ValueError, match="Unknown weekday"):
            parse_business_hours({"funday": {"start": "09:00", "end": "17:00"}})

    def test_window_must_open_before_close(self):
        with pytest.raises(ValueError):
            parse_business_hours({"monday": {"start": "17:00", "end": "09:00"}})

    def test_is_business_time(self):
        calendar = office_calendar()

        assert is_business_time(datetime(2024, 3, 4, 9, 0), calendar)
        assert not is_business_time(datetime(2024, 3, 4, 17, 0), calendar)
        assert not is_business_time(datetime(2024, 3, 9, 12, 0), calendar)
        assert is_business_time(datetime(2024, 3, 9, 12, 0), BusinessCalendar.always_open())
