from datetime import datetime, timezone
import pytest

from orderflow.utils.working_hours import WorkingCalendar, as_utc

UTC = timezone.utc


def test_fifty_six_hours_from_monday_morning():
    start = datetime(2026, 1, 5, 10, 0, tzinfo=UTC)  # Monday
    assert WorkingCalendar().add_working_hours(start, 56) == datetime(2026, 1, 14, 10, 0, tzinfo=UTC)


def test_weekend_start_rolls_to_monday_opening():
    start = datetime(2026, 1, 10, 13, 0, tzinfo=UTC)  # Saturday
    assert WorkingCalendar().add_working_hours(start, 2) == datetime(2026, 1, 12, 11, 0, tzinfo=UTC)


def test_friday_afternoon_spills_over_weekend():
    start = datetime(2026, 1, 9, 16, 0, tzinfo=UTC)
    assert WorkingCalendar().add_working_hours(start, 2) == datetime(2026, 1, 12, 10, 0, tzinfo=UTC)


def test_before_opening_starts_at_opening():
    start = datetime(2026, 1, 6, 6, 30, tzinfo=UTC)
    assert WorkingCalendar().add_working_hours(start, 1) == datetime(2026, 1, 6, 10, 0, tzinfo=UTC)


def test_after_closing_starts_next_day():
    start = datetime(2026, 1, 6, 18, 0, tzinfo=UTC)
    assert WorkingCalendar().add_working_hours(start, 8) == datetime(2026, 1, 7, 17, 0, tzinfo=UTC)


def test_zero_hours_inside_window_is_identity():
    start = datetime(2026, 1, 6, 12, 15, tzinfo=UTC)
    assert WorkingCalendar().add_working_hours(start, 0) == start


def test_negative_hours_rejected():
    with pytest.raises(ValueError):
        WorkingCalendar().add_working_hours(datetime(2026, 1, 6, tzinfo=UTC), -1)


def test_local_timezone_window():
    cal = WorkingCalendar(tz='Asia/Dubai')  # UTC+4, no DST
    start = datetime(2026, 1, 5, 5, 0, tzinfo=UTC)  # 09:00 local Monday
    assert cal.add_working_hours(start, 8) == datetime(2026, 1, 5, 13, 0, tzinfo=UTC)


def test_custom_weekend():
    cal = WorkingCalendar(weekend_days=(4, 5))  # Friday + Saturday
    start = datetime(2026, 1, 8, 16, 0, tzinfo=UTC)  # Thursday
    assert cal.add_working_hours(start, 2) == datetime(2026, 1, 11, 10, 0, tzinfo=UTC)


def test_working_hours_between_counts_only_window():
    cal = WorkingCalendar()
    start = datetime(2026, 1, 9, 16, 0, tzinfo=UTC)
    end = datetime(2026, 1, 12, 10, 0, tzinfo=UTC)
    assert cal.working_hours_between(start, end) == pytest.approx(2.0)
    assert cal.working_hours_between(end, start) == 0.0


def test_as_utc_treats_naive_as_utc():
    assert as_utc(datetime(2026, 1, 1, 12)).tzinfo == UTC
