"""Tests for dealflow/utils/dates.py."""

from datetime import datetime, timedelta, timezone

from dealflow.utils.dates import add_months, utc, whole_days_between


def test_utc_marks_naive_values():
    naive = datetime(2026, 5, 1, 12, 0)
    assert utc(naive).tzinfo == timezone.utc
    assert utc(None) is None
    aware = datetime(2026, 5, 1, tzinfo=timezone.utc)
    assert utc(aware) is aware


def test_add_months_clamps_to_month_end():
    assert add_months(datetime(2026, 8, 31), 6) == datetime(2027, 2, 28)
    assert add_months(datetime(2027, 8, 31), 6) == datetime(2028, 2, 29)
    assert add_months(datetime(2026, 11, 15), 2) == datetime(2027, 1, 15)


def test_whole_days_floors():
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert whole_days_between(start, start + timedelta(days=2, hours=23)) == 2
    assert whole_days_between(start, start - timedelta(hours=1)) == -1
    # naive and aware mix cleanly
    assert whole_days_between(datetime(2026, 1, 1), start + timedelta(days=3)) == 3
