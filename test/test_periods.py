from datetime import date, datetime, timedelta, timezone

import pytest

from stockroom.domain.errors import ValidationError
from stockroom.domain.models import Period
from stockroom.services.periods import forward_window, lookback_window, parse_datetime, shift_months, to_iso


def test_parse_accepts_dates_datetimes_and_iso_strings():
    assert parse_datetime(date(2024, 1, 2)) == datetime(2024, 1, 2)
    assert parse_datetime("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5)
    assert parse_datetime("2024-01-02 03:04:05+02:00") == datetime(2024, 1, 2, 1, 4, 5)
    aware = datetime(2024, 1, 2, 3, tzinfo=timezone(timedelta(hours=-3)))
    assert parse_datetime(aware) == datetime(2024, 1, 2, 6)


@pytest.mark.parametrize("value", [None, "", "02/01/2024", 1704153600, "2024-13-01"])
def test_parse_rejects_garbage(value):
    with pytest.raises(ValidationError):
        parse_datetime(value, "start")


def test_shift_months_clamps_day():
    assert shift_months(datetime(2024, 3, 31), -1) == datetime(2024, 2, 29)
    assert shift_months(datetime(2023, 3, 31), -1) == datetime(2023, 2, 28)
    assert shift_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert shift_months(datetime(2024, 1, 15), -1) == datetime(2023, 12, 15)
    assert shift_months(datetime(2024, 2, 29), -12) == datetime(2023, 2, 28)


@pytest.mark.parametrize(
    "period, start",
    [
        (Period.DAILY, datetime(2024, 1, 9, 12)),
        (Period.WEEKLY, datetime(2024, 1, 3, 12)),
        (Period.MONTHLY, datetime(2023, 12, 10, 12)),
        (Period.YEARLY, datetime(2023, 1, 10, 12)),
    ],
)
def test_lookback_window(period, start):
    now = datetime(2024, 1, 10, 12)
    assert lookback_window(period, now) == (start, now)


def test_forward_window_is_one_period_long():
    assert forward_window(datetime(2024, 1, 31), Period.MONTHLY) == (datetime(2024, 1, 31), datetime(2024, 2, 29))
    assert forward_window(datetime(2024, 1, 1), Period.WEEKLY)[1] == datetime(2024, 1, 8)


def test_to_iso_drops_microseconds_and_timezone():
    dt = datetime(2024, 1, 2, 3, 4, 5, 999, tzinfo=timezone.utc)
    assert to_iso(dt) == "2024-01-02 03:04:05"


def test_period_aliases():
    assert Period.parse(" Annual ") is Period.YEARLY
    assert Period.parse("week") is Period.WEEKLY
    with pytest.raises(ValidationError):
        Period.parse("quarterly")
