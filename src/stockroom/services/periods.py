from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone

from stockroom.domain.errors import ValidationError
from stockroom.domain.models import Period


def utc_now() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def to_iso(dt: datetime) -> str:
    return normalize(dt).replace(microsecond=0).isoformat(sep=" ")


def parse_datetime(value: object, field: str = "date") -> datetime:
    if isinstance(value, datetime):
        return normalize(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return normalize(datetime.fromisoformat(raw))
        except ValueError:
            pass
    raise ValidationError(f"Invalid {field}: {value!r}")


def shift_months(dt: datetime, months: int) -> datetime:
    total = dt.year * 12 + (dt.month - 1) + months
    year, month = divmod(total, 12)
    month += 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def shift(dt: datetime, period: Period, count: int = 1) -> datetime:
    if period is Period.DAILY:
        return dt + timedelta(days=count)
    if period is Period.WEEKLY:
        return dt + timedelta(days=7 * count)
    if period is Period.MONTHLY:
        return shift_months(dt, count)
    return shift_months(dt, 12 * count)


def lookback_window(period: Period, now: datetime) -> tuple[datetime, datetime]:
    """Window ending at ``now`` and reaching one period back by date arithmetic."""
    now = normalize(now)
    return shift(now, period, -1), now


def forward_window(start: datetime, period: Period) -> tuple[datetime, datetime]:
    start = normalize(start)
    return start, shift(start, period, 1)
