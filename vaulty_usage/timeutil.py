"""Local-time helpers for epoch-millisecond timestamps.

Dates are local calendar dates formatted ``YYYY-MM-DD`` and hours are local
clock hours. Passing ``tz=None`` means the system time zone.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone, tzinfo

HOUR_MS = 3_600_000
DAY_MS = 86_400_000


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_local(ts_ms: int, tz: tzinfo | None = None) -> datetime:
    """Convert epoch milliseconds to a local datetime (naive when tz is None)."""
    return datetime.fromtimestamp(ts_ms / 1000, tz=tz)


def _to_ms(dt: datetime) -> int:
    return int(round(dt.timestamp() * 1000))


def local_date(ts_ms: int, tz: tzinfo | None = None) -> str:
    return to_local(ts_ms, tz).strftime("%Y-%m-%d")


def local_hour(ts_ms: int, tz: tzinfo | None = None) -> int:
    return to_local(ts_ms, tz).hour


def hour_floor(ts_ms: int, tz: tzinfo | None = None) -> int:
    """Start of the local clock hour containing ``ts_ms``."""
    local = to_local(ts_ms, tz).replace(minute=0, second=0, microsecond=0)
    return _to_ms(local)


def parse_date(value: str) -> date:
    """Parse a ``YYYY-MM-DD`` string.

    Raises:
        ValueError: If the string is not a valid date.
    """
    return datetime.strptime(value, "%Y-%m-%d").date()


def day_bounds(day: str, tz: tzinfo | None = None) -> tuple[int, int]:
    """Return (start, end) epoch milliseconds of a local day, end exclusive."""
    parsed = parse_date(day)
    start = datetime.combine(parsed, time(), tzinfo=tz)
    end = datetime.combine(parsed + timedelta(days=1), time(), tzinfo=tz)
    return _to_ms(start), _to_ms(end)


def shift_date(day: str, days: int) -> str:
    return (parse_date(day) + timedelta(days=days)).strftime("%Y-%m-%d")
