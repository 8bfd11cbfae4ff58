from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Normalize a timezone-aware datetime to UTC for storage."""
    if value.tzinfo is None:
        raise ValueError("Datetime must be timezone-aware")
    return value.astimezone(timezone.utc)


def parse_iso_utc(value: str | None) -> datetime | None:
    """Parse an ISO timestamp and normalize to UTC."""
    if not value:
        return None

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        # Treat naive values as UTC.
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def split_interval_by_local_day(
    start_utc: datetime,
    end_utc: datetime,
    tz: ZoneInfo,
) -> list[tuple[str, int]]:
    if start_utc.tzinfo is None or end_utc.tzinfo is None:
        raise ValueError("start_utc and end_utc must be timezone-aware")

    start = start_utc.astimezone(timezone.utc)
    end = end_utc.astimezone(timezone.utc)

    if end <= start:
        return []

    pieces: list[tuple[str, int]] = []
    cursor = start

    while cursor < end:
        local_day = cursor.astimezone(tz).date()
        next_midnight_utc = local_midnight_utc(local_day + timedelta(days=1), tz)

        chunk_end = min(end, next_midnight_utc)
        chunk_seconds = int((chunk_end - cursor).total_seconds())

        if chunk_seconds > 0:
            pieces.append((local_day.isoformat(), chunk_seconds))

        cursor = chunk_end

    return pieces


def local_midnight_utc(day_value: date, tz: ZoneInfo) -> datetime:
    midnight_local = datetime.combine(day_value, time.min, tzinfo=tz)
    return midnight_local.astimezone(timezone.utc)


def local_today(now_utc: datetime, tz: ZoneInfo) -> date:
    return now_utc.astimezone(tz).date()


def local_week_start(now_utc: datetime, tz: ZoneInfo) -> date:
    """Monday of the local week containing ``now_utc``."""
    today = local_today(now_utc, tz)
    return today - timedelta(days=today.weekday())


def last_local_days(now_utc: datetime, tz: ZoneInfo, count: int) -> list[str]:
    today = local_today(now_utc, tz)
    return [(today - timedelta(days=offset)).isoformat() for offset in range(count - 1, -1, -1)]
