from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from screentime.days import last_local_days, local_week_start, parse_iso_utc, split_interval_by_local_day


def test_split_interval_crosses_local_midnight() -> None:
    tz = ZoneInfo("America/New_York")

    start_local = datetime(2026, 1, 1, 23, 50, tzinfo=tz)
    end_local = datetime(2026, 1, 2, 0, 10, tzinfo=tz)

    segments = split_interval_by_local_day(
        start_local.astimezone(timezone.utc),
        end_local.astimezone(timezone.utc),
        tz,
    )

    assert segments == [("2026-01-01", 600), ("2026-01-02", 600)]


def test_split_interval_empty_when_reversed() -> None:
    start = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    assert split_interval_by_local_day(start, start, ZoneInfo("UTC")) == []


def test_split_interval_requires_aware_datetimes() -> None:
    with pytest.raises(ValueError):
        split_interval_by_local_day(datetime(2026, 1, 1), datetime(2026, 1, 2), ZoneInfo("UTC"))


def test_parse_iso_utc_accepts_zulu_and_naive() -> None:
    expected = datetime(2026, 2, 1, 10, 0, tzinfo=timezone.utc)

    assert parse_iso_utc("2026-02-01T10:00:00Z") == expected
    assert parse_iso_utc("2026-02-01T10:00:00") == expected
    assert parse_iso_utc("2026-02-01T11:00:00+01:00") == expected
    assert parse_iso_utc(None) is None


def test_week_starts_monday_in_local_time() -> None:
    tz = ZoneInfo("America/New_York")
    # Monday 02:00 UTC is still Sunday evening in New York.
    now = datetime(2026, 2, 2, 2, 0, tzinfo=timezone.utc)

    assert local_week_start(now, tz) == date(2026, 1, 26)
    assert local_week_start(now, ZoneInfo("UTC")) == date(2026, 2, 2)


def test_last_local_days_oldest_first() -> None:
    now = datetime(2026, 2, 3, 12, 0, tzinfo=timezone.utc)

    assert last_local_days(now, ZoneInfo("UTC"), 3) == ["2026-02-01", "2026-02-02", "2026-02-03"]
