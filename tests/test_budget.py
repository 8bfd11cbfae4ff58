from screentime.budget import UNLIMITED, format_seconds, is_exhausted, remaining_seconds
from screentime.models import UsageSnapshot


def make_snapshot(**overrides) -> UsageSnapshot:
    values = {
        "today_seconds": 0,
        "week_seconds": 0,
        "daily_limit_minutes": None,
        "weekly_limit_minutes": None,
        "max_daily_minutes": 0,
        "bonus_minutes_today": 0,
    }
    values.update(overrides)
    return UsageSnapshot(**values)


def test_daily_limit_with_bonus() -> None:
    snapshot = make_snapshot(today_seconds=1800, week_seconds=5000, daily_limit_minutes=60, bonus_minutes_today=10)

    assert remaining_seconds(snapshot) == 2400


def test_hard_cap_ignores_bonus() -> None:
    snapshot = make_snapshot(today_seconds=3600, daily_limit_minutes=120, max_daily_minutes=60, bonus_minutes_today=30)

    assert remaining_seconds(snapshot) == 0
    assert is_exhausted(0)


def test_weekly_limit_excludes_bonus() -> None:
    snapshot = make_snapshot(week_seconds=7000, weekly_limit_minutes=120, bonus_minutes_today=60)

    assert remaining_seconds(snapshot) == 200


def test_most_restrictive_limit_wins_and_clamps_at_zero() -> None:
    snapshot = make_snapshot(today_seconds=4000, week_seconds=4000, daily_limit_minutes=60, weekly_limit_minutes=600)

    assert remaining_seconds(snapshot) == 0


def test_no_limits_is_unlimited() -> None:
    snapshot = make_snapshot(today_seconds=99999, week_seconds=99999, bonus_minutes_today=5)

    assert remaining_seconds(snapshot) is UNLIMITED
    assert not is_exhausted(UNLIMITED)


def test_format_seconds_hh_mm_ss() -> None:
    assert format_seconds(0) == "00:00:00"
    assert format_seconds(3661) == "01:01:01"
    assert format_seconds(-5) == "00:00:00"
    assert format_seconds(None) == "--:--:--"
