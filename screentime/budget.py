from __future__ import annotations

from .models import UsageSnapshot

# Remaining time is represented as ``None`` when no limit is configured.
UNLIMITED = None


def limit_candidates(snapshot: UsageSnapshot) -> list[int]:
    """Build one candidate per configured limit, in seconds."""
    candidates: list[int] = []
    bonus_seconds = snapshot.bonus_minutes_today * 60

    if snapshot.daily_limit_minutes is not None:
        candidates.append(snapshot.daily_limit_minutes * 60 + bonus_seconds - snapshot.today_seconds)

    # Weekly ceiling never includes bonus time.
    if snapshot.weekly_limit_minutes is not None:
        candidates.append(snapshot.weekly_limit_minutes * 60 - snapshot.week_seconds)

    # Hard cap ignores bonus time entirely.
    if snapshot.max_daily_minutes > 0:
        candidates.append(snapshot.max_daily_minutes * 60 - snapshot.today_seconds)

    return candidates


def remaining_seconds(snapshot: UsageSnapshot) -> int | None:
    """Return the most restrictive remaining time, or ``UNLIMITED`` (None)."""
    candidates = limit_candidates(snapshot)
    if not candidates:
        return UNLIMITED
    return max(0, min(candidates))


def is_exhausted(remaining: int | None) -> bool:
    return remaining is not None and remaining <= 0


def format_seconds(total_seconds: int | None) -> str:
    """Render a duration as HH:MM:SS, or a dash for unlimited."""
    if total_seconds is None:
        return "--:--:--"
    safe_seconds = max(0, int(total_seconds))
    hours, remainder = divmod(safe_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02}:{minutes:02}:{seconds:02}"
