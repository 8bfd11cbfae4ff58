from __future__ import annotations

import logging
from collections import defaultdict
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from .days import last_local_days, local_midnight_utc, local_today, local_week_start, split_interval_by_local_day, utc_now
from .db import Database
from .models import BonusGrant, Item, UsageSegment, UsageSnapshot, UsageSummaryRow


class UsageLedger:
    """Authoritative usage accounting on top of the append-only segment table."""

    def __init__(self, db: Database, tz: ZoneInfo, logger: logging.Logger | None = None) -> None:
        self.db = db
        self.tz = tz
        self.logger = logger or logging.getLogger(__name__)

    def snapshot(self, item: Item, now_utc: datetime | None = None) -> UsageSnapshot:
        now = now_utc or utc_now()
        today = local_today(now, self.tz)
        week_start = local_week_start(now, self.tz)

        per_day = self._seconds_per_day(self.db.limit_group_item_ids(item), week_start, today)
        week_total = sum(per_day.values())

        return UsageSnapshot(
            today_seconds=per_day.get(today.isoformat(), 0),
            week_seconds=week_total,
            daily_limit_minutes=item.daily_limit_minutes,
            weekly_limit_minutes=item.weekly_limit_minutes,
            max_daily_minutes=item.max_daily_minutes,
            bonus_minutes_today=self.bonus_minutes_today(item.profile_id, now),
        )

    def record_segment(
        self,
        item: Item,
        started_at_utc: datetime,
        ended_at_utc: datetime,
        duration_seconds: int,
    ) -> bool:
        if duration_seconds < 1:
            self.logger.debug("Discarding sub-second segment item=%s", item.id)
            return False

        inserted = self.db.add_usage_segment(item.id, item.profile_id, started_at_utc, ended_at_utc, duration_seconds)
        if not inserted:
            self.logger.debug("Ignoring duplicate segment item=%s started=%s", item.id, started_at_utc.isoformat())
        return inserted

    def grant_bonus(self, profile_id: int, minutes: int, now_utc: datetime | None = None) -> BonusGrant:
        grant = self.db.add_bonus_grant(profile_id, minutes, now_utc or utc_now())
        self.logger.info("Bonus granted: profile=%s minutes=%s", profile_id, minutes)
        return grant

    def bonus_minutes_today(self, profile_id: int, now_utc: datetime | None = None) -> int:
        now = now_utc or utc_now()
        today = local_today(now, self.tz)
        return self.db.sum_bonus_minutes(
            profile_id,
            local_midnight_utc(today, self.tz),
            local_midnight_utc(today + timedelta(days=1), self.tz),
        )

    def usage_summary(self, profile_id: int, now_utc: datetime | None = None, days: int = 7) -> list[UsageSummaryRow]:
        """Seconds per item for each of the last ``days`` local days, oldest first."""
        now = now_utc or utc_now()
        day_keys = last_local_days(now, self.tz, days)
        first_day = datetime.fromisoformat(day_keys[0]).date()

        rows: list[UsageSummaryRow] = []
        for item in self.db.list_items(profile_id):
            per_day = self._seconds_per_day([item.id], first_day, local_today(now, self.tz))
            rows.append(
                UsageSummaryRow(
                    item_id=item.id,
                    name=item.name,
                    daily=[(day, per_day.get(day, 0)) for day in day_keys],
                )
            )
        return rows

    def totals_for_day(self, profile_id: int, day_local: str) -> dict[int, int]:
        day_value = datetime.fromisoformat(day_local).date()
        totals: dict[int, int] = {}
        for item in self.db.list_items(profile_id):
            seconds = self._seconds_per_day([item.id], day_value, day_value).get(day_local, 0)
            if seconds > 0:
                totals[item.id] = seconds
        return totals

    def _seconds_per_day(self, item_ids: list[int], first_day: date, last_day: date) -> dict[str, int]:
        # Segments that started the evening before can still reach into first_day.
        since = local_midnight_utc(first_day - timedelta(days=1), self.tz)
        totals: dict[str, int] = defaultdict(int)

        for segment in self.db.list_segments_since(item_ids, since):
            for day_key, seconds in _segment_pieces(segment, self.tz):
                if day_key < first_day.isoformat() or day_key > last_day.isoformat():
                    continue
                totals[day_key] += seconds

        return dict(totals)


def _segment_pieces(segment: UsageSegment, tz: ZoneInfo) -> list[tuple[str, int]]:
    # The recorded duration is authoritative; anchor it at started_at to find the local days.
    end = segment.started_at + timedelta(seconds=segment.duration_seconds)
    pieces = split_interval_by_local_day(segment.started_at, end, tz)
    if len(pieces) < 2:
        return [(pieces[0][0], segment.duration_seconds)] if pieces else []

    # Truncating a fractional start would drop a second; the last day absorbs it.
    earlier = sum(seconds for _, seconds in pieces[:-1])
    return pieces[:-1] + [(pieces[-1][0], segment.duration_seconds - earlier)]
