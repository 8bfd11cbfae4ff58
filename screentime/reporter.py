from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo

import aiohttp
import discord
from discord.ext import tasks

from .budget import format_seconds
from .days import utc_now
from .db import Database
from .ledger import UsageLedger
from .models import Message, ReportRow

DIGEST_META_KEY = "last_usage_digest_day"


class ReportChannelLike(Protocol):
    async def send(self, content: str, **kwargs): ...


def open_webhook_channel(url: str, session: aiohttp.ClientSession) -> discord.Webhook:
    """Parent-facing notification channel backed by a Discord webhook."""
    return discord.Webhook.from_url(url, session=session)


class Reporter:
    def __init__(self, ledger: UsageLedger, db: Database) -> None:
        self.ledger = ledger
        self.db = db

    def build_rows_for_day(self, profile_id: int, day_local: str) -> list[ReportRow]:
        totals = self.ledger.totals_for_day(profile_id, day_local)
        names = {item.id: item.name for item in self.db.list_items(profile_id)}

        rows = [
            ReportRow(item_id=item_id, name=names.get(item_id, f"Item {item_id}"), seconds=seconds)
            for item_id, seconds in totals.items()
            if seconds > 0
        ]
        rows.sort(key=lambda row: (-row.seconds, row.name.lower()))
        return rows

    def build_report_content(self, day_local: str, profile_id: int, rows: list[ReportRow]) -> str:
        header = f"**Screen time - {day_local}**"
        profile_line = f"Profile: {profile_id}"

        if not rows:
            return f"{header}\n{profile_line}\nNo tracked usage for {day_local}."

        lines = [f"- {row.name}: `{format_seconds(row.seconds)}`" for row in rows]
        total = sum(row.seconds for row in rows)
        lines.append(f"Total: `{format_seconds(total)}`")
        return f"{header}\n{profile_line}\n" + "\n".join(lines)


class Notifier:
    """Forwards parent-facing events to a report channel; failures never reach the caller."""

    def __init__(self, channel: ReportChannelLike, logger: logging.Logger | None = None) -> None:
        self.channel = channel
        self.logger = logger or logging.getLogger(__name__)

    async def _send(self, content: str) -> bool:
        try:
            # Never ping anyone from automated posts.
            await self.channel.send(content, allowed_mentions=discord.AllowedMentions.none())
        except (discord.HTTPException, aiohttp.ClientError) as exc:
            self.logger.warning("Notification delivery failed: %s", exc)
            return False
        return True

    async def notify_message(self, message: Message) -> bool:
        sender = "Parent" if message.sender_type == "parent" else f"Profile {message.sender_profile_id}"
        return await self._send(f"New message from {sender}: {message.content}")

    async def post_daily_digest(self, reporter: Reporter, day_local: str) -> int:
        posted = 0
        for profile_id in reporter.db.list_profile_ids():
            rows = reporter.build_rows_for_day(profile_id, day_local)
            if await self._send(reporter.build_report_content(day_local, profile_id, rows)):
                posted += 1
        return posted


class DigestScheduler:
    """Posts yesterday's usage digest once, during the first minute after local midnight."""

    def __init__(
        self,
        db: Database,
        reporter: Reporter,
        notifier: Notifier,
        tz: ZoneInfo,
        logger: logging.Logger | None = None,
    ) -> None:
        self.db = db
        self.reporter = reporter
        self.notifier = notifier
        self.tz = tz
        self.logger = logger or logging.getLogger(__name__)

    @tasks.loop(seconds=30)
    async def midnight_digest_loop(self) -> None:
        await self.run_once(utc_now())

    async def run_once(self, now_utc: datetime) -> bool:
        now_local = now_utc.astimezone(self.tz)

        # The loop runs every 30s; only act during the 00:00 local minute.
        if now_local.hour != 0 or now_local.minute != 0:
            return False

        target_day = (now_local.date() - timedelta(days=1)).isoformat()
        # Guard against duplicate posts during the same 00:00 minute window.
        if self.db.get_meta(DIGEST_META_KEY) == target_day:
            return False

        self.logger.info("Posting usage digest for %s", target_day)
        await self.notifier.post_daily_digest(self.reporter, target_day)
        self.db.set_meta(DIGEST_META_KEY, target_day)
        return True
