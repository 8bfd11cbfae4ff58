from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Protocol

from discord.ext import tasks

from .budget import format_seconds, is_exhausted, remaining_seconds
from .days import utc_now
from .errors import CredentialRejected, LedgerUnavailable
from .models import UsageSegment, UsageSnapshot
from .surface import ContentSurface


class LedgerLike(Protocol):
    async def get_snapshot(self, item_id: int, profile_id: int | None = None) -> UsageSnapshot: ...

    async def append_segment(self, segment: UsageSegment) -> bool: ...

    def post_segment_nowait(self, segment: UsageSegment) -> object: ...


class SessionState(enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    PAUSED = "paused"


@dataclass(slots=True)
class Session:
    item_id: int
    profile_id: int | None
    started_at: datetime
    live_url: str | None = None
    management_url: str | None = None
    warning_timer: asyncio.TimerHandle | None = None
    enforcement_timer: asyncio.TimerHandle | None = None
    paused: bool = False

    def cancel_timers(self) -> None:
        if self.warning_timer is not None:
            self.warning_timer.cancel()
            self.warning_timer = None
        if self.enforcement_timer is not None:
            self.enforcement_timer.cancel()
            self.enforcement_timer = None


@dataclass(frozen=True, slots=True)
class StartResult:
    started: bool
    remaining_seconds: int | None

    @property
    def exhausted(self) -> bool:
        return not self.started


class SessionTracker:
    """Owns the single usage session of one surface.

    The warning and enforcement deadlines are set once, from the snapshot read
    at start, and fire locally whatever the connectivity. Pausing only stops
    usage accrual; it does not move the deadlines.

    Every state transition happens synchronously before the first await, so a
    heartbeat racing a flush or an enforcement can never record the same span
    twice: whichever runs first detaches the span, the other finds nothing.
    """

    def __init__(
        self,
        ledger: LedgerLike,
        surface: ContentSurface,
        *,
        home_url: str = "/menu",
        heartbeat_seconds: int = 60,
        warning_lead_seconds: int = 60,
        limit_banner_seconds: int = 5,
        clock: Callable[[], datetime] = utc_now,
        on_unauthorized: Callable[[CredentialRejected], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.ledger = ledger
        self.surface = surface
        self.home_url = home_url
        self.heartbeat_seconds = heartbeat_seconds
        self.warning_lead_seconds = warning_lead_seconds
        self.limit_banner_seconds = limit_banner_seconds
        self.clock = clock
        self.on_unauthorized = on_unauthorized
        self.logger = logger or logging.getLogger(__name__)

        self.display_remaining: int | None = None
        self.limit_reached_item: int | None = None

        self._session: Session | None = None
        self._inflight: set[asyncio.Task] = set()
        self._banner_timer: asyncio.TimerHandle | None = None
        self._unsubscribe_navigation: Callable[[], None] | None = None

        self.heartbeat_loop.change_interval(seconds=heartbeat_seconds)

    @property
    def session(self) -> Session | None:
        return self._session

    @property
    def state(self) -> SessionState:
        if self._session is None:
            return SessionState.IDLE
        if self._session.paused:
            return SessionState.PAUSED
        return SessionState.ACTIVE

    def attach(self) -> None:
        """Follow the surface's navigation to pause and resume the session."""
        if self._unsubscribe_navigation is None:
            self._unsubscribe_navigation = self.surface.on_navigated(self._on_navigated)

    async def start(
        self,
        item_id: int,
        *,
        profile_id: int | None = None,
        live_url: str | None = None,
        management_url: str | None = None,
        now: datetime | None = None,
    ) -> StartResult:
        await self.flush()

        # LedgerUnavailable and CredentialRejected propagate: the caller owns the retry prompt.
        snapshot = await self.ledger.get_snapshot(item_id, profile_id)
        remaining = remaining_seconds(snapshot)

        if is_exhausted(remaining):
            self.logger.info("Refusing session: item=%s has no time left", item_id)
            return StartResult(started=False, remaining_seconds=0)

        # Another start may have slipped in while the snapshot was in flight.
        self._record_in_background(self._detach(now))

        session = Session(
            item_id=item_id,
            profile_id=profile_id,
            started_at=now or self.clock(),
            live_url=live_url,
            management_url=management_url,
        )

        if remaining is not None:
            loop = asyncio.get_running_loop()
            if remaining > self.warning_lead_seconds:
                session.warning_timer = loop.call_later(
                    remaining - self.warning_lead_seconds, self._fire_warning, session
                )
            session.enforcement_timer = loop.call_later(remaining, self._fire_enforcement, session)

        self._session = session
        self.display_remaining = remaining
        self.limit_reached_item = None
        _start_loop(self.heartbeat_loop)
        _start_loop(self.tick_loop)

        self.logger.info("Session started: item=%s remaining=%s", item_id, format_seconds(remaining))
        return StartResult(started=True, remaining_seconds=remaining)

    def pause(self, now: datetime | None = None) -> bool:
        session = self._session
        if session is None or session.paused:
            return False

        segment = self._cut_segment(session, now or self.clock())
        session.paused = True
        self._record_in_background(segment)
        self.logger.info("Session paused: item=%s", session.item_id)
        return True

    def resume(self, now: datetime | None = None) -> bool:
        session = self._session
        if session is None or not session.paused:
            return False

        session.paused = False
        session.started_at = now or self.clock()
        self.logger.info("Session resumed: item=%s", session.item_id)
        return True

    async def heartbeat(self, now: datetime | None = None) -> None:
        session = self._session
        if session is None or session.paused:
            return

        segment = self._cut_segment(session, now or self.clock())
        if segment is not None:
            # Shielded so cancelling the heartbeat loop never drops a span already cut.
            await asyncio.shield(self._spawn(self._record(segment)))

        if self._session is session:
            await self.refresh_display()

    async def refresh_display(self) -> None:
        """Re-read the snapshot to correct the predictive countdown."""
        session = self._session
        if session is None:
            return

        try:
            snapshot = await self.ledger.get_snapshot(session.item_id, session.profile_id)
        except LedgerUnavailable as exc:
            self.logger.warning("Snapshot refresh failed for item %s: %s", session.item_id, exc)
            return
        except CredentialRejected as exc:
            self._credential_rejected(exc)
            return

        if self._session is session:
            self.display_remaining = remaining_seconds(snapshot)

    def tick(self) -> None:
        session = self._session
        if session is None or session.paused or self.display_remaining is None:
            return
        self.display_remaining = max(0, self.display_remaining - 1)

    async def flush(self, now: datetime | None = None) -> UsageSegment | None:
        segment = self._detach(now)
        if segment is not None:
            await self._record(segment)
        return segment

    def close(self, now: datetime | None = None) -> None:
        """Tear the surface down without waiting on the network."""
        segment = self._detach(now)
        if segment is not None:
            self.ledger.post_segment_nowait(segment)

        if self._unsubscribe_navigation is not None:
            self._unsubscribe_navigation()
            self._unsubscribe_navigation = None
        if self._banner_timer is not None:
            self._banner_timer.cancel()
            self._banner_timer = None

    async def drain(self) -> None:
        """Wait for background segment deliveries started by pause or enforcement."""
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    @tasks.loop(seconds=60)
    async def heartbeat_loop(self) -> None:
        await self.heartbeat()

    @heartbeat_loop.before_loop
    async def _before_heartbeat(self) -> None:
        await asyncio.sleep(self.heartbeat_seconds)

    @tasks.loop(seconds=1)
    async def tick_loop(self) -> None:
        self.tick()

    @tick_loop.before_loop
    async def _before_tick(self) -> None:
        await asyncio.sleep(1)

    def _detach(self, now: datetime | None) -> UsageSegment | None:
        session = self._session
        if session is None:
            return None

        self._session = None
        session.cancel_timers()
        self.heartbeat_loop.cancel()
        self.tick_loop.cancel()

        segment = None if session.paused else self._cut_segment(session, now or self.clock())
        self.logger.info("Session ended: item=%s", session.item_id)
        return segment

    def _cut_segment(self, session: Session, now: datetime) -> UsageSegment | None:
        elapsed = int((now - session.started_at).total_seconds())
        if elapsed < 1:
            return None

        # Carry the sub-second remainder into the next span.
        ended = session.started_at + timedelta(seconds=elapsed)
        segment = UsageSegment(
            item_id=session.item_id,
            started_at=session.started_at,
            ended_at=ended,
            duration_seconds=elapsed,
        )
        session.started_at = ended
        return segment

    async def _record(self, segment: UsageSegment) -> None:
        try:
            await self.ledger.append_segment(segment)
        except LedgerUnavailable as exc:
            # Superseded by the next heartbeat; the span is lost.
            self.logger.warning("Segment append failed for item %s: %s", segment.item_id, exc)
        except CredentialRejected as exc:
            self._credential_rejected(exc)

    def _record_in_background(self, segment: UsageSegment | None) -> None:
        if segment is not None:
            self._spawn(self._record(segment))

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def _credential_rejected(self, exc: CredentialRejected) -> None:
        self.logger.error("Device credential rejected: %s", exc)
        self.heartbeat_loop.stop()
        if self.on_unauthorized is not None:
            self.on_unauthorized(exc)

    def _fire_warning(self, session: Session) -> None:
        if session is not self._session:
            return
        session.warning_timer = None
        self.surface.show_time_warning(session.item_id, self.warning_lead_seconds)

    def _fire_enforcement(self, session: Session) -> None:
        if session is not self._session:
            return
        session.enforcement_timer = None

        segment = self._detach(None)
        self.display_remaining = 0
        self.logger.info("Time limit reached: item=%s", session.item_id)

        self.surface.load_url(self.home_url)
        self._show_limit_banner(session.item_id)
        self._record_in_background(segment)

    def _show_limit_banner(self, item_id: int) -> None:
        self.limit_reached_item = item_id
        self.surface.show_time_limit_reached(item_id)

        if self._banner_timer is not None:
            self._banner_timer.cancel()
        loop = asyncio.get_running_loop()
        self._banner_timer = loop.call_later(self.limit_banner_seconds, self._clear_limit_banner)

    def _clear_limit_banner(self) -> None:
        self._banner_timer = None
        self.limit_reached_item = None

    def _on_navigated(self, url: str) -> None:
        session = self._session
        if session is None:
            return

        if session.management_url and url.startswith(session.management_url):
            self.pause()
        elif session.paused and (session.live_url is None or url.startswith(session.live_url)):
            self.resume()


def _start_loop(loop: tasks.Loop) -> None:
    # A loop cancelled by the previous session may still be winding down.
    if loop.is_running():
        loop.restart()
    else:
        loop.start()
