from datetime import datetime, timedelta, timezone

from screentime.errors import LedgerUnavailable
from screentime.models import UsageSnapshot
from screentime.session import SessionState, SessionTracker
from screentime.surface import RecordingSurface
from screentime.surfaces import ItemLauncher

T0 = datetime(2026, 2, 1, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self) -> None:
        self.now = T0

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeLedger:
    def __init__(self) -> None:
        self.exhausted: set[int] = set()
        self.fail = False
        self.segments = []

    async def get_snapshot(self, item_id: int, profile_id: int | None = None) -> UsageSnapshot:
        if self.fail:
            raise LedgerUnavailable("timeout")
        return UsageSnapshot(
            today_seconds=3600 if item_id in self.exhausted else 0,
            week_seconds=0,
            daily_limit_minutes=60,
            weekly_limit_minutes=None,
            max_daily_minutes=0,
            bonus_minutes_today=0,
        )

    async def append_segment(self, segment) -> bool:
        self.segments.append((segment.item_id, segment.duration_seconds))
        return True

    def post_segment_nowait(self, segment) -> None:
        self.segments.append((segment.item_id, segment.duration_seconds))


def make_launcher():
    ledger = FakeLedger()
    surface = RecordingSurface()
    clock = FakeClock()
    tracker = SessionTracker(ledger, surface, clock=clock)
    tracker.attach()
    launcher = ItemLauncher(tracker, surface, profile_id=1)
    launcher.register(4, "/games/4", "/games/4/manage")
    launcher.register(7, "/apps/7")
    launcher.attach()
    return launcher, tracker, ledger, surface, clock


async def test_navigation_into_item_starts_session() -> None:
    launcher, tracker, _, surface, _ = make_launcher()

    surface.load_url("/games/4/level-2")
    await launcher.wait_idle()

    assert tracker.session.item_id == 4
    assert tracker.session.profile_id == 1
    await tracker.flush()


async def test_switching_items_flushes_previous_session() -> None:
    launcher, tracker, ledger, surface, clock = make_launcher()
    surface.load_url("/games/4")
    await launcher.wait_idle()

    clock.advance(30)
    surface.load_url("/apps/7")
    await launcher.wait_idle()

    assert tracker.session.item_id == 7
    assert ledger.segments == [(4, 30)]
    await tracker.flush()


async def test_management_view_pauses_without_restarting() -> None:
    launcher, tracker, ledger, surface, clock = make_launcher()
    surface.load_url("/games/4")
    await launcher.wait_idle()
    session = tracker.session

    clock.advance(10)
    surface.load_url("/games/4/manage")
    await launcher.wait_idle()

    assert tracker.session is session
    assert tracker.state is SessionState.PAUSED
    await tracker.flush()
    await tracker.drain()
    assert ledger.segments == [(4, 10)]


async def test_leaving_items_ends_session() -> None:
    launcher, tracker, ledger, surface, clock = make_launcher()
    surface.load_url("/apps/7")
    await launcher.wait_idle()

    clock.advance(12)
    surface.load_url("/menu")
    await launcher.wait_idle()

    assert tracker.state is SessionState.IDLE
    assert ledger.segments == [(7, 12)]


async def test_exhausted_item_sends_surface_home() -> None:
    launcher, tracker, ledger, surface, _ = make_launcher()
    ledger.exhausted.add(7)

    surface.load_url("/apps/7")
    await launcher.wait_idle()

    assert tracker.state is SessionState.IDLE
    assert surface.limits_reached == [7]
    assert surface.current_url == "/menu"


async def test_unreachable_ledger_sends_surface_home() -> None:
    launcher, tracker, ledger, surface, _ = make_launcher()
    ledger.fail = True

    surface.load_url("/games/4")
    await launcher.wait_idle()

    assert tracker.state is SessionState.IDLE
    assert surface.current_url == "/menu"


async def test_longest_prefix_wins() -> None:
    launcher, *_ = make_launcher()
    launcher.register(9, "/games/4/bonus-level")

    assert launcher.route_for("/games/4/bonus-level/1").item_id == 9
    assert launcher.route_for("/games/4/other").item_id == 4
    assert launcher.route_for("/settings") is None
