from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable

from . import events
from .client import ApiClient
from .errors import CredentialRejected, LedgerUnavailable
from .events import BulletinPinChanged, KioskStatusChange, KioskUpdateStatus, KioskVersion, MessageRead, NewMessage
from .models import Message
from .reconcile import KioskDirectory, PinBoard, RemainingTimeBoard, UnreadCounter
from .session import SessionTracker, StartResult
from .surface import ContentSurface
from .sync import SyncClient

MessageNotifier = Callable[[Message], None]


class KioskMenu:
    """Kid-facing menu bar: remaining-time labels, unread badge, bulletin board."""

    def __init__(
        self,
        api: ApiClient,
        sync: SyncClient,
        profile_id: int,
        item_ids: list[int],
        *,
        notify: MessageNotifier | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api = api
        self.sync = sync
        self.profile_id = profile_id
        self.item_ids = list(item_ids)
        self.notify = notify
        self.logger = logger or logging.getLogger(__name__)

        self.remaining = RemainingTimeBoard()
        self.unread = UnreadCounter(profile_id)
        self.pins = PinBoard()
        # Peer of the conversation currently on screen: a profile id, or "parent".
        self.open_conversation: int | str | None = None

        sync.subscribe(events.REFRESH, self.on_refresh)
        sync.subscribe(events.NEW_MESSAGE, self.on_new_message)
        sync.subscribe(events.MESSAGE_READ, self.on_message_read)
        sync.subscribe(events.BULLETIN_PIN, self.on_bulletin_pin)
        sync.on_resync(self.reload)

    def set_items(self, item_ids: list[int]) -> None:
        for item_id in set(self.item_ids) - set(item_ids):
            self.remaining.forget(item_id)
        self.item_ids = list(item_ids)

    async def reload(self) -> None:
        await self.on_refresh(events.Refresh())
        self.unread.load(await self.api.fetch_unread_ids(self.profile_id))
        self.pins.load(await self.api.fetch_pins())

    async def on_refresh(self, event: events.Refresh) -> None:
        for item_id in list(self.item_ids):
            snapshot = await self.api.get_snapshot(item_id, self.profile_id)
            self.remaining.set_snapshot(item_id, snapshot)

    def on_new_message(self, event: NewMessage) -> None:
        message = event.message
        if not self.unread.apply_new_message(message):
            return
        peer = "parent" if message.sender_type == "parent" else message.sender_profile_id
        if self.notify is not None and peer != self.open_conversation:
            self.notify(message)

    def on_message_read(self, event: MessageRead) -> None:
        self.unread.apply_message_read(event)

    def on_bulletin_pin(self, event: BulletinPinChanged) -> None:
        self.pins.apply(event)


class ContentView:
    """The locked-down content surface: keeps its session's countdown honest."""

    def __init__(self, sync: SyncClient, tracker: SessionTracker) -> None:
        self.sync = sync
        self.tracker = tracker
        sync.subscribe(events.REFRESH, self.on_refresh)
        sync.on_resync(self.tracker.refresh_display)

    async def on_refresh(self, event: events.Refresh) -> None:
        await self.tracker.refresh_display()


@dataclass(frozen=True, slots=True)
class ItemRoute:
    item_id: int
    live_url: str
    management_url: str | None = None


class ItemLauncher:
    """Starts and ends sessions as the content surface moves between items.

    Navigating under a registered item's live URL opens a session for it;
    navigating anywhere unregistered ends the current one. Pausing inside an
    item's management view is left to the tracker.
    """

    def __init__(
        self,
        tracker: SessionTracker,
        surface: ContentSurface,
        *,
        profile_id: int | None = None,
        on_unauthorized: Callable[[CredentialRejected], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.tracker = tracker
        self.surface = surface
        self.profile_id = profile_id
        self.on_unauthorized = on_unauthorized
        self.logger = logger or logging.getLogger(__name__)
        self._routes: dict[int, ItemRoute] = {}
        self._pending: set[asyncio.Task] = set()
        self._unsubscribe: Callable[[], None] | None = None

    def register(self, item_id: int, live_url: str, management_url: str | None = None) -> None:
        self._routes[item_id] = ItemRoute(item_id, live_url, management_url)

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.surface.on_navigated(self._on_navigated)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def route_for(self, url: str) -> ItemRoute | None:
        # Longest prefix wins so nested item URLs resolve to the inner item.
        matches = [route for route in self._routes.values() if url.startswith(route.live_url)]
        return max(matches, key=lambda route: len(route.live_url), default=None)

    async def open_item(self, item_id: int) -> StartResult:
        route = self._routes[item_id]
        result = await self.tracker.start(
            item_id,
            profile_id=self.profile_id,
            live_url=route.live_url,
            management_url=route.management_url,
        )
        if result.exhausted:
            self.surface.show_time_limit_reached(item_id)
            self.surface.load_url(self.tracker.home_url)
        return result

    async def wait_idle(self) -> None:
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    def _on_navigated(self, url: str) -> None:
        session = self.tracker.session
        route = self.route_for(url)

        if route is None:
            if session is not None:
                self._spawn(self.tracker.flush())
            return
        if session is not None and session.item_id == route.item_id:
            return
        self._spawn(self._open_quietly(route.item_id))

    async def _open_quietly(self, item_id: int) -> None:
        try:
            await self.open_item(item_id)
        except LedgerUnavailable as exc:
            self.logger.warning("Could not open item %s: %s", item_id, exc)
            self.surface.load_url(self.tracker.home_url)
        except CredentialRejected as exc:
            self.logger.error("Device credential rejected: %s", exc)
            if self.on_unauthorized is not None:
                self.on_unauthorized(exc)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)


class AdminDashboard:
    """Parent dashboard: parent inbox badge, device rows, bulletin board, usage page."""

    def __init__(
        self,
        api: ApiClient,
        sync: SyncClient,
        *,
        notify: MessageNotifier | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api = api
        self.sync = sync
        self.notify = notify
        self.logger = logger or logging.getLogger(__name__)

        self.unread = UnreadCounter(None)
        self.kiosks = KioskDirectory()
        self.pins = PinBoard()
        self.usage_profile_id: int | None = None
        self.usage_summary: dict[str, Any] | None = None
        # Profile whose parent conversation is currently open.
        self.open_conversation: int | None = None

        sync.subscribe(events.REFRESH, self.on_refresh)
        sync.subscribe(events.NEW_MESSAGE, self.on_new_message)
        sync.subscribe(events.MESSAGE_READ, self.on_message_read)
        sync.subscribe(events.BULLETIN_PIN, self.on_bulletin_pin)
        for tag in (events.KIOSK_STATUS_CHANGE, events.KIOSK_VERSION, events.KIOSK_UPDATE_STATUS):
            sync.subscribe(tag, self.on_kiosk_event)
        sync.on_resync(self.reload)

    async def reload(self) -> None:
        self.unread.load(await self.api.fetch_unread_ids(None))
        self.kiosks.load(await self.api.fetch_kiosks())
        self.pins.load(await self.api.fetch_pins())
        await self.on_refresh(events.Refresh())

    async def show_usage(self, profile_id: int) -> None:
        self.usage_profile_id = profile_id
        self.usage_summary = await self.api.fetch_usage_summary(profile_id)

    async def on_refresh(self, event: events.Refresh) -> None:
        if self.usage_profile_id is not None:
            self.usage_summary = await self.api.fetch_usage_summary(self.usage_profile_id)

    def on_new_message(self, event: NewMessage) -> None:
        message = event.message
        if not self.unread.apply_new_message(message):
            return
        if self.notify is not None and message.sender_profile_id != self.open_conversation:
            self.notify(message)

    def on_message_read(self, event: MessageRead) -> None:
        self.unread.apply_message_read(event)

    def on_bulletin_pin(self, event: BulletinPinChanged) -> None:
        self.pins.apply(event)

    def on_kiosk_event(self, event: KioskStatusChange | KioskVersion | KioskUpdateStatus) -> None:
        if not self.kiosks.apply(event):
            self.logger.debug("Ignoring %s for kiosk %s", event.type, event.kiosk_id)
