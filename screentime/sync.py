from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Awaitable, Callable, Union

import aiohttp

from .client import ApiClient
from .errors import CredentialRejected, LedgerUnavailable
from .events import ALL_TAGS, SyncEvent, decode_event

EventHandler = Callable[[SyncEvent], Union[Awaitable[None], None]]
ResyncHandler = Callable[[], Union[Awaitable[None], None]]

# Queued on every (re)connect: anything may have been missed while the socket was down.
_RESYNC = object()


class SyncClient:
    """One push connection per surface, feeding a local queue dispatched by tag.

    Handlers run one at a time in arrival order. They must be idempotent:
    the server may deliver duplicates, events may arrive out of order, and an
    event can beat the HTTP response of the write that caused it.
    """

    def __init__(
        self,
        api: ApiClient,
        *,
        reconnect_delay_seconds: float = 3,
        on_unauthorized: Callable[[CredentialRejected], None] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.api = api
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self.on_unauthorized = on_unauthorized
        self.logger = logger or logging.getLogger(__name__)

        self.connected = asyncio.Event()
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._resync_handlers: list[ResyncHandler] = []
        self._queue: asyncio.Queue = asyncio.Queue()
        self._disposed = False
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task | None = None
        self._dispatcher: asyncio.Task | None = None
        self._closing: asyncio.Future | None = None

    @property
    def disposed(self) -> bool:
        return self._disposed

    def subscribe(self, tag: str, handler: EventHandler) -> None:
        if tag not in ALL_TAGS:
            raise ValueError(f"Unknown sync event tag: {tag}")
        self._handlers[tag].append(handler)

    def on_resync(self, handler: ResyncHandler) -> None:
        self._resync_handlers.append(handler)

    def start(self) -> None:
        if self._disposed:
            raise RuntimeError("SyncClient has been closed")
        if self._reader is None:
            self._reader = asyncio.create_task(self._run())
            self._dispatcher = asyncio.create_task(self._dispatch_forever())

    def feed(self, event: SyncEvent) -> None:
        """Queue an event as if it had arrived on the socket."""
        self._queue.put_nowait(event)

    async def _run(self) -> None:
        while not self._disposed:
            try:
                await self._connect_once()
            except aiohttp.WSServerHandshakeError as exc:
                if exc.status == 401:
                    self._credential_rejected(CredentialRejected("Push channel rejected the device credential"))
                    return
                self.logger.warning("Push channel handshake failed: HTTP %s", exc.status)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                self.logger.warning("Push channel connection failed: %s", exc)

            if self._disposed:
                return

            self.logger.info("Reconnecting push channel in %ss", self.reconnect_delay_seconds)
            await asyncio.sleep(self.reconnect_delay_seconds)

    async def _connect_once(self) -> None:
        async with self.api.session.ws_connect(self.api.ws_url(), headers=self.api.headers, heartbeat=30) as ws:
            self._ws = ws
            self.connected.set()
            self._queue.put_nowait(_RESYNC)
            self.logger.info("Push channel connected")

            try:
                async for msg in ws:
                    if msg.type == aiohttp.WSMsgType.TEXT:
                        event = decode_event(msg.data)
                        if event is not None:
                            self._queue.put_nowait(event)
                    elif msg.type == aiohttp.WSMsgType.ERROR:
                        self.logger.warning("Push channel error: %s", ws.exception())
                        break
            finally:
                self._ws = None
                self.connected.clear()

        self.logger.info("Push channel closed")

    async def _dispatch_forever(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self.dispatch(item)
            except Exception:  # pragma: no cover - runtime safety
                self.logger.exception("Sync handler failed")
            finally:
                self._queue.task_done()

    async def dispatch(self, item: SyncEvent | object) -> None:
        if self._disposed:
            return
        handlers = self._resync_handlers if item is _RESYNC else self._handlers.get(item.type, [])
        for handler in list(handlers):
            try:
                result = handler() if item is _RESYNC else handler(item)
                if inspect.isawaitable(result):
                    await result
            except LedgerUnavailable as exc:
                # Stale until the next event or reconnect.
                self.logger.warning("Sync handler could not refetch: %s", exc)
            except CredentialRejected as exc:
                self._credential_rejected(exc)
                return

    async def resync(self) -> None:
        await self.dispatch(_RESYNC)

    async def wait_idle(self) -> None:
        await self._queue.join()

    def _credential_rejected(self, exc: CredentialRejected) -> None:
        self.logger.error("Push channel stopped: %s", exc)
        self._disposed = True
        if self._ws is not None and not self._ws.closed:
            # The reader loop ends once the socket is closed; _run then sees the disposed flag.
            self._closing = asyncio.ensure_future(self._ws.close())
        if self.on_unauthorized is not None:
            self.on_unauthorized(exc)

    async def close(self) -> None:
        self._disposed = True
        if self._ws is not None:
            await self._ws.close()
        for task in (self._reader, self._dispatcher):
            if task is not None and not task.done():
                task.cancel()
        for task in (self._reader, self._dispatcher):
            if task is not None:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._reader = None
        self._dispatcher = None
