from __future__ import annotations

import logging
from collections import Counter

from aiohttp import web

from .events import KioskStatusChange, SyncEvent, encode_event


class SyncHub:
    """Registry of connected push sockets; fans every published event out to all of them."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self._sockets: set[web.WebSocketResponse] = set()
        # A kiosk may hold several sockets (menu and content surface); it is online while any is open.
        self._kiosk_connections: Counter[int] = Counter()

    @property
    def client_count(self) -> int:
        return len(self._sockets)

    def is_online(self, kiosk_id: int) -> bool:
        return self._kiosk_connections[kiosk_id] > 0

    async def publish(self, event: SyncEvent) -> int:
        frame = encode_event(event)
        delivered = 0

        for ws in list(self._sockets):
            if ws.closed:
                self._sockets.discard(ws)
                continue
            try:
                await ws.send_str(frame)
            except (ConnectionResetError, RuntimeError):
                # Closing sockets are dropped; their surface resyncs after reconnecting.
                self.logger.debug("Dropping socket that failed mid-send")
                self._sockets.discard(ws)
                continue
            delivered += 1

        self.logger.info("Broadcast %s to %d clients", event.type, delivered)
        return delivered

    async def attach(self, ws: web.WebSocketResponse, kiosk_id: int | None = None) -> None:
        self._sockets.add(ws)
        self.logger.info("Client connected. Total clients: %d", len(self._sockets))

        if kiosk_id is None:
            return

        self._kiosk_connections[kiosk_id] += 1
        if self._kiosk_connections[kiosk_id] == 1:
            await self.publish(KioskStatusChange(kiosk_id=kiosk_id, online=True))

    async def detach(self, ws: web.WebSocketResponse, kiosk_id: int | None = None) -> None:
        self._sockets.discard(ws)
        self.logger.info("Client disconnected. Total clients: %d", len(self._sockets))

        if kiosk_id is None or self._kiosk_connections[kiosk_id] == 0:
            return

        self._kiosk_connections[kiosk_id] -= 1
        if self._kiosk_connections[kiosk_id] == 0:
            del self._kiosk_connections[kiosk_id]
            await self.publish(KioskStatusChange(kiosk_id=kiosk_id, online=False))

    async def close_all(self) -> None:
        for ws in list(self._sockets):
            await ws.close()
        self._sockets.clear()
        self._kiosk_connections.clear()
