from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from .errors import CredentialRejected, LedgerUnavailable
from .models import BulletinPin, KioskRow, Message, UsageSegment, UsageSnapshot

# How long close() waits for outstanding teardown deliveries before dropping them.
NOWAIT_GRACE_SECONDS = 2.0


class ApiClient:
    """HTTP access to the usage ledger and the full-fetch endpoints every surface reconciles against."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout_seconds: float = 10,
        session: aiohttp.ClientSession | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.logger = logger or logging.getLogger(__name__)
        self._session = session
        self._owns_session = session is None
        self._pending: set[asyncio.Task] = set()

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def ws_url(self) -> str:
        if self.base_url.startswith("https://"):
            return "wss://" + self.base_url[len("https://"):] + "/ws"
        if self.base_url.startswith("http://"):
            return "ws://" + self.base_url[len("http://"):] + "/ws"
        return self.base_url + "/ws"

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self.session.request(
                method, url, headers=self.headers, timeout=self.timeout, **kwargs
            ) as response:
                if response.status == 401:
                    raise CredentialRejected(f"{method} {path} rejected the device credential")
                if response.status >= 400:
                    raise LedgerUnavailable(f"{method} {path} failed with HTTP {response.status}")
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise LedgerUnavailable(f"{method} {path} failed: {exc}") from exc

    async def get_snapshot(self, item_id: int, profile_id: int | None = None) -> UsageSnapshot:
        params = {"profile": str(profile_id)} if profile_id is not None else None
        data = await self._request("GET", f"/api/items/{item_id}/usage", params=params)
        return UsageSnapshot.from_dict(data)

    async def append_segment(self, segment: UsageSegment) -> bool:
        data = await self._request("POST", f"/api/items/{segment.item_id}/usage", json=segment.to_payload())
        return bool(data.get("recorded"))

    async def grant_bonus(self, profile_id: int, minutes: int) -> None:
        await self._request("POST", "/api/bonus", json={"profile_id": profile_id, "minutes": minutes})

    def post_segment_nowait(self, segment: UsageSegment) -> asyncio.Task:
        """Start delivering a segment without waiting for the response.

        Used at teardown. Failures are logged and dropped; close() gives
        outstanding deliveries a short grace period.
        """
        task = asyncio.get_running_loop().create_task(self._deliver_quietly(segment))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver_quietly(self, segment: UsageSegment) -> None:
        try:
            await self.append_segment(segment)
        except (CredentialRejected, LedgerUnavailable) as exc:
            self.logger.warning("Teardown segment for item %s lost: %s", segment.item_id, exc)

    async def fetch_unread_ids(self, profile_id: int | None = None) -> list[int]:
        if profile_id is None:
            data = await self._request("GET", "/api/admin/messages/unread")
        else:
            data = await self._request("GET", "/api/messages/unread", params={"profile": str(profile_id)})
        return [int(value) for value in data.get("ids", [])]

    async def fetch_messages(self, profile_id: int) -> list[Message]:
        data = await self._request("GET", "/api/messages", params={"profile": str(profile_id)})
        return [Message.from_dict(row) for row in data]

    async def fetch_pins(self) -> list[BulletinPin]:
        data = await self._request("GET", "/api/bulletin")
        return [BulletinPin.from_dict(row) for row in data]

    async def fetch_kiosks(self) -> list[KioskRow]:
        data = await self._request("GET", "/api/admin/kiosks")
        return [KioskRow.from_dict(row) for row in data]

    async def fetch_usage_summary(self, profile_id: int) -> dict[str, Any]:
        return await self._request("GET", "/api/admin/usage-summary", params={"profile": str(profile_id)})

    async def report_version(self, version: str) -> None:
        await self._request("POST", "/api/kiosk/version", json={"version": version})

    async def report_update_status(self, status: str) -> None:
        await self._request("POST", "/api/kiosk/update-status", json={"status": status})

    async def close(self) -> None:
        if self._pending:
            await asyncio.wait(set(self._pending), timeout=NOWAIT_GRACE_SECONDS)
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
