import asyncio
from datetime import timedelta
from zoneinfo import ZoneInfo

import pytest

from screentime.days import utc_now
from screentime.db import Database
from screentime.hub import SyncHub
from screentime.ledger import UsageLedger
from screentime.reporter import Notifier
from screentime.server import create_app

KIOSK = {"Authorization": "Bearer kiosk-token"}
ADMIN = {"Authorization": "Bearer admin-token"}


class FakeChannel:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send(self, content: str, **kwargs) -> None:
        self.sent.append(content)


class Env:
    def __init__(self, client, db: Database, hub: SyncHub, channel: FakeChannel) -> None:
        self.client = client
        self.db = db
        self.hub = hub
        self.channel = channel

    async def wait_for_clients(self, count: int) -> None:
        for _ in range(100):
            if self.hub.client_count == count:
                return
            await asyncio.sleep(0.01)
        raise AssertionError(f"expected {count} push clients, have {self.hub.client_count}")


@pytest.fixture
async def env(aiohttp_client) -> Env:
    db = Database(":memory:")
    db.initialize()
    db.add_device("Living room", "kiosk-token", "kiosk")
    db.add_device("Parent phone", "admin-token", "admin")
    hub = SyncHub()
    channel = FakeChannel()
    app = create_app(db, UsageLedger(db=db, tz=ZoneInfo("UTC")), hub, Notifier(channel))
    client = await aiohttp_client(app)
    return Env(client, db, hub, channel)


async def assert_silent(ws) -> None:
    with pytest.raises(asyncio.TimeoutError):
        await ws.receive(timeout=0.2)


async def test_missing_or_unknown_token_is_rejected(env: Env) -> None:
    response = await env.client.get("/api/bulletin")
    assert response.status == 401
    assert await response.json() == {"error": "Unauthorized"}

    response = await env.client.get("/api/bulletin", headers={"Authorization": "Bearer nope"})
    assert response.status == 401


async def test_admin_routes_require_admin_device(env: Env) -> None:
    response = await env.client.get("/api/admin/kiosks", headers=KIOSK)
    assert response.status == 401

    response = await env.client.get("/api/admin/kiosks", headers=ADMIN)
    assert response.status == 200


async def test_usage_snapshot_and_append(env: Env) -> None:
    item = env.db.add_item(1, "Blocks", "https://blocks.example", daily_limit_minutes=60)
    ws = await env.client.ws_connect("/ws", headers=ADMIN)
    await env.wait_for_clients(1)

    ended = utc_now()
    payload = {
        "started_at": (ended - timedelta(seconds=90)).isoformat(),
        "ended_at": ended.isoformat(),
        "duration_seconds": 90,
    }
    response = await env.client.post(f"/api/items/{item.id}/usage", json=payload, headers=KIOSK)
    assert response.status == 201
    assert await response.json() == {"success": True, "recorded": True}
    assert await ws.receive_json(timeout=1) == {"type": "refresh"}

    # A retried append is accepted but neither counted nor broadcast.
    response = await env.client.post(f"/api/items/{item.id}/usage", json=payload, headers=KIOSK)
    assert await response.json() == {"success": True, "recorded": False}
    await assert_silent(ws)

    response = await env.client.get(f"/api/items/{item.id}/usage", params={"profile": "1"}, headers=KIOSK)
    data = await response.json()
    assert data["today_seconds"] == 90
    assert data["daily_limit_minutes"] == 60
    assert data["remaining_seconds"] == 3600 - 90
    await ws.close()


async def test_usage_for_unknown_or_foreign_item_is_404(env: Env) -> None:
    item = env.db.add_item(1, "Blocks", "https://blocks.example")

    response = await env.client.get("/api/items/999/usage", headers=KIOSK)
    assert response.status == 404

    response = await env.client.get(f"/api/items/{item.id}/usage", params={"profile": "2"}, headers=KIOSK)
    assert response.status == 404


async def test_usage_append_requires_timestamps(env: Env) -> None:
    item = env.db.add_item(1, "Blocks", "https://blocks.example")

    response = await env.client.post(f"/api/items/{item.id}/usage", json={"duration_seconds": 5}, headers=KIOSK)

    assert response.status == 400


async def test_bonus_grant_is_visible_and_broadcast(env: Env) -> None:
    ws = await env.client.ws_connect("/ws", headers=KIOSK)
    await env.wait_for_clients(1)
    await ws.receive_json(timeout=1)  # own presence

    response = await env.client.post("/api/bonus", json={"profile_id": 1, "minutes": 15}, headers=ADMIN)
    assert response.status == 201
    assert await ws.receive_json(timeout=1) == {"type": "refresh"}

    response = await env.client.get("/api/bonus-time", params={"profile": "1"}, headers=KIOSK)
    assert await response.json() == {"today_bonus_minutes": 15}

    response = await env.client.post("/api/bonus", json={"profile_id": 1, "minutes": 0}, headers=ADMIN)
    assert response.status == 400
    await ws.close()


async def test_limit_change_broadcasts_refresh(env: Env) -> None:
    item = env.db.add_item(1, "Blocks", "https://blocks.example", daily_limit_minutes=60)
    ws = await env.client.ws_connect("/ws", headers=ADMIN)
    await env.wait_for_clients(1)

    response = await env.client.put(
        f"/api/admin/items/{item.id}/limits",
        json={"daily_limit_minutes": None, "weekly_limit_minutes": 300},
        headers=ADMIN,
    )

    assert await response.json() == {
        "id": item.id,
        "daily_limit_minutes": None,
        "weekly_limit_minutes": 300,
        "max_daily_minutes": 0,
    }
    assert await ws.receive_json(timeout=1) == {"type": "refresh"}
    await ws.close()


async def test_usage_summary_shape(env: Env) -> None:
    env.db.add_item(1, "Blocks", "https://blocks.example")

    response = await env.client.get("/api/admin/usage-summary", params={"profile": "1"}, headers=ADMIN)
    data = await response.json()

    assert len(data["dates"]) == 7
    assert data["apps"][0]["name"] == "Blocks"
    assert [day["seconds"] for day in data["apps"][0]["daily"]] == [0] * 7


async def test_message_flow(env: Env) -> None:
    ws = await env.client.ws_connect("/ws", headers=ADMIN)
    await env.wait_for_clients(1)

    response = await env.client.post(
        "/api/messages",
        json={"sender_profile_id": 1, "recipient_type": "parent", "content": "  Can I play more?  "},
        headers=KIOSK,
    )
    assert response.status == 201
    message = await response.json()
    assert message["content"] == "Can I play more?"

    frame = await ws.receive_json(timeout=1)
    assert frame["type"] == "new_message"
    assert frame["message"]["id"] == message["id"]
    assert env.channel.sent == ["New message from Profile 1: Can I play more?"]

    response = await env.client.get("/api/admin/messages/unread", headers=ADMIN)
    assert await response.json() == {"count": 1, "ids": [message["id"]]}

    response = await env.client.put(f"/api/admin/messages/{message['id']}/read", headers=ADMIN)
    assert response.status == 200
    assert await ws.receive_json(timeout=1) == {
        "type": "message_read",
        "message_id": message["id"],
        "recipient_type": "parent",
        "recipient_profile_id": None,
    }

    response = await env.client.get("/api/admin/messages/unread", headers=ADMIN)
    assert await response.json() == {"count": 0, "ids": []}
    await ws.close()


async def test_parent_message_to_profile_is_not_forwarded(env: Env) -> None:
    response = await env.client.post(
        "/api/admin/messages",
        json={"recipient_type": "profile", "recipient_profile_id": 1, "content": "Dinner!"},
        headers=ADMIN,
    )
    assert response.status == 201

    response = await env.client.get("/api/messages/unread", params={"profile": "1"}, headers=KIOSK)
    assert (await response.json())["count"] == 1
    assert env.channel.sent == []


async def test_message_validation(env: Env) -> None:
    too_long = {"sender_profile_id": 1, "recipient_type": "parent", "content": "x" * 501}
    response = await env.client.post("/api/messages", json=too_long, headers=KIOSK)
    assert response.status == 400

    missing_recipient = {"sender_profile_id": 1, "recipient_type": "profile", "content": "hi"}
    response = await env.client.post("/api/messages", json=missing_recipient, headers=KIOSK)
    assert response.status == 400

    response = await env.client.put("/api/messages/999/read", headers=KIOSK)
    assert response.status == 404


async def test_bulletin_add_and_remove(env: Env) -> None:
    ws = await env.client.ws_connect("/ws", headers=ADMIN)
    await env.wait_for_clients(1)

    response = await env.client.post(
        "/api/bulletin",
        json={"pin_type": "note", "content": "Park at 4", "x": 10, "y": 20},
        headers=ADMIN,
    )
    assert response.status == 201
    pin = await response.json()
    frame = await ws.receive_json(timeout=1)
    assert frame == {"type": "bulletin_pin", "action": "add", "pin": pin}

    response = await env.client.delete(f"/api/bulletin/{pin['id']}", headers=KIOSK)
    assert response.status == 200
    assert await ws.receive_json(timeout=1) == {"type": "bulletin_pin", "action": "remove", "pin": {"id": pin["id"]}}

    response = await env.client.delete(f"/api/bulletin/{pin['id']}", headers=KIOSK)
    assert response.status == 404
    await ws.close()


async def test_kiosk_presence_version_and_update_status(env: Env) -> None:
    admin_ws = await env.client.ws_connect("/ws", headers=ADMIN)
    await env.wait_for_clients(1)

    kiosk_ws = await env.client.ws_connect("/ws?token=kiosk-token")
    online = await admin_ws.receive_json(timeout=1)
    assert online["type"] == "kiosk_status_change"
    assert online["online"] is True
    kiosk_id = online["kiosk_id"]

    # A second socket from the same kiosk is not a status change.
    second_ws = await env.client.ws_connect("/ws", headers=KIOSK)
    await env.wait_for_clients(3)
    await assert_silent(admin_ws)

    response = await env.client.get("/api/admin/kiosks", headers=ADMIN)
    rows = await response.json()
    assert rows == [{"id": kiosk_id, "name": "Living room", "online": True, "version": None, "update_status": None}]

    await env.client.post("/api/kiosk/version", json={"version": "1.4.0"}, headers=KIOSK)
    assert await admin_ws.receive_json(timeout=1) == {"type": "kiosk_version", "kiosk_id": kiosk_id, "version": "1.4.0"}

    await env.client.post("/api/kiosk/update-status", json={"status": "downloading"}, headers=KIOSK)
    assert await admin_ws.receive_json(timeout=1) == {
        "type": "kiosk_update_status",
        "kiosk_id": kiosk_id,
        "status": "downloading",
    }

    await kiosk_ws.close()
    await second_ws.close()
    offline = await admin_ws.receive_json(timeout=1)
    assert offline == {"type": "kiosk_status_change", "kiosk_id": kiosk_id, "online": False}
    await admin_ws.close()


async def test_usage_append_rejects_unparseable_timestamps(env: Env) -> None:
    item = env.db.add_item(1, "Blocks", "https://blocks.example")

    for started_at in ("not-a-date", 1738400000, ["2026-02-01"]):
        payload = {"started_at": started_at, "ended_at": "2026-02-01T10:01:00Z", "duration_seconds": 60}
        response = await env.client.post(f"/api/items/{item.id}/usage", json=payload, headers=KIOSK)

        assert response.status == 400
        assert "started_at" in (await response.json())["error"]
