from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from aiohttp import WSMsgType, web

from .budget import remaining_seconds
from .days import parse_iso_utc, utc_now
from .db import Database
from .events import (
    BulletinPinChanged,
    KioskUpdateStatus,
    KioskVersion,
    MessageRead,
    NewMessage,
    Refresh,
)
from .hub import SyncHub
from .ledger import UsageLedger
from .models import Device
from .reporter import Notifier

DB_KEY = web.AppKey("db", Database)
LEDGER_KEY = web.AppKey("ledger", UsageLedger)
HUB_KEY = web.AppKey("hub", SyncHub)
NOTIFIER_KEY = web.AppKey("notifier", Notifier)

MAX_MESSAGE_LENGTH = 500
RECIPIENT_TYPES = ("profile", "parent")

logger = logging.getLogger(__name__)
routes = web.RouteTableDef()


def _json_error(status: int, message: str) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text='{"error": "Request body must be JSON"}', content_type="application/json") from exc
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text='{"error": "Request body must be an object"}', content_type="application/json")
    return body


def _int_value(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise web.HTTPBadRequest(
            text=f'{{"error": "{name} must be an integer"}}',
            content_type="application/json",
        ) from exc


def _optional_int_value(value: Any, name: str) -> int | None:
    if value is None or value == "":
        return None
    return _int_value(value, name)


def _timestamp_value(value: Any, name: str) -> datetime | None:
    try:
        return parse_iso_utc(value)
    except (TypeError, ValueError, AttributeError) as exc:
        raise web.HTTPBadRequest(
            text=f'{{"error": "{name} must be an ISO 8601 timestamp"}}',
            content_type="application/json",
        ) from exc


def _device(request: web.Request) -> Device:
    return request["device"]


def _bearer_token(request: web.Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip() or None
    # Browsers cannot set headers on a websocket handshake.
    return request.query.get("token") or None


@web.middleware
async def auth_middleware(request: web.Request, handler):
    token = _bearer_token(request)
    device = request.app[DB_KEY].get_device_by_token(token) if token else None
    if device is None:
        return _json_error(401, "Unauthorized")

    if request.path.startswith("/api/admin/") and device.role != "admin":
        return _json_error(401, "Unauthorized")

    request["device"] = device
    return await handler(request)


@routes.get("/api/items/{item_id}/usage")
async def get_usage(request: web.Request) -> web.Response:
    db = request.app[DB_KEY]
    item = db.get_item(_int_value(request.match_info["item_id"], "item_id"))
    profile_id = _optional_int_value(request.query.get("profile"), "profile")

    if item is None or (profile_id is not None and item.profile_id != profile_id):
        return _json_error(404, "Item not found")

    snapshot = request.app[LEDGER_KEY].snapshot(item)
    payload = snapshot.to_dict()
    payload["remaining_seconds"] = remaining_seconds(snapshot)
    return web.json_response(payload)


@routes.post("/api/items/{item_id}/usage")
async def post_usage(request: web.Request) -> web.Response:
    db = request.app[DB_KEY]
    item = db.get_item(_int_value(request.match_info["item_id"], "item_id"))
    if item is None:
        return _json_error(404, "Item not found")

    body = await _read_json(request)
    started = _timestamp_value(body.get("started_at"), "started_at")
    ended = _timestamp_value(body.get("ended_at"), "ended_at")
    if started is None or ended is None or body.get("duration_seconds") is None:
        return _json_error(400, "started_at, ended_at, and duration_seconds are required")

    duration = _int_value(body["duration_seconds"], "duration_seconds")
    recorded = request.app[LEDGER_KEY].record_segment(item, started, ended, duration)
    if recorded:
        await request.app[HUB_KEY].publish(Refresh())

    return web.json_response({"success": True, "recorded": recorded}, status=201)


@routes.post("/api/bonus")
async def post_bonus(request: web.Request) -> web.Response:
    body = await _read_json(request)
    profile_id = _int_value(body.get("profile_id"), "profile_id")
    minutes = _int_value(body.get("minutes"), "minutes")
    if minutes <= 0:
        return _json_error(400, "minutes must be positive")

    grant = request.app[LEDGER_KEY].grant_bonus(profile_id, minutes)
    await request.app[HUB_KEY].publish(Refresh())
    return web.json_response(
        {"profile_id": grant.profile_id, "minutes": grant.minutes, "granted_at": grant.granted_at.isoformat()},
        status=201,
    )


@routes.get("/api/bonus-time")
async def get_bonus_time(request: web.Request) -> web.Response:
    profile_id = _int_value(request.query.get("profile"), "profile")
    minutes = request.app[LEDGER_KEY].bonus_minutes_today(profile_id)
    return web.json_response({"today_bonus_minutes": minutes})


@routes.put("/api/admin/items/{item_id}/limits")
async def put_item_limits(request: web.Request) -> web.Response:
    db = request.app[DB_KEY]
    item_id = _int_value(request.match_info["item_id"], "item_id")
    if db.get_item(item_id) is None:
        return _json_error(404, "Item not found")

    body = await _read_json(request)
    item = db.update_item_limits(
        item_id,
        daily_limit_minutes=_optional_int_value(body.get("daily_limit_minutes"), "daily_limit_minutes"),
        weekly_limit_minutes=_optional_int_value(body.get("weekly_limit_minutes"), "weekly_limit_minutes"),
        max_daily_minutes=_optional_int_value(body.get("max_daily_minutes"), "max_daily_minutes") or 0,
    )
    await request.app[HUB_KEY].publish(Refresh())
    return web.json_response(
        {
            "id": item.id,
            "daily_limit_minutes": item.daily_limit_minutes,
            "weekly_limit_minutes": item.weekly_limit_minutes,
            "max_daily_minutes": item.max_daily_minutes,
        }
    )


@routes.get("/api/admin/usage-summary")
async def get_usage_summary(request: web.Request) -> web.Response:
    profile_id = _int_value(request.query.get("profile"), "profile")
    rows = request.app[LEDGER_KEY].usage_summary(profile_id)
    dates = [day for day, _ in rows[0].daily] if rows else []
    return web.json_response({"dates": dates, "apps": [row.to_dict() for row in rows]})


async def _create_message(
    request: web.Request,
    body: dict[str, Any],
    sender_type: str,
    sender_profile_id: int | None,
) -> web.Response:
    recipient_type = body.get("recipient_type")
    content = (body.get("content") or "").strip()

    if not recipient_type or not content:
        return _json_error(400, "recipient_type and content are required")
    if recipient_type not in RECIPIENT_TYPES:
        return _json_error(400, "recipient_type must be profile or parent")

    recipient_profile_id = _optional_int_value(body.get("recipient_profile_id"), "recipient_profile_id")
    if recipient_type == "profile" and recipient_profile_id is None:
        return _json_error(400, "recipient_profile_id is required when recipient_type is profile")
    if len(content) > MAX_MESSAGE_LENGTH:
        return _json_error(400, f"Message must be {MAX_MESSAGE_LENGTH} characters or less")

    message = request.app[DB_KEY].add_message(
        sender_type,
        sender_profile_id,
        recipient_type,
        recipient_profile_id if recipient_type == "profile" else None,
        content,
        utc_now(),
    )
    await request.app[HUB_KEY].publish(NewMessage(message=message))

    notifier = request.app.get(NOTIFIER_KEY)
    if notifier is not None and message.recipient_type == "parent":
        await notifier.notify_message(message)

    return web.json_response(message.to_dict(), status=201)


@routes.get("/api/messages")
async def get_messages(request: web.Request) -> web.Response:
    profile_id = _int_value(request.query.get("profile"), "profile")
    messages = request.app[DB_KEY].list_messages_for_profile(profile_id)
    return web.json_response([message.to_dict() for message in messages])


@routes.post("/api/messages")
async def post_message(request: web.Request) -> web.Response:
    body = await _read_json(request)
    if body.get("sender_profile_id") is None:
        return _json_error(400, "sender_profile_id is required")
    return await _create_message(request, body, "profile", _int_value(body["sender_profile_id"], "sender_profile_id"))


@routes.post("/api/admin/messages")
async def post_admin_message(request: web.Request) -> web.Response:
    return await _create_message(request, await _read_json(request), "parent", None)


@routes.get("/api/messages/unread")
async def get_unread(request: web.Request) -> web.Response:
    profile_id = _int_value(request.query.get("profile"), "profile")
    ids = request.app[DB_KEY].list_unread_ids("profile", profile_id)
    return web.json_response({"count": len(ids), "ids": ids})


@routes.get("/api/admin/messages/unread")
async def get_admin_unread(request: web.Request) -> web.Response:
    ids = request.app[DB_KEY].list_unread_ids("parent")
    return web.json_response({"count": len(ids), "ids": ids})


async def _mark_read(request: web.Request) -> web.Response:
    message_id = _int_value(request.match_info["message_id"], "message_id")
    message = request.app[DB_KEY].mark_message_read(message_id)
    if message is None:
        return _json_error(404, "Message not found")

    await request.app[HUB_KEY].publish(
        MessageRead(
            message_id=message.id,
            recipient_type=message.recipient_type,
            recipient_profile_id=message.recipient_profile_id,
        )
    )
    return web.json_response({"success": True})


@routes.put("/api/messages/{message_id}/read")
async def put_message_read(request: web.Request) -> web.Response:
    return await _mark_read(request)


@routes.put("/api/admin/messages/{message_id}/read")
async def put_admin_message_read(request: web.Request) -> web.Response:
    return await _mark_read(request)


@routes.get("/api/bulletin")
async def get_pins(request: web.Request) -> web.Response:
    return web.json_response([pin.to_dict() for pin in request.app[DB_KEY].list_pins()])


@routes.post("/api/bulletin")
async def post_pin(request: web.Request) -> web.Response:
    body = await _read_json(request)
    if not body.get("pin_type") or not body.get("content") or body.get("x") is None or body.get("y") is None:
        return _json_error(400, "pin_type, content, x, y are required")

    try:
        pin = request.app[DB_KEY].add_pin(
            body["pin_type"],
            body["content"],
            float(body["x"]),
            float(body["y"]),
            rotation=float(body.get("rotation") or 0),
            color=body.get("color") or "#fef08a",
            profile_id=_optional_int_value(body.get("profile_id"), "profile_id"),
        )
    except (TypeError, ValueError):
        return _json_error(400, "x, y, and rotation must be numbers")

    await request.app[HUB_KEY].publish(BulletinPinChanged(action="add", pin_id=pin.id, pin=pin))
    return web.json_response(pin.to_dict(), status=201)


@routes.delete("/api/bulletin/{pin_id}")
async def delete_pin(request: web.Request) -> web.Response:
    pin_id = _int_value(request.match_info["pin_id"], "pin_id")
    if not request.app[DB_KEY].delete_pin(pin_id):
        return _json_error(404, "Pin not found")

    await request.app[HUB_KEY].publish(BulletinPinChanged(action="remove", pin_id=pin_id))
    return web.json_response({"success": True})


@routes.get("/api/admin/kiosks")
async def get_kiosks(request: web.Request) -> web.Response:
    hub = request.app[HUB_KEY]
    rows = [
        {
            "id": device.id,
            "name": device.name,
            "online": hub.is_online(device.id),
            "version": device.version,
            "update_status": device.update_status,
        }
        for device in request.app[DB_KEY].list_kiosks()
    ]
    return web.json_response(rows)


@routes.post("/api/kiosk/version")
async def post_kiosk_version(request: web.Request) -> web.Response:
    device = _device(request)
    body = await _read_json(request)
    version = str(body.get("version") or "").strip()
    if not version:
        return _json_error(400, "version is required")

    request.app[DB_KEY].set_device_version(device.id, version)
    await request.app[HUB_KEY].publish(KioskVersion(kiosk_id=device.id, version=version))
    return web.json_response({"success": True})


@routes.post("/api/kiosk/update-status")
async def post_kiosk_update_status(request: web.Request) -> web.Response:
    device = _device(request)
    body = await _read_json(request)
    status = str(body.get("status") or "").strip()
    if not status:
        return _json_error(400, "status is required")

    request.app[DB_KEY].set_device_update_status(device.id, status)
    await request.app[HUB_KEY].publish(KioskUpdateStatus(kiosk_id=device.id, status=status))
    return web.json_response({"success": True})


@routes.get("/ws")
async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    device = _device(request)
    kiosk_id = device.id if device.role == "kiosk" else None
    hub = request.app[HUB_KEY]

    ws = web.WebSocketResponse(heartbeat=30)
    await ws.prepare(request)
    await hub.attach(ws, kiosk_id=kiosk_id)

    try:
        # Pure push: inbound frames are read only to notice the close.
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.warning("WebSocket error: %s", ws.exception())
    finally:
        await hub.detach(ws, kiosk_id=kiosk_id)

    return ws


async def _close_sockets(app: web.Application) -> None:
    await app[HUB_KEY].close_all()


def create_app(
    db: Database,
    ledger: UsageLedger,
    hub: SyncHub | None = None,
    notifier: Notifier | None = None,
) -> web.Application:
    app = web.Application(middlewares=[auth_middleware])
    app[DB_KEY] = db
    app[LEDGER_KEY] = ledger
    app[HUB_KEY] = hub or SyncHub()
    if notifier is not None:
        app[NOTIFIER_KEY] = notifier

    app.add_routes(routes)
    app.on_shutdown.append(_close_sockets)
    return app
