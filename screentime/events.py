from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Union

from .models import BulletinPin, Message

logger = logging.getLogger(__name__)

REFRESH = "refresh"
NEW_MESSAGE = "new_message"
MESSAGE_READ = "message_read"
BULLETIN_PIN = "bulletin_pin"
KIOSK_STATUS_CHANGE = "kiosk_status_change"
KIOSK_VERSION = "kiosk_version"
KIOSK_UPDATE_STATUS = "kiosk_update_status"

ALL_TAGS = frozenset(
    {REFRESH, NEW_MESSAGE, MESSAGE_READ, BULLETIN_PIN, KIOSK_STATUS_CHANGE, KIOSK_VERSION, KIOSK_UPDATE_STATUS}
)


@dataclass(frozen=True, slots=True)
class Refresh:
    type = REFRESH


@dataclass(frozen=True, slots=True)
class NewMessage:
    message: Message
    type = NEW_MESSAGE


@dataclass(frozen=True, slots=True)
class MessageRead:
    message_id: int
    recipient_type: str
    recipient_profile_id: int | None
    type = MESSAGE_READ


@dataclass(frozen=True, slots=True)
class BulletinPinChanged:
    action: str
    pin_id: int
    pin: BulletinPin | None = None
    type = BULLETIN_PIN


@dataclass(frozen=True, slots=True)
class KioskStatusChange:
    kiosk_id: int
    online: bool
    type = KIOSK_STATUS_CHANGE


@dataclass(frozen=True, slots=True)
class KioskVersion:
    kiosk_id: int
    version: str
    type = KIOSK_VERSION


@dataclass(frozen=True, slots=True)
class KioskUpdateStatus:
    kiosk_id: int
    status: str
    type = KIOSK_UPDATE_STATUS


SyncEvent = Union[
    Refresh,
    NewMessage,
    MessageRead,
    BulletinPinChanged,
    KioskStatusChange,
    KioskVersion,
    KioskUpdateStatus,
]


def event_to_dict(event: SyncEvent) -> dict[str, Any]:
    if isinstance(event, Refresh):
        return {"type": REFRESH}
    if isinstance(event, NewMessage):
        return {"type": NEW_MESSAGE, "message": event.message.to_dict()}
    if isinstance(event, MessageRead):
        return {
            "type": MESSAGE_READ,
            "message_id": event.message_id,
            "recipient_type": event.recipient_type,
            "recipient_profile_id": event.recipient_profile_id,
        }
    if isinstance(event, BulletinPinChanged):
        pin = event.pin.to_dict() if event.pin is not None else {"id": event.pin_id}
        return {"type": BULLETIN_PIN, "action": event.action, "pin": pin}
    if isinstance(event, KioskStatusChange):
        return {"type": KIOSK_STATUS_CHANGE, "kiosk_id": event.kiosk_id, "online": event.online}
    if isinstance(event, KioskVersion):
        return {"type": KIOSK_VERSION, "kiosk_id": event.kiosk_id, "version": event.version}
    if isinstance(event, KioskUpdateStatus):
        return {"type": KIOSK_UPDATE_STATUS, "kiosk_id": event.kiosk_id, "status": event.status}
    raise TypeError(f"Unsupported sync event: {event!r}")


def encode_event(event: SyncEvent) -> str:
    return json.dumps(event_to_dict(event))


def decode_event(raw: str | bytes) -> SyncEvent | None:
    """Unknown tags and malformed payloads decode to None."""
    try:
        data = json.loads(raw)
    except ValueError:
        logger.debug("Dropping non-JSON frame")
        return None

    if not isinstance(data, dict):
        return None

    try:
        return _event_from_dict(data)
    except (KeyError, TypeError, ValueError):
        logger.debug("Dropping malformed %s frame", data.get("type"))
        return None


def _event_from_dict(data: dict[str, Any]) -> SyncEvent | None:
    tag = data.get("type")

    if tag == REFRESH:
        return Refresh()
    if tag == NEW_MESSAGE:
        return NewMessage(message=Message.from_dict(data["message"]))
    if tag == MESSAGE_READ:
        recipient = data.get("recipient_profile_id")
        return MessageRead(
            message_id=int(data["message_id"]),
            recipient_type=data.get("recipient_type") or ("profile" if recipient is not None else "parent"),
            recipient_profile_id=int(recipient) if recipient is not None else None,
        )
    if tag == BULLETIN_PIN:
        action = data["action"]
        if action not in ("add", "remove"):
            raise ValueError(f"Unknown bulletin_pin action: {action}")
        pin_data = data["pin"]
        pin = BulletinPin.from_dict(pin_data) if action == "add" else None
        return BulletinPinChanged(action=action, pin_id=int(pin_data["id"]), pin=pin)
    if tag == KIOSK_STATUS_CHANGE:
        return KioskStatusChange(kiosk_id=int(data["kiosk_id"]), online=bool(data["online"]))
    if tag == KIOSK_VERSION:
        return KioskVersion(kiosk_id=int(data["kiosk_id"]), version=str(data["version"]))
    if tag == KIOSK_UPDATE_STATUS:
        return KioskUpdateStatus(kiosk_id=int(data["kiosk_id"]), status=str(data["status"]))

    logger.debug("Ignoring unknown event tag %r", tag)
    return None
