from __future__ import annotations

from collections import OrderedDict
from dataclasses import replace

from .budget import remaining_seconds
from .events import BulletinPinChanged, KioskStatusChange, KioskUpdateStatus, KioskVersion, MessageRead
from .models import BulletinPin, KioskRow, Message, UsageSnapshot

TOMBSTONE_LIMIT = 1000


class _Tombstones:
    """Bounded set of ids known to be gone (read messages, removed pins)."""

    def __init__(self, limit: int = TOMBSTONE_LIMIT) -> None:
        self.limit = limit
        self._ids: OrderedDict[int, None] = OrderedDict()

    def add(self, entity_id: int) -> None:
        self._ids[entity_id] = None
        self._ids.move_to_end(entity_id)
        while len(self._ids) > self.limit:
            self._ids.popitem(last=False)

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._ids


class UnreadCounter:
    """Unread messages addressed to one recipient (a profile, or the parent when profile_id is None)."""

    def __init__(self, profile_id: int | None = None) -> None:
        self.profile_id = profile_id
        self._unread: set[int] = set()
        self._read = _Tombstones()

    @property
    def count(self) -> int:
        return len(self._unread)

    @property
    def unread_ids(self) -> frozenset[int]:
        return frozenset(self._unread)

    def load(self, unread_ids: list[int]) -> None:
        # Reads we have already seen win over a fetch that raced them.
        self._unread = {message_id for message_id in unread_ids if message_id not in self._read}

    def is_recipient(self, recipient_type: str, recipient_profile_id: int | None) -> bool:
        if self.profile_id is None:
            return recipient_type == "parent"
        return recipient_type == "profile" and recipient_profile_id == self.profile_id

    def apply_new_message(self, message: Message) -> bool:
        """Returns True only the first time an unread message for this recipient is seen."""
        if not self.is_recipient(message.recipient_type, message.recipient_profile_id):
            return False
        if message.read or message.id in self._read or message.id in self._unread:
            return False
        self._unread.add(message.id)
        return True

    def apply_message_read(self, event: MessageRead) -> bool:
        if not self.is_recipient(event.recipient_type, event.recipient_profile_id):
            return False
        self._read.add(event.message_id)
        if event.message_id in self._unread:
            self._unread.discard(event.message_id)
            return True
        return False


class PinBoard:
    def __init__(self) -> None:
        self._pins: dict[int, BulletinPin] = {}
        self._removed = _Tombstones()

    @property
    def pins(self) -> list[BulletinPin]:
        return [self._pins[pin_id] for pin_id in sorted(self._pins)]

    def load(self, pins: list[BulletinPin]) -> None:
        self._pins = {pin.id: pin for pin in pins if pin.id not in self._removed}

    def add(self, pin: BulletinPin) -> bool:
        # Also used for the creator's own HTTP response, which may land after the broadcast.
        if pin.id in self._removed:
            return False
        is_new = pin.id not in self._pins
        self._pins[pin.id] = pin
        return is_new

    def remove(self, pin_id: int) -> bool:
        self._removed.add(pin_id)
        return self._pins.pop(pin_id, None) is not None

    def apply(self, event: BulletinPinChanged) -> bool:
        if event.action == "add" and event.pin is not None:
            return self.add(event.pin)
        if event.action == "remove":
            return self.remove(event.pin_id)
        return False


class KioskDirectory:
    def __init__(self) -> None:
        self._rows: dict[int, KioskRow] = {}

    @property
    def rows(self) -> list[KioskRow]:
        return [self._rows[kiosk_id] for kiosk_id in sorted(self._rows)]

    def get(self, kiosk_id: int) -> KioskRow | None:
        return self._rows.get(kiosk_id)

    def load(self, rows: list[KioskRow]) -> None:
        self._rows = {row.id: row for row in rows}

    def apply(self, event: KioskStatusChange | KioskVersion | KioskUpdateStatus) -> bool:
        row = self._rows.get(event.kiosk_id)
        if row is None:
            # Not loaded yet; the next full fetch will include it.
            return False

        if isinstance(event, KioskStatusChange):
            updated = replace(row, online=event.online)
        elif isinstance(event, KioskVersion):
            updated = replace(row, version=event.version)
        else:
            updated = replace(row, update_status=event.status)

        self._rows[event.kiosk_id] = updated
        return updated != row


class RemainingTimeBoard:
    """Predictive remaining-time labels for the items a surface shows."""

    def __init__(self) -> None:
        self._remaining: dict[int, int | None] = {}

    def items(self) -> list[int]:
        return sorted(self._remaining)

    def get(self, item_id: int) -> int | None:
        return self._remaining.get(item_id)

    def set_snapshot(self, item_id: int, snapshot: UsageSnapshot) -> None:
        self._remaining[item_id] = remaining_seconds(snapshot)

    def forget(self, item_id: int) -> None:
        self._remaining.pop(item_id, None)
