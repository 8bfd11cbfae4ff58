from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(frozen=True, slots=True)
class Item:
    id: int
    profile_id: int
    name: str
    url: str
    daily_limit_minutes: int | None = None
    weekly_limit_minutes: int | None = None
    max_daily_minutes: int = 0
    limit_group: str | None = None


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    today_seconds: int
    week_seconds: int
    daily_limit_minutes: int | None
    weekly_limit_minutes: int | None
    max_daily_minutes: int
    bonus_minutes_today: int

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UsageSnapshot:
        return cls(
            today_seconds=int(data.get("today_seconds") or 0),
            week_seconds=int(data.get("week_seconds") or 0),
            daily_limit_minutes=_optional_int(data.get("daily_limit_minutes")),
            weekly_limit_minutes=_optional_int(data.get("weekly_limit_minutes")),
            max_daily_minutes=int(data.get("max_daily_minutes") or 0),
            bonus_minutes_today=int(data.get("bonus_minutes_today") or 0),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "today_seconds": self.today_seconds,
            "week_seconds": self.week_seconds,
            "daily_limit_minutes": self.daily_limit_minutes,
            "weekly_limit_minutes": self.weekly_limit_minutes,
            "max_daily_minutes": self.max_daily_minutes,
            "bonus_minutes_today": self.bonus_minutes_today,
        }


@dataclass(frozen=True, slots=True)
class UsageSegment:
    item_id: int
    started_at: datetime
    ended_at: datetime
    duration_seconds: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat(),
            "duration_seconds": self.duration_seconds,
        }


@dataclass(frozen=True, slots=True)
class BonusGrant:
    profile_id: int
    minutes: int
    granted_at: datetime


@dataclass(frozen=True, slots=True)
class Message:
    id: int
    sender_type: str
    sender_profile_id: int | None
    recipient_type: str
    recipient_profile_id: int | None
    content: str
    read: bool
    created_at: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            id=int(data["id"]),
            sender_type=data["sender_type"],
            sender_profile_id=_optional_int(data.get("sender_profile_id")),
            recipient_type=data["recipient_type"],
            recipient_profile_id=_optional_int(data.get("recipient_profile_id")),
            content=data.get("content", ""),
            read=bool(data.get("read")),
            created_at=data.get("created_at", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sender_type": self.sender_type,
            "sender_profile_id": self.sender_profile_id,
            "recipient_type": self.recipient_type,
            "recipient_profile_id": self.recipient_profile_id,
            "content": self.content,
            "read": self.read,
            "created_at": self.created_at,
        }


@dataclass(frozen=True, slots=True)
class BulletinPin:
    id: int
    pin_type: str
    content: str
    x: float
    y: float
    rotation: float = 0
    color: str = "#fef08a"
    profile_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BulletinPin:
        return cls(
            id=int(data["id"]),
            pin_type=data.get("pin_type", "note"),
            content=data.get("content", ""),
            x=float(data.get("x", 0)),
            y=float(data.get("y", 0)),
            rotation=float(data.get("rotation") or 0),
            color=data.get("color") or "#fef08a",
            profile_id=_optional_int(data.get("profile_id")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pin_type": self.pin_type,
            "content": self.content,
            "x": self.x,
            "y": self.y,
            "rotation": self.rotation,
            "color": self.color,
            "profile_id": self.profile_id,
        }


@dataclass(frozen=True, slots=True)
class KioskRow:
    id: int
    name: str
    online: bool = False
    version: str | None = None
    update_status: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KioskRow:
        return cls(
            id=int(data["id"]),
            name=data.get("name", ""),
            online=bool(data.get("online")),
            version=data.get("version"),
            update_status=data.get("update_status"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "online": self.online,
            "version": self.version,
            "update_status": self.update_status,
        }


@dataclass(frozen=True, slots=True)
class UsageSummaryRow:
    item_id: int
    name: str
    daily: list[tuple[str, int]]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.item_id,
            "name": self.name,
            "daily": [{"date": day, "seconds": seconds} for day, seconds in self.daily],
        }


@dataclass(frozen=True, slots=True)
class ReportRow:
    item_id: int
    name: str
    seconds: int


@dataclass(frozen=True, slots=True)
class Device:
    id: int
    name: str
    role: str
    version: str | None = None
    update_status: str | None = None


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)
