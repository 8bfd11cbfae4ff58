from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

from .days import to_utc
from .models import BonusGrant, BulletinPin, Device, Item, Message, UsageSegment


class Database:
    """Thin SQLite access layer for the usage ledger and the records it publishes about."""

    def __init__(self, db_path: str | Path) -> None:
        self._conn = sqlite3.connect(str(db_path))
        self._conn.row_factory = sqlite3.Row
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._conn.close()
        self._closed = True

    def initialize(self) -> None:
        # items: restricted apps/sites with their configured limits.
        # usage_segments: append-only ledger; the unique key makes retried appends harmless.
        # bonus_grants: additive bonus minutes per profile.
        # devices: per-device bearer credentials (kiosks and admin dashboards).
        # meta: small key/value store for scheduler markers.
        self._conn.executescript(
            """
            PRAGMA journal_mode = WAL;

            CREATE TABLE IF NOT EXISTS items (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              profile_id INTEGER NOT NULL,
              name TEXT NOT NULL,
              url TEXT NOT NULL,
              daily_limit_minutes INTEGER,
              weekly_limit_minutes INTEGER,
              max_daily_minutes INTEGER NOT NULL DEFAULT 0,
              limit_group TEXT
            );

            CREATE TABLE IF NOT EXISTS usage_segments (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              item_id INTEGER NOT NULL,
              profile_id INTEGER NOT NULL,
              started_at_utc TEXT NOT NULL,
              ended_at_utc TEXT NOT NULL,
              duration_seconds INTEGER NOT NULL,
              UNIQUE (item_id, started_at_utc, ended_at_utc)
            );

            CREATE INDEX IF NOT EXISTS idx_usage_segments_started
              ON usage_segments (item_id, started_at_utc);

            CREATE TABLE IF NOT EXISTS bonus_grants (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              profile_id INTEGER NOT NULL,
              minutes INTEGER NOT NULL,
              granted_at_utc TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              sender_type TEXT NOT NULL,
              sender_profile_id INTEGER,
              recipient_type TEXT NOT NULL,
              recipient_profile_id INTEGER,
              content TEXT NOT NULL,
              read INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS bulletin_pins (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              pin_type TEXT NOT NULL,
              content TEXT NOT NULL,
              x REAL NOT NULL,
              y REAL NOT NULL,
              rotation REAL NOT NULL DEFAULT 0,
              color TEXT NOT NULL DEFAULT '#fef08a',
              profile_id INTEGER
            );

            CREATE TABLE IF NOT EXISTS devices (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL,
              token TEXT NOT NULL UNIQUE,
              role TEXT NOT NULL DEFAULT 'kiosk',
              version TEXT,
              update_status TEXT
            );

            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    def add_item(
        self,
        profile_id: int,
        name: str,
        url: str,
        *,
        daily_limit_minutes: int | None = None,
        weekly_limit_minutes: int | None = None,
        max_daily_minutes: int = 0,
        limit_group: str | None = None,
    ) -> Item:
        cursor = self._conn.execute(
            """
            INSERT INTO items (profile_id, name, url, daily_limit_minutes, weekly_limit_minutes, max_daily_minutes, limit_group)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (profile_id, name, url, daily_limit_minutes, weekly_limit_minutes, max_daily_minutes, limit_group),
        )
        self._conn.commit()
        row = self._conn.execute("SELECT * FROM items WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return _item_from_row(row)

    def get_item(self, item_id: int) -> Item | None:
        row = self._conn.execute("SELECT * FROM items WHERE id = ?", (item_id,)).fetchone()
        if row is None:
            return None
        return _item_from_row(row)

    def list_items(self, profile_id: int) -> list[Item]:
        rows = self._conn.execute(
            "SELECT * FROM items WHERE profile_id = ? ORDER BY id",
            (profile_id,),
        ).fetchall()
        return [_item_from_row(row) for row in rows]

    def update_item_limits(
        self,
        item_id: int,
        *,
        daily_limit_minutes: int | None,
        weekly_limit_minutes: int | None,
        max_daily_minutes: int,
    ) -> Item | None:
        self._conn.execute(
            """
            UPDATE items
            SET daily_limit_minutes = ?, weekly_limit_minutes = ?, max_daily_minutes = ?
            WHERE id = ?
            """,
            (daily_limit_minutes, weekly_limit_minutes, max_daily_minutes, item_id),
        )
        self._conn.commit()
        return self.get_item(item_id)

    def list_profile_ids(self) -> list[int]:
        rows = self._conn.execute("SELECT DISTINCT profile_id FROM items ORDER BY profile_id").fetchall()
        return [row["profile_id"] for row in rows]

    def limit_group_item_ids(self, item: Item) -> list[int]:
        """Items whose usage counts toward ``item``'s limits (itself, plus its shared group)."""
        if item.limit_group is None:
            return [item.id]
        rows = self._conn.execute(
            "SELECT id FROM items WHERE profile_id = ? AND limit_group = ? ORDER BY id",
            (item.profile_id, item.limit_group),
        ).fetchall()
        return [row["id"] for row in rows]

    def add_usage_segment(
        self,
        item_id: int,
        profile_id: int,
        started_at_utc: datetime,
        ended_at_utc: datetime,
        duration_seconds: int,
    ) -> bool:
        # Sub-second spans are discarded, never rounded up.
        if duration_seconds < 1:
            return False

        cursor = self._conn.execute(
            """
            INSERT OR IGNORE INTO usage_segments (item_id, profile_id, started_at_utc, ended_at_utc, duration_seconds)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                item_id,
                profile_id,
                to_utc(started_at_utc).isoformat(),
                to_utc(ended_at_utc).isoformat(),
                int(duration_seconds),
            ),
        )
        self._conn.commit()
        return cursor.rowcount > 0

    def list_segments_since(self, item_ids: list[int], since_utc: datetime) -> list[UsageSegment]:
        if not item_ids:
            return []
        placeholders = ",".join("?" for _ in item_ids)
        rows = self._conn.execute(
            f"""
            SELECT item_id, started_at_utc, ended_at_utc, duration_seconds
            FROM usage_segments
            WHERE item_id IN ({placeholders}) AND started_at_utc >= ?
            ORDER BY started_at_utc
            """,
            (*item_ids, to_utc(since_utc).isoformat()),
        ).fetchall()
        return [_segment_from_row(row) for row in rows]

    def add_bonus_grant(self, profile_id: int, minutes: int, granted_at_utc: datetime) -> BonusGrant:
        granted = to_utc(granted_at_utc)
        self._conn.execute(
            "INSERT INTO bonus_grants (profile_id, minutes, granted_at_utc) VALUES (?, ?, ?)",
            (profile_id, minutes, granted.isoformat()),
        )
        self._conn.commit()
        return BonusGrant(profile_id=profile_id, minutes=minutes, granted_at=granted)

    def sum_bonus_minutes(self, profile_id: int, since_utc: datetime, until_utc: datetime) -> int:
        row = self._conn.execute(
            """
            SELECT COALESCE(SUM(minutes), 0) AS total
            FROM bonus_grants
            WHERE profile_id = ? AND granted_at_utc >= ? AND granted_at_utc < ?
            """,
            (profile_id, to_utc(since_utc).isoformat(), to_utc(until_utc).isoformat()),
        ).fetchone()
        return int(row["total"])

    def add_message(
        self,
        sender_type: str,
        sender_profile_id: int | None,
        recipient_type: str,
        recipient_profile_id: int | None,
        content: str,
        created_at_utc: datetime,
    ) -> Message:
        cursor = self._conn.execute(
            """
            INSERT INTO messages (sender_type, sender_profile_id, recipient_type, recipient_profile_id, content, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (sender_type, sender_profile_id, recipient_type, recipient_profile_id, content, to_utc(created_at_utc).isoformat()),
        )
        self._conn.commit()
        row = self._conn.execute("SELECT * FROM messages WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return _message_from_row(row)

    def get_message(self, message_id: int) -> Message | None:
        row = self._conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        if row is None:
            return None
        return _message_from_row(row)

    def mark_message_read(self, message_id: int) -> Message | None:
        self._conn.execute("UPDATE messages SET read = 1 WHERE id = ?", (message_id,))
        self._conn.commit()
        return self.get_message(message_id)

    def list_messages_for_profile(self, profile_id: int) -> list[Message]:
        rows = self._conn.execute(
            """
            SELECT * FROM messages
            WHERE (sender_type = 'profile' AND sender_profile_id = ?)
               OR (recipient_type = 'profile' AND recipient_profile_id = ?)
            ORDER BY created_at ASC, id ASC
            """,
            (profile_id, profile_id),
        ).fetchall()
        return [_message_from_row(row) for row in rows]

    def list_unread_ids(self, recipient_type: str, recipient_profile_id: int | None = None) -> list[int]:
        if recipient_type == "parent":
            rows = self._conn.execute(
                "SELECT id FROM messages WHERE recipient_type = 'parent' AND read = 0 ORDER BY id"
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT id FROM messages
                WHERE recipient_type = 'profile' AND recipient_profile_id = ? AND read = 0
                ORDER BY id
                """,
                (recipient_profile_id,),
            ).fetchall()
        return [row["id"] for row in rows]

    def add_pin(
        self,
        pin_type: str,
        content: str,
        x: float,
        y: float,
        *,
        rotation: float = 0,
        color: str = "#fef08a",
        profile_id: int | None = None,
    ) -> BulletinPin:
        cursor = self._conn.execute(
            """
            INSERT INTO bulletin_pins (pin_type, content, x, y, rotation, color, profile_id)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (pin_type, content, x, y, rotation, color, profile_id),
        )
        self._conn.commit()
        row = self._conn.execute("SELECT * FROM bulletin_pins WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return BulletinPin.from_dict(dict(row))

    def get_pin(self, pin_id: int) -> BulletinPin | None:
        row = self._conn.execute("SELECT * FROM bulletin_pins WHERE id = ?", (pin_id,)).fetchone()
        if row is None:
            return None
        return BulletinPin.from_dict(dict(row))

    def list_pins(self) -> list[BulletinPin]:
        rows = self._conn.execute("SELECT * FROM bulletin_pins ORDER BY id").fetchall()
        return [BulletinPin.from_dict(dict(row)) for row in rows]

    def delete_pin(self, pin_id: int) -> bool:
        cursor = self._conn.execute("DELETE FROM bulletin_pins WHERE id = ?", (pin_id,))
        self._conn.commit()
        return cursor.rowcount > 0

    def add_device(self, name: str, token: str, role: str = "kiosk") -> Device:
        cursor = self._conn.execute(
            "INSERT INTO devices (name, token, role) VALUES (?, ?, ?)",
            (name, token, role),
        )
        self._conn.commit()
        return Device(id=int(cursor.lastrowid), name=name, role=role)

    def get_device_by_token(self, token: str) -> Device | None:
        row = self._conn.execute(
            "SELECT id, name, role, version, update_status FROM devices WHERE token = ?",
            (token,),
        ).fetchone()
        if row is None:
            return None
        return _device_from_row(row)

    def list_kiosks(self) -> list[Device]:
        rows = self._conn.execute(
            "SELECT id, name, role, version, update_status FROM devices WHERE role = 'kiosk' ORDER BY id"
        ).fetchall()
        return [_device_from_row(row) for row in rows]

    def set_device_version(self, device_id: int, version: str) -> None:
        self._conn.execute("UPDATE devices SET version = ? WHERE id = ?", (version, device_id))
        self._conn.commit()

    def set_device_update_status(self, device_id: int, status: str) -> None:
        self._conn.execute("UPDATE devices SET update_status = ? WHERE id = ?", (status, device_id))
        self._conn.commit()

    def get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            """
            INSERT INTO meta (key, value)
            VALUES (?, ?)
            ON CONFLICT(key)
            DO UPDATE SET value=excluded.value
            """,
            (key, value),
        )
        self._conn.commit()


def _item_from_row(row: sqlite3.Row) -> Item:
    return Item(
        id=row["id"],
        profile_id=row["profile_id"],
        name=row["name"],
        url=row["url"],
        daily_limit_minutes=row["daily_limit_minutes"],
        weekly_limit_minutes=row["weekly_limit_minutes"],
        max_daily_minutes=row["max_daily_minutes"] or 0,
        limit_group=row["limit_group"],
    )


def _segment_from_row(row: sqlite3.Row) -> UsageSegment:
    return UsageSegment(
        item_id=row["item_id"],
        started_at=datetime.fromisoformat(row["started_at_utc"]),
        ended_at=datetime.fromisoformat(row["ended_at_utc"]),
        duration_seconds=row["duration_seconds"],
    )


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message.from_dict(dict(row))


def _device_from_row(row: sqlite3.Row) -> Device:
    return Device(
        id=row["id"],
        name=row["name"],
        role=row["role"],
        version=row["version"],
        update_status=row["update_status"],
    )
