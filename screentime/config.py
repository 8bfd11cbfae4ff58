from __future__ import annotations

import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


@dataclass(frozen=True, slots=True)
class ServerConfig:
    db_path: str
    host: str
    port: int
    timezone: ZoneInfo
    discord_webhook_url: str | None


@dataclass(frozen=True, slots=True)
class KioskConfig:
    server_url: str
    device_token: str
    version: str
    home_url: str
    heartbeat_seconds: int
    warning_lead_seconds: int
    reconnect_delay_seconds: int
    request_timeout_seconds: int
    limit_banner_seconds: int
    profile_id: int | None = None
    item_routes: tuple[tuple[int, str, str | None], ...] = ()


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value.strip()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc

    if parsed <= 0:
        raise ValueError(f"Environment variable {name} must be positive")
    return parsed


def _item_routes_env(name: str) -> tuple[tuple[int, str, str | None], ...]:
    """Parse `4=/games/4;/games/4/manage,7=/apps/7` into (item_id, live_url, management_url)."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()

    routes = []
    for entry in raw.split(","):
        item_part, _, urls = entry.strip().partition("=")
        live_url, _, management_url = urls.partition(";")
        if not item_part.strip().isdigit() or not live_url.strip():
            raise ValueError(f"Invalid item route in {name}: {entry.strip()!r}")
        routes.append((int(item_part), live_url.strip(), management_url.strip() or None))
    return tuple(routes)


def _timezone_from_env(name: str) -> ZoneInfo:
    tz_name = _required_env(name)
    try:
        return ZoneInfo(tz_name)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"Invalid timezone in {name}: {tz_name}") from exc


def load_server_config() -> ServerConfig:
    webhook = os.getenv("DISCORD_WEBHOOK_URL", "").strip() or None
    return ServerConfig(
        db_path=os.getenv("SCREENTIME_DB_PATH", "screentime.db").strip(),
        host=os.getenv("SCREENTIME_HOST", "0.0.0.0").strip(),
        port=_int_env("SCREENTIME_PORT", 3001),
        timezone=_timezone_from_env("TIMEZONE"),
        discord_webhook_url=webhook,
    )


def load_kiosk_config() -> KioskConfig:
    return KioskConfig(
        server_url=_required_env("SCREENTIME_SERVER_URL").rstrip("/"),
        device_token=_required_env("DEVICE_TOKEN"),
        version=os.getenv("KIOSK_VERSION", "0.0.0").strip(),
        home_url=os.getenv("HOME_URL", "/menu").strip(),
        heartbeat_seconds=_int_env("HEARTBEAT_SECONDS", 60),
        warning_lead_seconds=_int_env("WARNING_LEAD_SECONDS", 60),
        reconnect_delay_seconds=_int_env("RECONNECT_DELAY_SECONDS", 3),
        request_timeout_seconds=_int_env("REQUEST_TIMEOUT_SECONDS", 10),
        limit_banner_seconds=_int_env("LIMIT_BANNER_SECONDS", 5),
        profile_id=_int_env("KIOSK_PROFILE_ID", 1) if os.getenv("KIOSK_PROFILE_ID") else None,
        item_routes=_item_routes_env("KIOSK_ITEMS"),
    )
