from __future__ import annotations

import argparse
import asyncio
import logging
import secrets

import aiohttp
from aiohttp import web
from dotenv import load_dotenv

from .client import ApiClient
from .config import KioskConfig, ServerConfig, load_kiosk_config, load_server_config
from .db import Database
from .errors import CredentialRejected, LedgerUnavailable
from .hub import SyncHub
from .ledger import UsageLedger
from .reporter import DigestScheduler, Notifier, Reporter, open_webhook_channel
from .server import NOTIFIER_KEY, create_app
from .session import SessionTracker
from .surface import RecordingSurface
from .surfaces import ContentView, ItemLauncher, KioskMenu
from .sync import SyncClient

logger = logging.getLogger("screentime")


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def build_server_app(config: ServerConfig, db: Database) -> web.Application:
    ledger = UsageLedger(db=db, tz=config.timezone)
    app = create_app(db, ledger, SyncHub())

    if config.discord_webhook_url:
        webhook_url = config.discord_webhook_url

        async def webhook_context(app: web.Application):
            async with aiohttp.ClientSession() as session:
                notifier = Notifier(open_webhook_channel(webhook_url, session))
                app[NOTIFIER_KEY] = notifier
                scheduler = DigestScheduler(db, Reporter(ledger, db), notifier, config.timezone)
                scheduler.midnight_digest_loop.start()
                yield
                scheduler.midnight_digest_loop.cancel()

        app.cleanup_ctx.append(webhook_context)

    async def close_db(app: web.Application) -> None:
        db.close()

    app.on_cleanup.append(close_db)
    return app


def main() -> None:
    parser = argparse.ArgumentParser(description="Screen-time ledger and sync server")
    parser.add_argument("--add-device", metavar="NAME", help="register a device, print its token, and exit")
    parser.add_argument("--role", choices=("kiosk", "admin"), default="kiosk")
    args = parser.parse_args()

    load_dotenv()
    configure_logging()

    config = load_server_config()
    db = Database(config.db_path)
    db.initialize()

    if args.add_device:
        token = secrets.token_hex(32)
        device = db.add_device(args.add_device, token, role=args.role)
        db.close()
        print(f"{device.role} {device.id} ({device.name}): {token}")
        return

    app = build_server_app(config, db)
    logger.info("Serving on http://%s:%s (push channel at /ws)", config.host, config.port)
    web.run_app(app, host=config.host, port=config.port, print=None)


async def run_kiosk(config: KioskConfig, stop: asyncio.Event | None = None) -> None:
    stop = stop or asyncio.Event()

    def on_unauthorized(exc: CredentialRejected) -> None:
        logger.error("Device credential rejected; re-pair this kiosk: %s", exc)
        stop.set()

    api = ApiClient(config.server_url, config.device_token, timeout_seconds=config.request_timeout_seconds)
    sync = SyncClient(api, reconnect_delay_seconds=config.reconnect_delay_seconds, on_unauthorized=on_unauthorized)
    surface = RecordingSurface()
    tracker = SessionTracker(
        api,
        surface,
        home_url=config.home_url,
        heartbeat_seconds=config.heartbeat_seconds,
        warning_lead_seconds=config.warning_lead_seconds,
        limit_banner_seconds=config.limit_banner_seconds,
        on_unauthorized=on_unauthorized,
    )
    ContentView(sync, tracker)
    tracker.attach()

    # A desktop host drives the surface; sessions follow its navigation between registered items.
    launcher = ItemLauncher(tracker, surface, profile_id=config.profile_id, on_unauthorized=on_unauthorized)
    for item_id, live_url, management_url in config.item_routes:
        launcher.register(item_id, live_url, management_url)
    launcher.attach()

    if config.profile_id is not None:
        KioskMenu(
            api,
            sync,
            config.profile_id,
            [item_id for item_id, _, _ in config.item_routes],
            notify=lambda message: logger.info("New message %s for profile %s", message.id, config.profile_id),
        )

    try:
        await api.report_version(config.version)
    except LedgerUnavailable as exc:
        logger.warning("Could not report kiosk version: %s", exc)
    except CredentialRejected as exc:
        on_unauthorized(exc)

    if not stop.is_set():
        sync.start()
    try:
        await stop.wait()
    finally:
        launcher.detach()
        tracker.close()
        await sync.close()
        await api.close()


def kiosk_main() -> None:
    load_dotenv()
    configure_logging()

    config = load_kiosk_config()
    try:
        asyncio.run(run_kiosk(config))
    except KeyboardInterrupt:
        logger.info("Kiosk agent stopped")


if __name__ == "__main__":
    main()
