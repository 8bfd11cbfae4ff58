from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from screentime.client import ApiClient
from screentime.db import Database
from screentime.errors import CredentialRejected, LedgerUnavailable
from screentime.ledger import UsageLedger
from screentime.models import UsageSegment
from screentime.server import create_app


@pytest.fixture
async def server(aiohttp_server):
    db = Database(":memory:")
    db.initialize()
    db.add_device("Living room", "kiosk-token", "kiosk")
    db.add_item(1, "Blocks", "https://blocks.example", daily_limit_minutes=45)
    srv = await aiohttp_server(create_app(db, UsageLedger(db=db, tz=ZoneInfo("UTC"))))
    srv.db = db
    return srv


def segment(seconds: int) -> UsageSegment:
    ended = datetime.now(timezone.utc)
    return UsageSegment(
        item_id=1,
        started_at=ended - timedelta(seconds=seconds),
        ended_at=ended,
        duration_seconds=seconds,
    )


async def test_snapshot_and_append(server) -> None:
    api = ApiClient(str(server.make_url("")), "kiosk-token")

    assert await api.append_segment(segment(120)) is True
    snapshot = await api.get_snapshot(1, profile_id=1)

    assert snapshot.today_seconds == 120
    assert snapshot.daily_limit_minutes == 45
    await api.close()


async def test_rejected_token_raises_credential_error(server) -> None:
    api = ApiClient(str(server.make_url("")), "wrong")

    with pytest.raises(CredentialRejected):
        await api.get_snapshot(1)
    await api.close()


async def test_http_error_is_transient(server) -> None:
    api = ApiClient(str(server.make_url("")), "kiosk-token")

    with pytest.raises(LedgerUnavailable):
        await api.get_snapshot(404)
    await api.close()


async def test_unreachable_server_is_transient() -> None:
    api = ApiClient("http://127.0.0.1:1", "kiosk-token", timeout_seconds=1)

    with pytest.raises(LedgerUnavailable):
        await api.get_snapshot(1)
    await api.close()


async def test_close_waits_for_teardown_delivery(server) -> None:
    api = ApiClient(str(server.make_url("")), "kiosk-token")

    api.post_segment_nowait(segment(30))
    await api.close()

    assert server.db.list_segments_since([1], datetime.now(timezone.utc) - timedelta(hours=1))[0].duration_seconds == 30


def test_ws_url_follows_scheme() -> None:
    assert ApiClient("https://home.example/", "t").ws_url() == "wss://home.example/ws"
    assert ApiClient("http://10.0.0.2:3001", "t").ws_url() == "ws://10.0.0.2:3001/ws"


async def test_message_thread_and_kiosk_reports(server) -> None:
    api = ApiClient(str(server.make_url("")), "kiosk-token")
    server.db.add_message("parent", None, "profile", 1, "Dinner!", datetime.now(timezone.utc))

    thread = await api.fetch_messages(1)
    await api.report_version("1.4.0")
    await api.report_update_status("up-to-date")

    assert [message.content for message in thread] == ["Dinner!"]
    assert await api.fetch_unread_ids(1) == [thread[0].id]
    kiosk = server.db.get_device_by_token("kiosk-token")
    assert (kiosk.version, kiosk.update_status) == ("1.4.0", "up-to-date")
    await api.close()
