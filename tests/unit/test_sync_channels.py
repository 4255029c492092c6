import pytest

from apps.adsheet.sync.channels import REFRESH_EVENT, PollingChannel, WebSocketChannel
from apps.adsheet.sync.settings import SyncSettings
from apps.adsheet.sync.tasks import TaskTracker


class ScriptedClient:
    def __init__(self, responses):
        self.responses = list(responses)
        self.cursors = []

    async def fetch_updates(self, since):
        self.cursors.append(since)
        return self.responses.pop(0)


async def test_first_poll_only_sets_the_cursor():
    delivered = []

    async def handler(event):
        delivered.append(event)

    client = ScriptedClient(
        [
            {"cursor": 4, "events": [{"type": "full-refresh"}], "needs_full_refresh": False},
            {"cursor": 6, "events": [{"type": "field-update", "record_id": 1, "field": "name"}, "junk"], "needs_full_refresh": False},
            {"cursor": 9, "events": [], "needs_full_refresh": True},
        ]
    )
    channel = PollingChannel(client, handler, interval=0.01)

    assert await channel.poll_once() == 0
    assert channel.cursor == 4
    assert await channel.poll_once() == 1
    assert await channel.poll_once() == 1

    assert client.cursors == [None, 4, 6]
    assert delivered[0]["type"] == "field-update"
    assert delivered[1] == REFRESH_EVENT
    assert channel.cursor == 9


async def test_websocket_channel_builds_session_scoped_url():
    async def handler(event):
        return None

    channel = WebSocketChannel(
        "ws://sheet.test/api/adsheet/v1/ws?tenant=acme",
        handler,
        session_id="session_abc",
        headers={"X-User-Id": "7"},
    )
    assert channel.url == "ws://sheet.test/api/adsheet/v1/ws?tenant=acme&session_id=session_abc"
    assert channel.headers["X-Session-Id"] == "session_abc"
    assert channel.headers["X-User-Id"] == "7"
    assert await channel.send_status(1, "paused") is False


def test_websocket_backoff_is_capped():
    async def handler(event):
        return None

    channel = WebSocketChannel("ws://x/ws", handler, session_id="s")
    assert [channel.backoff(attempt) for attempt in (1, 2, 3)] == pytest.approx([1.0, 1.5, 2.25])
    assert channel.backoff(10) == 5.0


async def test_task_tracker_settles_and_survives_failures():
    tracker = TaskTracker()
    results = []

    async def ok():
        results.append("ok")

    async def boom():
        raise RuntimeError("lost")

    tracker.spawn(ok(), name="ok")
    tracker.spawn(boom(), name="boom")
    await tracker.settle()

    assert results == ["ok"]
    assert len(tracker) == 0


def test_sync_settings_read_environment(monkeypatch):
    monkeypatch.setenv("SYNC_SAVE_DELAY", "1.25")
    monkeypatch.setenv("SYNC_MAX_CREATE_RETRIES", "oops")
    monkeypatch.setenv("SYNC_SAVE_RETRY_DELAY", "0.5")
    monkeypatch.setenv("SYNC_MAX_SAVE_RETRIES", "5")
    settings = SyncSettings.from_env()
    assert settings.save_delay == 1.25
    assert settings.save_retry_delay == 0.5
    assert settings.max_save_retries == 5
    assert settings.max_create_retries == SyncSettings().max_create_retries
