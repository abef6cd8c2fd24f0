from dataclasses import replace

import pytest

from freshline.access.policy import Principal
from freshline.client import FreshlineClient
from freshline.core.result import Success
from freshline.core.settings import get_settings
from freshline.realtime.notifications import RecordingNotifier


class MemoryRemote:
    def __init__(self):
        self.rows = {"clients": [{"id": 1, "name": "Acme"}]}
        self.fetches = 0
        self.closed = False

    async def fetch(self, resource, filters):
        self.fetches += 1
        return [dict(row) for row in self.rows.get(resource, [])]

    async def mutate(self, resource, patch):
        return dict(patch)

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_client_wires_realtime_into_cache_and_notifications(make_connector, make_session, eventually):
    settings = replace(get_settings(), reconnect_interval_seconds=0.01, max_reconnect_attempts=1)
    session = make_session()
    connector = make_connector([session])
    remote = MemoryRemote()
    notifier = RecordingNotifier()

    client = FreshlineClient.from_settings(
        settings,
        principal=Principal("agent", "3"),
        notifier=notifier,
        remote=remote,
        connector=connector,
        configure_logs=False,
    )
    async with client:
        assert await client.connection.wait_until_open(timeout=1)
        assert connector.urls == ["ws://localhost:8080/ws"]
        assert await client.data.get("clients") == Success([{"id": 1, "name": "Acme"}])

        session.feed(
            {
                "type": "db-event",
                "data": {"table": "clients", "eventType": "UPDATE", "new": {"id": 1, "name": "Acme Ltd"}},
            }
        )
        session.feed({"type": "alert", "data": {"severity": "high", "message": "Queue overflow"}})
        await eventually(lambda: notifier.notifications)

        assert await client.data.get("clients") == Success([{"id": 1, "name": "Acme Ltd"}])
        assert remote.fetches == 1
        assert notifier.notifications[0].urgent

        search = client.search("clients", delay=0.01)
        assert search.min_query_length == settings.search_min_query_length

    assert not client.connection.running
    assert session.closed
    # The caller owns the remote it passed in.
    assert remote.closed is False
