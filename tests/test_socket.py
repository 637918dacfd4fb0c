"""EventStream tests — a scripted fake stands in for websockets.connect."""

import asyncio
import json

import pytest

from vaultsync.client.session import SessionStore
from vaultsync.client.socket import (
    CONNECTED,
    CONNECTING,
    DISCONNECTED,
    ERROR,
    RECONNECTING,
    EventStream,
)
from vaultsync.realtime.events import asset_processed_success

CONNECTED_FRAME = json.dumps({"event": "connected", "room": "owner:U1"})


class FakeSocket:
    def __init__(self, frames: list[str], hold: bool = False):
        self.frames = list(frames)
        self.hold = hold
        self.closed = asyncio.Event()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def recv(self) -> str:
        return self.frames.pop(0)

    async def close(self) -> None:
        self.closed.set()

    async def __aiter__(self):
        for frame in self.frames:
            yield frame
        if self.hold:
            await self.closed.wait()


class FakeConnect:
    """Each call plays the next script; an exception script refuses the dial."""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.urls: list[str] = []

    def __call__(self, url: str):
        self.urls.append(url)
        script = self.scripts.pop(0) if self.scripts else OSError("connection refused")
        if isinstance(script, Exception):
            raise script
        return script


def stream_for(connect, token="tok", max_attempts=1):
    stream = EventStream(
        "ws://api.test/ws",
        SessionStore(token, "r1"),
        max_attempts=max_attempts,
        base_delay=0.001,
        connect=connect,
    )
    statuses: list[str] = []
    stream.on_status_change(statuses.append)
    return stream, statuses


@pytest.mark.asyncio
async def test_dispatches_events_then_gives_up_after_max_attempts():
    event = json.dumps(asset_processed_success("A1", "active"))
    connect = FakeConnect(FakeSocket([CONNECTED_FRAME, event, "not json", event]))
    stream, statuses = stream_for(connect)
    received = []
    stream.on("asset_processed", received.append)

    await stream.run()

    assert [e["assetId"] for e in received] == ["A1", "A1"]
    assert statuses == [CONNECTING, CONNECTED, RECONNECTING, ERROR]
    assert stream.last_error == "connection refused"
    assert "token=tok" in connect.urls[0]


@pytest.mark.asyncio
async def test_auth_rejection_stops_without_reconnecting():
    rejection = json.dumps({"event": "connect_error", "message": "token expired"})
    connect = FakeConnect(FakeSocket([rejection]))
    stream, statuses = stream_for(connect, max_attempts=5)

    await stream.run()

    assert statuses == [CONNECTING, ERROR]
    assert stream.last_error == "token expired"
    assert len(connect.urls) == 1


@pytest.mark.asyncio
async def test_reconnects_after_refused_dial():
    connect = FakeConnect(
        OSError("refused"), FakeSocket([CONNECTED_FRAME], hold=True)
    )
    stream, statuses = stream_for(connect, max_attempts=3)

    task = asyncio.create_task(stream.run())
    for _ in range(100):
        if stream.connected:
            break
        await asyncio.sleep(0.01)
    assert stream.connected

    await stream.stop()
    await asyncio.wait_for(task, timeout=1)

    assert statuses == [CONNECTING, RECONNECTING, CONNECTED, DISCONNECTED]
    assert len(connect.urls) == 2


@pytest.mark.asyncio
async def test_without_token_does_not_connect():
    connect = FakeConnect()
    stream, statuses = stream_for(connect, token=None)

    await stream.run()

    assert connect.urls == []
    assert stream.status == DISCONNECTED


def test_backoff_doubles_up_to_cap():
    stream = EventStream("ws://x/ws", SessionStore("t"), base_delay=1.0, max_delay=30.0)

    assert [stream.backoff_for(n) for n in range(1, 8)] == [1, 2, 4, 8, 16, 30, 30]


def test_failing_handler_does_not_block_others():
    stream = EventStream("ws://x/ws", SessionStore("t"))
    seen = []

    def broken(message):
        raise RuntimeError("boom")

    stream.on("asset_processed", broken)
    stream.on("asset_processed", seen.append)
    unsubscribe = stream.on("asset_processed", seen.append)
    unsubscribe()

    ran = stream.dispatch(json.dumps({"event": "asset_processed", "assetId": "A1"}))

    assert ran == 1
    assert len(seen) == 1
    assert stream.dispatch("[1, 2]") == 0
