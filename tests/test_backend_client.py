import asyncio
import json

import pytest
from loguru import logger

from testbridge.backend.client import BackendClient, ClientState
from testbridge.core.protocol import TestServerEvent
from testbridge.core.types import StdioEvent
from testbridge.utils.exceptions import ChannelClosedError, RemoteError


class _FakeChannel:
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, line: str) -> None:
        if self.closed:
            raise ChannelClosedError(reason="fake channel closed")
        self.sent.append(json.loads(line))

    async def receive(self) -> str | None:
        return await self._inbox.get()

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None

    def feed(self, frame: dict | str) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def eof(self) -> None:
        self._inbox.put_nowait(None)


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def _client(**kwargs) -> tuple[BackendClient, _FakeChannel]:
    channel = _FakeChannel()
    client = BackendClient(channel, **kwargs)
    client.start()
    return client, channel


@pytest.mark.asyncio
async def test_concurrent_calls_resolve_by_id_in_any_order():
    client, channel = _client()
    tasks = [asyncio.create_task(client.call("echo", {"n": n})) for n in range(5)]
    await _settle()

    ids = [frame["id"] for frame in channel.sent]
    assert ids == sorted(set(ids))
    assert [frame["params"]["n"] for frame in channel.sent] == [0, 1, 2, 3, 4]

    for frame in reversed(channel.sent):
        channel.feed({"id": frame["id"], "result": frame["params"]["n"] * 10})
    assert await asyncio.gather(*tasks) == [0, 10, 20, 30, 40]
    assert client.pending_count == 0


@pytest.mark.asyncio
async def test_error_response_rejects_only_that_call():
    client, channel = _client()
    failing = asyncio.create_task(client.call("test", {}))
    ok = asyncio.create_task(client.call("list", {}))
    await _settle()

    channel.feed({"id": 1, "error": {"code": "BOOM", "message": "bad config", "data": {"line": 2}}})
    channel.feed({"id": 2, "result": None})

    with pytest.raises(RemoteError) as exc_info:
        await failing
    assert exc_info.value.code == "BOOM"
    assert exc_info.value.data == {"line": 2}
    assert exc_info.value.method == "test"
    assert await ok is None
    assert client.state is ClientState.OPEN


@pytest.mark.asyncio
async def test_stale_and_unknown_responses_are_ignored():
    client, channel = _client()
    first = asyncio.create_task(client.call("stop", {}))
    await _settle()
    channel.feed({"id": 1, "result": "done"})
    assert await first == "done"

    channel.feed({"id": 1, "result": "again"})
    channel.feed({"id": 999, "error": {"code": "X", "message": "late"}})
    await _settle()

    second = asyncio.create_task(client.call("stop", {}))
    await _settle()
    assert channel.sent[-1]["id"] == 2
    channel.feed({"id": 2, "result": "second"})
    assert await second == "second"


@pytest.mark.asyncio
async def test_invalid_lines_are_skipped():
    client, channel = _client()
    call = asyncio.create_task(client.call("list", {}))
    await _settle()
    channel.feed("this is not json")
    channel.feed({"unrelated": True})
    channel.feed({"id": 1, "result": [1, 2]})
    assert await call == [1, 2]


@pytest.mark.asyncio
async def test_event_fans_out_to_every_listener_in_registration_order():
    client, channel = _client()
    seen: list[tuple[str, StdioEvent]] = []
    client.on(TestServerEvent.STDIO, lambda e: seen.append(("first", e)))
    client.on("stdio", lambda e: seen.append(("second", e)))

    channel.feed({"event": "stdio", "payload": {"type": "stderr", "text": "oops\n"}})
    await _settle()

    expected = StdioEvent(type="stderr", text="oops\n")
    assert seen == [("first", expected), ("second", expected)]


@pytest.mark.asyncio
async def test_raising_listener_does_not_stop_dispatch():
    client, channel = _client()
    seen: list[StdioEvent] = []
    errors: list[str] = []
    sink_id = logger.add(lambda m: errors.append(str(m)), level="ERROR")

    def _broken(_: StdioEvent) -> None:
        raise RuntimeError("listener bug")

    try:
        client.on("stdio", _broken)
        client.on("stdio", seen.append)
        channel.feed({"event": "stdio", "payload": {"type": "stdout", "buffer": "aGk="}})
        await _settle()
    finally:
        logger.remove(sink_id)

    assert seen == [StdioEvent(type="stdout", buffer="aGk=")]
    assert any("Listener for stdio event failed" in e for e in errors)


@pytest.mark.asyncio
async def test_off_removes_listener():
    client, channel = _client()
    seen: list[StdioEvent] = []
    client.on("stdio", seen.append)
    client.off("stdio", seen.append)
    channel.feed({"event": "stdio", "payload": {"type": "stdout", "text": "x"}})
    await _settle()
    assert seen == []


def test_unknown_event_name_is_rejected():
    client = BackendClient(_FakeChannel())
    with pytest.raises(ValueError):
        client.on("progress", lambda _: None)


@pytest.mark.asyncio
async def test_events_and_responses_keep_wire_order():
    client, channel = _client()
    order: list[str] = []
    client.on("stdio", lambda e: order.append(e.text))
    call = asyncio.create_task(client.call("list", {}))
    await _settle()
    call.add_done_callback(lambda _: order.append("response"))

    channel.feed({"event": "stdio", "payload": {"type": "stdout", "text": "a"}})
    channel.feed({"id": 1, "result": None})
    await call
    await _settle()
    assert order == ["a", "response"]


@pytest.mark.asyncio
async def test_close_rejects_all_pending_and_stops_events():
    client, channel = _client()
    seen: list[StdioEvent] = []
    client.on("stdio", seen.append)
    calls = [asyncio.create_task(client.call("test", {"i": i})) for i in range(3)]
    await _settle()

    channel.feed({"event": "stdio", "payload": {"type": "stdout", "text": "late"}})
    client.close()
    results = await asyncio.gather(*calls, return_exceptions=True)
    await _settle()

    assert all(isinstance(r, ChannelClosedError) for r in results)
    assert [r.details["method"] for r in results] == ["test", "test", "test"]
    assert seen == []
    assert channel.closed
    assert client.pending_count == 0


@pytest.mark.asyncio
async def test_call_after_close_fails_immediately():
    client, channel = _client()
    client.close()
    client.close()
    with pytest.raises(ChannelClosedError):
        await client.call("list", {})
    assert channel.sent == []


@pytest.mark.asyncio
async def test_channel_eof_rejects_pending_calls():
    client, channel = _client()
    call = asyncio.create_task(client.call("test", {}))
    await _settle()
    channel.eof()
    with pytest.raises(ChannelClosedError):
        await call
    assert client.closed


@pytest.mark.asyncio
async def test_cancelled_caller_retires_its_id():
    client, channel = _client()
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(client.call("test", {}), timeout=0.01)
    assert client.pending_count == 0

    channel.feed({"id": 1, "result": "too late"})
    await _settle()
    assert client.state is ClientState.OPEN


@pytest.mark.asyncio
async def test_close_gracefully_closes_only_after_response():
    client, channel = _client()
    closing = asyncio.create_task(client.close_gracefully())
    await _settle()

    assert channel.sent[-1] == {"id": 1, "method": "closeGracefully", "params": {}}
    assert client.state is ClientState.CLOSING
    assert not channel.closed
    with pytest.raises(ChannelClosedError):
        await client.call("list", {})

    channel.feed({"id": 1, "result": None})
    await closing
    assert channel.closed
    assert client.state is ClientState.CLOSED


@pytest.mark.asyncio
async def test_call_in_flight_during_graceful_close_completes_or_is_rejected():
    client, channel = _client()
    answered = asyncio.create_task(client.call("list", {}))
    abandoned = asyncio.create_task(client.call("test", {}))
    closing = asyncio.create_task(client.close_gracefully())
    await _settle()
    assert [f["method"] for f in channel.sent] == ["list", "test", "closeGracefully"]

    channel.feed({"id": 1, "result": "listed"})
    channel.feed({"id": 3, "result": None})
    await closing

    assert await answered == "listed"
    with pytest.raises(ChannelClosedError):
        await abandoned


@pytest.mark.asyncio
async def test_close_gracefully_times_out_and_closes_anyway():
    client, channel = _client(close_timeout=0.05)
    await client.close_gracefully()
    assert channel.closed
    assert client.closed
    assert client.pending_count == 0
    await client.close_gracefully()


@pytest.mark.asyncio
async def test_overlapping_close_gracefully_calls_share_one_round_trip():
    client, channel = _client()
    first = asyncio.create_task(client.close_gracefully())
    await _settle()
    second = asyncio.create_task(client.close_gracefully())
    await _settle()

    assert [f["method"] for f in channel.sent] == ["closeGracefully"]
    assert not first.done()
    assert not second.done()
    assert not channel.closed

    channel.feed({"id": 1, "result": None})
    await asyncio.gather(first, second)
    assert channel.closed
    assert client.state is ClientState.CLOSED


@pytest.mark.asyncio
async def test_cancelled_close_gracefully_caller_does_not_abort_shutdown():
    client, channel = _client()
    first = asyncio.create_task(client.close_gracefully())
    await _settle()
    first.cancel()
    await _settle()
    assert client.state is ClientState.CLOSING

    channel.feed({"id": 1, "result": None})
    await client.close_gracefully()
    assert channel.closed
    assert client.closed
