"""RPC client bound to one worker channel."""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from loguru import logger

from testbridge.core.contracts import Channel
from testbridge.core.protocol import RpcEvent, RpcRequest, RpcResponse, TestServerEvent
from testbridge.core.serialization import decode_line, decode_stdio_event, encode_request_line, to_remote_error
from testbridge.utils.exceptions import ChannelClosedError, TestBridgeError

Listener = Callable[[Any], Any]

_EVENT_DECODERS: dict[TestServerEvent, Callable[[dict[str, Any]], Any]] = {
    TestServerEvent.STDIO: decode_stdio_event,
}


class ClientState(Enum):
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(slots=True)
class PendingCall:
    id: int
    method: str
    params: dict[str, Any]
    future: asyncio.Future[Any]


class BackendClient:
    """Correlates requests with responses and fans out worker events.

    Lifecycle is OPEN -> CLOSING -> CLOSED with no way back. Every request id
    is taken from a per-client counter and leaves the pending table exactly
    once: on its response, when its caller is cancelled, or on close.
    """

    def __init__(self, channel: Channel, *, close_timeout: float = 5.0):
        self._channel = channel
        self._close_timeout = close_timeout
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingCall] = {}
        self._listeners: dict[TestServerEvent, list[Listener]] = {}
        self._state = ClientState.OPEN
        self._reader: asyncio.Task[None] | None = None
        self._graceful_close: asyncio.Task[None] | None = None

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is ClientState.CLOSED

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        """Start reading frames from the channel."""
        if self._reader is None and self._state is ClientState.OPEN:
            self._reader = asyncio.get_running_loop().create_task(self._read_loop())

    async def initialize(self) -> None:
        """Hook run once after the worker is spawned."""
        return None

    def on(self, event: TestServerEvent | str, listener: Listener) -> None:
        name = TestServerEvent(event)
        self._listeners.setdefault(name, []).append(listener)

    def off(self, event: TestServerEvent | str, listener: Listener) -> None:
        listeners = self._listeners.get(TestServerEvent(event), [])
        if listener in listeners:
            listeners.remove(listener)

    async def call(self, method: str, params: dict[str, Any] | None = None) -> Any:
        if self._state is not ClientState.OPEN:
            raise ChannelClosedError(method)
        return await self._send(method, params or {})

    async def _send(self, method: str, params: dict[str, Any]) -> Any:
        req_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[req_id] = PendingCall(id=req_id, method=method, params=params, future=future)
        line = encode_request_line(RpcRequest(id=req_id, method=method, params=params))
        try:
            try:
                await self._channel.send(line)
            except (ChannelClosedError, OSError) as exc:
                self._retire(req_id)
                if future.done() and not future.cancelled():
                    future.exception()  # already rejected by close()
                raise ChannelClosedError(method, reason=f"send failed: {exc}") from exc
            return await future
        except asyncio.CancelledError:
            self._retire(req_id)
            raise

    def _retire(self, req_id: int) -> None:
        call = self._pending.pop(req_id, None)
        if call is None:
            return
        if not call.future.done():
            call.future.cancel()

    async def _read_loop(self) -> None:
        try:
            while True:
                line = await self._channel.receive()
                if line is None:
                    break
                self._dispatch_line(line)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Test server channel read failed")
        if self._state is not ClientState.CLOSED:
            logger.debug("Test server channel ended with {} pending call(s)", len(self._pending))
            self.close()

    def _dispatch_line(self, line: str) -> None:
        try:
            frame = decode_line(line)
        except json.JSONDecodeError:
            logger.warning("Test server sent invalid JSON: {}", line[:200])
            return
        if frame is None:
            logger.warning("Test server sent unrecognized frame: {}", line[:200])
        elif isinstance(frame, RpcResponse):
            self._resolve(frame)
        else:
            self._emit(frame)

    def _resolve(self, response: RpcResponse) -> None:
        call = self._pending.pop(response.id, None)
        if call is None or call.future.done():
            logger.debug("Dropping stale response id={}", response.id)
            return
        if response.ok:
            call.future.set_result(response.result)
        else:
            call.future.set_exception(to_remote_error(response, fallback_method=call.method))

    def _emit(self, event: RpcEvent) -> None:
        if self._state is ClientState.CLOSED:
            return
        try:
            name = TestServerEvent(event.event)
        except ValueError:
            logger.debug("Ignoring unknown test server event {}", event.event)
            return
        listeners = list(self._listeners.get(name, ()))
        if not listeners:
            return
        payload = _EVENT_DECODERS[name](event.payload)
        for listener in listeners:
            if self._state is ClientState.CLOSED:
                return
            try:
                listener(payload)
            except Exception:
                logger.exception("Listener for {} event failed", name.value)

    async def close_gracefully(self) -> None:
        """Ask the worker to finish up, then close the channel.

        The closeGracefully round trip is bounded by ``close_timeout``; on
        timeout the channel is closed anyway. Every caller, including one
        arriving while the round trip is in flight, returns only after the
        channel has finished shutting down.
        """
        if self._state is ClientState.OPEN:
            self._state = ClientState.CLOSING
            self._graceful_close = asyncio.get_running_loop().create_task(self._round_trip_then_close())
        if self._graceful_close is not None:
            await asyncio.shield(self._graceful_close)
        await self._channel.wait_closed()

    async def _round_trip_then_close(self) -> None:
        try:
            await asyncio.wait_for(self._send("closeGracefully", {}), timeout=self._close_timeout)
        except asyncio.TimeoutError:
            logger.warning("Test server did not acknowledge closeGracefully within {}s", self._close_timeout)
        except TestBridgeError as exc:
            logger.warning("closeGracefully failed: {}", exc)
        finally:
            self.close()

    def close(self) -> None:
        """Tear the channel down now and reject every pending call."""
        if self._state is ClientState.CLOSED:
            return
        self._state = ClientState.CLOSED
        self._channel.close()
        reader = self._reader
        if reader is not None and not reader.done() and reader is not _current_task():
            reader.cancel()
        pending = list(self._pending.values())
        self._pending.clear()
        for call in pending:
            if not call.future.done():
                call.future.set_exception(ChannelClosedError(call.method))
        if pending:
            logger.debug("Rejected {} pending call(s) on close", len(pending))


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
