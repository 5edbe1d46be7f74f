"""Lazily started, shared test server worker."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Protocol, Union

from loguru import logger

from testbridge.backend.server import BackendServer
from testbridge.config.schema import TestServerConfig
from testbridge.core.types import TestConfig

from .client import TestServer


@dataclass(frozen=True, slots=True)
class Empty:
    """No worker exists and none is starting."""


@dataclass(frozen=True, slots=True)
class Starting:
    """A start is in flight; every caller awaits this same task."""

    task: asyncio.Task[TestServer]


@dataclass(frozen=True, slots=True)
class Ready:
    server: TestServer


ControllerState = Union[Empty, Starting, Ready]

EMPTY = Empty()


class TestServerLauncher(Protocol):
    """Spawn procedure for one worker, as built by ``backend_for``."""

    async def start(self) -> TestServer: ...


ServerFactory = Callable[[TestConfig], TestServerLauncher]


class TestServerController:
    """Owns whether a test server worker exists.

    State moves Empty -> Starting -> Ready, and back to Empty on ``reset()``
    or when a start fails, so the next call can retry. Every state change is
    made without suspending between the check and the commit, so at most one
    spawn is ever in flight.
    """

    def __init__(
        self,
        env_provider: Callable[[], Mapping[str, str]] | None = None,
        *,
        settings: TestServerConfig | None = None,
        server_factory: ServerFactory | None = None,
    ):
        self._env_provider = env_provider or (lambda: dict(os.environ))
        self._settings = settings or TestServerConfig()
        self._server_factory = server_factory or self.backend_for
        self._state: ControllerState = EMPTY
        self._orphans: set[asyncio.Task[TestServer]] = set()
        self._closing: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> ControllerState:
        return self._state

    def supports(self, config: TestConfig) -> bool:
        return config.version >= self._settings.min_version

    def launch_env(self) -> dict[str, str]:
        return {**self._env_provider(), "FORCE_COLOR": "1"}

    def backend_for(self, config: TestConfig) -> BackendServer[TestServer]:
        """Build the spawn procedure for ``config``."""
        close_timeout = self._settings.close_timeout_seconds
        return BackendServer(
            [self._settings.node, config.cli, "test-server"],
            cwd=config.workspace_folder,
            env_provider=self.launch_env,
            client_factory=lambda channel: TestServer(channel, close_timeout=close_timeout),
            dump_io=self._settings.dump_io,
        )

    async def test_server_for(self, config: TestConfig) -> TestServer | None:
        """Return the shared worker, starting it if needed.

        Returns None when the test runner behind ``config`` has no test
        server. A start failure raises the same SpawnError in every caller
        waiting on that start.
        """
        state = self._state
        if isinstance(state, Ready):
            return state.server
        if isinstance(state, Starting):
            return await asyncio.shield(state.task)
        if not self.supports(config):
            logger.info(
                "Test runner {} at {} predates test-server (need >= {})",
                config.version,
                config.cli,
                self._settings.min_version,
            )
            return None
        task = asyncio.get_running_loop().create_task(self._create_test_server(config))
        self._state = Starting(task)
        task.add_done_callback(self._on_start_done)
        return await asyncio.shield(task)

    async def _create_test_server(self, config: TestConfig) -> TestServer:
        return await self._server_factory(config).start()

    def _on_start_done(self, task: asyncio.Task[TestServer]) -> None:
        state = self._state
        current = isinstance(state, Starting) and state.task is task
        if task.cancelled():
            if current:
                self._state = EMPTY
            return
        exc = task.exception()
        if exc is not None:
            if current:
                self._state = EMPTY
            logger.warning("Test server failed to start: {}", exc)
            return
        if current:
            self._state = Ready(task.result())

    def reset(self) -> None:
        """Forget the current worker and close it in the background."""
        state = self._state
        self._state = EMPTY
        if isinstance(state, Ready):
            self._close_detached(state.server)
        elif isinstance(state, Starting):
            self._orphans.add(state.task)
            state.task.add_done_callback(self._close_orphan)

    def dispose(self) -> None:
        self.reset()

    async def wait_closed(self) -> None:
        """Wait until every worker retired by ``reset()`` has shut down."""
        while self._orphans or self._closing:
            await asyncio.gather(*self._orphans, *self._closing, return_exceptions=True)
            # Let done callbacks of the gathered tasks run.
            await asyncio.sleep(0)

    async def __aenter__(self) -> TestServerController:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.dispose()
        await self.wait_closed()

    def _close_orphan(self, task: asyncio.Task[TestServer]) -> None:
        self._orphans.discard(task)
        if task.cancelled() or task.exception() is not None:
            return
        self._close_detached(task.result())

    def _close_detached(self, server: TestServer) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                server.close()
            except RuntimeError as exc:
                logger.warning("Test server closed outside its event loop, teardown incomplete: {}", exc)
            return
        task = loop.create_task(server.close_gracefully())
        self._closing.add(task)
        task.add_done_callback(self._on_close_done)

    def _on_close_done(self, task: asyncio.Task[None]) -> None:
        self._closing.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Failed to close test server gracefully")
