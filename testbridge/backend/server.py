"""Spawn procedure for a worker and its client."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import Generic, TypeVar

from loguru import logger

from testbridge.core.contracts import Channel
from testbridge.utils.exceptions import SpawnError

from .client import BackendClient
from .transport import WorkerHandle

ClientT = TypeVar("ClientT", bound=BackendClient)


class BackendServer(Generic[ClientT]):
    """Launches one worker process and binds a client to its stdio channel."""

    def __init__(
        self,
        args: Sequence[str],
        *,
        cwd: str | None,
        env_provider: Callable[[], Mapping[str, str]],
        client_factory: Callable[[Channel], ClientT],
        dump_io: bool = False,
    ):
        self.args = list(args)
        self.cwd = cwd
        self._env_provider = env_provider
        self._client_factory = client_factory
        self._dump_io = dump_io

    async def start(self) -> ClientT:
        handle = await WorkerHandle.spawn(
            self.args,
            cwd=self.cwd,
            env=self._env_provider(),
            dump_io=self._dump_io,
        )
        client = self._client_factory(handle)
        client.start()
        try:
            await client.initialize()
        except Exception as exc:
            client.close()
            await handle.wait_closed()
            raise SpawnError(f"test server failed to initialize: {exc}", args=self.args, cwd=self.cwd) from exc
        logger.info("Test server started (pid={}, cwd={})", handle.pid, self.cwd)
        return client
