"""Worker process handle: the spawned process plus its stdio line channel."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence

from loguru import logger

from testbridge.utils.exceptions import ChannelClosedError, SpawnError

# asyncio's default 64 KiB line limit is too small for large list/report frames.
_STREAM_LIMIT = 16 * 1024 * 1024


class WorkerHandle:
    """Line-delimited JSON channel over a worker's stdin/stdout.

    The worker's stderr is not part of the channel; it is relayed to the log.
    """

    def __init__(self, proc: asyncio.subprocess.Process, *, dump_io: bool = False):
        self._proc = proc
        self._dump_io = dump_io
        self._closed = False
        self._stderr_task: asyncio.Task[None] | None = None
        if proc.stderr is not None:
            self._stderr_task = asyncio.get_running_loop().create_task(self._stderr_loop())

    @classmethod
    async def spawn(
        cls,
        args: Sequence[str],
        *,
        cwd: str | None,
        env: Mapping[str, str],
        dump_io: bool = False,
    ) -> WorkerHandle:
        if not args:
            raise SpawnError("no executable given", args=list(args), cwd=cwd)
        if cwd and not os.path.isdir(cwd):
            raise SpawnError(f"working directory does not exist: {cwd}", args=list(args), cwd=cwd)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd or None,
                env=dict(env),
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise SpawnError(f"failed to launch {args[0]}: {exc}", args=list(args), cwd=cwd) from exc
        logger.debug("Spawned test server pid={} args={}", proc.pid, list(args))
        return cls(proc, dump_io=dump_io)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, line: str) -> None:
        stdin = self._proc.stdin
        if self._closed or stdin is None or stdin.is_closing():
            raise ChannelClosedError(reason="worker stdin is closed")
        if self._dump_io:
            logger.debug("[test-server] >> {}", line)
        stdin.write((line + "\n").encode("utf-8"))
        try:
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise ChannelClosedError(reason=f"worker stdin is closed: {exc}") from exc

    async def receive(self) -> str | None:
        stdout = self._proc.stdout
        while stdout is not None and not self._closed:
            raw = await stdout.readline()
            if not raw:
                return None
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            if self._dump_io:
                logger.debug("[test-server] << {}", text)
            return text
        return None

    async def _stderr_loop(self) -> None:
        stderr = self._proc.stderr
        if stderr is None:
            return
        while True:
            raw = await stderr.readline()
            if not raw:
                return
            text = raw.decode("utf-8", errors="replace").rstrip()
            if text:
                logger.debug("[test-server] {}", text)

    def close(self) -> None:
        """Terminate the worker and close its stdin. Does not wait for exit.

        Safe to call after the loop that spawned the worker has closed: the
        signal is sent first and needs no loop.
        """
        if self._closed:
            return
        self._closed = True
        if self._proc.returncode is None:
            try:
                self._proc.terminate()
            except ProcessLookupError:
                pass
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            try:
                stdin.close()
            except RuntimeError as exc:
                logger.debug("Left worker stdin open: {}", exc)

    async def wait_closed(self, timeout: float = 5.0) -> int | None:
        """Wait for the worker to exit, killing it after ``timeout`` seconds."""
        self.close()
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Test server pid={} ignored SIGTERM; killing", self._proc.pid)
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass
            await self._proc.wait()
        if self._stderr_task is not None:
            # A grandchild may still hold stderr open.
            _, pending = await asyncio.wait({self._stderr_task}, timeout=1.0)
            for task in pending:
                task.cancel()
        return self._proc.returncode
