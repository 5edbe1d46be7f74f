"""Transport contract between the RPC client and a worker."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Channel(Protocol):
    """Duplex line channel owned by exactly one client.

    ``send`` must hand the line to the transport before its first suspension
    point so that writes keep the order in which they were issued.
    ``receive`` returns ``None`` at end of stream.
    """

    async def send(self, line: str) -> None: ...
    async def receive(self) -> str | None: ...
    def close(self) -> None: ...
    async def wait_closed(self) -> Any: ...
