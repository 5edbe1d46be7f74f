"""Wire protocol models for the test server stdio channel."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class TestServerEvent(str, Enum):
    """Unsolicited notifications the worker may emit."""

    STDIO = "stdio"


@dataclass(slots=True)
class RpcError:
    """Normalized error payload carried by a failed response."""

    code: str
    message: str
    data: dict[str, Any] | None = None


@dataclass(slots=True)
class RpcRequest:
    """Request frame written to the worker."""

    id: int
    method: str
    params: dict[str, Any]


@dataclass(slots=True)
class RpcResponse:
    """Response frame correlated to a request by ``id``."""

    id: int
    ok: bool
    result: Any = None
    error: RpcError | None = None


@dataclass(slots=True)
class RpcEvent:
    """Event frame: no id, just a name and a payload."""

    event: str
    payload: dict[str, Any]
