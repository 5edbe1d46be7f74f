"""Process-backed RPC backend: worker transport, client and spawn procedure."""

from .client import BackendClient, ClientState, PendingCall
from .server import BackendServer
from .transport import WorkerHandle

__all__ = ["BackendClient", "BackendServer", "ClientState", "PendingCall", "WorkerHandle"]
