"""Shared protocol types and helpers."""

from .contracts import Channel
from .protocol import RpcError, RpcEvent, RpcRequest, RpcResponse, TestServerEvent
from .serialization import decode_frame, decode_line, encode_request_line, normalize_rpc_error, safe_dict
from .types import (
    FindRelatedTestFilesParams,
    FindRelatedTestFilesReport,
    ListParams,
    StdioEvent,
    StopParams,
    TestConfig,
    TestError,
    TestLocation,
    TestParams,
)

__all__ = [
    "Channel",
    "FindRelatedTestFilesParams",
    "FindRelatedTestFilesReport",
    "ListParams",
    "RpcError",
    "RpcEvent",
    "RpcRequest",
    "RpcResponse",
    "StdioEvent",
    "StopParams",
    "TestConfig",
    "TestError",
    "TestLocation",
    "TestParams",
    "TestServerEvent",
    "safe_dict",
    "encode_request_line",
    "decode_frame",
    "decode_line",
    "normalize_rpc_error",
]
