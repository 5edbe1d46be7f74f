"""Serialization helpers for test server RPC frames."""

from __future__ import annotations

import json
from typing import Any

from testbridge.utils.exceptions import RemoteError

from .protocol import RpcError, RpcEvent, RpcRequest, RpcResponse
from .types import FindRelatedTestFilesReport, StdioEvent, TestError, TestLocation


def safe_dict(value: Any) -> dict[str, Any]:
    """Return the value when dict-like, otherwise an empty dict."""
    return value if isinstance(value, dict) else {}


def encode_request_line(request: RpcRequest) -> str:
    """Encode a request frame into one line of JSON."""
    payload = {"id": request.id, "method": request.method, "params": request.params}
    return json.dumps(payload, ensure_ascii=False)


def normalize_rpc_error(error: Any) -> RpcError:
    """Normalize unknown error payloads into RpcError."""
    if isinstance(error, str):
        return RpcError(code="RPC_ERROR", message=error or "rpc failed")
    row = safe_dict(error)
    data = row.get("data")
    return RpcError(
        code=str(row.get("code") or "RPC_ERROR"),
        message=str(row.get("message") or "rpc failed"),
        data=data if isinstance(data, dict) else None,
    )


def decode_frame(payload: Any) -> RpcResponse | RpcEvent | None:
    """Classify a decoded inbound object as a response, an event, or garbage (None).

    A frame carrying an integer ``id`` is a response; it is a failure when it
    carries ``error`` or an explicit ``"ok": false``. A frame carrying an
    ``event`` name is a notification.
    """
    row = safe_dict(payload)
    req_id = row.get("id")
    if isinstance(req_id, int) and not isinstance(req_id, bool):
        failed = "error" in row or row.get("ok") is False
        if failed:
            return RpcResponse(id=req_id, ok=False, error=normalize_rpc_error(row.get("error")))
        return RpcResponse(id=req_id, ok=True, result=row.get("result"))
    event = row.get("event")
    if isinstance(event, str) and event:
        return RpcEvent(event=event, payload=safe_dict(row.get("payload")))
    return None


def decode_line(line: str) -> RpcResponse | RpcEvent | None:
    """Decode one channel line; raises json.JSONDecodeError on malformed input."""
    return decode_frame(json.loads(line))


def to_remote_error(response: RpcResponse, *, fallback_method: str) -> RemoteError:
    """Convert an error response to RemoteError."""
    err = response.error or RpcError(code="RPC_ERROR", message=f"{fallback_method} failed")
    return RemoteError(err.code, err.message, err.data, method=fallback_method)


def decode_test_error(raw: Any) -> TestError:
    row = safe_dict(raw)
    loc = safe_dict(row.get("location"))
    location = None
    if loc.get("file"):
        location = TestLocation(
            file=str(loc["file"]),
            line=int(loc.get("line") or 0),
            column=int(loc.get("column") or 0),
        )
    return TestError(
        message=str(row["message"]) if row.get("message") is not None else None,
        stack=str(row["stack"]) if row.get("stack") is not None else None,
        value=str(row["value"]) if row.get("value") is not None else None,
        location=location,
    )


def decode_find_related_report(raw: Any) -> FindRelatedTestFilesReport:
    data = safe_dict(raw)
    files = data.get("testFiles")
    errors = data.get("errors")
    return FindRelatedTestFilesReport(
        test_files=[str(x) for x in files] if isinstance(files, list) else [],
        errors=[decode_test_error(e) for e in errors] if isinstance(errors, list) else None,
    )


def decode_stdio_event(payload: dict[str, Any]) -> StdioEvent:
    kind = payload.get("type")
    text = payload.get("text")
    buffer = payload.get("buffer")
    return StdioEvent(
        type="stderr" if kind == "stderr" else "stdout",
        text=text if isinstance(text, str) else None,
        buffer=buffer if isinstance(buffer, str) else None,
    )
