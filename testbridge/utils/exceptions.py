"""
Exception hierarchy for testbridge.

Provides:
- A base exception carrying an error code and category
- Spawn, channel and remote failures raised by the RPC layer
- Safe error message formatting for display
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any


class ErrorCategory(Enum):
    """Error categories for classification."""
    RETRYABLE = "retryable"
    FATAL = "fatal"
    REMOTE = "remote"
    TIMEOUT = "timeout"


class TestBridgeError(Exception):
    """Base exception for all testbridge errors."""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        category: ErrorCategory = ErrorCategory.FATAL,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "category": self.category.value,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class SpawnError(TestBridgeError):
    """The worker process could not be launched or initialized.

    Every caller waiting on the shared start receives the same instance; the
    controller stays eligible for a fresh attempt.
    """

    def __init__(self, message: str, args: list[str] | None = None, cwd: str | None = None):
        super().__init__(
            message,
            code="SPAWN_FAILED",
            category=ErrorCategory.RETRYABLE,
            details={"args": list(args or []), "cwd": cwd},
        )


class ChannelClosedError(TestBridgeError):
    """The channel ended before a call completed."""

    def __init__(self, method: str | None = None, reason: str = "channel closed"):
        message = f"{method}: {reason}" if method else reason
        super().__init__(
            message,
            code="CHANNEL_CLOSED",
            category=ErrorCategory.FATAL,
            details={"method": method},
        )


class RemoteError(TestBridgeError):
    """The worker answered a call with an error payload."""

    def __init__(
        self,
        code: str,
        message: str,
        data: dict[str, Any] | None = None,
        method: str | None = None,
    ):
        super().__init__(
            message,
            code=code,
            category=ErrorCategory.REMOTE,
            details={"method": method, "data": data},
        )
        self.data = data
        self.method = method


_SENSITIVE_PATTERNS = [
    re.compile(r"(api[_-]?key|token|secret|password|auth)[=:]\s*['\"]?([^\s'\"]+)['\"]?", re.IGNORECASE),
    re.compile(r"bearer\s+[a-zA-Z0-9\-._~+/]+=*", re.IGNORECASE),
]


def sanitize_error_message(message: str, replacement: str = "[REDACTED]") -> str:
    """Remove credentials from error messages before they are displayed."""
    sanitized = message
    for pattern in _SENSITIVE_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)
    return sanitized


def format_error(exc: BaseException) -> str:
    """Format an exception for user display."""
    if isinstance(exc, TestBridgeError):
        return sanitize_error_message(str(exc))
    return sanitize_error_message(f"{type(exc).__name__}: {exc}")
