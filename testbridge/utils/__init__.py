"""Utility functions for testbridge."""

from testbridge.utils.exceptions import (
    ChannelClosedError,
    ErrorCategory,
    RemoteError,
    SpawnError,
    TestBridgeError,
)

__all__ = ["ChannelClosedError", "ErrorCategory", "RemoteError", "SpawnError", "TestBridgeError"]
