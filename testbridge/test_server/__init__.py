"""Test server worker: typed client and lifecycle controller."""

from .client import TestServer
from .controller import ControllerState, Empty, Ready, Starting, TestServerController

__all__ = ["ControllerState", "Empty", "Ready", "Starting", "TestServer", "TestServerController"]
