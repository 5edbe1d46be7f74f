"""testbridge - lazy, single-instance test server worker over stdio RPC."""

__version__ = "0.1.0"
