"""Configuration schema using Pydantic.

Persisted to ~/.testbridge/config.json; every field can also be overridden
from the environment, e.g. ``TESTBRIDGE_TEST_SERVER__NODE=/usr/bin/node``.
"""

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TestServerConfig(BaseModel):
    """How the test server worker is launched and retired."""
    node: str = "node"  # Launcher executable; the test runner CLI script is its first argument
    close_timeout_seconds: float = Field(default=5.0, gt=0)  # Bound on the closeGracefully round trip
    dump_io: bool = False  # Log every frame at DEBUG
    min_version: float = 1.44  # Test runners older than this have no test-server subcommand


class LoggingConfig(BaseModel):
    """Log sink configuration for the CLI."""
    level: Literal["TRACE", "DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    file: bool = False  # Also write a rotating file under ~/.testbridge/logs


class Config(BaseSettings):
    """Root configuration for testbridge."""
    test_server: TestServerConfig = Field(default_factory=TestServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="TESTBRIDGE_",
        env_nested_delimiter="__"
    )
