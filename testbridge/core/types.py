"""Typed params and results exchanged with the test server."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, Literal

from testbridge.utils.naming import snake_to_camel

TraceMode = Literal["on", "off"]
StdioType = Literal["stdout", "stderr"]


def _to_wire(obj: Any) -> dict[str, Any]:
    """Serialize a params dataclass with camelCase keys, dropping unset optionals."""
    out: dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = list(value)
        elif isinstance(value, dict):
            value = dict(value)
        out[snake_to_camel(f.name)] = value
    return out


@dataclass(slots=True)
class TestConfig:
    """A test project the worker should serve."""

    workspace_folder: str
    config_file: str
    cli: str
    version: float = 0.0
    test_id_attribute_name: str | None = None


@dataclass(slots=True)
class ListParams:
    config_file: str
    locations: list[str] = field(default_factory=list)
    reporter: str = ""
    env: dict[str, str | None] = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        return _to_wire(self)


@dataclass(slots=True)
class TestParams:
    config_file: str
    locations: list[str] = field(default_factory=list)
    reporter: str = ""
    env: dict[str, str | None] = field(default_factory=dict)
    headed: bool | None = None
    one_worker: bool | None = None
    trace: TraceMode | None = None
    projects: list[str] | None = None
    grep: str | None = None
    reuse_context: bool | None = None
    connect_ws_endpoint: str | None = None

    def __post_init__(self) -> None:
        if self.trace is not None and self.trace not in ("on", "off"):
            raise ValueError(f"trace must be 'on' or 'off', got {self.trace!r}")

    def to_wire(self) -> dict[str, Any]:
        return _to_wire(self)


@dataclass(slots=True)
class FindRelatedTestFilesParams:
    config_file: str
    files: list[str] = field(default_factory=list)

    def to_wire(self) -> dict[str, Any]:
        return _to_wire(self)


@dataclass(slots=True)
class StopParams:
    config_file: str

    def to_wire(self) -> dict[str, Any]:
        return _to_wire(self)


@dataclass(slots=True)
class TestLocation:
    file: str
    line: int
    column: int


@dataclass(slots=True)
class TestError:
    """Error reported by the worker while resolving or running tests."""

    message: str | None = None
    stack: str | None = None
    value: str | None = None
    location: TestLocation | None = None


@dataclass(slots=True)
class FindRelatedTestFilesReport:
    test_files: list[str] = field(default_factory=list)
    errors: list[TestError] | None = None


@dataclass(slots=True)
class StdioEvent:
    """A chunk the worker wrote to its own stdout/stderr, relayed verbatim."""

    type: StdioType
    text: str | None = None
    buffer: str | None = None
