"""Typed test server client."""

from __future__ import annotations

from testbridge.backend.client import BackendClient
from testbridge.core.serialization import decode_find_related_report
from testbridge.core.types import (
    FindRelatedTestFilesParams,
    FindRelatedTestFilesReport,
    ListParams,
    StopParams,
    TestParams,
)


class TestServer(BackendClient):
    """Thin wrappers fixing method names and param/result shapes."""

    async def list(self, params: ListParams) -> None:
        await self.call("list", params.to_wire())

    async def test(self, params: TestParams) -> None:
        await self.call("test", params.to_wire())

    async def find_related_test_files(self, params: FindRelatedTestFilesParams) -> FindRelatedTestFilesReport:
        result = await self.call("findRelatedTestFiles", params.to_wire())
        return decode_find_related_report(result)

    async def stop(self, params: StopParams) -> None:
        await self.call("stop", params.to_wire())
