"""Transport interfaces."""

from __future__ import annotations

from typing import Protocol

from kmctl.core.model import HTTPResponse, MachineRecord


class Transport(Protocol):
    async def get(
        self,
        machine: MachineRecord,
        path_with_query: str,
        *,
        encrypted: bool = True,
    ) -> HTTPResponse:
        """Issue an authenticated GET against a machine's automation endpoint."""
