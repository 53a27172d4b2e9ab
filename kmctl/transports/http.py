"""HTTP(S) transport for the remote automation endpoint."""

from __future__ import annotations

import base64
import logging

import httpx

from kmctl.core.errors import TransportConnectError
from kmctl.core.model import HTTPResponse, MachineRecord

LOGGER = logging.getLogger(__name__)


def base_url(machine: MachineRecord, *, encrypted: bool = False) -> str:
    host = machine.host
    if ":" in host and not host.startswith("["):
        host = f"[{host}]"
    # The encrypted listener sits on the port after the plaintext one.
    if encrypted or machine.secure:
        return f"https://{host}:{machine.port + 1}"
    return f"http://{host}:{machine.port}"


def auth_header(machine: MachineRecord) -> str:
    credentials = f"{machine.username}:{machine.password}".encode("utf-8")
    return f"Basic {base64.b64encode(credentials).decode('ascii')}"


class HTTPTransport:
    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout_s: float = 5.0,
    ) -> None:
        self._transport = transport
        self._timeout_s = timeout_s

    async def get(
        self,
        machine: MachineRecord,
        path_with_query: str,
        *,
        encrypted: bool = True,
    ) -> HTTPResponse:
        url = f"{base_url(machine, encrypted=encrypted)}{path_with_query}"
        LOGGER.debug("GET %s on %s", path_with_query, machine.name)

        try:
            # Remote hosts ship a self-signed certificate by default.
            async with httpx.AsyncClient(
                verify=False,
                timeout=self._timeout_s,
                transport=self._transport,
            ) as client:
                response = await client.get(url, headers={"Authorization": auth_header(machine)})
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise TransportConnectError(
                f"Failed to connect to {machine.name} ({machine.host}:{machine.port}): {str(exc) or type(exc).__name__}"
            ) from exc

        return HTTPResponse(
            status=response.status_code,
            headers=dict(response.headers),
            body=response.text,
        )
