"""Service layer used by CLI and future UI frontends."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from urllib.parse import quote, urlencode

from kmctl.core.catalog import parse_macro_catalog
from kmctl.core.clipboard import (
    POLL_INTERVAL_S,
    POLL_TIMEOUT_S,
    export_paths,
    new_token,
    read_image_base64,
    read_text,
    wait_for_export,
)
from kmctl.core.errors import ClipboardReadError, TransportError
from kmctl.core.model import (
    ClipboardPayload,
    ConnectionCheck,
    FanOutResult,
    HTTPResponse,
    MachineOutcome,
    MachineRecord,
    MacroListing,
    OutcomeKind,
    TriggerOutcome,
)
from kmctl.transports.base import Transport
from kmctl.transports.http import HTTPTransport

CATALOG_PATH = "/authenticated.html"
ACTION_PATH = "/authenticatedaction.html"
MACRO_GROUP_NAME = "Keyboard Maestro MCP"
CLIPBOARD_MACRO_NAME = "Save Clipboard to File"
DEFAULT_SETTLE_DELAY_MS = 500

LOGGER = logging.getLogger(__name__)


def _status_failure(machine: MachineRecord, response: HTTPResponse, action: str) -> tuple[str, OutcomeKind]:
    if response.status == 401:
        return (
            f"Authentication failed for {machine.name}. Check username/password.",
            OutcomeKind.AUTHENTICATION_FAILED,
        )
    return f"Failed to {action} on {machine.name}: HTTP {response.status}", OutcomeKind.HTTP_STATUS


class MacroService:
    def __init__(
        self,
        *,
        transport: Transport | None = None,
        poll_timeout_s: float = POLL_TIMEOUT_S,
        poll_interval_s: float = POLL_INTERVAL_S,
        token_factory: Callable[[], str] = new_token,
    ) -> None:
        self.transport = transport or HTTPTransport()
        self.poll_timeout_s = poll_timeout_s
        self.poll_interval_s = poll_interval_s
        self.token_factory = token_factory

    async def list_macros(self, machine: MachineRecord) -> MacroListing:
        try:
            response = await self.transport.get(machine, CATALOG_PATH, encrypted=True)
        except TransportError as exc:
            return MacroListing(success=False, message=str(exc), kind=OutcomeKind.CONNECTIVITY)

        if not response.ok:
            message, kind = _status_failure(machine, response, "list macros")
            return MacroListing(success=False, message=message, kind=kind)

        macros = tuple(parse_macro_catalog(response.body))
        LOGGER.debug("Parsed %d macros from %s", len(macros), machine.name)
        return MacroListing(
            success=True,
            message=f"Found {len(macros)} macros on {machine.name}",
            macros=macros,
        )

    async def trigger(
        self,
        machine: MachineRecord,
        macro: str,
        value: str | None = None,
    ) -> TriggerOutcome:
        params = {"macro": macro}
        if value:
            params["value"] = value
        path = f"{ACTION_PATH}?{urlencode(params, quote_via=quote)}"

        try:
            response = await self.transport.get(machine, path, encrypted=True)
        except TransportError as exc:
            LOGGER.warning("Trigger of '%s' on %s failed: %s", macro, machine.name, exc)
            return TriggerOutcome(success=False, message=str(exc), kind=OutcomeKind.CONNECTIVITY)

        if response.ok:
            return TriggerOutcome(
                success=True,
                message=f'Macro "{macro}" triggered successfully on {machine.name}',
                result=response.body or None,
            )
        if response.status == 403:
            # The remote host reports missing and disabled macros identically.
            return TriggerOutcome(
                success=False,
                message=f"Access denied for {machine.name}. The macro may not exist or may not be enabled.",
                kind=OutcomeKind.ACCESS_DENIED,
            )
        message, kind = _status_failure(machine, response, "trigger macro")
        return TriggerOutcome(success=False, message=message, kind=kind)

    async def capture_clipboard(self, machine: MachineRecord) -> ClipboardPayload:
        macro_uid = machine.effective_clipboard_macro_uid
        if machine.output_dir is None or not macro_uid:
            return ClipboardPayload(
                success=False,
                message=(
                    f"Clipboard capture is not configured for {machine.name}. "
                    "Set outputDir (KM_OUTPUT_DIR) to a folder shared with the remote host "
                    "and install the 'Save Clipboard to File' macro."
                ),
                kind=OutcomeKind.CONFIGURATION_MISSING,
            )

        token = self.token_factory()
        outcome = await self.trigger(machine, macro_uid, token)
        if not outcome.success:
            return ClipboardPayload(
                success=False,
                message=f"Clipboard capture failed: {outcome.message}",
                kind=outcome.kind,
            )

        paths = export_paths(machine.output_dir, token)
        found = await wait_for_export(
            paths,
            timeout_s=self.poll_timeout_s,
            interval_s=self.poll_interval_s,
        )
        if found is None:
            return ClipboardPayload(
                success=False,
                message=(
                    f"Timed out waiting for clipboard export from {machine.name}. "
                    f"Expected {paths.text} or {paths.image}. "
                    "The 'Save Clipboard to File' macro may be missing or outputDir may be misconfigured."
                ),
                kind=OutcomeKind.TIMEOUT,
            )

        try:
            if found == paths.image:
                content = await read_image_base64(found)
                clip_type = "image"
            else:
                content = await read_text(found)
                clip_type = "text"
        except ClipboardReadError as exc:
            return ClipboardPayload(
                success=False,
                message=str(exc),
                file_path=found,
                kind=OutcomeKind.READ_FAILURE,
            )

        return ClipboardPayload(
            success=True,
            message=f"Captured {clip_type} clipboard from {machine.name}",
            type=clip_type,
            content=content,
            file_path=found,
        )

    async def trigger_and_capture(
        self,
        machine: MachineRecord,
        macro: str,
        value: str | None = None,
        delay_ms: int = DEFAULT_SETTLE_DELAY_MS,
    ) -> ClipboardPayload:
        outcome = await self.trigger(machine, macro, value)
        if not outcome.success:
            return ClipboardPayload(success=False, message=outcome.message, kind=outcome.kind)

        # Settle time for the macro to populate the clipboard.
        await asyncio.sleep(delay_ms / 1000)
        return await self.capture_clipboard(machine)

    async def trigger_on_all(
        self,
        machines: Sequence[MachineRecord],
        macro: str,
        value: str | None = None,
    ) -> FanOutResult:
        results = await asyncio.gather(
            *(self.trigger(machine, macro, value) for machine in machines),
            return_exceptions=True,
        )

        outcomes: list[MachineOutcome] = []
        for machine, result in zip(machines, results):
            if isinstance(result, BaseException):
                LOGGER.warning("Trigger on %s raised: %s", machine.name, result)
                result = TriggerOutcome(
                    success=False,
                    message=(
                        f"Failed to connect to {machine.name} "
                        f"({machine.host}:{machine.port}): {result}"
                    ),
                    kind=OutcomeKind.CONNECTIVITY,
                )
            outcomes.append(MachineOutcome(machine=machine.name, outcome=result))
        return FanOutResult(outcomes=tuple(outcomes))

    async def check_connection(self, machine: MachineRecord) -> ConnectionCheck:
        listing = await self.list_macros(machine)
        if not listing.success:
            return ConnectionCheck(success=False, message=listing.message)

        group_macros = [m for m in listing.macros if m.group == MACRO_GROUP_NAME]
        clipboard_macro = next(
            (m for m in group_macros if m.name == CLIPBOARD_MACRO_NAME),
            None,
        )
        return ConnectionCheck(
            success=True,
            message=f"Connected successfully! Found {len(listing.macros)} macros.",
            macro_count=len(listing.macros),
            has_macro_group=clipboard_macro is not None,
            clipboard_macro_uid=clipboard_macro.uid if clipboard_macro else None,
        )
