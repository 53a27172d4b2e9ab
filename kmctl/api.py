"""Stable public API for building tooling on top of kmctl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping

from kmctl.core.errors import (
    ClipboardReadError,
    KmctlError,
    MachineConfigError,
    MachineSelectionError,
    SetupSessionError,
    TransportConnectError,
    TransportError,
)
from kmctl.core.model import (
    DEFAULT_CLIPBOARD_MACRO_UID,
    DEFAULT_PORT,
    ClipboardPayload,
    ConnectionCheck,
    FanOutResult,
    MachineOutcome,
    MachineRecord,
    MacroEntry,
    MacroListing,
    OutcomeKind,
    TriggerOutcome,
)
from kmctl.core.registry import find_machine, load_machines
from kmctl.core.service import DEFAULT_SETTLE_DELAY_MS, MacroService
from kmctl.transports.base import Transport
from kmctl.transports.http import HTTPTransport

__all__ = [
    "KmctlError",
    "ClipboardReadError",
    "MachineConfigError",
    "MachineSelectionError",
    "SetupSessionError",
    "TransportError",
    "TransportConnectError",
    "DEFAULT_CLIPBOARD_MACRO_UID",
    "DEFAULT_PORT",
    "ClipboardPayload",
    "ConnectionCheck",
    "FanOutResult",
    "MachineOutcome",
    "MachineRecord",
    "MacroEntry",
    "MacroListing",
    "OutcomeKind",
    "TriggerOutcome",
    "HTTPTransport",
    "Client",
]

NO_MACHINES_HINT = (
    "No machines configured. Set KM_MACHINES environment variable with a JSON array "
    "of machine configs, or set KM_HOST, KM_USERNAME, and KM_PASSWORD for a single machine."
)


class Client:
    """Public client for triggering macros on configured machines.

    A `Client` loads the machine registry once at construction and exposes
    each remote operation as a blocking call that returns a structured
    result. Remote and configuration failures are reported through the
    result's ``success``/``message``/``kind`` fields rather than raised.
    """

    def __init__(
        self,
        *,
        transport: Transport | None = None,
        environ: Mapping[str, str] | None = None,
        machines: tuple[MachineRecord, ...] | None = None,
    ) -> None:
        if machines is None:
            loaded = load_machines(environ)
            self.machines = loaded.machines
            self.load_warnings = loaded.warnings
        else:
            self.machines = tuple(machines)
            self.load_warnings = ()
        self._service = MacroService(transport=transport)

    def list_machines(self) -> list[MachineRecord]:
        return list(self.machines)

    def resolve_machine(self, name: str | None = None) -> MachineRecord:
        machine = find_machine(self.machines, name)
        if machine is None:
            raise MachineSelectionError(self._not_found_message(name))
        return machine

    def _not_found_message(self, name: str | None) -> str:
        if not self.machines or not name:
            return NO_MACHINES_HINT
        available = ", ".join(m.name for m in self.machines)
        return f'Machine "{name}" not found. Available machines: {available}'

    def list_macros(self, *, machine: str | None = None) -> MacroListing:
        target = find_machine(self.machines, machine)
        if target is None:
            return MacroListing(
                success=False,
                message=self._not_found_message(machine),
                kind=OutcomeKind.MACHINE_NOT_FOUND,
            )
        return asyncio.run(self._service.list_macros(target))

    def trigger(
        self,
        macro: str,
        value: str | None = None,
        *,
        machine: str | None = None,
    ) -> TriggerOutcome:
        target = find_machine(self.machines, machine)
        if target is None:
            return TriggerOutcome(
                success=False,
                message=self._not_found_message(machine),
                kind=OutcomeKind.MACHINE_NOT_FOUND,
            )
        return asyncio.run(self._service.trigger(target, macro, value))

    def trigger_on_all(self, macro: str, value: str | None = None) -> FanOutResult:
        return asyncio.run(self._service.trigger_on_all(self.machines, macro, value))

    def capture_clipboard(self, *, machine: str | None = None) -> ClipboardPayload:
        target = find_machine(self.machines, machine)
        if target is None:
            return ClipboardPayload(
                success=False,
                message=self._not_found_message(machine),
                kind=OutcomeKind.MACHINE_NOT_FOUND,
            )
        return asyncio.run(self._service.capture_clipboard(target))

    def trigger_and_capture(
        self,
        macro: str,
        value: str | None = None,
        *,
        machine: str | None = None,
        delay_ms: int = DEFAULT_SETTLE_DELAY_MS,
    ) -> ClipboardPayload:
        target = find_machine(self.machines, machine)
        if target is None:
            return ClipboardPayload(
                success=False,
                message=self._not_found_message(machine),
                kind=OutcomeKind.MACHINE_NOT_FOUND,
            )
        return asyncio.run(self._service.trigger_and_capture(target, macro, value, delay_ms=delay_ms))

    def check_connection(self, *, machine: str | None = None) -> ConnectionCheck:
        target = find_machine(self.machines, machine)
        if target is None:
            return ConnectionCheck(success=False, message=self._not_found_message(machine))
        return asyncio.run(self._service.check_connection(target))

    def check_machine(self, machine: MachineRecord) -> ConnectionCheck:
        """Check a machine record that is not part of the loaded registry."""
        return asyncio.run(self._service.check_connection(machine))
