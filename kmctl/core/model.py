"""Core data models used across registry, service, and CLI."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path

DEFAULT_PORT = 4490
DEFAULT_CLIPBOARD_MACRO_UID = "37EE527B-036A-42FC-B341-DFFF8D5AAA8A"


class OutcomeKind(enum.Enum):
    OK = "ok"
    CONFIGURATION_MISSING = "configuration_missing"
    AUTHENTICATION_FAILED = "authentication_failed"
    ACCESS_DENIED = "access_denied"
    HTTP_STATUS = "http_status"
    CONNECTIVITY = "connectivity"
    TIMEOUT = "timeout"
    READ_FAILURE = "read_failure"
    PARSE_FAILURE = "parse_failure"
    MACHINE_NOT_FOUND = "machine_not_found"


@dataclass(frozen=True)
class MachineRecord:
    name: str
    host: str
    username: str
    password: str
    port: int = DEFAULT_PORT
    secure: bool = False
    output_dir: Path | None = None
    clipboard_macro_uid: str | None = None

    @property
    def effective_clipboard_macro_uid(self) -> str:
        return self.clipboard_macro_uid or DEFAULT_CLIPBOARD_MACRO_UID


@dataclass(frozen=True)
class MacroEntry:
    name: str
    uid: str | None
    group: str | None


@dataclass(frozen=True)
class MacroListing:
    success: bool
    message: str
    macros: tuple[MacroEntry, ...] = ()
    kind: OutcomeKind = OutcomeKind.OK


@dataclass(frozen=True)
class TriggerOutcome:
    success: bool
    message: str
    result: str | None = None
    kind: OutcomeKind = OutcomeKind.OK


@dataclass(frozen=True)
class ClipboardPayload:
    success: bool
    message: str
    type: str | None = None
    content: str | None = None
    file_path: Path | None = None
    kind: OutcomeKind = OutcomeKind.OK


@dataclass(frozen=True)
class MachineOutcome:
    machine: str
    outcome: TriggerOutcome


@dataclass(frozen=True)
class FanOutResult:
    outcomes: tuple[MachineOutcome, ...]

    @property
    def success(self) -> bool:
        return bool(self.outcomes) and all(o.outcome.success for o in self.outcomes)


@dataclass(frozen=True)
class ConnectionCheck:
    success: bool
    message: str
    macro_count: int = 0
    has_macro_group: bool = False
    clipboard_macro_uid: str | None = None


@dataclass(frozen=True)
class HTTPResponse:
    status: int
    headers: dict[str, str]
    body: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300
