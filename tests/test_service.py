from __future__ import annotations

import asyncio
import base64
from collections.abc import Callable
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from kmctl.core.errors import TransportConnectError
from kmctl.core.model import DEFAULT_CLIPBOARD_MACRO_UID, HTTPResponse, MachineRecord, OutcomeKind
from kmctl.core.service import MacroService
from kmctl.transports.http import HTTPTransport

CATALOG_HTML = """
<select name="macro">
  <optgroup label="Global Macro Group">
    <option label="Open Mail" value="MAIL-UID">Open Mail</option>
  </optgroup>
  <optgroup label="Keyboard Maestro MCP">
    <option label="Save Clipboard to File" value="37EE527B-036A-42FC-B341-DFFF8D5AAA8A">Save</option>
  </optgroup>
</select>
"""

Responder = Callable[[MachineRecord, str], HTTPResponse]


class FakeTransport:
    def __init__(self, responder: Responder | None = None) -> None:
        self.calls: list[tuple[str, str, bool]] = []
        self.responder = responder or (lambda machine, path: HTTPResponse(200, {}, ""))

    async def get(self, machine: MachineRecord, path_with_query: str, *, encrypted: bool = True) -> HTTPResponse:
        self.calls.append((machine.name, path_with_query, encrypted))
        return self.responder(machine, path_with_query)


def _machine(name: str = "Studio", output_dir: Path | None = None) -> MachineRecord:
    return MachineRecord(
        name=name,
        host=f"{name.lower()}.local",
        username="km",
        password="secret",
        output_dir=output_dir,
    )


def _query(path: str) -> dict[str, list[str]]:
    return parse_qs(urlsplit(path).query)


def _service(transport: FakeTransport, token: str = "abcd1234") -> MacroService:
    return MacroService(
        transport=transport,
        poll_timeout_s=0.2,
        poll_interval_s=0.01,
        token_factory=lambda: token,
    )


def _status(status: int, body: str = "") -> Responder:
    return lambda machine, path: HTTPResponse(status, {}, body)


def _exporting(output_dir: Path, suffixes: tuple[str, ...], payload: bytes = b"data") -> Responder:
    """Respond 200 and write the export file(s) named after the clipboard token."""

    def responder(machine: MachineRecord, path: str) -> HTTPResponse:
        query = _query(path)
        if query["macro"] == [DEFAULT_CLIPBOARD_MACRO_UID]:
            token = query["value"][0]
            for suffix in suffixes:
                (output_dir / f"clipsav_{token}.{suffix}").write_bytes(payload)
        return HTTPResponse(200, {}, "")

    return responder


# Trigger


def test_trigger_success_with_inline_result() -> None:
    transport = FakeTransport(_status(200, "42"))
    outcome = asyncio.run(_service(transport).trigger(_machine(), "Compute Answer", "input"))

    assert outcome.success
    assert outcome.result == "42"
    assert outcome.kind is OutcomeKind.OK
    assert "Compute Answer" in outcome.message
    assert "Studio" in outcome.message

    name, path, encrypted = transport.calls[0]
    assert encrypted is True
    assert path.startswith("/authenticatedaction.html?")
    assert _query(path) == {"macro": ["Compute Answer"], "value": ["input"]}


def test_trigger_success_without_body_has_no_result() -> None:
    transport = FakeTransport(_status(200, ""))
    outcome = asyncio.run(_service(transport).trigger(_machine(), "MAIL-UID"))
    assert outcome.success
    assert outcome.result is None
    assert _query(transport.calls[0][1]) == {"macro": ["MAIL-UID"]}


def test_trigger_401_is_authentication_failure() -> None:
    outcome = asyncio.run(_service(FakeTransport(_status(401))).trigger(_machine(), "X"))
    assert not outcome.success
    assert outcome.kind is OutcomeKind.AUTHENTICATION_FAILED
    assert "Authentication failed for Studio" in outcome.message


def test_trigger_403_is_access_denied() -> None:
    outcome = asyncio.run(_service(FakeTransport(_status(403))).trigger(_machine(), "X"))
    assert not outcome.success
    assert outcome.kind is OutcomeKind.ACCESS_DENIED
    assert "may not exist or may not be enabled" in outcome.message


def test_trigger_other_status() -> None:
    outcome = asyncio.run(_service(FakeTransport(_status(500))).trigger(_machine(), "X"))
    assert not outcome.success
    assert outcome.kind is OutcomeKind.HTTP_STATUS
    assert "HTTP 500" in outcome.message


def test_trigger_transport_failure_is_connectivity() -> None:
    def responder(machine: MachineRecord, path: str) -> HTTPResponse:
        raise TransportConnectError("Failed to connect to Studio (studio.local:4490): refused")

    outcome = asyncio.run(_service(FakeTransport(responder)).trigger(_machine(), "X"))
    assert not outcome.success
    assert outcome.kind is OutcomeKind.CONNECTIVITY
    assert "studio.local:4490" in outcome.message


def test_trigger_value_with_special_characters_round_trips() -> None:
    transport = FakeTransport()
    asyncio.run(_service(transport).trigger(_machine(), "Say", "a&b c=d"))
    assert _query(transport.calls[0][1])["value"] == ["a&b c=d"]


# Catalog


def test_list_macros_parses_catalog() -> None:
    transport = FakeTransport(_status(200, CATALOG_HTML))
    listing = asyncio.run(_service(transport).list_macros(_machine()))

    assert listing.success
    assert [(m.name, m.uid, m.group) for m in listing.macros] == [
        ("Open Mail", "MAIL-UID", "Global Macro Group"),
        ("Save Clipboard to File", DEFAULT_CLIPBOARD_MACRO_UID, "Keyboard Maestro MCP"),
    ]
    assert transport.calls == [("Studio", "/authenticated.html", True)]


@pytest.mark.parametrize(
    ("status", "kind", "fragment"),
    [
        (401, OutcomeKind.AUTHENTICATION_FAILED, "Authentication failed for Studio"),
        (404, OutcomeKind.HTTP_STATUS, "HTTP 404"),
    ],
)
def test_list_macros_status_failures(status: int, kind: OutcomeKind, fragment: str) -> None:
    listing = asyncio.run(_service(FakeTransport(_status(status))).list_macros(_machine()))
    assert not listing.success
    assert listing.kind is kind
    assert fragment in listing.message
    assert listing.macros == ()


def test_list_macros_connectivity_failure() -> None:
    def responder(machine: MachineRecord, path: str) -> HTTPResponse:
        raise TransportConnectError("Failed to connect to Studio (studio.local:4490): timed out")

    listing = asyncio.run(_service(FakeTransport(responder)).list_macros(_machine()))
    assert listing.kind is OutcomeKind.CONNECTIVITY
    assert "studio.local:4490" in listing.message


# Clipboard capture


def test_capture_requires_output_dir_without_network() -> None:
    transport = FakeTransport()
    payload = asyncio.run(_service(transport).capture_clipboard(_machine(output_dir=None)))
    assert not payload.success
    assert payload.kind is OutcomeKind.CONFIGURATION_MISSING
    assert "outputDir" in payload.message
    assert transport.calls == []


def test_capture_image_is_base64_encoded(tmp_path: Path) -> None:
    image_bytes = b"\x89PNG\r\n\x1a\nfake-image"
    transport = FakeTransport(_exporting(tmp_path, ("png",), image_bytes))
    payload = asyncio.run(_service(transport).capture_clipboard(_machine(output_dir=tmp_path)))

    assert payload.success
    assert payload.type == "image"
    assert payload.content == base64.b64encode(image_bytes).decode("ascii")
    assert payload.file_path == tmp_path / "clipsav_abcd1234.png"


def test_capture_text(tmp_path: Path) -> None:
    transport = FakeTransport(_exporting(tmp_path, ("txt",), "héllo\nworld".encode("utf-8")))
    payload = asyncio.run(_service(transport).capture_clipboard(_machine(output_dir=tmp_path)))

    assert payload.success
    assert payload.type == "text"
    assert payload.content == "héllo\nworld"
    assert payload.file_path == tmp_path / "clipsav_abcd1234.txt"


def test_capture_prefers_image_when_both_exist(tmp_path: Path) -> None:
    transport = FakeTransport(_exporting(tmp_path, ("txt", "png")))
    payload = asyncio.run(_service(transport).capture_clipboard(_machine(output_dir=tmp_path)))
    assert payload.type == "image"


def test_capture_passes_token_verbatim(tmp_path: Path) -> None:
    transport = FakeTransport(_exporting(tmp_path, ("txt",)))
    asyncio.run(_service(transport, token="0f1e2d3c").capture_clipboard(_machine(output_dir=tmp_path)))

    query = _query(transport.calls[0][1])
    assert query == {"macro": [DEFAULT_CLIPBOARD_MACRO_UID], "value": ["0f1e2d3c"]}
    assert "value=0f1e2d3c" in transport.calls[0][1]


def test_capture_uses_machine_clipboard_macro_override(tmp_path: Path) -> None:
    machine = MachineRecord(
        name="Studio",
        host="studio.local",
        username="km",
        password="secret",
        output_dir=tmp_path,
        clipboard_macro_uid="CUSTOM-UID",
    )
    transport = FakeTransport(_status(200))
    asyncio.run(_service(transport).capture_clipboard(machine))
    assert _query(transport.calls[0][1])["macro"] == ["CUSTOM-UID"]


def test_capture_timeout_names_both_paths(tmp_path: Path) -> None:
    transport = FakeTransport(_status(200))
    payload = asyncio.run(_service(transport).capture_clipboard(_machine(output_dir=tmp_path)))

    assert not payload.success
    assert payload.kind is OutcomeKind.TIMEOUT
    assert str(tmp_path / "clipsav_abcd1234.txt") in payload.message
    assert str(tmp_path / "clipsav_abcd1234.png") in payload.message


def test_capture_trigger_failure_is_prefixed(tmp_path: Path) -> None:
    transport = FakeTransport(_status(403))
    payload = asyncio.run(_service(transport).capture_clipboard(_machine(output_dir=tmp_path)))

    assert not payload.success
    assert payload.kind is OutcomeKind.ACCESS_DENIED
    assert payload.message.startswith("Clipboard capture failed: ")
    assert len(transport.calls) == 1


def test_capture_read_failure_is_reported(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    transport = FakeTransport(_exporting(tmp_path, ("txt",)))

    def broken_read_text(self: Path, *args, **kwargs) -> str:
        raise PermissionError("permission revoked")

    monkeypatch.setattr(Path, "read_text", broken_read_text)
    payload = asyncio.run(_service(transport).capture_clipboard(_machine(output_dir=tmp_path)))

    assert not payload.success
    assert payload.kind is OutcomeKind.READ_FAILURE
    assert "permission revoked" in payload.message
    assert payload.file_path == tmp_path / "clipsav_abcd1234.txt"


def test_trigger_and_capture_runs_macro_then_capture(tmp_path: Path) -> None:
    transport = FakeTransport(_exporting(tmp_path, ("txt",), b"copied"))
    payload = asyncio.run(
        _service(transport).trigger_and_capture(
            _machine(output_dir=tmp_path), "Copy Selection", "x", delay_ms=0
        )
    )

    assert payload.success
    assert payload.content == "copied"
    assert [_query(call[1])["macro"] for call in transport.calls] == [
        ["Copy Selection"],
        [DEFAULT_CLIPBOARD_MACRO_UID],
    ]


def test_trigger_and_capture_stops_on_failed_trigger(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    import kmctl.core.service as service_module

    async def no_polling(*args, **kwargs):
        raise AssertionError("polling must not start")

    monkeypatch.setattr(service_module, "wait_for_export", no_polling)
    transport = FakeTransport(_status(401))
    payload = asyncio.run(
        _service(transport).trigger_and_capture(_machine(output_dir=tmp_path), "Copy", delay_ms=0)
    )

    assert not payload.success
    assert payload.kind is OutcomeKind.AUTHENTICATION_FAILED
    assert len(transport.calls) == 1


# Fan-out


def test_trigger_on_all_isolates_failures() -> None:
    machines = [_machine("One"), _machine("Two"), _machine("Three")]

    def responder(machine: MachineRecord, path: str) -> HTTPResponse:
        if machine.name == "Two":
            raise TransportConnectError("Failed to connect to Two (two.local:4490): refused")
        return HTTPResponse(200, {}, "")

    result = asyncio.run(_service(FakeTransport(responder)).trigger_on_all(machines, "Lock Screen"))

    assert [o.machine for o in result.outcomes] == ["One", "Two", "Three"]
    assert [o.outcome.success for o in result.outcomes] == [True, False, True]
    assert result.outcomes[1].outcome.kind is OutcomeKind.CONNECTIVITY
    assert result.success is False


def test_trigger_on_all_contains_unexpected_exceptions() -> None:
    machines = [_machine("One"), _machine("Two")]

    def responder(machine: MachineRecord, path: str) -> HTTPResponse:
        if machine.name == "One":
            raise RuntimeError("boom")
        return HTTPResponse(200, {}, "ok")

    result = asyncio.run(_service(FakeTransport(responder)).trigger_on_all(machines, "X"))
    assert result.outcomes[0].outcome.kind is OutcomeKind.CONNECTIVITY
    assert "boom" in result.outcomes[0].outcome.message
    assert result.outcomes[1].outcome.result == "ok"


def test_trigger_on_all_runs_concurrently() -> None:
    machines = [_machine("One"), _machine("Two"), _machine("Three")]
    in_flight = 0
    peak = 0

    class SlowTransport(FakeTransport):
        async def get(self, machine, path_with_query, *, encrypted=True):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.02)
            in_flight -= 1
            return HTTPResponse(200, {}, "")

    result = asyncio.run(_service(SlowTransport()).trigger_on_all(machines, "X"))
    assert result.success
    assert peak == 3


def test_trigger_on_all_empty_registry_is_not_success() -> None:
    result = asyncio.run(_service(FakeTransport()).trigger_on_all([], "X"))
    assert result.outcomes == ()
    assert result.success is False


# Connection check


def test_check_connection_detects_clipboard_macro() -> None:
    check = asyncio.run(_service(FakeTransport(_status(200, CATALOG_HTML))).check_connection(_machine()))
    assert check.success
    assert check.macro_count == 2
    assert check.has_macro_group
    assert check.clipboard_macro_uid == DEFAULT_CLIPBOARD_MACRO_UID


def test_check_connection_reports_failure() -> None:
    check = asyncio.run(_service(FakeTransport(_status(401))).check_connection(_machine()))
    assert not check.success
    assert "Authentication failed" in check.message


def test_list_macros_malformed_host_is_connectivity() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.InvalidURL("Invalid port: ':1:4491'")

    service = MacroService(transport=HTTPTransport(transport=httpx.MockTransport(handler)))
    listing = asyncio.run(service.list_macros(_machine()))

    assert not listing.success
    assert listing.kind is OutcomeKind.CONNECTIVITY
    assert "studio.local:4490" in listing.message


def test_capture_unusable_output_dir_times_out(tmp_path: Path) -> None:
    transport = FakeTransport(_status(200))
    machine = _machine(output_dir=tmp_path / ("x" * 300))
    payload = asyncio.run(_service(transport).capture_clipboard(machine))

    assert not payload.success
    assert payload.kind is OutcomeKind.TIMEOUT
    assert "clipsav_abcd1234.png" in payload.message
