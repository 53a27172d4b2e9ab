"""Typer CLI entrypoint."""

from __future__ import annotations

import base64
import logging
import shlex
from pathlib import Path

import typer

from kmctl.api import NO_MACHINES_HINT, Client
from kmctl.core.errors import KmctlError
from kmctl.core.model import DEFAULT_PORT, ClipboardPayload, MachineRecord
from kmctl.core.registry import render_machines_json, validate_output_dir
from kmctl.core.sessions import SessionStore

app = typer.Typer(help="Trigger Keyboard Maestro macros on one or more machines")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_client() -> Client:
    client = Client()
    for warning in getattr(client, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return client


def _fail(message: str) -> None:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


def _emit_clipboard(payload: ClipboardPayload, output: Path | None) -> None:
    if not payload.success:
        _fail(payload.message)
    if output is not None:
        if payload.type == "image":
            output.write_bytes(base64.b64decode(payload.content or ""))
        else:
            output.write_text(payload.content or "", encoding="utf-8")
        typer.echo(f"Wrote {payload.type} clipboard to {output}")
        return
    if payload.type == "image":
        typer.echo(f"Image clipboard from {payload.file_path} (base64):")
    typer.echo(payload.content or "")


@app.command("machines")
def list_machines() -> None:
    """List configured machines."""
    client = _build_client()
    machines = client.list_machines()
    if not machines:
        typer.echo(NO_MACHINES_HINT)
        raise typer.Exit(code=1)

    for machine in machines:
        scheme = "https" if machine.secure else "http"
        line = f"{machine.name}: {scheme}://{machine.host}:{machine.port}"
        if machine.output_dir:
            line += f" outputDir={machine.output_dir}"
        typer.echo(line)


@app.command("macros")
def list_macros(
    machine: str | None = typer.Option(None, "--machine", "-m", help="Machine name"),
) -> None:
    """List macros published by a machine, grouped by macro group."""
    try:
        client = _build_client()
        listing = client.list_macros(machine=machine)
        if not listing.success:
            _fail(listing.message)

        current_group: str | None = None
        for entry in listing.macros:
            if entry.group != current_group:
                current_group = entry.group
                typer.echo(f"{current_group or '<no group>'}:")
            typer.echo(f"  {entry.name} ({entry.uid})")
    except KmctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("trigger")
def trigger(
    macro: str,
    value: str | None = typer.Option(None, "--value", help="Value passed as %TriggerValue%"),
    machine: str | None = typer.Option(None, "--machine", "-m", help="Machine name"),
    all_machines: bool = typer.Option(False, "--all", help="Trigger on every configured machine"),
    capture: bool = typer.Option(False, "--capture", help="Fetch the machine's clipboard afterwards"),
    delay: int = typer.Option(500, "--delay", help="Settle delay in ms before capturing"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write captured clipboard to a file"),
) -> None:
    """Trigger MACRO (name or UID) on a machine.

    With --all the macro runs on every configured machine concurrently.
    """
    try:
        client = _build_client()
        if all_machines:
            if machine or capture:
                _fail("--all cannot be combined with --machine or --capture")
            if not client.machines:
                _fail("No machines configured.")
            result = client.trigger_on_all(macro, value)
            for item in result.outcomes:
                typer.echo(f"{item.machine}: {item.outcome.message}")
            if not result.success:
                raise typer.Exit(code=1)
            return

        if capture:
            _emit_clipboard(
                client.trigger_and_capture(macro, value, machine=machine, delay_ms=delay),
                output,
            )
            return

        outcome = client.trigger(macro, value, machine=machine)
        if not outcome.success:
            _fail(outcome.message)
        typer.echo(outcome.message)
        if outcome.result:
            typer.echo(outcome.result)
    except KmctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("clipboard")
def clipboard(
    machine: str | None = typer.Option(None, "--machine", "-m", help="Machine name"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write clipboard to a file"),
) -> None:
    """Fetch the current clipboard of a machine."""
    try:
        client = _build_client()
        _emit_clipboard(client.capture_clipboard(machine=machine), output)
    except KmctlError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("check")
def check(
    machine: str | None = typer.Option(None, "--machine", "-m", help="Machine name"),
) -> None:
    """Test the connection to a machine and look for the clipboard macro."""
    client = _build_client()
    result = client.check_connection(machine=machine)
    if not result.success:
        _fail(result.message)
    typer.echo(result.message)
    if result.has_macro_group:
        typer.echo(f"Clipboard macro installed ({result.clipboard_macro_uid})")
    else:
        typer.echo("Clipboard macro not found; clipboard capture will not work.")


@app.command("setup")
def setup() -> None:
    """Interactively describe machines and print the KM_MACHINES value."""
    client = Client(machines=())
    store = SessionStore()
    session = store.start()

    while True:
        host = typer.prompt("Host")
        name = typer.prompt("Name", default=host)
        port = typer.prompt("Port", default=DEFAULT_PORT, type=int)
        username = typer.prompt("Username")
        password = typer.prompt("Password", hide_input=True)
        secure = typer.confirm("Use HTTPS for plain requests?", default=False)
        output_dir = typer.prompt("Clipboard output directory (blank to skip)", default="", show_default=False)
        while output_dir:
            problem = validate_output_dir(output_dir)
            if problem is None:
                break
            typer.echo(problem, err=True)
            output_dir = typer.prompt("Clipboard output directory (blank to skip)", default="", show_default=False)

        record = MachineRecord(
            name=name,
            host=host,
            port=port,
            username=username,
            password=password,
            secure=secure,
            output_dir=Path(output_dir).expanduser() if output_dir else None,
        )
        result = client.check_machine(record)
        typer.echo(result.message)
        if result.success and not result.has_macro_group:
            typer.echo("Warning: the 'Save Clipboard to File' macro was not found.", err=True)
        store.add_machine(session.id, record)

        if not typer.confirm("Add another machine?", default=False):
            break

    store.advance(session.id, "export")
    machines = store.finish(session.id)
    typer.echo(f"KM_MACHINES={shlex.quote(render_machines_json(machines))}")


def run() -> None:
    app()


if __name__ == "__main__":
    run()
