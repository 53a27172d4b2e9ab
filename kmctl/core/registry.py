"""Machine registry loading and validation.

Machines come from the process environment, in this precedence order:

1. ``KM_MACHINES``: a JSON array of machine objects.
2. ``KM_CONFIG`` (or ``$XDG_CONFIG_HOME/kmctl/machines.yaml``): a YAML file
   with a ``machines`` list of the same objects.
3. Flat ``KM_HOST``/``KM_PORT``/``KM_USERNAME``/``KM_PASSWORD``/``KM_SECURE``/
   ``KM_NAME``/``KM_OUTPUT_DIR``/``KM_SAVE_CLIPBOARD_MACRO_UID`` fields
   describing a single machine.

The first source present is the only one consulted. Loading never raises:
malformed input degrades to an empty registry plus warnings.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from kmctl.core.errors import MachineConfigError
from kmctl.core.model import DEFAULT_CLIPBOARD_MACRO_UID, DEFAULT_PORT, MachineRecord

LOGGER = logging.getLogger(__name__)

_OUTPUT_DIR_KEYS = ("outputDir", "output_dir")
_CLIPBOARD_UID_KEYS = ("saveClipboardMacroUid", "clipboardMacroUid", "clipboard_macro_uid")


@dataclass(frozen=True)
class LoadedMachines:
    machines: tuple[MachineRecord, ...]
    warnings: tuple[str, ...]


@lru_cache(maxsize=1)
def _load_schema_validator() -> Any:
    schema_text = resources.files("kmctl.schemas").joinpath("machine.schema.json").read_text(
        encoding="utf-8"
    )
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _config_path(environ: Mapping[str, str]) -> tuple[Path, bool]:
    explicit = environ.get("KM_CONFIG")
    if explicit:
        return Path(explicit).expanduser(), True
    xdg_config = Path(environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "kmctl/machines.yaml", False


def _first_present(doc: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        value = doc.get(key)
        if value not in (None, ""):
            return value
    return None


def _normalize_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _normalize_port(value: Any, *, context: str) -> int:
    if value is None or value == "":
        return DEFAULT_PORT
    port = int(value)
    if not 1 <= port <= 65534:
        raise MachineConfigError(f"{context}: port {port} is out of range")
    return port


def build_machine(doc: Any, *, context: str) -> MachineRecord:
    """Validate one untrusted machine object and coerce it into a record."""
    if not isinstance(doc, dict):
        raise MachineConfigError(f"{context}: machine entry must be an object")

    validator = _load_schema_validator()
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise MachineConfigError(f"{context}{where}: {exc.message}") from exc

    output_dir = _first_present(doc, _OUTPUT_DIR_KEYS)
    return MachineRecord(
        name=doc.get("name") or doc["host"],
        host=doc["host"],
        port=_normalize_port(doc.get("port"), context=context),
        username=doc["username"],
        password=doc["password"],
        secure=_normalize_bool(doc.get("secure", False)),
        output_dir=Path(output_dir).expanduser() if output_dir else None,
        clipboard_macro_uid=_first_present(doc, _CLIPBOARD_UID_KEYS),
    )


def _build_registry(entries: Sequence[Any], source: str) -> LoadedMachines:
    machines: list[MachineRecord] = []
    warnings: list[str] = []
    seen: set[str] = set()

    for index, entry in enumerate(entries):
        try:
            machine = build_machine(entry, context=f"{source}[{index}]")
        except MachineConfigError as exc:
            warnings.append(f"Skipping machine entry: {exc}")
            continue
        key = machine.name.lower()
        if key in seen:
            warnings.append(f"Skipping duplicate machine name '{machine.name}' in {source}[{index}]")
            continue
        seen.add(key)
        machines.append(machine)

    return LoadedMachines(machines=tuple(machines), warnings=tuple(warnings))


def _from_json_list(raw: str) -> LoadedMachines:
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, RecursionError) as exc:
        return LoadedMachines(machines=(), warnings=(f"Failed to parse KM_MACHINES: {exc}",))
    if not isinstance(parsed, list):
        return LoadedMachines(machines=(), warnings=("KM_MACHINES must be a JSON array",))
    return _build_registry(parsed, "KM_MACHINES")


def _from_yaml_file(path: Path) -> LoadedMachines:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        return LoadedMachines(machines=(), warnings=(f"Could not read machine config {path}: {exc}",))

    try:
        loaded = yaml.safe_load(content)
    except (yaml.YAMLError, RecursionError) as exc:
        return LoadedMachines(machines=(), warnings=(f"Invalid YAML in {path}: {exc}",))

    if isinstance(loaded, dict):
        loaded = loaded.get("machines")
    if not isinstance(loaded, list):
        return LoadedMachines(
            machines=(),
            warnings=(f"Machine config {path} must contain a 'machines' list",),
        )
    return _build_registry(loaded, str(path))


def _from_flat_fields(environ: Mapping[str, str]) -> LoadedMachines:
    host = environ.get("KM_HOST")
    username = environ.get("KM_USERNAME")
    password = environ.get("KM_PASSWORD")
    if not (host and username and password):
        return LoadedMachines(machines=(), warnings=())

    doc = {
        "name": environ.get("KM_NAME") or host,
        "host": host,
        "port": environ.get("KM_PORT") or DEFAULT_PORT,
        "username": username,
        "password": password,
        "secure": environ.get("KM_SECURE", "").strip().lower() == "true",
        "outputDir": environ.get("KM_OUTPUT_DIR"),
        "saveClipboardMacroUid": environ.get("KM_SAVE_CLIPBOARD_MACRO_UID"),
    }
    return _build_registry([doc], "KM_HOST")


def load_machines(environ: Mapping[str, str] | None = None) -> LoadedMachines:
    env = os.environ if environ is None else environ

    machines_json = env.get("KM_MACHINES")
    if machines_json:
        loaded = _from_json_list(machines_json)
    else:
        config_path, explicit = _config_path(env)
        if explicit or config_path.is_file():
            loaded = _from_yaml_file(config_path)
        else:
            loaded = _from_flat_fields(env)

    for warning in loaded.warnings:
        LOGGER.warning(warning)
    return loaded


def find_machine(machines: Sequence[MachineRecord], name: str | None = None) -> MachineRecord | None:
    if not name:
        return machines[0] if machines else None
    wanted = name.lower()
    for machine in machines:
        if machine.name.lower() == wanted:
            return machine
    return None


def validate_output_dir(path: str) -> str | None:
    """Return an error message for an unusable clipboard output directory."""
    if not path or not path.strip():
        return "Path cannot be empty"
    if not path.startswith(("/", "~")):
        return "Path must be absolute (start with / or ~)"
    if "\n" in path or "\r" in path:
        return "Path cannot contain newlines"
    return None


def machine_to_dict(machine: MachineRecord) -> dict[str, Any]:
    return {
        "name": machine.name,
        "host": machine.host,
        "port": machine.port,
        "username": machine.username,
        "password": machine.password,
        "secure": machine.secure,
        "outputDir": str(machine.output_dir) if machine.output_dir else None,
        "saveClipboardMacroUid": machine.clipboard_macro_uid or DEFAULT_CLIPBOARD_MACRO_UID,
    }


def render_machines_json(machines: Sequence[MachineRecord]) -> str:
    """Serialize records into the ``KM_MACHINES`` list form."""
    return json.dumps([machine_to_dict(m) for m in machines])

