"""Discovery of clipboard export files written by the remote host."""

from __future__ import annotations

import asyncio
import base64
import os
import secrets
import time
from dataclasses import dataclass
from pathlib import Path

from kmctl.core.errors import ClipboardReadError

POLL_TIMEOUT_S = 3.0
POLL_INTERVAL_S = 0.1


@dataclass(frozen=True)
class ExportPaths:
    text: Path
    image: Path


def new_token() -> str:
    return secrets.token_hex(4)


def export_paths(output_dir: Path, token: str) -> ExportPaths:
    return ExportPaths(
        text=output_dir / f"clipsav_{token}.txt",
        image=output_dir / f"clipsav_{token}.png",
    )


def _is_readable(path: Path) -> bool:
    try:
        return path.is_file() and os.access(path, os.R_OK)
    except OSError:
        # Unusable directories (EACCES, ENAMETOOLONG) read as "not there yet".
        return False


async def wait_for_file(
    path: Path,
    *,
    timeout_s: float = POLL_TIMEOUT_S,
    interval_s: float = POLL_INTERVAL_S,
) -> bool:
    """Poll until ``path`` is a readable file or the deadline passes."""
    deadline = time.monotonic() + timeout_s
    while True:
        if _is_readable(path):
            return True
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(interval_s)


async def wait_for_export(
    paths: ExportPaths,
    *,
    timeout_s: float = POLL_TIMEOUT_S,
    interval_s: float = POLL_INTERVAL_S,
) -> Path | None:
    """Race the image and text candidates; return whichever appeared.

    The image path wins when both exist once the race settles.
    """
    tasks = {
        asyncio.create_task(wait_for_file(p, timeout_s=timeout_s, interval_s=interval_s)): p
        for p in (paths.image, paths.text)
    }
    pending = set(tasks)
    found = False
    try:
        while pending and not found:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
            found = any(task.result() for task in done)
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    if not found:
        return None
    if _is_readable(paths.image):
        return paths.image
    return paths.text


async def read_text(path: Path) -> str:
    try:
        return await asyncio.to_thread(path.read_text, encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ClipboardReadError(f"Failed to read clipboard text from {path}: {exc}") from exc


async def read_image_base64(path: Path) -> str:
    try:
        data = await asyncio.to_thread(path.read_bytes)
    except OSError as exc:
        raise ClipboardReadError(f"Failed to read clipboard image from {path}: {exc}") from exc
    return base64.b64encode(data).decode("ascii")
