"""Persisted store state (disk-backed JSON document).

Design
- One JSON snapshot under the data dir (`NAVTRAIL_DATA_DIR`, default `data/navtrail/`).
- Atomic writes: write temp file then replace; the previous copy is kept as `.bak`.
- Reads distinguish "nothing usable on disk" (returns None) from I/O failure (raises OSError).
- Blocking file I/O runs in a worker thread so the event loop keeps serving events.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import time
from contextlib import suppress
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger("navtrail.persist")

STATE_VERSION = 1


class Storage(Protocol):
    async def read(self) -> dict[str, Any] | None: ...

    async def write(self, state: dict[str, Any]) -> None: ...


def load_state(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    if not path.is_file():
        raise IsADirectoryError(str(path))
    raw = path.read_text(encoding="utf-8", errors="replace")
    try:
        obj = json.loads(raw)
    except ValueError:
        logger.warning("state_file_corrupt path=%s", path)
        return None
    if not isinstance(obj, dict):
        return None
    state = obj.get("state")
    return state if isinstance(state, dict) else None


def save_state(path: Path, state: dict[str, Any]) -> dict[str, Any]:
    path.parent.mkdir(parents=True, exist_ok=True)

    now_ms = int(time.time() * 1000)
    payload = {"version": STATE_VERSION, "updatedAt": now_ms, "state": state}
    text = json.dumps(payload, ensure_ascii=True, indent=2, sort_keys=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    bak = path.with_suffix(path.suffix + ".bak")

    try:
        if path.exists() and path.is_file():
            shutil.copyfile(path, bak)
    except OSError:
        # Backup is best-effort.
        pass

    tmp.write_text(text, encoding="utf-8")
    with suppress(OSError):
        os.chmod(tmp, 0o600)
    tmp.replace(path)
    with suppress(OSError):
        os.chmod(path, 0o600)

    return {"ok": True, "path": str(path), "updatedAt": now_ms}


class JsonFileStorage:
    """Storage backed by a single JSON file."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    async def read(self) -> dict[str, Any] | None:
        return await asyncio.to_thread(load_state, self.path)

    async def write(self, state: dict[str, Any]) -> None:
        await asyncio.to_thread(save_state, self.path, state)
