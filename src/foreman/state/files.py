from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

from foreman.errors import NotFoundError


def atomic_write_text(path: Path, content: str) -> None:
    """Replace ``path`` so readers only ever observe the old or the new content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2) + "\n")


def read_json(path: Path) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise NotFoundError(f"File not found: {path}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise NotFoundError(f"Corrupt JSON in {path}: {exc}") from exc


def read_json_or_default(path: Path, default: Any) -> Any:
    try:
        return read_json(path)
    except NotFoundError:
        return default
