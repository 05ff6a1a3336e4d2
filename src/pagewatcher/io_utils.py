from __future__ import annotations

import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Iterator


LOGGER = logging.getLogger(__name__)


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write through a sibling temp file and ``os.replace`` so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex}.tmp")
    try:
        with temp_path.open("w", encoding=encoding, newline="") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def read_json_safe(
    path: Path,
    *,
    default: Any,
    context: str | None = None,
) -> Any:
    label = context or str(path)
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    except OSError as exc:
        LOGGER.warning("Failed to read %s: %s", label, exc, extra={"category": "io"})
        return default
    if not text.strip():
        return default
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        LOGGER.warning("Failed to parse JSON from %s: %s", label, exc, extra={"category": "io"})
        return default


def append_json_line(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(payload, ensure_ascii=False) + "\n")


def take_json_lines(path: Path, *, context: str | None = None) -> Iterator[Any | None]:
    """Move ``path`` aside, then yield one decoded value per non-blank line.

    Lines that are not valid JSON yield ``None``. Appends that land after the
    move go to a fresh file and are picked up by the next call.
    """
    label = context or str(path)
    if not path.exists():
        return
    taken = path.with_suffix(path.suffix + ".taking")
    try:
        os.replace(path, taken)
        lines = taken.read_text(encoding="utf-8").splitlines()
        taken.unlink()
    except OSError as exc:
        LOGGER.warning("Failed to take %s: %s", label, exc, extra={"category": "io"})
        return
    for line in lines:
        if not line.strip():
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            yield None
