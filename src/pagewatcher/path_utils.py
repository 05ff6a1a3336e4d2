from __future__ import annotations

import os
from pathlib import Path


def anchor_path(value: str, *, base: Path, root: Path | None = None) -> str:
    """Place a configured file path.

    ``~`` and environment variables are expanded first. Relative values are
    joined to ``base``. Absolute values are kept only when they already sit
    inside ``root`` (``base`` when omitted); otherwise the file name is moved
    under ``root``.
    """
    confine = root if root is not None else base
    candidate = Path(os.path.expandvars(value)).expanduser()
    if not candidate.is_absolute():
        return str(base / candidate)
    try:
        inside = candidate.resolve().is_relative_to(confine.resolve())
    except OSError:
        inside = False
    return str(candidate) if inside else str(confine / candidate.name)


def ensure_under_root(root: Path, path_value: str, label: str) -> None:
    message = f"{label} must be under {root}"
    try:
        resolved = Path(path_value).resolve()
    except OSError as exc:
        raise ValueError(message) from exc
    if not resolved.is_relative_to(root):
        raise ValueError(message)
