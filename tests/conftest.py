from __future__ import annotations

import os
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_runtime_dirs(
    monkeypatch: pytest.MonkeyPatch, tmp_path_factory: pytest.TempPathFactory
) -> None:
    """Isolate tests from user-specific directories and keep logs/data in temp."""
    # Use a separate temp dir so the test's own tmp_path stays empty.
    tmp_path = tmp_path_factory.mktemp("runtime")
    data_dir = tmp_path / "config"
    root_dir = tmp_path / "Root"
    data_dir.mkdir(parents=True, exist_ok=True)
    root_dir.mkdir(parents=True, exist_ok=True)

    monkeypatch.setenv("PAGEWATCHER_DATA_DIR", str(data_dir))
    monkeypatch.setenv("PAGEWATCHER_ROOT", str(root_dir))
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path / "LocalAppData"))
    if "USERPROFILE" not in os.environ:
        monkeypatch.setenv("USERPROFILE", str(tmp_path))
