from __future__ import annotations

import os
from types import SimpleNamespace

import pytest

pytest.importorskip("selenium")
pytest.importorskip("PIL")

from pagewatcher import entrypoint
from pagewatcher.config import get_user_data_dir


def _fake_windll(last_error: int, calls: list[str] | None = None, fail_global: bool = False):
    class FakeKernel32:
        def CreateMutexW(self, *args):
            name = str(args[2])
            if calls is not None:
                calls.append(name)
            if fail_global and "Global" in name:
                raise RuntimeError("access denied")
            return 123

        def GetLastError(self) -> int:
            return last_error

    return SimpleNamespace(kernel32=FakeKernel32())


def test_mutex_returns_false_when_exists(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(entrypoint.ctypes, "windll", _fake_windll(183), raising=False)

    assert entrypoint._ensure_single_instance_mutex() is False


def test_mutex_returns_true_on_success(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(entrypoint.ctypes, "windll", _fake_windll(0), raising=False)

    assert entrypoint._ensure_single_instance_mutex() is True


def test_mutex_falls_back_to_local_when_global_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []
    monkeypatch.setattr(
        entrypoint.ctypes, "windll", _fake_windll(0, calls, fail_global=True), raising=False
    )

    assert entrypoint._ensure_single_instance_mutex() is True
    assert any("Global" in name for name in calls)
    assert any("Local" in name for name in calls)


def test_stale_pid_file_is_replaced(monkeypatch: pytest.MonkeyPatch) -> None:
    pid_path = get_user_data_dir() / "pagewatcher.pid"
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text("1234", encoding="utf-8")
    monkeypatch.setattr(entrypoint, "_ensure_single_instance_mutex", lambda: True)
    monkeypatch.setattr(entrypoint, "_pid_is_running", lambda _pid: False)
    monkeypatch.setattr(entrypoint.atexit, "register", lambda _fn: None)

    entrypoint._ensure_single_instance()

    assert pid_path.read_text(encoding="utf-8") == str(os.getpid())


def test_running_instance_blocks_start(monkeypatch: pytest.MonkeyPatch) -> None:
    pid_path = get_user_data_dir() / "pagewatcher.pid"
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text("1234", encoding="utf-8")
    monkeypatch.setattr(entrypoint, "_ensure_single_instance_mutex", lambda: True)
    monkeypatch.setattr(entrypoint, "_pid_is_running", lambda pid: pid == 1234)

    with pytest.raises(SystemExit, match="1234"):
        entrypoint._ensure_single_instance()


def test_held_mutex_blocks_start(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(entrypoint, "_ensure_single_instance_mutex", lambda: False)

    with pytest.raises(SystemExit):
        entrypoint._ensure_single_instance()


def test_own_pid_is_not_running() -> None:
    assert entrypoint._pid_is_running(os.getpid()) is False
    assert entrypoint._pid_is_running(0) is False


def test_main_console_mode_closes_browser(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[str] = []

    class FakeLifecycle:
        def __init__(self, driver) -> None:
            events.append(f"lifecycle:{driver}")

        def start_events(self) -> None:
            events.append("events")

        def close(self) -> None:
            events.append("closed")

    monkeypatch.setattr(entrypoint, "_setup_boot_logging", lambda: None)
    monkeypatch.setattr(entrypoint, "_setup_runtime_logging", lambda _config: None)
    monkeypatch.setattr(entrypoint, "_ensure_single_instance", lambda: None)
    monkeypatch.setattr(entrypoint, "build_driver", lambda _browser: "driver")
    monkeypatch.setattr(entrypoint, "SeleniumLifecycle", FakeLifecycle)
    monkeypatch.setattr(entrypoint, "PageWatcherApp", lambda config, **_kwargs: config)
    monkeypatch.setattr(entrypoint, "run_console", lambda _app: events.append("console"))

    assert entrypoint.main(["--console"]) == 0

    assert events == ["lifecycle:driver", "events", "console", "closed"]


def test_main_reports_bad_config(monkeypatch: pytest.MonkeyPatch) -> None:
    config_path = get_user_data_dir() / "config.yaml"
    config_path.write_text("- not\n- a mapping\n", encoding="utf-8")
    monkeypatch.setattr(entrypoint, "_setup_boot_logging", lambda: None)
    monkeypatch.setattr(entrypoint, "_ensure_single_instance", lambda: None)

    with pytest.raises(SystemExit, match="Configuration error"):
        entrypoint.main([])
