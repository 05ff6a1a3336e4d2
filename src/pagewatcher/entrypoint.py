from __future__ import annotations

import argparse
import atexit
import ctypes
import logging
import os
import sys
from pathlib import Path
from typing import Sequence

from .app import PageWatcherApp, run_console
from .browser import SeleniumLifecycle, build_driver
from .config import (
    AppConfig,
    get_default_config_path,
    get_user_data_dir,
    get_user_log_dir,
    load_config_or_defaults,
)
from .logging_setup import setup_logging
from .tray_app import TrayNotifier, run_tray
from . import __release_date__, __version_label__

LOGGER = logging.getLogger(__name__)
_MUTEX_HANDLE = None
ERROR_ALREADY_EXISTS = 183


def _pid_file_path() -> Path:
    return get_user_data_dir() / "pagewatcher.pid"


def _ensure_single_instance_mutex() -> bool:
    global _MUTEX_HANDLE
    windll = getattr(ctypes, "windll", None)
    if windll is None:
        return True
    kernel32 = windll.kernel32
    for name in ("Global\\PageWatcherMutex", "Local\\PageWatcherMutex"):
        try:
            mutex = kernel32.CreateMutexW(None, False, name)
            _MUTEX_HANDLE = mutex
            if kernel32.GetLastError() == ERROR_ALREADY_EXISTS:
                return False
            if mutex:
                LOGGER.info(
                    "Single-instance mutex acquired: %s",
                    name,
                    extra={"category": "startup"},
                )
                return True
        except Exception as exc:
            LOGGER.warning(
                "Failed to create mutex %s: %s",
                name,
                exc,
                extra={"category": "startup"},
            )
    return True


def _pid_is_running(pid: int) -> bool:
    if pid <= 0 or pid == os.getpid():
        return False
    if os.name == "nt":
        # The mutex is the authority on Windows.
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _ensure_single_instance() -> None:
    if not _ensure_single_instance_mutex():
        raise SystemExit("Page Watcher is already running.")
    pid_path = _pid_file_path()
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    if pid_path.exists():
        try:
            prior = int(pid_path.read_text(encoding="utf-8").strip() or 0)
        except (OSError, ValueError):
            prior = 0
        if _pid_is_running(prior):
            raise SystemExit(f"Page Watcher is already running (pid {prior}).")
    pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _cleanup() -> None:
        try:
            if pid_path.read_text(encoding="utf-8").strip() == str(os.getpid()):
                pid_path.unlink()
        except OSError:
            return

    atexit.register(_cleanup)


def _setup_boot_logging() -> None:
    if logging.getLogger().handlers:
        return
    log_root = get_user_log_dir()
    log_root.mkdir(parents=True, exist_ok=True)
    setup_logging(
        str(log_root / "pagewatcher_boot.log"),
        log_level="INFO",
        log_console_level="INFO",
        log_console_enabled=True,
        log_max_bytes=1_000_000,
        log_backup_count=3,
        log_run_files_keep=3,
        app_version=__version_label__,
        release_date=__release_date__,
    )


def _setup_runtime_logging(config: AppConfig) -> None:
    setup_logging(
        config.log_file,
        log_level=config.log_level,
        log_console_level=config.log_console_level,
        log_console_enabled=config.log_console_enabled,
        log_max_bytes=config.log_max_bytes,
        log_backup_count=config.log_backup_count,
        log_run_files_keep=config.log_run_files_keep,
        app_version=__version_label__,
        release_date=__release_date__,
    )


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pagewatcher-app", description="Run Page Watcher")
    parser.add_argument("--config", help="Path to config.yaml.")
    parser.add_argument(
        "--console",
        action="store_true",
        help="Run with a console menu instead of the tray icon.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    _setup_boot_logging()
    _ensure_single_instance()

    config_path = args.config or str(get_default_config_path())
    try:
        config = load_config_or_defaults(config_path)
    except (OSError, ValueError) as exc:
        LOGGER.error("Config error: %s", exc, extra={"category": "config"})
        raise SystemExit(f"Configuration error in {config_path}: {exc}") from exc
    _setup_runtime_logging(config)
    LOGGER.info(
        "Page Watcher %s starting (%s)",
        __version_label__,
        sys.platform,
        extra={"category": "startup"},
    )

    driver = build_driver(config.browser)
    lifecycle = SeleniumLifecycle(driver)
    lifecycle.start_events()
    notifier = TrayNotifier()
    app = PageWatcherApp(config, lifecycle=lifecycle, notifier=notifier)
    try:
        if args.console:
            run_console(app)
        else:
            run_tray(app, notifier)
    finally:
        lifecycle.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
