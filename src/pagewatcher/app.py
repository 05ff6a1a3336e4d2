from __future__ import annotations

import logging
import time
from pathlib import Path
from queue import Empty, Queue
from threading import Event, Thread
from typing import Any, Callable

from .cli_control import (
    COMMAND_EXIT,
    COMMAND_SCAN,
    COMMAND_SETTINGS,
    COMMAND_START,
    COMMAND_STOP,
    CliCommand,
    drain_commands,
    format_commands,
)
from .config import (
    AppConfig,
    default_settings,
    normalize_settings_update,
    report_seed_drift,
    watch_config_from_settings,
)
from .cycle import CycleRunner, CycleTimeouts
from .gate import NotificationGate
from .indicator import StateIndicator
from .interfaces import Notifier, Persistence, TargetLifecycle, Timers
from .power import set_keep_awake
from .scheduler import WatchScheduler
from .settings_store import SettingsStore
from .status import StatusStore, export_status, format_status
from .timers import RecurringTimers

LOGGER = logging.getLogger(__name__)


class PageWatcherApp:
    """Wires the watch engine to its host adapters and runs the control loop."""

    def __init__(
        self,
        config: AppConfig,
        *,
        lifecycle: TargetLifecycle,
        notifier: Notifier,
        store: Persistence | None = None,
        timers: Timers | None = None,
        status: StatusStore | None = None,
        keep_awake: Callable[[bool], Any] = set_keep_awake,
    ) -> None:
        self.config = config
        self.status = status or StatusStore()
        self.store = store or SettingsStore(
            Path(config.settings_file), defaults=default_settings(config)
        )
        report_seed_drift(config, self.store.get())
        self.timers = timers or RecurringTimers()
        self.lifecycle = lifecycle
        self.gate = NotificationGate(self.store)
        self.indicator = StateIndicator(notifier, self.status)
        self.scheduler = WatchScheduler(
            store=self.store,
            timers=self.timers,
            lifecycle=lifecycle,
            indicator=self.indicator,
            gate=self.gate,
            status=self.status,
            keep_awake=keep_awake,
            platform_minimum_seconds=config.platform_minimum_seconds,
        )
        self.runner = CycleRunner(
            store=self.store,
            lifecycle=lifecycle,
            gate=self.gate,
            indicator=self.indicator,
            notifier=notifier,
            is_active=self.scheduler.is_active,
            status=self.status,
            timeouts=CycleTimeouts(
                probe_ms=config.probe_timeout_ms,
                observe_ms=config.observe_timeout_ms,
                reload_seconds=config.reload_timeout_seconds,
            ),
            platform_minimum_seconds=config.platform_minimum_seconds,
        )
        self.scheduler.set_cycle_runner(self.runner.run_cycle)
        self.stop_event = Event()
        self._local_commands: Queue[CliCommand] = Queue()
        self._started_at = time.monotonic()

    def submit(self, command: str, payload: dict[str, Any] | None = None) -> None:
        """Queue a command from an in-process UI (tray menu, console)."""
        self._local_commands.put(
            CliCommand(command=command, payload=dict(payload or {}), timestamp=time.time())
        )

    def handle_command(self, command: CliCommand) -> str:
        LOGGER.info("Command received: %s", command.command, extra={"category": "control"})
        if command.command == COMMAND_START:
            target_id = command.payload.get("target_id") or self.lifecycle.current_target_id()
            if not target_id:
                return "No page available to watch"
            if self.scheduler.start(str(target_id)):
                return f"Watching {target_id}"
            return "Page is outside the configured scope; watch not started"
        if command.command == COMMAND_STOP:
            return "Watch stopped" if self.scheduler.stop() else "No active watch"
        if command.command == COMMAND_SCAN:
            refresh = bool(command.payload.get("refresh", False))
            if self.scheduler.active_target is None:
                return "No active watch"
            if self.scheduler.request_cycle(refresh=refresh):
                return "Scan queued"
            return "Scan already pending"
        if command.command == COMMAND_SETTINGS:
            try:
                partial = normalize_settings_update(
                    command.payload,
                    minimum_seconds=self.config.platform_minimum_seconds,
                )
            except ValueError as exc:
                LOGGER.warning("Settings rejected: %s", exc, extra={"category": "config"})
                return f"Settings rejected: {exc}"
            self.store.set(partial)
            return "Settings updated: " + ", ".join(sorted(partial))
        if command.command == COMMAND_EXIT:
            self.stop_event.set()
            return "Exit requested"
        return f"Unknown command: {command.command}"

    def status_text(self) -> str:
        watch = watch_config_from_settings(
            self.store.get(), minimum_seconds=self.config.platform_minimum_seconds
        )
        return format_status(
            self.status.snapshot(),
            base_scope=watch.base_scope,
            keywords=watch.keywords,
            interval_seconds=watch.effective_interval(self.config.platform_minimum_seconds),
        )

    def startup(self) -> None:
        if self.scheduler.resume():
            return
        if not self.config.auto_start:
            return
        target_id = self.lifecycle.current_target_id()
        if target_id and not self.scheduler.start(target_id):
            LOGGER.info("Auto start skipped: page out of scope", extra={"category": "startup"})

    def poll_once(self) -> list[str]:
        replies: list[str] = []
        commands = drain_commands()
        while True:
            try:
                commands.append(self._local_commands.get_nowait())
            except Empty:
                break
        if commands:
            LOGGER.info(
                "Processing commands: %s",
                format_commands(commands),
                extra={"category": "control"},
            )
        for command in commands:
            try:
                replies.append(self.handle_command(command))
            except Exception as exc:
                LOGGER.exception(
                    "Command %s failed: %s",
                    command.command,
                    exc,
                    extra={"category": "control"},
                )
        self.store.refresh()
        self.export_status()
        return replies

    def export_status(self) -> None:
        self.status.set_uptime_seconds(int(time.monotonic() - self._started_at))
        try:
            export_status(Path(self.config.status_file), self.status.snapshot())
        except OSError as exc:
            LOGGER.warning("Status export failed: %s", exc, extra={"category": "status"})

    def run_loop(self) -> None:
        self.startup()
        try:
            while not self.stop_event.is_set():
                self.poll_once()
                self.stop_event.wait(self.config.control_poll_seconds)
        finally:
            self.shutdown()

    def start_loop_thread(self) -> Thread:
        thread = Thread(target=self.run_loop, name="control-loop", daemon=True)
        thread.start()
        return thread

    def shutdown(self) -> None:
        self.scheduler.shutdown()
        self.timers.cancel_all()
        self.export_status()
        LOGGER.info("Shutdown complete", extra={"category": "shutdown"})


_CONSOLE_COMMANDS = {
    "w": COMMAND_START,
    "watch": COMMAND_START,
    "x": COMMAND_STOP,
    "stop": COMMAND_STOP,
    "m": COMMAND_SCAN,
    "scan": COMMAND_SCAN,
    "q": COMMAND_EXIT,
    "quit": COMMAND_EXIT,
    "exit": COMMAND_EXIT,
}


def run_console(
    app: PageWatcherApp,
    *,
    input_func: Callable[[str], str] = input,
    output: Callable[[str], None] = print,
) -> None:
    loop_thread = app.start_loop_thread()
    try:
        while not app.stop_event.is_set():
            output("Page Watcher - Console")
            output("Commands:")
            output("  [S] Status")
            output("  [W] Watch current page")
            output("  [X] Stop watching")
            output("  [M] Scan now")
            output("  [Q] Quit")
            try:
                choice = input_func("Command: ").strip().lower()
            except (EOFError, KeyboardInterrupt):
                break
            if choice in ("s", "status"):
                output(app.status_text())
                continue
            command = _CONSOLE_COMMANDS.get(choice)
            if command is None:
                output(f"Unknown command: {choice}")
                continue
            if command == COMMAND_EXIT:
                break
            payload = {"refresh": True} if command == COMMAND_SCAN else {}
            output(app.handle_command(CliCommand(command, payload, time.time())))
    finally:
        app.stop_event.set()
        loop_thread.join(timeout=10)
