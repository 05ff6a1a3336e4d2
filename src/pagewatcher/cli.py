from __future__ import annotations

import argparse
import cmd
import json
import shlex
import sys
from pathlib import Path
from typing import Any, Sequence, TextIO

from .cli_control import (
    COMMAND_EXIT,
    COMMAND_SCAN,
    COMMAND_SETTINGS,
    COMMAND_START,
    COMMAND_STOP,
    write_command,
)
from .config import (
    AppConfig,
    default_settings,
    get_default_config_path,
    load_config_or_defaults,
    normalize_settings_update,
    parse_keywords,
    watch_config_from_settings,
)
from .document import SoupDocument
from .io_utils import read_json_safe
from .matcher import ContentMatcher
from .settings_store import (
    KEY_BASE_SCOPE,
    KEY_CONTAINER_LOCATOR,
    KEY_DESKTOP_NOTIFY,
    KEY_INTERVAL_SECONDS,
    KEY_KEEP_AWAKE,
    KEY_KEYWORDS,
    KEY_SOUND_ENABLED,
)
from .status import format_status, load_status

_SETTINGS_OPTIONS = {
    "keywords": KEY_KEYWORDS,
    "interval": KEY_INTERVAL_SECONDS,
    "sound": KEY_SOUND_ENABLED,
    "notify": KEY_DESKTOP_NOTIFY,
    "keep_awake": KEY_KEEP_AWAKE,
    "locator": KEY_CONTAINER_LOCATOR,
    "scope": KEY_BASE_SCOPE,
}


def _load_settings(config: AppConfig) -> dict[str, Any]:
    stored = read_json_safe(Path(config.settings_file), default={}, context="settings")
    if not isinstance(stored, dict):
        stored = {}
    return {**default_settings(config), **stored}


def render_status(config: AppConfig) -> str:
    snapshot = load_status(Path(config.status_file))
    if snapshot is None:
        return "Status export not found."
    watch = watch_config_from_settings(
        _load_settings(config), minimum_seconds=config.platform_minimum_seconds
    )
    return format_status(
        snapshot,
        base_scope=watch.base_scope,
        keywords=watch.keywords,
        interval_seconds=watch.effective_interval(config.platform_minimum_seconds),
    )


def render_settings(config: AppConfig) -> str:
    watch = watch_config_from_settings(
        _load_settings(config), minimum_seconds=config.platform_minimum_seconds
    )
    lines = [
        f"Keywords: {', '.join(watch.keywords) or '<none>'}",
        f"Interval (seconds): {watch.effective_interval(config.platform_minimum_seconds)}",
        f"Sound: {'on' if watch.sound_enabled else 'off'}",
        f"Desktop notification: {'on' if watch.desktop_notify else 'off'}",
        f"Keep awake: {'on' if watch.keep_awake else 'off'}",
        f"Container: {watch.container_locator}",
        f"Scope: {watch.base_scope}",
    ]
    return "\n".join(lines)


def request_settings(raw: dict[str, Any], config: AppConfig) -> dict[str, Any]:
    """Validate a settings edit and queue it for the running instance."""
    partial = normalize_settings_update(raw, minimum_seconds=config.platform_minimum_seconds)
    write_command(COMMAND_SETTINGS, partial)
    return partial


def run_probe(
    path: Path,
    *,
    locator: str,
    keywords: Sequence[str],
    wait_ms: int = 0,
) -> tuple[bool, str]:
    document = SoupDocument.from_file(path)
    result = ContentMatcher(document).probe(locator, list(keywords), wait_ms)
    if result.matched:
        return True, f"Match: {result.matched_keyword}"
    if result.reason:
        return False, f"No match ({result.reason})"
    return False, "No match"


def _parse_assignments(arg: str) -> dict[str, Any]:
    raw: dict[str, Any] = {}
    for token in shlex.split(arg):
        name, sep, value = token.partition("=")
        if not sep or name not in _SETTINGS_OPTIONS:
            raise ValueError(f"Expected one of {', '.join(_SETTINGS_OPTIONS)} as name=value")
        raw[_SETTINGS_OPTIONS[name]] = value
    return raw


class PageWatcherShell(cmd.Cmd):
    intro = "Page Watcher CLI. Type 'help' for commands."
    prompt = "pagewatcher> "

    def __init__(self, config: AppConfig, stdout: TextIO | None = None) -> None:
        super().__init__(stdout=stdout)
        self._config = config

    def do_status(self, _arg: str) -> None:
        """Show the last exported status."""
        self.stdout.write(render_status(self._config) + "\n")

    def do_start(self, arg: str) -> None:
        """Watch a page: 'start' for the browser's current page, or 'start <window handle>'."""
        target_id = arg.strip()
        write_command(COMMAND_START, {"target_id": target_id} if target_id else {})
        self.stdout.write("Watch requested.\n")

    def do_stop(self, _arg: str) -> None:
        """Stop watching."""
        write_command(COMMAND_STOP)
        self.stdout.write("Stop requested.\n")

    def do_scan(self, _arg: str) -> None:
        """Request an immediate check of the watched page."""
        write_command(COMMAND_SCAN, {"refresh": True})
        self.stdout.write("Scan requested.\n")

    def do_settings(self, arg: str) -> None:
        """Show settings, or change them: settings keywords="1 - Critical,2 - High" interval=120"""
        if not arg.strip():
            self.stdout.write(render_settings(self._config) + "\n")
            return
        try:
            partial = request_settings(_parse_assignments(arg), self._config)
        except ValueError as exc:
            self.stdout.write(f"Settings rejected: {exc}\n")
            return
        self.stdout.write(f"Settings update requested: {json.dumps(partial, ensure_ascii=False)}\n")

    def do_probe(self, arg: str) -> None:
        """Check a saved HTML page: probe <file>"""
        path = Path(arg.strip())
        if not path.is_file():
            self.stdout.write(f"File not found: {path}\n")
            return
        watch = watch_config_from_settings(_load_settings(self._config))
        _matched, message = run_probe(
            path, locator=watch.container_locator, keywords=watch.keywords
        )
        self.stdout.write(message + "\n")

    def do_exit(self, _arg: str) -> bool:
        """Stop Page Watcher and exit this CLI."""
        write_command(COMMAND_EXIT)
        self.stdout.write("Exit requested.\n")
        return True

    def do_quit(self, _arg: str) -> bool:
        """Exit this CLI."""
        return True

    def do_EOF(self, _arg: str) -> bool:
        self.stdout.write("\n")
        return True


def _on_off(value: str) -> str:
    lowered = value.strip().lower()
    if lowered not in {"on", "off", "true", "false", "yes", "no", "1", "0"}:
        raise argparse.ArgumentTypeError("expected on or off")
    return lowered


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pagewatcher", description="Page Watcher CLI")
    parser.add_argument("--config", help="Path to config.yaml.")
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("status", help="Show the last exported status.")
    start = commands.add_parser("start", help="Watch the browser's current page.")
    start.add_argument("target_id", nargs="?", help="Window handle to watch.")
    commands.add_parser("stop", help="Stop watching.")
    commands.add_parser("scan", help="Request an immediate check.")
    commands.add_parser("exit", help="Stop the running instance.")

    settings = commands.add_parser("settings", help="Show or change the watch settings.")
    settings.add_argument("--keywords", help="Comma-separated keywords.")
    settings.add_argument("--interval", help="Check interval in seconds.")
    settings.add_argument("--sound", type=_on_off)
    settings.add_argument("--notify", type=_on_off)
    settings.add_argument("--keep-awake", dest="keep_awake", type=_on_off)
    settings.add_argument("--locator", help="Container id or CSS selector.")
    settings.add_argument("--scope", help="Base URL the watched page must start with.")

    probe = commands.add_parser("probe", help="Check a saved HTML page for keywords.")
    probe.add_argument("file", type=Path)
    probe.add_argument("--locator", help="Container id or CSS selector.")
    probe.add_argument("--keyword", action="append", dest="keywords")
    probe.add_argument("--wait-ms", type=int, default=0)
    return parser


def _cli_main(argv: Sequence[str] | None = None, *, stdout: TextIO | None = None) -> int:
    out = stdout or sys.stdout
    args = build_parser().parse_args(argv)
    config = load_config_or_defaults(args.config or str(get_default_config_path()))

    if args.command is None:
        PageWatcherShell(config, stdout=out).cmdloop()
        return 0
    if args.command == "status":
        out.write(render_status(config) + "\n")
        return 0
    if args.command == "start":
        write_command(COMMAND_START, {"target_id": args.target_id} if args.target_id else {})
        return 0
    if args.command == "stop":
        write_command(COMMAND_STOP)
        return 0
    if args.command == "scan":
        write_command(COMMAND_SCAN, {"refresh": True})
        return 0
    if args.command == "exit":
        write_command(COMMAND_EXIT)
        return 0
    if args.command == "settings":
        raw = {
            key: getattr(args, option)
            for option, key in _SETTINGS_OPTIONS.items()
            if getattr(args, option) is not None
        }
        if not raw:
            out.write(render_settings(config) + "\n")
            return 0
        try:
            partial = request_settings(raw, config)
        except ValueError as exc:
            out.write(f"Settings rejected: {exc}\n")
            return 2
        out.write(f"Settings update requested: {', '.join(sorted(partial))}\n")
        return 0
    if args.command == "probe":
        watch = watch_config_from_settings(_load_settings(config))
        keywords = parse_keywords(args.keywords) if args.keywords else list(watch.keywords)
        matched, message = run_probe(
            args.file,
            locator=args.locator or watch.container_locator,
            keywords=keywords,
            wait_ms=args.wait_ms,
        )
        out.write(message + "\n")
        return 0 if matched else 1
    return 0


if __name__ == "__main__":
    raise SystemExit(_cli_main())
