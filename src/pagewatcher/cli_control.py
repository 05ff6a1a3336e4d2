from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterable

from .config import get_user_data_dir
from .io_utils import append_json_line, take_json_lines

LOGGER = logging.getLogger(__name__)

COMMAND_QUEUE_NAME = "cli_commands.jsonl"

COMMAND_START = "start"
COMMAND_STOP = "stop"
COMMAND_SCAN = "scan"
COMMAND_EXIT = "exit"
COMMAND_SETTINGS = "settings"
KNOWN_COMMANDS = (COMMAND_START, COMMAND_STOP, COMMAND_SCAN, COMMAND_EXIT, COMMAND_SETTINGS)


@dataclass(frozen=True)
class CliCommand:
    command: str
    payload: dict[str, Any]
    timestamp: float


def get_command_queue_path() -> Path:
    return get_user_data_dir() / COMMAND_QUEUE_NAME


def write_command(command: str, payload: dict[str, Any] | None = None) -> CliCommand:
    if command not in KNOWN_COMMANDS:
        raise ValueError(f"Unknown command: {command}")
    entry = CliCommand(command=command, payload=dict(payload or {}), timestamp=time.time())
    append_json_line(get_command_queue_path(), asdict(entry))
    return entry


def _parse_entry(data: Any) -> CliCommand | None:
    if not isinstance(data, dict):
        return None
    command = str(data.get("command", "")).strip()
    if command not in KNOWN_COMMANDS:
        return None
    payload = data.get("payload")
    if not isinstance(payload, dict):
        payload = {}
    timestamp = data.get("timestamp")
    if not isinstance(timestamp, (int, float)):
        timestamp = time.time()
    return CliCommand(command=command, payload=payload, timestamp=float(timestamp))


def drain_commands() -> list[CliCommand]:
    """Take every queued command, oldest first, leaving the queue empty."""
    commands: list[CliCommand] = []
    for entry in take_json_lines(get_command_queue_path(), context="command queue"):
        command = _parse_entry(entry)
        if command is None:
            LOGGER.warning("Ignoring malformed command line", extra={"category": "control"})
            continue
        commands.append(command)
    return commands


def format_commands(commands: Iterable[CliCommand]) -> str:
    return ", ".join(command.command for command in commands)
