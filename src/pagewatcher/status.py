from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Any

from .io_utils import atomic_write_json, read_json_safe


@dataclass(frozen=True)
class StatusSnapshot:
    running: bool
    active_target: str
    indicator: str
    run_index: int
    last_cycle: str
    last_cycle_result: str
    last_match: str
    last_match_at: str
    last_alert: str
    last_error: str
    uptime_seconds: int
    cycle_count: int
    error_count: int


class StatusStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._running = False
        self._active_target = ""
        self._indicator = "OFF"
        self._run_index = 0
        self._last_cycle = ""
        self._last_cycle_result = ""
        self._last_match = ""
        self._last_match_at = ""
        self._last_alert = ""
        self._last_error = ""
        self._uptime_seconds = 0
        self._cycle_count = 0
        self._error_count = 0

    def set_running(self, value: bool) -> None:
        with self._lock:
            self._running = value

    def set_active_target(self, value: str) -> None:
        with self._lock:
            self._active_target = value

    def set_indicator(self, value: str) -> None:
        with self._lock:
            self._indicator = value

    def record_cycle(self, *, started_at: str, run_index: int, result: str) -> None:
        with self._lock:
            self._last_cycle = started_at
            self._run_index = run_index
            self._last_cycle_result = result
            self._cycle_count += 1

    def set_last_match(self, keyword: str, at: str) -> None:
        with self._lock:
            self._last_match = keyword
            self._last_match_at = at

    def set_last_alert(self, value: str) -> None:
        with self._lock:
            self._last_alert = value

    def set_last_error(self, value: str) -> None:
        with self._lock:
            self._last_error = value

    def set_uptime_seconds(self, value: int) -> None:
        with self._lock:
            self._uptime_seconds = value

    def increment_error_count(self) -> None:
        with self._lock:
            self._error_count += 1

    def snapshot(self) -> StatusSnapshot:
        with self._lock:
            return StatusSnapshot(
                running=self._running,
                active_target=self._active_target,
                indicator=self._indicator,
                run_index=self._run_index,
                last_cycle=self._last_cycle,
                last_cycle_result=self._last_cycle_result,
                last_match=self._last_match,
                last_match_at=self._last_match_at,
                last_alert=self._last_alert,
                last_error=self._last_error,
                uptime_seconds=self._uptime_seconds,
                cycle_count=self._cycle_count,
                error_count=self._error_count,
            )


def format_timestamp(value: str) -> str:
    if not value:
        return ""
    try:
        timestamp = datetime.fromisoformat(value)
        return timestamp.strftime("%d-%m-%Y - %H:%M")
    except ValueError:
        return value


def _format_next_check(last_cycle: str, interval_seconds: int | None) -> str:
    if not last_cycle or not interval_seconds:
        return ""
    try:
        timestamp = datetime.fromisoformat(last_cycle)
    except ValueError:
        return ""
    return (timestamp + timedelta(seconds=int(interval_seconds))).strftime("%d-%m-%Y - %H:%M")


def format_status(
    snapshot: StatusSnapshot,
    *,
    base_scope: str = "",
    keywords: list[str] | tuple[str, ...] = (),
    interval_seconds: int | None = None,
) -> str:
    running = "yes" if snapshot.running else "no"
    keyword_label = ", ".join(keywords) or "<none>"
    lines = [
        f"Running: {running}",
        f"Watched page: {snapshot.active_target or '<none>'}",
        f"Scope: {base_scope or '<configured scope>'}",
        f"Keywords: {keyword_label}",
        f"Indicator: {snapshot.indicator}",
        f"Run index: {snapshot.run_index}",
        f"Last check: {format_timestamp(snapshot.last_cycle)}",
        f"Next check: {_format_next_check(snapshot.last_cycle, interval_seconds)}",
        f"Last result: {snapshot.last_cycle_result}",
        f"Last match: {snapshot.last_match}",
        f"Last match timestamp: {format_timestamp(snapshot.last_match_at)}",
        f"Last alert: {format_timestamp(snapshot.last_alert)}",
        f"Last error: {snapshot.last_error}",
        f"Cycles run: {snapshot.cycle_count}",
        f"Uptime (seconds): {snapshot.uptime_seconds}",
        f"Total errors: {snapshot.error_count}",
    ]
    return "\n".join(lines)


def export_status(path: Path, snapshot: StatusSnapshot) -> None:
    atomic_write_json(path, asdict(snapshot))


def load_status(path: Path) -> StatusSnapshot | None:
    data = read_json_safe(path, default=None, context="status export")
    if not isinstance(data, dict):
        return None
    payload: dict[str, Any] = data
    return StatusSnapshot(
        running=bool(payload.get("running", False)),
        active_target=str(payload.get("active_target") or ""),
        indicator=str(payload.get("indicator") or "OFF"),
        run_index=int(payload.get("run_index", 0) or 0),
        last_cycle=str(payload.get("last_cycle", "")),
        last_cycle_result=str(payload.get("last_cycle_result", "")),
        last_match=str(payload.get("last_match", "")),
        last_match_at=str(payload.get("last_match_at", "")),
        last_alert=str(payload.get("last_alert", "")),
        last_error=str(payload.get("last_error", "")),
        uptime_seconds=int(payload.get("uptime_seconds", 0) or 0),
        cycle_count=int(payload.get("cycle_count", 0) or 0),
        error_count=int(payload.get("error_count", 0) or 0),
    )
