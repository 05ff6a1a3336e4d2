from __future__ import annotations

import json
import logging
import os
import platform
import re
import sys
import threading
import time
import warnings
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path, PureWindowsPath
from typing import Iterator
from uuid import uuid4

MAX_LOG_FILES = 5

EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
WINDOWS_PATH_RE = re.compile(r"[A-Za-z]:\\[^\s]+")
TOKEN_RE = re.compile(
    r"(?i)\b(bearer|token|apikey|api_key|secret|password|sysparm_ck)\s*[:=]\s*[^\s,;&]+"
)
QUERY_SECRET_RE = re.compile(r"(?i)([?&](?:token|sysparm_ck|session)=)[^&\s]+")

_CYCLE_ID: ContextVar[str] = ContextVar("pagewatcher_cycle_id", default="")


@contextmanager
def cycle_context(cycle_id: str) -> Iterator[None]:
    """Tag every record logged inside the block with ``cycle_id``."""
    token = _CYCLE_ID.set(str(cycle_id))
    try:
        yield
    finally:
        _CYCLE_ID.reset(token)


def current_cycle_id() -> str:
    return _CYCLE_ID.get()


class RecordContextFilter(logging.Filter):
    """Stamps each record with the fields both formatters print.

    Values a caller already passed through ``extra`` win.
    """

    def __init__(self, *, session_id: str, app_version: str, release_date: str) -> None:
        super().__init__()
        self._fixed = {
            "category": "general",
            "session_id": session_id,
            "app_version": app_version,
            "release_date": release_date,
            "hostname": platform.node(),
            "python_version": platform.python_version(),
            "pid": os.getpid(),
        }
        self._started = time.time()

    def filter(self, record: logging.LogRecord) -> bool:
        for name, value in self._fixed.items():
            if not hasattr(record, name):
                setattr(record, name, value)
        if not hasattr(record, "cycle_id"):
            record.cycle_id = _CYCLE_ID.get() or "-"
        record.uptime_seconds = max(0.0, time.time() - self._started)
        return True


def _redact_windows_path(match: re.Match[str]) -> str:
    raw = match.group(0)
    tail = PureWindowsPath(raw).name
    drive = raw[:2]
    if tail:
        return f"{drive}\\...\\{tail}"
    return f"{drive}\\..."


def sanitize_text(value: str) -> str:
    if not value:
        return value
    sanitized = EMAIL_RE.sub("<email>", value)
    sanitized = WINDOWS_PATH_RE.sub(_redact_windows_path, sanitized)
    sanitized = TOKEN_RE.sub(r"\1=<redacted>", sanitized)
    sanitized = QUERY_SECRET_RE.sub(r"\1<redacted>", sanitized)
    return sanitized


class RedactionFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = sanitize_text(record.getMessage())
        record.args = ()
        return True


class SanitizingFormatter(logging.Formatter):
    def formatException(self, ei) -> str:
        return sanitize_text(super().formatException(ei))


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "category": getattr(record, "category", "general"),
            "cycle_id": getattr(record, "cycle_id", "-"),
            "logger": record.name,
            "message": sanitize_text(record.getMessage()),
            "file": record.filename,
            "line": record.lineno,
            "function": record.funcName,
            "thread_name": record.threadName,
            "session_id": getattr(record, "session_id", ""),
            "app_version": getattr(record, "app_version", ""),
            "release_date": getattr(record, "release_date", ""),
            "hostname": getattr(record, "hostname", ""),
            "python_version": getattr(record, "python_version", ""),
            "pid": getattr(record, "pid", record.process),
            "uptime_seconds": round(getattr(record, "uptime_seconds", 0.0), 3),
        }
        if record.exc_info:
            payload["exception"] = sanitize_text(self.formatException(record.exc_info))
        return json.dumps(payload, ensure_ascii=False)


def _install_exception_hooks() -> None:
    logger = logging.getLogger(__name__)

    def handle_exception(exc_type, exc, tb) -> None:
        if exc_type in (KeyboardInterrupt, SystemExit):
            logger.info("Shutdown requested", extra={"category": "shutdown"})
            return
        logger.critical(
            "Unhandled exception",
            exc_info=(exc_type, exc, tb),
            extra={"category": "fatal"},
        )

    def handle_thread_exception(args: threading.ExceptHookArgs) -> None:
        if args.exc_type in (KeyboardInterrupt, SystemExit):
            logger.info("Thread shutdown requested", extra={"category": "shutdown"})
            return
        logger.critical(
            "Unhandled exception in thread %s",
            getattr(args.thread, "name", "?"),
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
            extra={"category": "fatal"},
        )

    sys.excepthook = handle_exception
    threading.excepthook = handle_thread_exception


def _build_run_log_path(base_path: Path) -> Path:
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return base_path.parent / f"{base_path.stem}_{timestamp}_{os.getpid()}{base_path.suffix}"


def _cleanup_old_logs(log_dir: Path, stem: str, suffix: str, keep: int) -> None:
    candidates = sorted(
        log_dir.glob(f"{stem}_*{suffix}"),
        key=lambda path: path.stat().st_mtime,
    )
    for path in candidates[: max(0, len(candidates) - keep)]:
        try:
            path.unlink()
        except OSError:
            continue


def _resolve_level(level: str, default: int) -> int:
    return logging.getLevelNamesMapping().get(str(level).upper(), default)


def _clamp_file_count(requested: int, floor: int) -> int:
    return min(MAX_LOG_FILES, max(floor, requested))


def _file_handlers(
    base_path: Path,
    *,
    max_bytes: int,
    backup_count: int,
) -> tuple[list[tuple[logging.Handler, bool]], list[Path]]:
    """Rotating and per-run handlers for the text log and its ``.jsonl`` twin.

    Each handler is paired with ``True`` when it writes JSON lines. The
    second element lists the per-run paths, for pruning.
    """
    handlers: list[tuple[logging.Handler, bool]] = []
    run_paths: list[Path] = []
    try:
        for suffix, is_json in ((base_path.suffix, False), (".jsonl", True)):
            rotating_path = base_path.with_suffix(suffix)
            run_path = _build_run_log_path(rotating_path)
            handlers.append(
                (
                    RotatingFileHandler(
                        rotating_path,
                        maxBytes=max_bytes,
                        backupCount=backup_count,
                        encoding="utf-8",
                    ),
                    is_json,
                )
            )
            handlers.append((logging.FileHandler(run_path, encoding="utf-8"), is_json))
            run_paths.append(run_path)
    except OSError:
        for handler, _is_json in handlers:
            handler.close()
        raise
    return handlers, run_paths


def setup_logging(
    log_file: str,
    *,
    log_level: str = "INFO",
    log_console_level: str = "WARNING",
    log_console_enabled: bool = True,
    log_max_bytes: int = 5_000_000,
    log_backup_count: int = 3,
    log_run_files_keep: int = 3,
    app_version: str | None = None,
    release_date: str | None = None,
) -> None:
    """Install rotating text and JSON-lines handlers, plus per-run copies of each."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        try:
            handler.close()
        finally:
            root.removeHandler(handler)

    base_path = Path(log_file)
    if not base_path.suffix:
        base_path = base_path.with_suffix(".log")
    base_path.parent.mkdir(parents=True, exist_ok=True)

    session_id = uuid4().hex
    context_filter = RecordContextFilter(
        session_id=session_id,
        app_version=str(app_version or ""),
        release_date=str(release_date or ""),
    )
    text_formatter = SanitizingFormatter(
        "%(asctime)s %(levelname)s %(category)s [%(cycle_id)s] %(name)s "
        "%(filename)s:%(lineno)d %(threadName)s %(message)s"
    )
    json_formatter = JsonFormatter()
    level = _resolve_level(log_level, logging.INFO)
    console_level = _resolve_level(log_console_level, logging.WARNING)
    backup_count = _clamp_file_count(log_backup_count, 0)
    keep = _clamp_file_count(log_run_files_keep, 1)

    planned: list[tuple[logging.Handler, bool, int]] = []
    run_paths: list[Path] = []
    file_error: OSError | None = None
    try:
        files, run_paths = _file_handlers(
            base_path,
            max_bytes=log_max_bytes,
            backup_count=backup_count,
        )
        planned.extend((handler, is_json, level) for handler, is_json in files)
    except OSError as exc:
        file_error = exc
        planned.append((logging.StreamHandler(), False, level))
    if log_console_enabled:
        planned.append((logging.StreamHandler(), False, console_level))

    root.setLevel(level)
    for handler, is_json, handler_level in planned:
        handler.setFormatter(json_formatter if is_json else text_formatter)
        handler.setLevel(handler_level)
        handler.addFilter(RedactionFilter())
        handler.addFilter(context_filter)
        root.addHandler(handler)

    warnings.simplefilter("default")
    logging.captureWarnings(True)
    _install_exception_hooks()
    for noisy in ("PIL", "PIL.Image", "selenium", "urllib3", "WDM"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    if file_error is not None:
        logger.warning(
            "Failed to initialize file logging: %s",
            file_error,
            extra={"category": "startup"},
        )
    logger.info(
        "Logging initialized",
        extra={
            "category": "startup",
            "log_file": str(base_path),
            "run_log_files": [str(path) for path in run_paths],
            "session_id": session_id,
        },
    )
    for name, requested, effective in (
        ("log_backup_count", log_backup_count, backup_count),
        ("log_run_files_keep", log_run_files_keep, keep),
    ):
        if requested != effective:
            logger.warning(
                "%s capped at %s (requested %s)",
                name,
                effective,
                requested,
                extra={"category": "startup"},
            )
    for run_path in run_paths:
        _cleanup_old_logs(run_path.parent, base_path.stem, run_path.suffix, keep)
