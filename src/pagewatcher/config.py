from __future__ import annotations

from dataclasses import dataclass, field, replace
import logging
import os
from pathlib import Path
from typing import Any, Callable, cast

import yaml

from .path_utils import anchor_path, ensure_under_root
from .settings_store import (
    DEFAULT_SETTINGS,
    KEY_BASE_SCOPE,
    KEY_CONTAINER_LOCATOR,
    KEY_DESKTOP_NOTIFY,
    KEY_INTERVAL_SECONDS,
    KEY_KEEP_AWAKE,
    KEY_KEYWORDS,
    KEY_SOUND_ENABLED,
)

MAX_LOG_FILES = 5

CURRENT_CONFIG_VERSION = 1

PLATFORM_MINIMUM_SECONDS = 60

DEFAULT_BASE_SCOPE = "https://supportmsgc.service-now.com"
DEFAULT_CONTAINER_LOCATOR = "8adc7cf893ec02507dfd31218bba103e"

LOGGER = logging.getLogger(__name__)

_CONFIG_MIGRATIONS: dict[int, Callable[[dict[str, Any]], dict[str, Any]]] = {}

_DEFAULT_CONFIG_VALUES: dict[str, Any] = {
    "base_scope": DEFAULT_BASE_SCOPE,
    "container_locator": DEFAULT_CONTAINER_LOCATOR,
    "settings_file": "settings.json",
    "status_file": "logs/status.json",
    "log_file": "logs/pagewatcher.log",
    "log_level": "INFO",
    "log_console_level": "WARNING",
    "log_console_enabled": True,
    "log_max_bytes": 5_000_000,
    "log_backup_count": 3,
    "log_run_files_keep": 3,
    "platform_minimum_seconds": PLATFORM_MINIMUM_SECONDS,
    "probe_timeout_ms": 8000,
    "observe_timeout_ms": 15000,
    "reload_timeout_seconds": 20,
    "control_poll_seconds": 1,
    "auto_start": False,
    "browser": {},
    "config_version": CURRENT_CONFIG_VERSION,
}

_DEFAULT_BROWSER_VALUES: dict[str, Any] = {
    "headless": False,
    "user_data_dir": "",
    "start_url": "",
    "use_webdriver_manager": True,
}


def _get_project_root_from_file() -> Path:
    return Path(__file__).resolve().parents[2]


def get_project_root() -> Path:
    override = os.environ.get("PAGEWATCHER_ROOT")
    if override:
        return Path(override)
    return _get_project_root_from_file()


def get_user_data_dir() -> Path:
    override = os.environ.get("PAGEWATCHER_DATA_DIR")
    if override:
        return Path(override)
    local_appdata = os.environ.get("LOCALAPPDATA")
    if local_appdata:
        return Path(local_appdata) / "PageWatcher" / "config"
    return Path.home() / ".config" / "pagewatcher"


def get_user_log_dir() -> Path:
    return get_user_data_dir() / "logs"


def get_default_config_path() -> Path:
    return get_user_data_dir() / "config.yaml"


@dataclass(frozen=True)
class BrowserConfig:
    headless: bool = False
    user_data_dir: str = ""
    start_url: str = ""
    use_webdriver_manager: bool = True


@dataclass(frozen=True)
class AppConfig:
    base_scope: str
    container_locator: str
    settings_file: str
    status_file: str
    log_file: str
    log_level: str = "INFO"
    log_console_level: str = "WARNING"
    log_console_enabled: bool = True
    log_max_bytes: int = 5_000_000
    log_backup_count: int = 3
    log_run_files_keep: int = 3
    platform_minimum_seconds: int = PLATFORM_MINIMUM_SECONDS
    probe_timeout_ms: int = 8000
    observe_timeout_ms: int = 15000
    reload_timeout_seconds: float = 20.0
    control_poll_seconds: float = 1.0
    auto_start: bool = False
    browser: BrowserConfig = field(default_factory=BrowserConfig)
    config_version: int = CURRENT_CONFIG_VERSION


@dataclass(frozen=True)
class WatchConfig:
    container_locator: str
    keywords: tuple[str, ...]
    interval_seconds: int
    sound_enabled: bool
    desktop_notify: bool
    keep_awake: bool
    base_scope: str

    def effective_interval(self, minimum_seconds: int = PLATFORM_MINIMUM_SECONDS) -> int:
        return max(self.interval_seconds, minimum_seconds)


def _migrate_config_data(data: dict[str, Any]) -> dict[str, Any]:
    version_raw = data.get("config_version", CURRENT_CONFIG_VERSION)
    try:
        version = int(version_raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("config_version must be an integer") from exc
    if version > CURRENT_CONFIG_VERSION:
        raise ValueError(
            "config_version is newer than supported: "
            f"{version} > {CURRENT_CONFIG_VERSION}"
        )
    if version < 1:
        raise ValueError("config_version must be >= 1")
    migrated = dict(data)
    while version < CURRENT_CONFIG_VERSION:
        migrate = _CONFIG_MIGRATIONS.get(version)
        if migrate is None:
            raise ValueError(f"Unsupported config_version {version}: no migration available")
        migrated = migrate(migrated)
        version = int(migrated.get("config_version", version + 1))
    migrated["config_version"] = CURRENT_CONFIG_VERSION
    return migrated


def _apply_config_defaults(data: dict[str, Any]) -> dict[str, Any]:
    missing = sorted(key for key in _DEFAULT_CONFIG_VALUES if key not in data)
    updated = {**_DEFAULT_CONFIG_VALUES, **data}
    if missing:
        LOGGER.info(
            "Defaults applied for missing config keys: %s",
            ", ".join(missing),
            extra={"category": "config"},
        )
    return updated


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    raw: object = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config must be a mapping")
    return cast(dict[str, Any], raw)


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_dicts(
                cast(dict[str, Any], merged.get(key)),
                cast(dict[str, Any], value),
            )
        else:
            merged[key] = value
    return merged


def _build_browser_config(raw: object) -> BrowserConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("browser must be a mapping")
    data = {**_DEFAULT_BROWSER_VALUES, **cast(dict[str, Any], raw)}
    return BrowserConfig(
        headless=bool(data["headless"]),
        user_data_dir=str(data["user_data_dir"] or ""),
        start_url=str(data["start_url"] or ""),
        use_webdriver_manager=bool(data["use_webdriver_manager"]),
    )


def _build_config(data: dict[str, Any]) -> AppConfig:
    data = _apply_config_defaults(_migrate_config_data(data))

    log_backup_count = int(data["log_backup_count"])
    log_run_files_keep = int(data["log_run_files_keep"])
    if log_backup_count > MAX_LOG_FILES:
        LOGGER.warning(
            "log_backup_count capped at %s (requested %s)",
            MAX_LOG_FILES,
            log_backup_count,
            extra={"category": "config"},
        )
        log_backup_count = MAX_LOG_FILES
    if log_run_files_keep > MAX_LOG_FILES:
        LOGGER.warning(
            "log_run_files_keep capped at %s (requested %s)",
            MAX_LOG_FILES,
            log_run_files_keep,
            extra={"category": "config"},
        )
        log_run_files_keep = MAX_LOG_FILES

    config = AppConfig(
        base_scope=str(data["base_scope"] or "").strip(),
        container_locator=str(data["container_locator"] or "").strip(),
        settings_file=str(data["settings_file"]),
        status_file=str(data["status_file"]),
        log_file=str(data["log_file"]),
        log_level=str(data["log_level"]),
        log_console_level=str(data["log_console_level"]),
        log_console_enabled=bool(data["log_console_enabled"]),
        log_max_bytes=int(data["log_max_bytes"]),
        log_backup_count=log_backup_count,
        log_run_files_keep=log_run_files_keep,
        platform_minimum_seconds=int(data["platform_minimum_seconds"]),
        probe_timeout_ms=int(data["probe_timeout_ms"]),
        observe_timeout_ms=int(data["observe_timeout_ms"]),
        reload_timeout_seconds=float(data["reload_timeout_seconds"]),
        control_poll_seconds=float(data["control_poll_seconds"]),
        auto_start=bool(data["auto_start"]),
        browser=_build_browser_config(data["browser"]),
        config_version=int(data["config_version"]),
    )
    config = _apply_path_policy(config)
    _validate_config(config)
    return config


def _apply_path_policy(config: AppConfig) -> AppConfig:
    base = get_user_data_dir()
    log_root = get_user_log_dir()
    return replace(
        config,
        settings_file=anchor_path(config.settings_file, base=base),
        status_file=anchor_path(config.status_file, base=base, root=log_root),
        log_file=anchor_path(config.log_file, base=base, root=log_root),
    )


def _is_valid_log_level(level: str) -> bool:
    return str(level).upper() in logging.getLevelNamesMapping()


def _validate_config(config: AppConfig) -> None:
    log_root = get_user_log_dir().resolve()

    if not config.base_scope:
        raise ValueError("base_scope is required")
    if not config.container_locator:
        raise ValueError("container_locator is required")
    if not config.settings_file:
        raise ValueError("settings_file is required")
    if not config.log_file:
        raise ValueError("log_file is required")
    if config.log_max_bytes < 1024:
        raise ValueError("log_max_bytes must be >= 1024")
    if config.log_backup_count < 0:
        raise ValueError("log_backup_count must be >= 0")
    if config.log_run_files_keep < 1:
        raise ValueError("log_run_files_keep must be >= 1")
    if not _is_valid_log_level(config.log_level):
        raise ValueError("log_level must be a valid logging level")
    if not _is_valid_log_level(config.log_console_level):
        raise ValueError("log_console_level must be a valid logging level")
    if config.platform_minimum_seconds < 1:
        raise ValueError("platform_minimum_seconds must be >= 1")
    if config.probe_timeout_ms < 0:
        raise ValueError("probe_timeout_ms must be >= 0")
    if config.observe_timeout_ms < 0:
        raise ValueError("observe_timeout_ms must be >= 0")
    if config.reload_timeout_seconds <= 0:
        raise ValueError("reload_timeout_seconds must be > 0")
    if config.control_poll_seconds <= 0:
        raise ValueError("control_poll_seconds must be > 0")
    ensure_under_root(log_root, config.log_file, "log_file")
    ensure_under_root(log_root, config.status_file, "status_file")


def load_config(path: str) -> AppConfig:
    return _build_config(_load_yaml(Path(path)))


def load_config_or_defaults(path: str) -> AppConfig:
    if not Path(path).exists():
        LOGGER.info("Config file %s not found; using defaults", path, extra={"category": "config"})
        return _build_config({})
    return load_config(path)


def load_config_with_override(base_path: str, override_path: str) -> AppConfig:
    base = _load_yaml(Path(base_path))
    override = _load_yaml(Path(override_path))
    return _build_config(_merge_dicts(base, override))


def default_settings(config: AppConfig) -> dict[str, Any]:
    """Settings-store defaults seeded with the scope and container from the config file."""
    return {
        **DEFAULT_SETTINGS,
        KEY_BASE_SCOPE: config.base_scope,
        KEY_CONTAINER_LOCATOR: config.container_locator,
    }


def report_seed_drift(config: AppConfig, stored: dict[str, Any]) -> list[str]:
    """Warn about seeded keys whose stored value no longer matches config.yaml.

    ``base_scope`` and ``container_locator`` only seed a fresh settings file;
    after that the stored values win and ``pagewatcher settings`` changes them.
    """
    drifted: list[str] = []
    for key, configured in (
        (KEY_BASE_SCOPE, config.base_scope),
        (KEY_CONTAINER_LOCATOR, config.container_locator),
    ):
        current = stored.get(key)
        if configured and current != configured:
            LOGGER.warning(
                "config.yaml %s=%r ignored; stored setting %r is used "
                "(change it with `pagewatcher settings`)",
                key,
                configured,
                current,
                extra={"category": "config"},
            )
            drifted.append(key)
    return drifted


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        return default
    if value is None:
        return default
    return bool(value)


def parse_keywords(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items: list[object] = list(value.split(","))
    elif isinstance(value, (list, tuple)):
        items = list(cast(list[object], value))
    else:
        raise ValueError("keywords must be a list or comma-separated string")
    return [str(item).strip() for item in items if str(item).strip()]


def parse_interval(value: Any, minimum_seconds: int = PLATFORM_MINIMUM_SECONDS) -> int:
    try:
        seconds = int(value)
    except (TypeError, ValueError):
        seconds = int(DEFAULT_SETTINGS[KEY_INTERVAL_SECONDS])
    return max(minimum_seconds, seconds)


def normalize_settings_update(
    raw: dict[str, Any],
    *,
    minimum_seconds: int = PLATFORM_MINIMUM_SECONDS,
) -> dict[str, Any]:
    """Validate a user edit of the live settings, returning the partial to store."""
    partial: dict[str, Any] = {}
    if KEY_KEYWORDS in raw:
        keywords = parse_keywords(raw[KEY_KEYWORDS])
        if not keywords:
            raise ValueError("keywords must contain at least one non-empty entry")
        partial[KEY_KEYWORDS] = keywords
    if KEY_INTERVAL_SECONDS in raw:
        partial[KEY_INTERVAL_SECONDS] = parse_interval(raw[KEY_INTERVAL_SECONDS], minimum_seconds)
    for key in (KEY_SOUND_ENABLED, KEY_DESKTOP_NOTIFY, KEY_KEEP_AWAKE):
        if key in raw:
            partial[key] = _coerce_bool(raw[key], bool(DEFAULT_SETTINGS[key]))
    for key in (KEY_CONTAINER_LOCATOR, KEY_BASE_SCOPE):
        if key in raw:
            value = str(raw[key] or "").strip()
            if not value:
                raise ValueError(f"{key} must not be empty")
            partial[key] = value
    unknown = sorted(set(raw) - set(partial))
    if unknown:
        raise ValueError(f"Unsupported settings keys: {', '.join(unknown)}")
    return partial


def watch_config_from_settings(
    data: dict[str, Any],
    *,
    minimum_seconds: int = PLATFORM_MINIMUM_SECONDS,
) -> WatchConfig:
    try:
        keywords = parse_keywords(data.get(KEY_KEYWORDS))
    except ValueError:
        LOGGER.warning("Stored keywords are malformed; using none", extra={"category": "config"})
        keywords = []
    return WatchConfig(
        container_locator=str(data.get(KEY_CONTAINER_LOCATOR) or "").strip(),
        keywords=tuple(keywords),
        interval_seconds=parse_interval(data.get(KEY_INTERVAL_SECONDS), minimum_seconds),
        sound_enabled=_coerce_bool(data.get(KEY_SOUND_ENABLED), True),
        desktop_notify=_coerce_bool(data.get(KEY_DESKTOP_NOTIFY), True),
        keep_awake=_coerce_bool(data.get(KEY_KEEP_AWAKE), True),
        base_scope=str(data.get(KEY_BASE_SCOPE) or "").strip(),
    )
