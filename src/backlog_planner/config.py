"""Planner configuration loading and validation.

Reads ``planner.toml``, resolves ``${VAR}`` environment references, and
returns a validated :class:`PlannerConfig`. Every section is optional.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

DEFAULT_CONFIG_FILENAME = "planner.toml"

# Pattern matching ${VAR_NAME}; alphanumeric and underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when planner configuration is missing, malformed, or invalid."""


@dataclass
class DatabaseConfig:
    """Connection settings from [planner.database]. ``url`` wins over discrete fields."""

    url: str | None = None
    host: str = "localhost"
    port: int = 5432
    user: str = "planner"
    password: str = "planner"
    name: str = "backlog_planner"
    min_pool_size: int = 1
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from [planner.logging]."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class GoogleConfig:
    """OAuth client and request settings from [planner.google]."""

    client_id: str | None = None
    client_secret: str | None = None
    request_timeout_s: float = 10.0
    calendar_name: str = "Backlog Planner"


@dataclass
class SyncConfig:
    """Token refresh and sync dispatch tuning from [planner.sync].

    refresh_margin_s: a token expiring within this window is refreshed first.
    refresh_lock_ttl_s: lifetime of the per-user refresh lock.
    failure_threshold / failure_window_s: circuit breaker for transient
    refresh failures.
    queue_capacity / worker_count / drain_timeout_s: best-effort sync queue.
    """

    refresh_margin_s: int = 60
    refresh_lock_ttl_s: int = 30
    failure_threshold: int = 3
    failure_window_s: int = 24 * 60 * 60
    queue_capacity: int = 100
    worker_count: int = 1
    drain_timeout_s: float = 10.0


@dataclass
class ScheduleDefaults:
    """Fallback scheduling preferences from [planner.schedule]."""

    default_weekly_budget_minutes: int = 600
    default_session_length_minutes: int = 60
    default_timezone: str = "UTC"
    max_weeks: int = 12


@dataclass
class PlannerConfig:
    """Parsed and validated planner configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    schedule: ScheduleDefaults = field(default_factory=ScheduleDefaults)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing name at once."""
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(parent: dict[str, Any], name: str, path: str) -> dict[str, Any]:
    raw = parent.get(name, {})
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must be a table")
    return raw


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"{path}.{key} must be a positive integer, got {raw!r}")
    return raw


def _positive_float(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float) or raw <= 0:
        raise ConfigError(f"{path}.{key} must be a positive number, got {raw!r}")
    return float(raw)


def _optional_string(section: dict[str, Any], key: str, path: str) -> str | None:
    raw = section.get(key)
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise ConfigError(f"{path}.{key} must be a string")
    return raw.strip() or None


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    path = "planner.database"
    defaults = DatabaseConfig()
    min_pool = _positive_int(section, "min_pool_size", defaults.min_pool_size, path)
    max_pool = _positive_int(section, "max_pool_size", defaults.max_pool_size, path)
    if min_pool > max_pool:
        raise ConfigError(f"{path}.min_pool_size must not exceed {path}.max_pool_size")
    return DatabaseConfig(
        url=_optional_string(section, "url", path),
        host=_optional_string(section, "host", path) or defaults.host,
        port=_positive_int(section, "port", defaults.port, path),
        user=_optional_string(section, "user", path) or defaults.user,
        password=_optional_string(section, "password", path) or defaults.password,
        name=_optional_string(section, "name", path) or defaults.name,
        min_pool_size=min_pool,
        max_pool_size=max_pool,
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid planner.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(
        level=level,
        format=log_format,
        log_root=_optional_string(section, "log_root", "planner.logging"),
    )


def _parse_google(section: dict[str, Any]) -> GoogleConfig:
    path = "planner.google"
    defaults = GoogleConfig()
    return GoogleConfig(
        client_id=_optional_string(section, "client_id", path),
        client_secret=_optional_string(section, "client_secret", path),
        request_timeout_s=_positive_float(
            section, "request_timeout_s", defaults.request_timeout_s, path
        ),
        calendar_name=_optional_string(section, "calendar_name", path) or defaults.calendar_name,
    )


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    path = "planner.sync"
    defaults = SyncConfig()
    return SyncConfig(
        refresh_margin_s=_positive_int(
            section, "refresh_margin_s", defaults.refresh_margin_s, path
        ),
        refresh_lock_ttl_s=_positive_int(
            section, "refresh_lock_ttl_s", defaults.refresh_lock_ttl_s, path
        ),
        failure_threshold=_positive_int(
            section, "failure_threshold", defaults.failure_threshold, path
        ),
        failure_window_s=_positive_int(
            section, "failure_window_s", defaults.failure_window_s, path
        ),
        queue_capacity=_positive_int(section, "queue_capacity", defaults.queue_capacity, path),
        worker_count=_positive_int(section, "worker_count", defaults.worker_count, path),
        drain_timeout_s=_positive_float(section, "drain_timeout_s", defaults.drain_timeout_s, path),
    )


def _parse_schedule(section: dict[str, Any]) -> ScheduleDefaults:
    path = "planner.schedule"
    defaults = ScheduleDefaults()
    timezone = _optional_string(section, "default_timezone", path) or defaults.default_timezone
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(
            f"{path}.default_timezone is not a valid IANA timezone: {timezone}"
        ) from exc
    return ScheduleDefaults(
        default_weekly_budget_minutes=_positive_int(
            section, "default_weekly_budget_minutes", defaults.default_weekly_budget_minutes, path
        ),
        default_session_length_minutes=_positive_int(
            section, "default_session_length_minutes", defaults.default_session_length_minutes, path
        ),
        default_timezone=timezone,
        max_weeks=_positive_int(section, "max_weeks", defaults.max_weeks, path),
    )


def parse_config(data: dict[str, Any]) -> PlannerConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    planner = _section(data, "planner", "planner")
    return PlannerConfig(
        database=_parse_database(_section(planner, "database", "planner.database")),
        logging=_parse_logging(_section(planner, "logging", "planner.logging")),
        google=_parse_google(_section(planner, "google", "planner.google")),
        sync=_parse_sync(_section(planner, "sync", "planner.sync")),
        schedule=_parse_schedule(_section(planner, "schedule", "planner.schedule")),
    )


def load_config(path: Path) -> PlannerConfig:
    """Load and validate a planner config.

    *path* may be the TOML file itself or a directory containing ``planner.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
