"""Agent configuration loading and validation.

Reads ``callagent.toml``, resolves ``${VAR}`` references against the
environment, and returns a validated :class:`AgentConfig`.

Example::

    [links]
    base_url = "https://calls.example.com"

    [database]
    name = "callagent"
    host = "${POSTGRES_HOST}"

    [email]
    smtp_host = "smtp.gmail.com"
    address_env = "CALLAGENT_EMAIL_ADDRESS"
    password_env = "CALLAGENT_EMAIL_PASSWORD"

    [google]
    client_id = "${GOOGLE_CLIENT_ID}"
    client_secret = "${GOOGLE_CLIENT_SECRET}"

    [reminders]
    interval_hours = 8
    max_reminders = 3

    [logging]
    level = "INFO"
    format = "json"
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from callagent.db import db_params_from_env
from callagent.notifications.email import EmailConfig

CONFIG_FILENAME = "callagent.toml"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when agent configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section.

    Unset fields fall back to ``DATABASE_URL`` / ``POSTGRES_*`` env vars.
    """

    name: str = "callagent"
    host: str = "localhost"
    port: int = 5432
    user: str = "callagent"
    password: str = "callagent"
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class ReminderConfig:
    """Reminder cadence from the [reminders] section."""

    interval_hours: float = 8.0
    max_reminders: int = 3


@dataclass
class LinksConfig:
    """Public URLs from the [links] section."""

    base_url: str


@dataclass
class AgentConfig:
    """Parsed and validated agent configuration."""

    links: LinksConfig
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    google: dict[str, Any] = field(default_factory=dict)
    reminders: ReminderConfig = field(default_factory=ReminderConfig)
    search_days: int = 14
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

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
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
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


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=level, format=log_format, log_root=section.get("log_root"))


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    env = db_params_from_env()
    name = str(section.get("name") or env.get("db_name") or "callagent").strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")
    return DatabaseConfig(
        name=name,
        host=str(section.get("host", env["host"])),
        port=_positive_int(section, "port", int(env["port"] or 5432), "database"),
        user=str(section.get("user", env["user"])),
        password=str(section.get("password", env["password"])),
        ssl=section.get("ssl", env["ssl"]),
        min_pool_size=_positive_int(section, "min_pool_size", 2, "database"),
        max_pool_size=_positive_int(section, "max_pool_size", 10, "database"),
    )


def _parse_email(data: dict[str, Any]) -> EmailConfig:
    try:
        return EmailConfig.model_validate(_section(data, "email"))
    except ValidationError as exc:
        raise ConfigError(f"Invalid [email] section: {exc}") from exc


def _parse_reminders(data: dict[str, Any]) -> ReminderConfig:
    section = _section(data, "reminders")
    raw_interval = section.get("interval_hours", 8)
    try:
        interval_hours = float(raw_interval)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid reminders.interval_hours: {raw_interval!r}") from exc
    if interval_hours <= 0:
        raise ConfigError(
            f"Invalid reminders.interval_hours: {interval_hours!r}. Must be positive."
        )
    return ReminderConfig(
        interval_hours=interval_hours,
        max_reminders=_positive_int(section, "max_reminders", 3, "reminders"),
    )


def _parse_links(data: dict[str, Any]) -> LinksConfig:
    section = _section(data, "links")
    base_url = section.get("base_url")
    if not isinstance(base_url, str) or not base_url.strip():
        raise ConfigError("links.base_url must be a non-empty string")
    base_url = base_url.strip().rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        raise ConfigError(f"Invalid links.base_url: {base_url!r}. Expected an http(s) URL.")
    return LinksConfig(base_url=base_url)


def parse_config(data: dict[str, Any]) -> AgentConfig:
    """Build an :class:`AgentConfig` from an already-parsed TOML document."""
    data = resolve_env_vars(data)
    scheduling = _section(data, "scheduling")
    return AgentConfig(
        links=_parse_links(data),
        database=_parse_database(data),
        email=_parse_email(data),
        google=dict(_section(data, "google")),
        reminders=_parse_reminders(data),
        search_days=_positive_int(scheduling, "search_days", 14, "scheduling"),
        logging=_parse_logging(data),
    )


def load_config(path: str | Path) -> AgentConfig:
    """Load configuration from *path*.

    *path* may be the TOML file itself or a directory containing
    ``callagent.toml``.

    Raises
    ------
    ConfigError
        If the file is missing, unparseable or invalid.
    """
    config_path = Path(path)
    if config_path.is_dir():
        config_path = config_path / CONFIG_FILENAME
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open("rb") as fh:
            data = tomllib.load(fh)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc

    return parse_config(data)
