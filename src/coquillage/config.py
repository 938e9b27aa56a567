"""Service configuration loading and validation.

Reads coquillage.toml from a config directory, parses all sections, and
returns a validated ServiceConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from coquillage.calendar.base import ensure_valid_timezone

CONFIG_FILENAME = "coquillage.toml"

# Pattern matching ${VAR_NAME}: alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_CALENDAR_PROVIDERS = ("google",)
_PAYMENT_PROVIDERS = ("stripe",)


class ConfigError(Exception):
    """Raised when the service configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [service.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    """Database configuration from [service.db] section.

    Connection parameters (host, credentials) are read from the environment
    by :func:`coquillage.db.db_params_from_env`; only the database name and
    pool sizing live in the config file.
    """

    name: str = "coquillage"
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class ApiConfig:
    """HTTP transport configuration from [api] section."""

    cors_origins: list[str] = field(default_factory=lambda: ["http://localhost:8080"])


@dataclass
class CalendarConfig:
    """Calendar provider configuration from [calendar] section."""

    provider: str = "google"
    calendar_id: str = "primary"
    timezone: str = "UTC"
    default_duration_minutes: int = 30
    credentials_env: str = "GOOGLE_CALENDAR_CREDENTIALS_JSON"


@dataclass
class PaymentsConfig:
    """Payment provider configuration from [payments] section."""

    provider: str = "stripe"
    secret_key_env: str = "STRIPE_SECRET_KEY"


@dataclass
class ServiceConfig:
    """Top-level parsed configuration."""

    name: str
    port: int = 3000
    environment: str = "development"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    payments: PaymentsConfig = field(default_factory=PaymentsConfig)


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


def _section(data: dict[str, Any], key: str, label: str) -> dict[str, Any]:
    raw = data.get(key, {})
    if not isinstance(raw, dict):
        raise ConfigError(f"[{label}] must be a table")
    return raw


def _positive_int(raw: Any, label: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}: {raw!r}. Must be a positive integer.") from exc
    if isinstance(raw, bool) or value <= 0:
        raise ConfigError(f"Invalid {label}: {raw!r}. Must be a positive integer.")
    return value


def _non_empty_str(raw: Any, label: str) -> str:
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError(f"{label} must be a non-empty string")
    return raw.strip()


def _parse_logging(service_section: dict[str, Any]) -> LoggingConfig:
    logging_section = _section(service_section, "logging", "service.logging")
    level = str(logging_section.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ConfigError(
            f"Invalid service.logging.level: {level!r}. Expected one of {', '.join(_LOG_LEVELS)}."
        )
    fmt = str(logging_section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid service.logging.format: {fmt!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=level, format=fmt, log_root=logging_section.get("log_root"))


def _parse_db(service_section: dict[str, Any], service_name: str) -> DatabaseConfig:
    db_section = _section(service_section, "db", "service.db")
    name = _non_empty_str(db_section.get("name", service_name), "service.db.name")
    min_pool_size = _positive_int(db_section.get("min_pool_size", 2), "service.db.min_pool_size")
    max_pool_size = _positive_int(db_section.get("max_pool_size", 10), "service.db.max_pool_size")
    if min_pool_size > max_pool_size:
        raise ConfigError("service.db.min_pool_size must not exceed service.db.max_pool_size")
    return DatabaseConfig(name=name, min_pool_size=min_pool_size, max_pool_size=max_pool_size)


def _parse_api(data: dict[str, Any]) -> ApiConfig:
    api_section = _section(data, "api", "api")
    raw_origins = api_section.get("cors_origins")
    if raw_origins is None:
        return ApiConfig()
    if not isinstance(raw_origins, list) or not all(isinstance(o, str) for o in raw_origins):
        raise ConfigError("api.cors_origins must be a list of strings")
    return ApiConfig(cors_origins=[o.strip() for o in raw_origins if o.strip()])


def _parse_calendar(data: dict[str, Any]) -> CalendarConfig:
    calendar_section = _section(data, "calendar", "calendar")
    provider = str(calendar_section.get("provider", "google")).strip().lower()
    if provider not in _CALENDAR_PROVIDERS:
        raise ConfigError(
            f"Invalid calendar.provider: {provider!r}. Expected one of "
            f"{', '.join(_CALENDAR_PROVIDERS)}."
        )
    calendar_id = _non_empty_str(
        calendar_section.get("calendar_id", "primary"), "calendar.calendar_id"
    )
    timezone = _non_empty_str(calendar_section.get("timezone", "UTC"), "calendar.timezone")
    try:
        ensure_valid_timezone(timezone)
    except ValueError as exc:
        raise ConfigError(f"Invalid calendar.timezone: {exc}") from exc
    duration = _positive_int(
        calendar_section.get("default_duration_minutes", 30),
        "calendar.default_duration_minutes",
    )
    credentials_env = _non_empty_str(
        calendar_section.get("credentials_env", "GOOGLE_CALENDAR_CREDENTIALS_JSON"),
        "calendar.credentials_env",
    )
    return CalendarConfig(
        provider=provider,
        calendar_id=calendar_id,
        timezone=timezone,
        default_duration_minutes=duration,
        credentials_env=credentials_env,
    )


def _parse_payments(data: dict[str, Any]) -> PaymentsConfig:
    payments_section = _section(data, "payments", "payments")
    provider = str(payments_section.get("provider", "stripe")).strip().lower()
    if provider not in _PAYMENT_PROVIDERS:
        raise ConfigError(
            f"Invalid payments.provider: {provider!r}. Expected one of "
            f"{', '.join(_PAYMENT_PROVIDERS)}."
        )
    secret_key_env = _non_empty_str(
        payments_section.get("secret_key_env", "STRIPE_SECRET_KEY"),
        "payments.secret_key_env",
    )
    return PaymentsConfig(provider=provider, secret_key_env=secret_key_env)


def load_config(config_dir: Path) -> ServiceConfig:
    """Load and validate a coquillage.toml from *config_dir*.

    Parameters
    ----------
    config_dir:
        Directory containing ``coquillage.toml``.

    Returns
    -------
    ServiceConfig
        Fully parsed and validated configuration.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    raw_bytes = toml_path.read_bytes()
    try:
        data = tomllib.loads(raw_bytes.decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    # --- Resolve env var references before any validation ---
    data = resolve_env_vars(data)

    # --- [service] section (required) ---
    service_section = data.get("service")
    if not isinstance(service_section, dict):
        raise ConfigError("Missing [service] section in config")

    name = _non_empty_str(service_section.get("name"), "service.name")
    port = _positive_int(service_section.get("port", 3000), "service.port")
    environment = str(service_section.get("environment", "development")).strip() or "development"

    return ServiceConfig(
        name=name,
        port=port,
        environment=environment,
        logging=_parse_logging(service_section),
        db=_parse_db(service_section, name),
        api=_parse_api(data),
        calendar=_parse_calendar(data),
        payments=_parse_payments(data),
    )
