"""
Centralised config for the sync engine.

This module consolidates all configuration settings, loading sensitive values
from environment variables and providing typed, validated access to them
through a singleton `settings` object.
"""

import os
from pathlib import Path
from typing import Any, Callable, List, Optional, TypeVar
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from psycopg.conninfo import make_conninfo
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from fitbit_sync.domain.metrics import MetricKind, SyncIntervalHours

CONFIG_FILE = Path(__file__).resolve()


def _discover_env_file(config_file: Path) -> Path:
    """Return the nearest ``.env`` above the package, or the repo-level default.

    The file is optional: development and CI environments configure
    everything through real environment variables.
    """

    parents = list(config_file.parents)
    for parent in parents:
        env_file = parent / ".env"
        if env_file.exists():
            return env_file

    for marker in ("pyproject.toml", ".git"):
        for parent in parents:
            if (parent / marker).exists():
                return parent / ".env"

    fallback_root = parents[2] if len(parents) > 2 else parents[0]
    return fallback_root / ".env"


ENV_FILE_PATH = _discover_env_file(CONFIG_FILE)

T = TypeVar("T")


class Settings(BaseSettings):
    """
    Centralised and validated application settings.
    """
    model_config = SettingsConfigDict(
        env_file=ENV_FILE_PATH, env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    ENVIRONMENT: str = "development"

    # --- FITBIT APP CREDENTIALS ---
    FITBIT_CLIENT_ID: str = ""
    FITBIT_CLIENT_SECRET: Optional[SecretStr] = None
    FITBIT_REDIRECT_URI: str = "http://127.0.0.1:8189/callback"
    FITBIT_SCOPES: str = "weight heartrate activity sleep"
    FITBIT_AUTHORIZE_URL: str = "https://www.fitbit.com/oauth2/authorize"
    FITBIT_TOKEN_URL: str = "https://api.fitbit.com/oauth2/token"
    FITBIT_API_BASE_URL: str = "https://api.fitbit.com"
    FITBIT_REQUEST_TIMEOUT: float = 30.0

    # --- SYNC BEHAVIOUR ---
    SYNC_ENABLED_METRICS: str = ",".join(metric.value for metric in MetricKind)
    SYNC_INTERVAL_HOURS: int = int(SyncIntervalHours.EVERY_4)
    SYNC_LOOKBACK_DAYS: int = 7
    SYNC_SEEN_CAPACITY: int = 5000
    SYNC_SEEN_TRIM_TO: int = 4000
    SYNC_TIMEZONE: str = "UTC"
    SYNC_RETRIES: int = 3
    SYNC_RETRY_DELAY_SECS: int = 60
    SYNC_DEADLINE_SECONDS: Optional[float] = None

    # --- LOCAL STATE ---
    STATE_DIR: Path = Path.home() / ".config" / "fitbit_sync"

    # --- DESTINATION DATABASE ---
    DATABASE_URL: Optional[str] = Field(None, validate_default=True)
    POSTGRES_USER: Optional[str] = None
    POSTGRES_PASSWORD: Optional[SecretStr] = None
    POSTGRES_HOST: Optional[str] = None
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: Optional[str] = None

    # --- LOGGING ---
    LOG_LEVEL: str = "INFO"
    LOG_TO_CONSOLE: bool = True
    LOG_DIR: Optional[Path] = None

    @field_validator("SYNC_INTERVAL_HOURS")
    @classmethod
    def _validate_interval(cls, value: int) -> int:
        allowed = [int(item) for item in SyncIntervalHours]
        if value not in allowed:
            raise ValueError(f"SYNC_INTERVAL_HOURS must be one of {allowed}, got {value}")
        return value

    @field_validator("SYNC_ENABLED_METRICS")
    @classmethod
    def _validate_metrics(cls, value: str) -> str:
        for token in _split_csv(value):
            MetricKind.parse(token)
        return value

    @field_validator("SYNC_TIMEZONE")
    @classmethod
    def _validate_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown SYNC_TIMEZONE '{value}'") from exc
        return value

    @model_validator(mode="after")
    def _validate_seen_bounds(self) -> "Settings":
        if self.SYNC_SEEN_TRIM_TO <= 0 or self.SYNC_SEEN_TRIM_TO > self.SYNC_SEEN_CAPACITY:
            raise ValueError("SYNC_SEEN_TRIM_TO must be positive and no larger than SYNC_SEEN_CAPACITY")
        return self

    @model_validator(mode="after")
    def build_database_url(self) -> "Settings":
        """Construct ``DATABASE_URL`` from the ``POSTGRES_*`` values when not given directly."""
        if self.DATABASE_URL:
            return self
        if not (self.POSTGRES_USER and self.POSTGRES_HOST and self.POSTGRES_DB):
            return self

        db_host = os.getenv("DB_HOST_OVERRIDE", self.POSTGRES_HOST)
        conninfo_params = {
            "user": self.POSTGRES_USER,
            "host": db_host,
            "port": self.POSTGRES_PORT,
            "dbname": self.POSTGRES_DB,
        }
        if self.POSTGRES_PASSWORD is not None:
            conninfo_params["password"] = self.POSTGRES_PASSWORD.get_secret_value()

        self.DATABASE_URL = make_conninfo(**conninfo_params)
        return self

    # --- DERIVED VALUES ---
    @property
    def enabled_metrics(self) -> List[MetricKind]:
        """Enabled metrics in canonical run order."""
        return MetricKind.ordered(MetricKind.parse(token) for token in _split_csv(self.SYNC_ENABLED_METRICS))

    @property
    def sync_interval(self) -> SyncIntervalHours:
        return SyncIntervalHours(self.SYNC_INTERVAL_HOURS)

    @property
    def sync_timezone(self) -> ZoneInfo:
        return ZoneInfo(self.SYNC_TIMEZONE)

    @property
    def token_path(self) -> Path:
        return self.STATE_DIR / "tokens.json"

    @property
    def state_path(self) -> Path:
        return self.STATE_DIR / "sync_state.json"

    @property
    def log_path(self) -> Path:
        """
        Path for the main application log file.

        Falls back to a directory under the user's home when the configured
        or system directory is not writable; never raises.
        """
        candidates = [self.LOG_DIR] if self.LOG_DIR is not None else []
        candidates.append(Path("/var/log/fitbit_sync"))
        for candidate in candidates:
            if candidate.exists() and os.access(candidate, os.W_OK):
                return candidate / "fitbit_sync.log"
            if candidate is self.LOG_DIR:
                try:
                    candidate.mkdir(parents=True, exist_ok=True)
                    return candidate / "fitbit_sync.log"
                except OSError:
                    continue

        fallback_dir = self.STATE_DIR / "logs"
        try:
            fallback_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            fallback_dir = Path.home()
        return fallback_dir / "fitbit_sync.log"


def _split_csv(raw: str) -> List[str]:
    return [token.strip() for token in (raw or "").split(",") if token.strip()]


# Create a single, importable instance of the settings for the entire application.
settings = Settings()


def _coerce_secret(value: Any) -> Any:
    if isinstance(value, SecretStr):
        return value.get_secret_value()
    return value


def _to_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _coerce_type(raw: str, template: Any) -> Any:
    if isinstance(template, bool):
        return _to_bool(raw)
    if isinstance(template, int) and not isinstance(template, bool):
        return int(raw)
    if isinstance(template, float):
        return float(raw)
    if isinstance(template, Path):
        return Path(raw)
    return raw


def get_env(
    name: str,
    default: T | None = None,
    *,
    parser: Callable[[str], T] | None = None,
) -> T | Any | None:
    """Return a configuration value resolving environment overrides consistently.

    The resolution order is:

    1. Explicit environment variable overrides at runtime.
    2. Typed values provided by the Pydantic ``settings`` object.
    3. The supplied ``default`` value.

    When an override is read directly from :mod:`os.environ`, ``parser`` (or the
    inferred type from ``settings``) is used to coerce the string into the
    expected type.
    """

    if name in os.environ:
        raw_value = os.environ[name]
        if parser is not None:
            return parser(raw_value)
        if hasattr(settings, name):
            template = _coerce_secret(getattr(settings, name))
            try:
                return _coerce_type(raw_value, template)
            except (TypeError, ValueError):
                return template
        return raw_value

    if hasattr(settings, name):
        return _coerce_secret(getattr(settings, name))

    return default
