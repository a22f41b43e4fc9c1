"""
Configuration management for CloudBridge.

Uses dynaconf for layered configuration: packaged YAML defaults, per-user
overrides and secrets under the CloudBridge home directory, then environment
variables (CLOUDBRIDGE_CACHE__TTL_HOURS=12 style).
"""

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any

from dynaconf import Dynaconf, Validator

from ..providers.base import CloudAccount, ConfigurationError, RetryPolicy

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).parent
CLOUDBRIDGE_HOME = Path(os.environ.get("CLOUDBRIDGE_HOME", "~/.cloudbridge")).expanduser()

CACHE_BACKENDS = ("memory", "duckdb", "disk")

DEFAULT_SETTINGS_FILES = [
    str(CONFIG_DIR / "config.yaml"),  # Packaged defaults
    str(CLOUDBRIDGE_HOME / "config.local.yaml"),  # Per-user overrides
    str(CLOUDBRIDGE_HOME / ".secrets.yaml"),  # Credentials, never committed
]


def build_settings(settings_files: list[str] | None = None) -> Dynaconf:
    """Create a dynaconf settings object over the given files, environment included."""
    return Dynaconf(
        envvar_prefix="CLOUDBRIDGE",
        settings_files=settings_files or DEFAULT_SETTINGS_FILES,
        environments=False,
        load_dotenv=True,
        merge_enabled=True,
        envvar_separator="__",  # CLOUDBRIDGE_CACHE__TTL_HOURS=12
        validators=[
            Validator("cache.ttl_hours", gt=0),
            Validator("cache.backend", is_in=CACHE_BACKENDS),
            Validator("http.timeout", gt=0),
            Validator("retry.max_attempts", gte=1),
            Validator("retry.base_delay", gte=0),
            Validator("retry.max_delay", gte=0),
            Validator("normalizer.sum_tolerance", gte=0),
            Validator("normalizer.trend_days", gte=1),
        ],
    )


settings = build_settings()


class CloudBridgeConfig:
    """Typed accessors over the dynaconf settings."""

    def __init__(self, settings_obj: Dynaconf | None = None):
        self.settings = settings_obj if settings_obj is not None else settings
        self._validate_config()

    def _validate_config(self):
        """Validate the configuration on initialization."""
        try:
            self.settings.validators.validate()
        except Exception as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @property
    def home(self) -> Path:
        return CLOUDBRIDGE_HOME

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(hours=float(self.settings.get("cache.ttl_hours", 6)))

    @property
    def cache_backend(self) -> str:
        return str(self.settings.get("cache.backend", "memory")).lower()

    @property
    def cache_database(self) -> str:
        return str(
            Path(self.settings.get("cache.database", str(CLOUDBRIDGE_HOME / "cloudbridge.duckdb")))
            .expanduser()
        )

    @property
    def cache_directory(self) -> str:
        return str(
            Path(self.settings.get("cache.directory", str(CLOUDBRIDGE_HOME / "cache"))).expanduser()
        )

    @property
    def http_timeout(self) -> float:
        return float(self.settings.get("http.timeout", 30))

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=int(self.settings.get("retry.max_attempts", 3)),
            base_delay=float(self.settings.get("retry.base_delay", 1.0)),
            max_delay=float(self.settings.get("retry.max_delay", 30.0)),
        )

    @property
    def sum_tolerance(self) -> float:
        return float(self.settings.get("normalizer.sum_tolerance", 1e-6))

    @property
    def trend_days(self) -> int:
        return int(self.settings.get("normalizer.trend_days", 30))

    @property
    def log_level(self) -> str:
        return str(self.settings.get("logging.level", "WARNING")).upper()

    def get_provider_config(self, provider: str) -> dict[str, Any]:
        """Provider section merged with the shared timeout and tolerance."""
        section = self.settings.get(f"providers.{provider}", {}) or {}
        merged = {
            "timeout": self.http_timeout,
            "sum_tolerance": self.sum_tolerance,
        }
        merged.update({str(k).lower(): v for k, v in dict(section).items()})
        return merged

    @property
    def accounts(self) -> list[CloudAccount]:
        """Accounts declared under the `accounts` key."""
        accounts = []
        for raw in self.settings.get("accounts", []) or []:
            data = {str(k).lower(): v for k, v in dict(raw).items()}
            try:
                accounts.append(CloudAccount(**data))
            except ValueError as e:
                raise ConfigurationError(f"Invalid account definition {data.get('id')!r}: {e}") from e
        return accounts

    def get_credentials_section(self, credential_ref: str) -> dict[str, Any]:
        """Raw credential entry from the secrets file, or an empty dict."""
        section = self.settings.get(f"credentials.{credential_ref}", {}) or {}
        return {str(k).lower(): v for k, v in dict(section).items()}

    def override_from_cli(self, cli_args: dict[str, Any]):
        """Override configuration with CLI arguments."""
        cli_mapping = {
            "cache_ttl": "cache.ttl_hours",
            "cache_backend": "cache.backend",
            "timeout": "http.timeout",
            "log_level": "logging.level",
        }

        for cli_key, config_path in cli_mapping.items():
            if cli_args.get(cli_key) is not None:
                self.settings.set(config_path, cli_args[cli_key])

        self._validate_config()


_config: CloudBridgeConfig | None = None


def get_config() -> CloudBridgeConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = CloudBridgeConfig()
    return _config


def reload_config() -> CloudBridgeConfig:
    """Reload configuration from files."""
    global _config
    settings.reload()
    _config = CloudBridgeConfig()
    return _config
