"""Connection settings for the GitLab ingestion pipeline.

Configuration is loaded from (in order of precedence):
1. Keyword arguments to ``load_settings``
2. Environment variables (GITLAB_URL, GITLAB_TOKEN, GITLAB_GROUP_ID, ...)
3. A YAML file (EPIC_DASH_CONFIG, or ~/.config/epic-dash/config.yml)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

API_CALL_TYPES: tuple[str, ...] = ("rest", "graphql", "gitbreaker", "express")

DEFAULT_REFRESH_INTERVAL_MS = 3_600_000
DEFAULT_GRAPHQL_PROXY_URL = "http://localhost:3000/graphql-proxy"
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_REFRESH_TIMEOUT = 600.0

# field name -> (env var, yaml key)
_SOURCES: dict[str, tuple[str, str]] = {
    "api_url": ("GITLAB_URL", "api_url"),
    "access_token": ("GITLAB_TOKEN", "access_token"),
    "group_id": ("GITLAB_GROUP_ID", "group_id"),
    "group_name": ("GITLAB_GROUP_NAME", "group_name"),
    "api_call_type": ("GITLAB_API_CALL_TYPE", "api_call_type"),
    "refresh_interval_ms": ("EPIC_DASH_REFRESH_INTERVAL", "refresh_interval"),
    "graphql_proxy_url": ("EPIC_DASH_GRAPHQL_PROXY", "graphql_proxy_url"),
    "request_timeout": ("EPIC_DASH_REQUEST_TIMEOUT", "request_timeout"),
    "refresh_timeout": ("EPIC_DASH_REFRESH_TIMEOUT", "refresh_timeout"),
}

# Fields each transport needs before it can talk to anything
_REQUIRED: dict[str, tuple[str, ...]] = {
    "rest": ("api_url", "access_token", "group_id"),
    "graphql": ("api_url", "access_token", "group_name", "graphql_proxy_url"),
    "gitbreaker": ("api_url", "access_token", "group_id"),
    "express": ("api_url", "group_id"),
}


class ConfigurationError(Exception):
    """Raised when connection settings are missing or invalid."""

    pass


@dataclass(frozen=True)
class Settings:
    api_url: str = ""
    access_token: str = ""
    group_id: str = ""
    group_name: str = ""
    api_call_type: str = "rest"
    refresh_interval_ms: int = DEFAULT_REFRESH_INTERVAL_MS
    graphql_proxy_url: str = DEFAULT_GRAPHQL_PROXY_URL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT
    # Values that could not be converted at load time; reported by validate()
    invalid: tuple[str, ...] = ()

    @property
    def ttl_seconds(self) -> float:
        """Cache lifetime derived from the refresh interval."""
        return self.refresh_interval_ms / 1000.0

    def missing_fields(self) -> list[str]:
        """Names of required fields that are empty for the selected transport."""
        required = _REQUIRED.get(self.api_call_type, ())
        return [name for name in required if not getattr(self, name)]

    def validate(self) -> "Settings":
        """Check the settings are usable.

        Raises:
            ConfigurationError: Malformed values, unknown transport, or
                required fields missing.
        """
        if self.invalid:
            raise ConfigurationError("; ".join(self.invalid))
        if self.api_call_type not in API_CALL_TYPES:
            raise ConfigurationError(
                f"Unknown api_call_type '{self.api_call_type}'. "
                f"Expected one of: {', '.join(API_CALL_TYPES)}"
            )
        missing = self.missing_fields()
        if missing:
            raise ConfigurationError(
                f"Missing required settings for '{self.api_call_type}' transport: "
                f"{', '.join(missing)}"
            )
        if self.refresh_interval_ms <= 0:
            raise ConfigurationError("refresh_interval must be a positive number")
        return self


def _get_config_path() -> Path:
    """Get the path to the YAML config file."""
    override = os.environ.get("EPIC_DASH_CONFIG", "").strip()
    if override:
        return Path(override)
    return Path.home() / ".config" / "epic-dash" / "config.yml"


def _load_config_file(path: Path | None = None) -> dict[str, Any]:
    """Load the YAML config file.

    Returns:
        Parsed mapping, or an empty dict if the file is absent or invalid.
    """
    path = path or _get_config_path()

    if not path.exists():
        return {}

    try:
        with path.open(encoding="utf-8") as f:
            result = yaml.safe_load(f)
            return result if isinstance(result, dict) else {}
    except (yaml.YAMLError, PermissionError, OSError) as e:
        logger.debug(f"Could not load config file {path}: {e}")
        return {}


def _coerce(name: str, value: Any) -> Any:
    """Convert a raw env/yaml value to the dataclass field type."""
    if name == "refresh_interval_ms":
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"refresh_interval must be an integer (milliseconds), got {value!r}"
            ) from e
    if name in ("request_timeout", "refresh_timeout"):
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{name} must be a number, got {value!r}") from e
    if name == "api_call_type":
        return str(value).strip().lower()
    return str(value).strip()


def load_settings(config_path: Path | None = None, **overrides: Any) -> Settings:
    """Build Settings from overrides, environment and config file.

    Missing or malformed fields are not an error here; call
    ``Settings.validate`` at the point where a connection is actually needed.
    """
    file_config = _load_config_file(config_path)
    values: dict[str, Any] = {}
    invalid: list[str] = []

    for name, (env_var, yaml_key) in _SOURCES.items():
        value = overrides.get(name)
        if value is None or value == "":
            value = os.getenv(env_var) or None
        if value is None:
            value = file_config.get(yaml_key)
        if value is not None and value != "":
            try:
                values[name] = _coerce(name, value)
            except ConfigurationError as e:
                logger.warning(f"Invalid setting {name}: {e}")
                invalid.append(str(e))

    if "api_url" in values:
        values["api_url"] = values["api_url"].rstrip("/")
    return Settings(**values, invalid=tuple(invalid))
