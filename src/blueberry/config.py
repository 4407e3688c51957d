"""Blueberry configuration loading and validation.

Reads ``blueberry.toml`` from a config directory, resolves ``${VAR}``
references, applies the add-on environment overrides and returns a validated
:class:`BlueberryConfig`.

A missing ``blueberry.toml`` is not an error: the add-on runs with defaults
plus environment variables.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

CONFIG_FILE_NAME = "blueberry.toml"
DEFAULT_CLIENT_NAME = "Smart Blueberry"
DEFAULT_CONFIG_DIR = "/data/"

# Pattern matching ${VAR_NAME}; names are alphanumeric plus underscore.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

# Environment variable → [hub] field
_HUB_ENV_OVERRIDES = {
    "HOMEASSISTANT_URL": "url",
    "SUPERVISOR_TOKEN": "supervisor_token",
    "SUPERVISOR_WS_URL": "supervisor_ws_url",
    "SUPERVISOR_REST_URL": "supervisor_rest_url",
    "CLIENT_NAME": "client_name",
}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


class HubConfig(BaseModel):
    """Connection settings for the Home Assistant hub.

    Attributes
    ----------
    url:
        Base URL of the Home Assistant instance.
    supervisor_token:
        Privileged token handed to add-ons by the supervisor. When set, every
        connection uses it and the supervisor proxy URLs below.
    client_name:
        Name prefix used when minting long-lived tokens for a user.
    backoff_base_seconds / backoff_unit_seconds:
        Reconnect delay is ``base + retries² × unit``.
    debounce_seconds:
        Window in which registry topology updates are coalesced.
    """

    url: str = "http://localhost:8123"
    supervisor_token: str | None = None
    supervisor_ws_url: str = "ws://supervisor/core/websocket"
    supervisor_rest_url: str = "http://supervisor/core/api"
    client_name: str = DEFAULT_CLIENT_NAME
    verify_ssl: bool = True
    request_timeout: float = 10.0
    backoff_base_seconds: float = Field(default=0.0, ge=0)
    backoff_unit_seconds: float = Field(default=1.0, ge=0)
    debounce_seconds: float = Field(default=0.5, ge=0)

    model_config = ConfigDict(extra="forbid")

    @property
    def supervised(self) -> bool:
        return bool(self.supervisor_token)

    @property
    def ws_url(self) -> str:
        """WebSocket endpoint, honouring supervised mode."""
        if self.supervised:
            return self.supervisor_ws_url
        return websocket_url(self.url)

    @property
    def rest_url(self) -> str:
        """REST API base, honouring supervised mode."""
        if self.supervised:
            return self.supervisor_rest_url.rstrip("/")
        return self.url.rstrip("/") + "/api"


class IrrigationConfig(BaseModel):
    """Settings of the irrigation scheduler."""

    enabled: bool = True
    valve_pattern: str = r"^switch\..*valve.*$"
    check_interval: str = "every 5 minutes"
    event_prefix: str = "blueberry"
    history_days: int = Field(default=14, ge=1)

    model_config = ConfigDict(extra="forbid")


@dataclass
class LoggingConfig:
    """Logging configuration from [blueberry.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class BlueberryConfig:
    """Parsed application configuration."""

    name: str = "blueberry"
    config_dir: Path = field(default_factory=lambda: Path(DEFAULT_CONFIG_DIR))
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    hub: HubConfig = field(default_factory=HubConfig)
    irrigation: IrrigationConfig = field(default_factory=IrrigationConfig)

    @property
    def storage_path(self) -> Path:
        return self.config_dir / "json-storage.json"


def websocket_url(base_url: str) -> str:
    """Derive the WebSocket URL from a hub base URL.

    ``http://`` → ``ws://``, ``https://`` → ``wss://``.
    """
    url = base_url.rstrip("/")
    if url.startswith("https://"):
        ws_url = "wss://" + url[len("https://") :]
    elif url.startswith("http://"):
        ws_url = "ws://" + url[len("http://") :]
    else:
        ws_url = url  # already ws:// or wss://
    return ws_url + "/api/websocket"


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


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid blueberry.logging.format: {fmt!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=level, format=fmt, log_root=section.get("log_root"))


def _validated(model: type[BaseModel], raw: dict[str, Any], section: str) -> Any:
    try:
        return model(**raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid [{section}] section: {exc}") from exc


def load_config(config_dir: Path | str | None = None) -> BlueberryConfig:
    """Load configuration from *config_dir* (or ``$CONFIG_DIR``).

    Raises
    ------
    ConfigError
        If the TOML is invalid or a section fails validation.
    """
    config_dir = Path(config_dir or os.environ.get("CONFIG_DIR", DEFAULT_CONFIG_DIR))
    toml_path = config_dir / CONFIG_FILE_NAME

    data: dict[str, Any] = {}
    if toml_path.exists():
        try:
            data = tomllib.loads(toml_path.read_bytes().decode())
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc
        data = resolve_env_vars(data)

    app_section = data.get("blueberry", {})
    if not isinstance(app_section, dict):
        raise ConfigError("[blueberry] must be a table")

    hub_section = dict(data.get("hub", {}))
    for env_name, field_name in _HUB_ENV_OVERRIDES.items():
        env_value = os.environ.get(env_name)
        if env_value:
            hub_section[field_name] = env_value

    return BlueberryConfig(
        name=str(app_section.get("name", "blueberry")),
        config_dir=Path(app_section.get("config_dir", config_dir)),
        logging=_parse_logging(app_section.get("logging", {})),
        hub=_validated(HubConfig, hub_section, "hub"),
        irrigation=_validated(IrrigationConfig, dict(data.get("irrigation", {})), "irrigation"),
    )
