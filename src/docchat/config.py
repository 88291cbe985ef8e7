"""Configuration loading and validation for the docchat client and webhook server."""

from __future__ import annotations

from collections.abc import Mapping
from copy import deepcopy
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigValidationError

import tomllib  # stdlib since Python 3.11 (project requires >=3.11)

LOGGER = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "docchat"
CONFIG_PATH = CONFIG_DIR / "config.toml"

VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}

# Environment variables that override secrets from the config file.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "DOCCHAT_API_URL": ("api", "base_url"),
    "DOCCHAT_API_TOKEN": ("api", "api_token"),
    "STRIPE_SECRET_KEY": ("billing", "stripe_secret_key"),
    "STRIPE_WEBHOOK_SECRET": ("billing", "stripe_webhook_secret"),
}


def _require_non_empty(value: Any) -> str:
    if not isinstance(value, str):
        raise ValueError("Expected a string value.")
    normalized = value.strip()
    if not normalized:
        raise ValueError("String value must not be empty.")
    return normalized


class AppConfig(BaseModel):
    """Application metadata."""

    title: str = "docchat"

    @field_validator("title", mode="before")
    @classmethod
    def _validate_title(cls, value: Any) -> str:
        return _require_non_empty(value)


class ApiConfig(BaseModel):
    """Document-chat API endpoint used by the terminal client."""

    base_url: str = "http://localhost:3000"
    api_token: str = ""
    timeout: int = Field(default=60, ge=1, le=3600)

    @field_validator("base_url", mode="before")
    @classmethod
    def _validate_base_url(cls, value: Any) -> str:
        return _require_non_empty(value).rstrip("/")

    @field_validator("api_token", mode="before")
    @classmethod
    def _normalize_token(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("api_token must be a string.")
        return value.strip()


class ChatConfig(BaseModel):
    """Conversation view behaviour."""

    infinite_query_limit: int = Field(default=10, ge=1, le=500)
    show_timestamps: bool = True


class BillingConfig(BaseModel):
    """Stripe credentials and subscription storage."""

    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    store_path: str = "~/.local/state/docchat/subscriptions.json"

    @field_validator("stripe_secret_key", "stripe_webhook_secret", mode="before")
    @classmethod
    def _normalize_secret(cls, value: Any) -> str:
        if value is None:
            return ""
        if not isinstance(value, str):
            raise ValueError("Stripe secrets must be strings.")
        return value.strip()

    @field_validator("store_path", mode="before")
    @classmethod
    def _validate_store_path(cls, value: Any) -> str:
        return _require_non_empty(value)


class ServerConfig(BaseModel):
    """Bind address for the webhook server."""

    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)

    @field_validator("host", mode="before")
    @classmethod
    def _validate_host(cls, value: Any) -> str:
        return _require_non_empty(value)


class KeybindsConfig(BaseModel):
    """Keyboard action mapping for the terminal client."""

    send_message: str = "ctrl+enter"
    load_older: str = "ctrl+o"
    refresh: str = "ctrl+r"
    scroll_up: str = "ctrl+k"
    scroll_down: str = "ctrl+j"
    quit: str = "ctrl+q"

    @field_validator("*", mode="before")
    @classmethod
    def _validate_keybind(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Keybind must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("Keybind must not be empty.")
        return normalized


class SecurityConfig(BaseModel):
    """Policy for which API hosts the client may talk to."""

    allow_remote_hosts: bool = True
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "::1"]

    @field_validator("allowed_hosts", mode="before")
    @classmethod
    def _validate_allowed_hosts(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            raise ValueError("allowed_hosts must be a list.")
        normalized_hosts = [
            item.strip().lower()
            for item in value
            if isinstance(item, str) and item.strip()
        ]
        if not normalized_hosts:
            raise ValueError("allowed_hosts must contain at least one host.")
        return normalized_hosts


class LoggingConfig(BaseModel):
    """Logging behavior and output destinations."""

    level: str = "INFO"
    structured: bool = True
    log_to_file: bool = False
    log_file_path: str = "~/.local/state/docchat/app.log"

    @field_validator("level", mode="before")
    @classmethod
    def _validate_level(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().upper()
        if normalized not in VALID_LOG_LEVELS:
            raise ValueError(f"Unsupported log level {normalized!r}.")
        return normalized

    @field_validator("log_file_path", mode="before")
    @classmethod
    def _validate_log_file_path(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("log_file_path must be a string.")
        normalized = value.strip()
        if not normalized:
            raise ValueError("log_file_path must not be empty.")
        return normalized


class Config(BaseModel):
    """Root configuration model for all sections."""

    model_config = ConfigDict(populate_by_name=True)
    app: AppConfig = AppConfig()
    api: ApiConfig = ApiConfig()
    chat: ChatConfig = ChatConfig()
    billing: BillingConfig = BillingConfig()
    server: ServerConfig = ServerConfig()
    keybinds: KeybindsConfig = KeybindsConfig()
    security: SecurityConfig = SecurityConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="after")
    def _validate_security_policy(self) -> Config:
        parsed = urlparse(self.api.base_url)
        scheme = parsed.scheme.lower()
        hostname = (parsed.hostname or "").strip().lower()

        if scheme not in {"http", "https"}:
            raise ValueError("api.base_url must use http or https scheme.")
        if not hostname:
            raise ValueError("api.base_url must include a hostname.")
        if not self.security.allow_remote_hosts and hostname not in set(
            self.security.allowed_hosts
        ):
            raise ValueError(
                "api.base_url is not in security.allowed_hosts while allow_remote_hosts is false."
            )
        return self


DEFAULT_CONFIG: dict[str, dict[str, Any]] = Config().model_dump(by_alias=True)


def ensure_config_dir(config_dir: Path | None = None) -> Path:
    """Ensure that the config directory exists and return its path."""
    directory = config_dir or CONFIG_DIR
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        LOGGER.warning("Unable to create config directory %s: %s", directory, exc)
    return directory


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override values onto base values."""
    merged: dict[str, Any] = deepcopy(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _enforce_private_permissions(path: Path) -> None:
    """Best-effort enforcement of private file permissions on POSIX systems."""
    if os.name != "posix" or not path.exists():
        return
    try:
        path.chmod(0o600)
    except OSError as exc:
        LOGGER.warning("Unable to enforce 0600 permissions for %s: %s", path, exc)


def _apply_env_overrides(
    data: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Overlay secrets supplied through the environment."""
    env = os.environ if environ is None else environ
    merged = deepcopy(data)
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = env.get(variable)
        if value is None or not value.strip():
            continue
        section_data = merged.setdefault(section, {})
        if isinstance(section_data, dict):
            section_data[key] = value.strip()
            LOGGER.debug(
                "config.env_override",
                extra={"event": "config.env_override", "variable": variable},
            )
    return merged


def _safe_default_config(
    environ: Mapping[str, str] | None = None,
) -> dict[str, dict[str, Any]]:
    """Return validated defaults with environment secrets still applied."""
    defaults = _apply_env_overrides(DEFAULT_CONFIG, environ)
    try:
        return Config.model_validate(defaults).model_dump(by_alias=True)
    except ValidationError as exc:
        LOGGER.warning("Environment overrides are invalid, ignoring them: %s", exc)
        return deepcopy(DEFAULT_CONFIG)


def _validate_config(
    raw: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, dict[str, Any]]:
    """Validate merged config and fallback to safe defaults when possible."""
    try:
        config = Config.model_validate(raw)
        return config.model_dump(by_alias=True)
    except ValidationError as exc:
        LOGGER.warning("Configuration validation failed, using safe defaults: %s", exc)
        return _safe_default_config(environ)
    except Exception as exc:  # noqa: BLE001 - unexpected model construction failure.
        raise ConfigValidationError(f"Unable to validate configuration: {exc}") from exc


def load_config(
    config_path: Path | None = None, environ: Mapping[str, str] | None = None
) -> dict[str, dict[str, Any]]:
    """
    Load configuration from TOML, merge with defaults and environment, and validate.

    The optional ``config_path`` and ``environ`` arguments are intended for
    tests and tooling.
    """
    target_path = config_path or CONFIG_PATH
    ensure_config_dir(target_path.parent)

    raw_data: dict[str, Any] = {}
    if target_path.exists():
        _enforce_private_permissions(target_path)
        try:
            raw_data = tomllib.loads(target_path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as exc:
            LOGGER.warning("Failed to parse config at %s: %s", target_path, exc)
            raw_data = {}

    merged = (
        _deep_merge(DEFAULT_CONFIG, raw_data)
        if isinstance(raw_data, dict)
        else _safe_default_config(environ)
    )
    return _validate_config(_apply_env_overrides(merged, environ), environ)
