"""httpstage configuration management.

Configuration sources (in priority order):
1. Environment variables (HTTPSTAGE_ prefix, ``__`` for nesting)
2. Config file (httpstage.yaml)
3. Defaults
"""

from __future__ import annotations

import os
import platform
import re
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from httpstage.records import (
    ATTR_ERROR_RESPONSE,
    ATTR_MESSAGE,
    ATTR_STATUS,
    ATTR_URL,
    CORE_ATTRIBUTES,
)

# Attributes never forwarded as request headers
DEFAULT_IGNORED_ATTRIBUTES: frozenset[str] = frozenset(
    {ATTR_STATUS, ATTR_MESSAGE, ATTR_ERROR_RESPONSE, ATTR_URL, *CORE_ATTRIBUTES}
)

_USERNAME_RE = re.compile(r"[\x20-\x39\x3b-\x7e\x80-\xff]+")
_PASSWORD_RE = re.compile(r"[\x20-\x7e\x80-\xff]+")
_USER_AGENT_RE = re.compile(r"(\S|\t| )+")


def _default_max_per_route() -> int:
    return int(os.environ.get("HTTP_MAX_CONNECTIONS", "20"))


class PoolConfig(BaseModel):
    """Connection pool and transport tuning, fixed at enable time."""

    # Credentials for the remote host (basic auth)
    username: str | None = None
    password: str | None = None

    tcp_no_delay: bool = False

    # Seconds
    connect_timeout: float = Field(default=5.0, gt=0)
    read_timeout: float = Field(default=15.0, gt=0)
    # Idle expiry used when the server does not advertise Keep-Alive
    keep_alive_timeout: float = Field(default=4.0, ge=0)

    # Bytes; socket buffers and body streaming chunk size
    buffer_size: int = Field(default=8 * 1024, gt=0)

    max_per_route: int = Field(default_factory=_default_max_per_route, ge=1)
    max_total: int | None = Field(default=None, ge=1)
    max_redirects: int = Field(default=20, ge=0)

    user_agent: str = f"Python/{platform.python_version()}"

    # How long a pool swap waits for in-flight requests before closing
    drain_timeout: float = Field(default=30.0, ge=0)

    @field_validator("username")
    @classmethod
    def _check_username(cls, value: str | None) -> str | None:
        if value is not None and not _USERNAME_RE.fullmatch(value):
            raise ValueError("username cannot include control characters or ':'")
        return value

    @field_validator("password")
    @classmethod
    def _check_password(cls, value: str | None) -> str | None:
        if value is not None and not _PASSWORD_RE.fullmatch(value):
            raise ValueError("password cannot include control characters")
        return value

    @field_validator("user_agent")
    @classmethod
    def _check_user_agent(cls, value: str) -> str:
        if not _USER_AGENT_RE.fullmatch(value):
            raise ValueError("user agent must be a single non-empty line")
        return value

    @property
    def effective_max_total(self) -> int:
        """Total connection cap; defaults to twice the per-route cap."""
        if self.max_total is not None:
            return self.max_total
        return 2 * self.max_per_route


class TemplateConfig(BaseModel):
    """Request template. Every expression may reference ``${attribute}``."""

    method: str = "GET"
    url: str
    content_type: str | None = None
    accept: str | None = None
    # Regex; attributes whose key fully matches are sent as headers
    attributes_to_send: str | None = None
    body: str | None = None

    ignored_attributes: frozenset[str] = DEFAULT_IGNORED_ATTRIBUTES

    @field_validator("attributes_to_send")
    @classmethod
    def _check_pattern(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            return None
        try:
            re.compile(value)
        except re.error as e:
            raise ValueError(f"invalid attributes_to_send pattern: {e}") from e
        return value


class StageSettings(BaseSettings):
    """httpstage application settings."""

    model_config = SettingsConfigDict(
        env_prefix="HTTPSTAGE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    pool: PoolConfig = Field(default_factory=PoolConfig)
    template: TemplateConfig

    # Records processed at once by HttpTemplateStage.run()
    concurrency: int = Field(default=8, ge=1)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment wins over values read from the YAML file
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def _load_config_file() -> dict:
    """Load configuration from YAML file if exists.

    Looks for config file in order:
    1. HTTPSTAGE_CONFIG_FILE environment variable
    2. ./httpstage.yaml
    3. /etc/httpstage/config.yaml
    """
    config_paths = [
        os.environ.get("HTTPSTAGE_CONFIG_FILE"),
        Path("httpstage.yaml"),
        Path("/etc/httpstage/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> StageSettings:
    """Get cached settings instance.

    Configuration is loaded from:
    1. YAML config file (if exists)
    2. Environment variables (override)
    3. Defaults
    """
    file_config = _load_config_file()
    return StageSettings(**file_config)
