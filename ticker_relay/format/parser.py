"""
format/parser.py

Configuration loading. Settings come from, lowest precedence first:
  1. an optional YAML file
  2. a .env file in the working directory (python-dotenv)
  3. process environment variables

database_url, websocket_url and feed_url are required: the process refuses
to start without them.
"""

import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator


class ConfigError(Exception):
    """Configuration is missing or invalid. Fatal at startup."""


# settings key -> environment variable
ENV_VARS: dict[str, str] = {
    "database_url": "DATABASE_URL",
    "websocket_url": "WEBSOCKET_URL",
    "feed_url": "FEED_URL",
    "timescale": "TIMESCALE",
    "page_size": "PAGE_SIZE",
    "all_symbols_interval": "ALL_SYMBOLS_INTERVAL",
    "symbol_interval": "SYMBOL_INTERVAL",
    "retention_seconds": "RETENTION_SECONDS",
}


class Settings(BaseModel):
    database_url: str
    websocket_url: str  # bind address, "host:port"
    feed_url: str
    timescale: bool = True
    page_size: int = Field(default=30, ge=1)
    all_symbols_interval: float = Field(default=60.0, gt=0)
    symbol_interval: float = Field(default=10.0, gt=0)
    retention_seconds: int = Field(default=3600, gt=0)

    @field_validator("database_url", "websocket_url", "feed_url")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v.strip()

    @field_validator("websocket_url")
    @classmethod
    def must_be_host_port(cls, v: str) -> str:
        host, sep, port = v.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError("expected host:port")
        return v

    @property
    def bind_address(self) -> tuple[str, int]:
        host, _, port = self.websocket_url.rpartition(":")
        return host.strip("[]"), int(port)


def load_settings(path: str | Path | None = None, env_file: Optional[str | Path] = None) -> Settings:
    """
    Build Settings from an optional YAML file overlaid with the environment.
    Raises ConfigError if anything required is missing or malformed.
    """
    raw: dict = {}
    if path is not None:
        try:
            with open(path) as f:
                raw = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"could not read config file {path}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"config file {path} must contain a mapping")

    # .env never overrides variables already set in the real environment
    load_dotenv(dotenv_path=env_file)

    for key, var in ENV_VARS.items():
        value = os.environ.get(var)
        if value is not None and value != "":
            raw[key] = value

    try:
        return Settings(**raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"invalid configuration: {problems}") from e
