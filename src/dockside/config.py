"""Centralized configuration with Pydantic BaseSettings with TOML + dotenv sources.

Settings live in config.toml. Environment variables override using ``__`` as
the nested delimiter (e.g. ``ENGINE__HOST=tcp://127.0.0.1:2375``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from dockside.config import get_settings

    s = get_settings()
    print(s.engine.host)
    print(s.events.buffer_size)
"""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; rejects unknown keys."""

    model_config = {"extra": "forbid"}


class EngineConfig(_StrictModel):
    host: str = "unix:///var/run/docker.sock"  # or tcp://host:port
    api_version: str | None = None  # e.g. "1.43"; None = engine default
    timeout: float = 60.0  # seconds, per request
    user_agent: str = "dockside/0.1.0"

    SCHEMES: ClassVar[tuple[str, ...]] = ("unix://", "tcp://", "http://")

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        if not v.startswith(cls.SCHEMES):
            msg = f"Unsupported engine host {v!r} (expected unix://, tcp:// or http://)"
            raise ValueError(msg)
        return v

    @field_validator("api_version")
    @classmethod
    def strip_version_prefix(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.lstrip("v") or None

    @field_validator("timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("engine timeout must be positive")
        return v


class RetryConfig(_StrictModel):
    retries: int = 3
    factor: float = 2.0
    min_timeout: float = 1.0  # seconds
    max_timeout: float = 30.0  # seconds
    randomize: bool = True

    @field_validator("retries")
    @classmethod
    def clamp_retries(cls, v: int) -> int:
        return max(0, v)


class EventsConfig(_StrictModel):
    buffer_size: int = 100  # events kept per container/image/global key
    buffer_ttl: float = 60.0  # seconds; also the sweep interval
    engine_events: bool = True  # relay the engine /events feed into the broker

    @field_validator("buffer_size")
    @classmethod
    def validate_buffer_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("buffer_size must be at least 1")
        return v

    @field_validator("buffer_ttl")
    @classmethod
    def validate_buffer_ttl(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("buffer_ttl must be positive")
        return v


class ExecConfig(_StrictModel):
    shell_candidates: list[str] = ["/bin/bash", "/bin/sh", "/bin/ash", "sh"]
    probe_timeout: float = 1.0  # seconds per candidate
    probe_marker: str = "test"

    @field_validator("shell_candidates")
    @classmethod
    def validate_candidates(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("shell_candidates cannot be empty")
        return v


class ServerConfig(_StrictModel):
    host: str = "127.0.0.1"
    port: int = 8585


class LoggingConfig(_StrictModel):
    level: str | None = None  # unset keeps LOG_LEVEL (default INFO)

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str | None) -> str | None:
        return v.upper() if v else None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    engine: EngineConfig = EngineConfig()
    retry: RetryConfig = RetryConfig()
    events: EventsConfig = EventsConfig()
    exec: ExecConfig = ExecConfig()
    server: ServerConfig = ServerConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > config.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
