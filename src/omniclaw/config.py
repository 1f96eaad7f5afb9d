"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Non-secret settings live in config.toml. Secrets (sandbox API keys) live in
.env. Environment variables override both using ``__`` as the nested
delimiter (e.g. ``SANDBOX__API_KEY``). Secrets use SecretStr for masking in
logs.

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from omniclaw.config import get_settings

    s = get_settings()
    print(s.container.image)
    print(s.idle_timeout)
"""

from __future__ import annotations

import os
from functools import cached_property
from pathlib import Path
from typing import ClassVar, Literal

from pydantic import BaseModel, SecretStr, field_validator
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
    """Base for all config sub-models: reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


class AgentConfig(_StrictModel):
    name: str = "omniclaw"
    trigger: str = "@omniclaw"


class ContainerConfig(_StrictModel):
    image: str = "omniclaw-agent:latest"
    runtime: Literal["container", "docker"] = "container"
    memory: str = "4G"
    timeout_ms: int = 1800000  # 30 minutes
    startup_timeout_ms: int = 120000  # 2 minutes
    idle_timeout_ms: int = 1800000  # 30 minutes
    max_output_size: int = 10485760  # 10MB
    # What a run that produced output and then hit a timeout resolves to.
    timeout_after_output: Literal["success", "error"] = "success"

    @field_validator("max_output_size")
    @classmethod
    def clamp_max_output_size(cls, v: int) -> int:
        return max(0, v)


class OpenCodeConfig(_StrictModel):
    command: str = "opencode"
    hostname: str = "127.0.0.1"
    port_base: int = 14096
    model: str | None = None  # "provider/model", e.g. "anthropic/claude-sonnet-4"
    health_timeout: float = 5.0
    startup_wait: float = 30.0


class SandboxConfig(_StrictModel):
    api_key: SecretStr | None = None
    api_url: str | None = None
    target: str | None = None
    image: str = "omniclaw-agent:latest"
    working_dir: str = "/home/daytona"
    agent_command: str = "node /app/dist/index.js"


class IntervalsConfig(_StrictModel):
    ipc_poll: float = 1.0


class LoggingConfig(_StrictModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


# ---------------------------------------------------------------------------
# Main settings class
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    agent: AgentConfig = AgentConfig()
    container: ContainerConfig = ContainerConfig()
    opencode: OpenCodeConfig = OpenCodeConfig()
    sandbox: SandboxConfig = SandboxConfig()
    intervals: IntervalsConfig = IntervalsConfig()
    logging: LoggingConfig = LoggingConfig()

    # Output protocol markers (must match the agent runner inside the container)
    OUTPUT_START_MARKER: ClassVar[str] = "---OMNICLAW_OUTPUT_START---"
    OUTPUT_END_MARKER: ClassVar[str] = "---OMNICLAW_OUTPUT_END---"
    CONTAINER_NAME_PREFIX: ClassVar[str] = "omniclaw-"

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

    # --- Computed properties ---

    @cached_property
    def container_timeout(self) -> float:
        return self.container.timeout_ms / 1000

    @cached_property
    def idle_timeout(self) -> float:
        return self.container.idle_timeout_ms / 1000

    @cached_property
    def startup_timeout(self) -> float:
        return self.container.startup_timeout_ms / 1000

    @cached_property
    def timezone(self) -> str:
        return _detect_timezone()

    @cached_property
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def groups_dir(self) -> Path:
        return (self.project_root / "groups").resolve()

    @cached_property
    def data_dir(self) -> Path:
        return (self.project_root / "data").resolve()

    @cached_property
    def ipc_dir(self) -> Path:
        return self.data_dir / "ipc"

    @cached_property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"


# ---------------------------------------------------------------------------
# Timezone detection
# ---------------------------------------------------------------------------


def _detect_timezone() -> str:
    if tz := os.environ.get("TZ"):
        return tz
    try:
        link = os.readlink("/etc/localtime")
        parts = link.split("zoneinfo/")
        if len(parts) > 1:
            return parts[1]
    except OSError:
        pass  # /etc/localtime missing or not a symlink, fall back to UTC
    return "UTC"


# ---------------------------------------------------------------------------
# Singleton
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
