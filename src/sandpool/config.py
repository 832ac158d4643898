"""Centralized configuration — Pydantic BaseSettings with TOML + dotenv sources.

Settings live in config.toml. Environment variables override it using
``__`` as the nested delimiter (e.g. ``DOCKER__HOST``, ``POOL__ACTIVE``).

Priority (highest wins): init args > env vars > .env > config.toml

Usage::

    from sandpool.config import get_settings

    s = get_settings()
    print(s.docker.workspace_root)
    print(s.environments["python"].run_command)
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from sandpool.types import ExecutionEnvironment, parse_exposed_ports

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in config.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models — reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid", "populate_by_name": True}


class DockerConfig(_StrictModel):
    connection_timeout: float | None = 3.0  # seconds; None → refuse to start
    host: str | None = None  # exported as DOCKER_HOST; None → CLI default
    # Workspace root as the runtime daemon sees it (bind-mount source).
    workspace_root: str | None = None  # None → <project>/tmp/files
    # Same directory as this process sees it; differs when the daemon runs in a VM.
    local_workspace_root: str | None = None  # None → workspace_root
    retry_count: int = 2
    minimum_memory_limit: int = 4  # MB
    default_memory_limit: int = 256  # MB
    stop_timeout: int = 1  # seconds passed to `docker stop -t`
    validation_command: str = "whoami"
    shell: str = "/bin/sh"  # reads the command from stdin inside the container

    @field_validator("retry_count")
    @classmethod
    def clamp_retry_count(cls, v: int) -> int:
        return max(0, v)


class PortsConfig(_StrictModel):
    range_start: int = 4500
    range_end: int = 4999

    @model_validator(mode="after")
    def _check_range(self) -> PortsConfig:
        if not 1 <= self.range_start <= self.range_end <= 65535:
            msg = f"Invalid port range {self.range_start}-{self.range_end}"
            raise ValueError(msg)
        return self


class RefillConfig(_StrictModel):
    interval: float = 10.0  # seconds between runs
    batch_size: int = 8  # max containers created per environment per run
    timeout: float = 60.0  # per-run budget; over-budget runs are abandoned
    async_: bool = Field(default=True, alias="async")  # refill environments concurrently

    @field_validator("interval", "timeout")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("batch_size")
    @classmethod
    def clamp_batch_size(cls, v: int) -> int:
        return max(0, v)


class PoolConfig(_StrictModel):
    active: bool = True
    refill: RefillConfig = RefillConfig()


class LoggingConfig(_StrictModel):
    level: str = "INFO"
    format: Literal["console", "json"] = "console"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        return v.upper()


class EnvironmentConfig(_StrictModel):
    """An execution environment under [environments.<name>]."""

    image: str
    run_command: str
    test_command: str = ""
    permitted_execution_time: int  # seconds
    memory_limit: int | None = None  # MB; None → [docker] default_memory_limit
    network_enabled: bool = False
    exposed_ports: str = ""  # "3000, 3001"
    pool_size: int = 0

    @field_validator("permitted_execution_time")
    @classmethod
    def validate_execution_time(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("permitted_execution_time must be a positive integer")
        return v

    @field_validator("pool_size")
    @classmethod
    def validate_pool_size(cls, v: int) -> int:
        if v < 0:
            raise ValueError("pool_size must not be negative")
        return v

    @field_validator("exposed_ports")
    @classmethod
    def validate_exposed_ports(cls, v: str) -> str:
        parse_exposed_ports(v)
        return v

    def to_environment(self, name: str, docker: DockerConfig) -> ExecutionEnvironment:
        return ExecutionEnvironment(
            id=name,
            name=name,
            image=self.image,
            run_command=self.run_command,
            test_command=self.test_command,
            permitted_execution_time=self.permitted_execution_time,
            memory_limit=(
                self.memory_limit
                if self.memory_limit is not None
                else docker.default_memory_limit
            ),
            network_enabled=self.network_enabled,
            exposed_ports=parse_exposed_ports(self.exposed_ports),
            pool_size=self.pool_size,
            minimum_memory_limit=docker.minimum_memory_limit,
        )


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="config.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    docker: DockerConfig = DockerConfig()
    ports: PortsConfig = PortsConfig()
    pool: PoolConfig = PoolConfig()
    logging: LoggingConfig = LoggingConfig()
    environments: dict[str, EnvironmentConfig] = {}  # [environments.<name>]

    @model_validator(mode="after")
    def _check_memory_floor(self) -> Settings:
        floor = self.docker.minimum_memory_limit
        for name, env in self.environments.items():
            limit = (
                env.memory_limit
                if env.memory_limit is not None
                else self.docker.default_memory_limit
            )
            if limit < floor:
                msg = f"environments.{name}: memory_limit {limit} is below the {floor} MB minimum"
                raise ValueError(msg)
        return self

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
    def project_root(self) -> Path:
        return Path.cwd()

    @cached_property
    def workspace_root(self) -> Path:
        """Workspace root as seen by the container runtime."""
        if self.docker.workspace_root:
            return Path(self.docker.workspace_root)
        return (self.project_root / "tmp" / "files").resolve()

    @cached_property
    def local_workspace_root(self) -> Path:
        """Workspace root as seen by this process."""
        if self.docker.local_workspace_root:
            return Path(self.docker.local_workspace_root)
        return self.workspace_root

    def execution_environments(self) -> dict[str, ExecutionEnvironment]:
        return {
            name: env.to_environment(name, self.docker)
            for name, env in self.environments.items()
        }


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
