"""Configuration — host settings loaded from environment variables.

``AksMcpSettings`` mirrors the host's ``aks.ai`` settings namespace plus
the knobs this package needs for provisioning and supervision.
``AgentConfig`` is the immutable snapshot a single lifecycle operation
works from; it is rebuilt at the start of every ``start()``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

from aksmcp.types import AccessLevel

DEFAULT_RELEASE_VERSION = "v0.0.2"
DEFAULT_RELEASE_BASE_URL = "https://github.com/Azure/aks-mcp/releases/download"
DEFAULT_HOST = "127.0.0.1"


def _split_tools(value: Any) -> Any:
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return value


class AksMcpSettings(BaseSettings):
    # Host-facing settings
    server_path: Path | None = None
    auto_start: bool = True
    access_level: AccessLevel = AccessLevel.READONLY
    additional_tools: Annotated[list[str], NoDecode] = Field(default_factory=list)
    server_port: int = Field(default=8000, ge=1, le=65535)
    timeout: int = Field(default=600, gt=0)
    show_notifications: bool = True

    # Storage
    storage_dir: Path = Path.home() / ".aksmcp"
    workspace_dir: Path | None = None  # None means no open workspace

    # Provisioning
    release_version: str = DEFAULT_RELEASE_VERSION
    release_base_url: str = DEFAULT_RELEASE_BASE_URL
    download_timeout_seconds: float = 300.0

    # Supervision
    bind_host: str = DEFAULT_HOST
    readiness_mode: Literal["delay", "probe"] = "delay"
    readiness_grace_seconds: float = 2.0
    readiness_timeout_seconds: float = 30.0
    shutdown_timeout_seconds: float = 5.0

    log_level: str = "INFO"

    model_config = {"env_prefix": "AKSMCP_"}

    @field_validator("additional_tools", mode="before")
    @classmethod
    def _parse_tools(cls, value: Any) -> Any:
        return _split_tools(value)


class AgentConfig(BaseModel):
    """Per-operation view of the settings the agent process is launched with."""

    model_config = ConfigDict(frozen=True)

    executable_path: Path | None = None
    access_level: AccessLevel = AccessLevel.READONLY
    extra_tools: tuple[str, ...] = ()
    port: int = Field(default=8000, ge=1, le=65535)
    timeout_seconds: int = Field(default=600, gt=0)
    notify: bool = True
    host: str = DEFAULT_HOST

    @field_validator("extra_tools", mode="before")
    @classmethod
    def _dedupe_tools(cls, value: Any) -> Any:
        value = _split_tools(value)
        if value is None:
            return ()
        # Set semantics, first occurrence wins the position
        return tuple(dict.fromkeys(value))

    @classmethod
    def from_settings(cls, settings: AksMcpSettings) -> AgentConfig:
        return cls(
            executable_path=settings.server_path,
            access_level=settings.access_level,
            extra_tools=settings.additional_tools,
            port=settings.server_port,
            timeout_seconds=settings.timeout,
            notify=settings.show_notifications,
            host=settings.bind_host,
        )

    @property
    def endpoint_url(self) -> str:
        return f"http://{self.host}:{self.port}/sse"

    def server_args(self) -> list[str]:
        """Command-line arguments for the agent binary (SSE transport)."""
        return [
            "--transport", "sse",
            "--host", self.host,
            "--port", str(self.port),
            "--access-level", self.access_level.value,
            "--additional-tools", ",".join(self.extra_tools),
            "--timeout", str(self.timeout_seconds),
        ]


ConfigProvider = Callable[[], AgentConfig]


def load_settings(**overrides: Any) -> AksMcpSettings:
    """Read settings fresh from the environment, applying explicit overrides."""
    return AksMcpSettings(**{k: v for k, v in overrides.items() if v is not None})


def load_agent_config() -> AgentConfig:
    """Default config provider: re-reads the environment on every call."""
    return AgentConfig.from_settings(load_settings())
