"""Core types shared across aksmcp subsystems."""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel


# ── Lifecycle ─────────────────────────────────────────────────────────────────


class LifecycleState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class AccessLevel(str, Enum):
    READONLY = "readonly"
    READWRITE = "readwrite"
    ADMIN = "admin"


class AgentStatus(BaseModel):
    """Snapshot returned by ``LifecycleManager.status()``."""

    state: LifecycleState
    running: bool
    pid: int | None = None
    endpoint_url: str | None = None
    failure_reason: str | None = None


# ── Provisioning ──────────────────────────────────────────────────────────────


class BinaryDescriptor(BaseModel):
    """Where a release binary for this host comes from and where it goes."""

    platform: str  # windows|darwin|linux
    architecture: str  # amd64|arm64
    version: str
    download_url: str
    install_path: Path

    @property
    def is_windows(self) -> bool:
        return self.platform == "windows"


# ── Endpoint ──────────────────────────────────────────────────────────────────


class EndpointArtifact(BaseModel):
    """The published address an MCP client reads."""

    url: str
