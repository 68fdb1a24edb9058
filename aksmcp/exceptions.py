"""Custom exception hierarchy for aksmcp."""

from __future__ import annotations


class AksMcpError(Exception):
    """Base for all aksmcp errors."""


class ProvisionError(AksMcpError):
    """The agent binary could not be downloaded or installed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SpawnError(AksMcpError):
    """The agent process could not be launched, or died while starting."""


class ReadinessTimeout(AksMcpError):
    """The agent process did not accept connections in time."""


class PublishError(AksMcpError):
    """The endpoint artifact could not be written."""


class UnexpectedExit(AksMcpError):
    """The agent process terminated while running without a stop request."""

    def __init__(self, code: int | None, signal: str | None) -> None:
        super().__init__(
            f"AKS-MCP server exited unexpectedly (code={code}, signal={signal})"
        )
        self.code = code
        self.signal = signal


class LifecycleStateError(AksMcpError):
    """Invalid lifecycle state transition."""
