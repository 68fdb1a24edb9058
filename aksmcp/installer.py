"""Binary provisioning for the AKS-MCP server.

Resolves where the ``aks-mcp`` executable lives and, if it is missing,
downloads the release asset for this host's OS and architecture from
GitHub Releases. An existing file is returned unchanged: no version check
is made against the configured release.
"""

from __future__ import annotations

import logging
import os
import platform
from pathlib import Path
from typing import Callable

import httpx

from aksmcp.config import (
    AgentConfig,
    AksMcpSettings,
    DEFAULT_RELEASE_BASE_URL,
    DEFAULT_RELEASE_VERSION,
)
from aksmcp.events.bus import EventBus
from aksmcp.exceptions import ProvisionError
from aksmcp.types import BinaryDescriptor

_logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int | None], None]

_REDIRECT_STATUSES = {301, 302}
_OS_NAMES = {"Windows": "windows", "Darwin": "darwin", "Linux": "linux"}
_ARM64_MACHINES = {"arm64", "aarch64", "armv8", "armv8l"}


def host_platform() -> tuple[str, str]:
    """Return the (os, arch) pair used in release asset names."""
    os_name = _OS_NAMES.get(platform.system(), "linux")
    arch = "arm64" if platform.machine().lower() in _ARM64_MACHINES else "amd64"
    return os_name, arch


def binary_name(os_name: str) -> str:
    return "aks-mcp.exe" if os_name == "windows" else "aks-mcp"


def asset_name(os_name: str, arch: str) -> str:
    suffix = ".exe" if os_name == "windows" else ""
    return f"aks-mcp-{os_name}-{arch}{suffix}"


class BinaryProvisioner:
    """Makes sure an agent executable exists on disk.

    Downloads go to ``<path>.part`` and are renamed into place only once
    the whole body has been written, so the install path never holds a
    partial binary.
    """

    def __init__(
        self,
        storage_dir: Path,
        version: str = DEFAULT_RELEASE_VERSION,
        base_url: str = DEFAULT_RELEASE_BASE_URL,
        timeout: float = 300.0,
        event_bus: EventBus | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._storage_dir = storage_dir
        self._version = version
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._bus = event_bus
        self._transport = transport

    @classmethod
    def from_settings(
        cls, settings: AksMcpSettings, event_bus: EventBus | None = None
    ) -> BinaryProvisioner:
        return cls(
            storage_dir=settings.storage_dir,
            version=settings.release_version,
            base_url=settings.release_base_url,
            timeout=settings.download_timeout_seconds,
            event_bus=event_bus,
        )

    @property
    def default_path(self) -> Path:
        os_name, _ = host_platform()
        return self._storage_dir / "bin" / binary_name(os_name)

    def install_path(self, config: AgentConfig) -> Path:
        return config.executable_path or self.default_path

    def describe(self, install_path: Path) -> BinaryDescriptor:
        os_name, arch = host_platform()
        url = f"{self._base_url}/{self._version}/{asset_name(os_name, arch)}"
        return BinaryDescriptor(
            platform=os_name,
            architecture=arch,
            version=self._version,
            download_url=url,
            install_path=install_path,
        )

    async def ensure(
        self, config: AgentConfig, progress: ProgressCallback | None = None
    ) -> Path:
        """Return the executable path, downloading the binary if absent."""
        path = self.install_path(config)
        if path.exists():
            return path

        descriptor = self.describe(path)
        _logger.info(
            "AKS-MCP server not found at %s, downloading %s",
            path, descriptor.download_url,
        )
        await self._emit("agent.provisioning", {
            "url": descriptor.download_url,
            "path": str(path),
        })
        size = await self.download(descriptor, progress)
        await self._emit("agent.downloaded", {
            "path": str(path),
            "version": descriptor.version,
            "bytes": size,
        })
        return path

    async def download(
        self, descriptor: BinaryDescriptor, progress: ProgressCallback | None = None
    ) -> int:
        """Fetch the release asset into its install path. Returns bytes written."""
        path = descriptor.install_path
        partial = path.with_name(path.name + ".part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                size = await self._fetch(client, descriptor.download_url, partial, progress)
            os.replace(partial, path)
        except (httpx.HTTPError, OSError) as e:
            raise ProvisionError(f"Failed to download AKS-MCP server: {e}") from e
        finally:
            if partial.exists():
                partial.unlink()

        if not descriptor.is_windows:
            try:
                path.chmod(0o755)
            except OSError as e:
                raise ProvisionError(f"Failed to mark {path} executable: {e}") from e
        _logger.info("Installed AKS-MCP server %s at %s", descriptor.version, path)
        return size

    async def _fetch(
        self,
        client: httpx.AsyncClient,
        url: str,
        dest: Path,
        progress: ProgressCallback | None,
    ) -> int:
        async with client.stream("GET", url) as response:
            if response.status_code not in _REDIRECT_STATUSES:
                return await self._write_body(response, dest, progress)

            location = response.headers.get("location")
            if not location:
                raise ProvisionError(
                    "Redirect without location header",
                    status_code=response.status_code,
                )
            target = str(response.url.join(location))

        # Exactly one redirect is followed; another one is a bad status below
        async with client.stream("GET", target) as redirected:
            return await self._write_body(redirected, dest, progress)

    async def _write_body(
        self,
        response: httpx.Response,
        dest: Path,
        progress: ProgressCallback | None,
    ) -> int:
        if not response.is_success:
            raise ProvisionError(
                f"Download failed with status {response.status_code}",
                status_code=response.status_code,
            )

        total = response.headers.get("content-length")
        total_bytes = int(total) if total and total.isdigit() else None
        written = 0
        with dest.open("wb") as f:
            async for chunk in response.aiter_bytes():
                f.write(chunk)
                written += len(chunk)
                if progress:
                    progress(written, total_bytes)
        return written

    def uninstall(self) -> bool:
        """Remove the binary from the default install location."""
        path = self.default_path
        if not path.exists():
            return False
        path.unlink()
        _logger.info("Removed AKS-MCP server at %s", path)
        return True

    async def _emit(self, topic: str, data: dict) -> None:
        if self._bus:
            await self._bus.emit(topic, data, source="installer")
