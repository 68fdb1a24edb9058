"""ReadinessGate — waits until a spawned agent can take connections.

Two policies:
  - delay: sleep a fixed grace interval after spawn (the historical behavior)
  - probe: poll a TCP connect to the agent's port until it succeeds

Either way the wait is bounded by ``timeout_seconds`` and ends early,
with the underlying cause, if the process exits or fails to launch.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Literal

from aksmcp.config import AksMcpSettings, DEFAULT_HOST
from aksmcp.exceptions import ReadinessTimeout, SpawnError
from aksmcp.processes.supervisor import ProcessHandle

ReadinessMode = Literal["delay", "probe"]


class ReadinessGate:
    """Decides when a freshly spawned agent is accepting connections."""

    def __init__(
        self,
        mode: ReadinessMode = "delay",
        grace_seconds: float = 2.0,
        timeout_seconds: float = 30.0,
        poll_interval: float = 0.25,
        host: str = DEFAULT_HOST,
    ) -> None:
        self.mode = mode
        self._grace = grace_seconds
        self._timeout = timeout_seconds
        self._poll_interval = poll_interval
        self._host = host

    @classmethod
    def from_settings(cls, settings: AksMcpSettings) -> ReadinessGate:
        return cls(
            mode=settings.readiness_mode,
            grace_seconds=settings.readiness_grace_seconds,
            timeout_seconds=settings.readiness_timeout_seconds,
            host=settings.bind_host,
        )

    async def wait_ready(
        self,
        handle: ProcessHandle,
        port: int,
        timeout_seconds: float | None = None,
    ) -> None:
        """Return once the agent is ready; raise SpawnError or ReadinessTimeout."""
        if handle.finished:
            raise self._exit_error(handle)

        timeout = self._timeout if timeout_seconds is None else timeout_seconds
        exited = asyncio.ensure_future(handle.wait())
        ready = asyncio.ensure_future(
            asyncio.wait_for(self._until_ready(port), timeout=timeout)
        )
        try:
            done, _ = await asyncio.wait(
                {exited, ready}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (exited, ready):
                if not task.done():
                    task.cancel()
            await asyncio.gather(exited, ready, return_exceptions=True)

        if exited in done or handle.finished:
            raise self._exit_error(handle)
        try:
            ready.result()
        except asyncio.TimeoutError:
            raise ReadinessTimeout(
                f"AKS-MCP server did not become ready within {timeout:g}s"
            ) from None

    async def _until_ready(self, port: int) -> None:
        if self.mode == "delay":
            await asyncio.sleep(self._grace)
            return
        while not await self.probe(port):
            await asyncio.sleep(self._poll_interval)

    async def probe(self, port: int, timeout: float = 1.0) -> bool:
        """Try one TCP connection to the agent's port."""
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self._host, port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return True

    @staticmethod
    def _exit_error(handle: ProcessHandle) -> SpawnError:
        if handle.error is not None:
            return handle.error
        message = (
            f"AKS-MCP server exited before becoming ready "
            f"(code={handle.exit_code}, signal={handle.exit_signal})"
        )
        tail = handle.stderr_tail(5)
        if tail:
            message += f": {tail}"
        return SpawnError(message)
