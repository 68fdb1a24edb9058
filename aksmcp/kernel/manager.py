"""LifecycleManager — the single owner of the agent process.

start():  provision -> spawn -> wait for readiness -> publish endpoint
stop():   SIGTERM, wait for exit (SIGKILL after the shutdown timeout)
restart(): stop() then start() under one hold of the operation lock

Lifecycle operations are serialized by an asyncio lock. ``status()``
and ``is_running()`` never take the lock. An exit nobody asked for is
turned into an ``UnexpectedExit`` delivered to ``on_unexpected_exit``
listeners and the ``agent.unexpected_exit`` event.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

from aksmcp.config import AgentConfig, AksMcpSettings, ConfigProvider, load_agent_config
from aksmcp.events.bus import EventBus
from aksmcp.exceptions import PublishError, SpawnError, UnexpectedExit
from aksmcp.installer import BinaryProvisioner
from aksmcp.kernel.state_machine import LifecycleStateMachine, TransitionCallback
from aksmcp.mcp.config import EndpointPublisher
from aksmcp.processes.readiness import ReadinessGate
from aksmcp.processes.supervisor import ProcessHandle, ProcessSupervisor
from aksmcp.types import AgentStatus, LifecycleState

_logger = logging.getLogger(__name__)

UnexpectedExitCallback = Callable[[UnexpectedExit], Awaitable[None]]


@dataclass(frozen=True)
class StartResult:
    """Outcome of a successful ``start()``."""

    started: bool  # False when the agent was already starting or running
    state: LifecycleState
    config: AgentConfig | None = None
    pid: int | None = None
    endpoint_url: str | None = None
    artifact_path: Path | None = None
    publish_error: PublishError | None = None


class LifecycleManager:
    """Drives the agent process through Stopped/Starting/Running/Stopping/Failed."""

    def __init__(
        self,
        config_provider: ConfigProvider | None = None,
        *,
        settings: AksMcpSettings | None = None,
        event_bus: EventBus | None = None,
        provisioner: BinaryProvisioner | None = None,
        supervisor: ProcessSupervisor | None = None,
        readiness: ReadinessGate | None = None,
        publisher: EndpointPublisher | None = None,
    ) -> None:
        settings = settings or AksMcpSettings()
        self._config_provider = config_provider or load_agent_config
        self.event_bus = event_bus or EventBus()
        self._provisioner = provisioner or BinaryProvisioner.from_settings(settings, self.event_bus)
        self._supervisor = supervisor or ProcessSupervisor(event_bus=self.event_bus)
        self._readiness = readiness or ReadinessGate.from_settings(settings)
        self._publisher = publisher or EndpointPublisher(settings.workspace_dir)
        self._shutdown_timeout = settings.shutdown_timeout_seconds

        self._machine = LifecycleStateMachine()
        self._lock = asyncio.Lock()
        self._handle: ProcessHandle | None = None
        self._config: AgentConfig | None = None
        self._stop_requested = False
        self._exit_listeners: list[UnexpectedExitCallback] = []

        self._supervisor.on_exit(self._handle_exit)

    # ── Queries (lock-free) ─────────────────────────────────────────

    @property
    def state(self) -> LifecycleState:
        return self._machine.state

    @property
    def publisher(self) -> EndpointPublisher:
        return self._publisher

    def is_running(self) -> bool:
        return self._machine.state == LifecycleState.RUNNING and self._supervisor.is_running()

    def status(self) -> AgentStatus:
        running = self.is_running()
        handle = self._handle
        return AgentStatus(
            state=self._machine.state,
            running=running,
            pid=handle.pid if handle is not None and not handle.finished else None,
            endpoint_url=self._config.endpoint_url if running and self._config else None,
            failure_reason=self._machine.failure_reason,
        )

    # ── Observers ───────────────────────────────────────────────────

    def on_unexpected_exit(self, callback: UnexpectedExitCallback) -> None:
        self._exit_listeners.append(callback)

    def on_transition(self, callback: TransitionCallback) -> None:
        self._machine.on_transition(callback)

    # ── Lifecycle operations (serialized) ───────────────────────────

    async def start(self) -> StartResult:
        """Bring the agent to RUNNING. A no-op while starting or running."""
        if self._machine.state in (LifecycleState.STARTING, LifecycleState.RUNNING):
            return self._already_started()
        async with self._lock:
            if self._machine.state == LifecycleState.RUNNING:
                return self._already_started()
            return await self._start_locked()

    async def stop(self) -> bool:
        """Stop the agent. Returns False if nothing was running."""
        async with self._lock:
            return await self._stop_locked()

    async def restart(self) -> StartResult:
        """Stop (if running) and start again with freshly read configuration."""
        async with self._lock:
            await self._stop_locked()
            return await self._start_locked()

    async def close(self) -> None:
        """Teardown: stop the agent and release the process."""
        await self.stop()
        await self._supervisor.shutdown(self._shutdown_timeout)

    async def __aenter__(self) -> LifecycleManager:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    # ── Internals ───────────────────────────────────────────────────

    def _already_started(self) -> StartResult:
        handle = self._handle
        return StartResult(
            started=False,
            state=self._machine.state,
            config=self._config,
            pid=handle.pid if handle is not None else None,
            endpoint_url=self._config.endpoint_url if self._config else None,
        )

    async def _start_locked(self) -> StartResult:
        await self._machine.transition(LifecycleState.STARTING)
        await self._emit("agent.starting", {})

        handle: ProcessHandle | None = None
        try:
            config = self._config_provider()
            path = await self._provisioner.ensure(config)
            handle = await self._supervisor.spawn(path, config.server_args())
            self._handle = handle
            await self._readiness.wait_ready(handle, config.port)
        except asyncio.CancelledError:
            await self._abort_start(handle, SpawnError("start was cancelled"))
            raise
        except Exception as e:
            await self._abort_start(handle, e)
            raise

        self._config = config
        await self._machine.transition(LifecycleState.RUNNING)

        artifact_path: Path | None = None
        publish_error: PublishError | None = None
        try:
            artifact_path = await self._publisher.publish(config.endpoint_url)
        except PublishError as e:
            publish_error = e
            _logger.warning("AKS-MCP server is running but the endpoint was not published: %s", e)
            await self._emit("agent.publish_failed", {"error": str(e)})

        _logger.info("AKS-MCP server running at %s (pid %s)", config.endpoint_url, handle.pid)
        await self._emit("agent.started", {
            "pid": handle.pid,
            "url": config.endpoint_url,
            "port": config.port,
            "access_level": config.access_level.value,
        })
        return StartResult(
            started=True,
            state=self._machine.state,
            config=config,
            pid=handle.pid,
            endpoint_url=config.endpoint_url,
            artifact_path=artifact_path,
            publish_error=publish_error,
        )

    async def _abort_start(self, handle: ProcessHandle | None, error: BaseException) -> None:
        if handle is not None and not handle.finished:
            await self._reap(handle)
        self._handle = None
        reason = str(error) or type(error).__name__
        await self._machine.transition(LifecycleState.FAILED, reason=reason)
        _logger.error("Failed to start AKS-MCP server: %s", reason)
        await self._emit("agent.failed", {
            "reason": reason,
            "error_type": type(error).__name__,
        })

    async def _stop_locked(self) -> bool:
        handle = self._handle
        if self._machine.state != LifecycleState.RUNNING or handle is None:
            return False

        self._stop_requested = True
        try:
            await self._machine.transition(LifecycleState.STOPPING)
            await self._emit("agent.stopping", {"pid": handle.pid})
            await self._reap(handle)
        finally:
            self._stop_requested = False
            self._handle = None

        await self._machine.transition(LifecycleState.STOPPED)
        await self._emit("agent.stopped", {
            "pid": handle.pid,
            "exit_code": handle.exit_code,
            "signal": handle.exit_signal,
        })
        return True

    async def _reap(self, handle: ProcessHandle) -> None:
        self._supervisor.terminate(handle)
        if not await handle.wait(self._shutdown_timeout):
            _logger.warning(
                "AKS-MCP server (pid %s) ignored SIGTERM for %ss, killing",
                handle.pid, self._shutdown_timeout,
            )
            self._supervisor.kill(handle)
            await handle.wait()

    async def _handle_exit(self, handle: ProcessHandle, code: int | None, signal: str | None) -> None:
        # Stale handles, requested stops and start-time deaths are handled elsewhere
        if handle is not self._handle or self._stop_requested:
            return
        if self._machine.state != LifecycleState.RUNNING:
            return

        self._handle = None
        await self._machine.transition(LifecycleState.STOPPED)
        error = UnexpectedExit(code, signal)
        _logger.error("%s", error)
        await self._emit("agent.unexpected_exit", {
            "pid": handle.pid,
            "exit_code": code,
            "signal": signal,
            "stderr": handle.stderr_tail()[:500],
        })
        for listener in self._exit_listeners:
            try:
                await listener(error)
            except Exception:
                _logger.exception("Unexpected-exit listener %r failed", listener)

    async def _emit(self, topic: str, data: dict) -> None:
        await self.event_bus.emit(topic, data, source="lifecycle_manager")
