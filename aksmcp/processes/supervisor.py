"""ProcessSupervisor — owns the agent's OS child process.

Spawns the executable, pumps its stdout/stderr, and watches for exit by
awaiting the process rather than polling. Observers are notified of
output, spawn errors and exits; a spawn failure is reported through
``on_error`` instead of being raised from ``spawn()``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal as signal_module
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from aksmcp.events.bus import EventBus
from aksmcp.exceptions import SpawnError

_logger = logging.getLogger(__name__)

_OUTPUT_HISTORY = 200
_OUTPUT_DRAIN_SECONDS = 1.0

ExitCallback = Callable[["ProcessHandle", "int | None", "str | None"], Awaitable[None]]
ErrorCallback = Callable[["ProcessHandle", Exception], Awaitable[None]]
OutputCallback = Callable[["ProcessHandle", str, str], Awaitable[None]]


@dataclass
class ProcessHandle:
    """Read-only view of one spawned agent process."""

    command: list[str]
    pid: int | None = None
    started_at: float = field(default_factory=time.time)
    stopped_at: float | None = None
    exit_code: int | None = None
    exit_signal: str | None = None
    error: SpawnError | None = None
    stdout_lines: list[str] = field(default_factory=list)
    stderr_lines: list[str] = field(default_factory=list)
    _finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def finished(self) -> bool:
        """True once the process has exited or failed to launch."""
        return self._finished.is_set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until the process is gone. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._finished.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def stderr_tail(self, lines: int = 10) -> str:
        return "\n".join(self.stderr_lines[-lines:])

    def _mark_exited(self, returncode: int) -> None:
        # Negative return codes mean "killed by signal N" on POSIX
        if returncode < 0:
            try:
                self.exit_signal = signal_module.Signals(-returncode).name
            except ValueError:
                self.exit_signal = str(-returncode)
        else:
            self.exit_code = returncode
        self.stopped_at = time.time()
        self._finished.set()

    def _mark_failed(self, error: SpawnError) -> None:
        self.error = error
        self.stopped_at = time.time()
        self._finished.set()


class ProcessSupervisor:
    """Supervises at most one agent process at a time."""

    def __init__(self, event_bus: EventBus | None = None, env: dict[str, str] | None = None) -> None:
        self._bus = event_bus
        self._env = env
        self._handle: ProcessHandle | None = None
        self._proc: asyncio.subprocess.Process | None = None
        self._watch_tasks: set[asyncio.Task] = set()
        self._exit_listeners: list[ExitCallback] = []
        self._error_listeners: list[ErrorCallback] = []
        self._output_listeners: list[OutputCallback] = []

    # ── Observers ───────────────────────────────────────────────────

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_listeners.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_listeners.append(callback)

    def on_output(self, callback: OutputCallback) -> None:
        self._output_listeners.append(callback)

    # ── Control ─────────────────────────────────────────────────────

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    def is_running(self) -> bool:
        return self._handle is not None and not self._handle.finished

    async def spawn(self, path: Path, args: list[str]) -> ProcessHandle:
        """Launch the executable and begin watching it."""
        if self.is_running():
            raise SpawnError("An AKS-MCP server process is already running")

        handle = ProcessHandle(command=[str(path), *args])
        proc_env = {**os.environ, **(self._env or {})}

        try:
            proc = await asyncio.create_subprocess_exec(
                *handle.command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=proc_env,
            )
        except OSError as e:
            error = SpawnError(f"Failed to launch {path}: {e.strerror or e}")
            handle._mark_failed(error)
            _logger.error("AKS-MCP server error: %s", error)
            await self._emit("agent.error", {"error": str(error)})
            await self._notify(self._error_listeners, handle, error)
            return handle

        handle.pid = proc.pid
        self._handle = handle
        self._proc = proc
        _logger.info("Spawned AKS-MCP server (pid %d): %s", proc.pid, " ".join(handle.command))
        await self._emit("agent.spawned", {
            "pid": proc.pid,
            "command": " ".join(handle.command),
        })
        task = asyncio.create_task(self._watch(handle, proc))
        self._watch_tasks.add(task)
        task.add_done_callback(self._watch_tasks.discard)
        return handle

    def terminate(self, handle: ProcessHandle) -> None:
        """Send SIGTERM. Does not wait; use ``handle.wait()`` for that."""
        self._send(handle, graceful=True)

    def kill(self, handle: ProcessHandle) -> None:
        """Send SIGKILL."""
        self._send(handle, graceful=False)

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Terminate the current process, escalating to kill, and wait for every watcher."""
        handle = self._handle
        if handle is not None and not handle.finished:
            self.terminate(handle)
            if not await handle.wait(timeout):
                self.kill(handle)
                await handle.wait()
        if self._watch_tasks:
            await asyncio.gather(*self._watch_tasks, return_exceptions=True)

    @property
    def watcher_count(self) -> int:
        return len(self._watch_tasks)

    def _send(self, handle: ProcessHandle, graceful: bool) -> None:
        if handle is not self._handle or self._proc is None:
            return
        if self._proc.returncode is not None:
            return
        try:
            if graceful:
                self._proc.terminate()
            else:
                self._proc.kill()
        except ProcessLookupError:
            pass

    # ── Background ──────────────────────────────────────────────────

    async def _watch(self, handle: ProcessHandle, proc: asyncio.subprocess.Process) -> None:
        readers = asyncio.create_task(self._read_output(handle, proc))
        returncode = await proc.wait()

        # Let buffered output drain; a detached grandchild may hold the pipes
        done, _ = await asyncio.wait({readers}, timeout=_OUTPUT_DRAIN_SECONDS)
        if not done:
            readers.cancel()
        elif readers.exception() is not None:
            _logger.warning("Output reader for pid %s failed: %s", handle.pid, readers.exception())

        if self._handle is handle:
            self._handle = None
            self._proc = None
        handle._mark_exited(returncode)

        _logger.info(
            "AKS-MCP server exited with code %s, signal %s",
            handle.exit_code, handle.exit_signal,
        )
        await self._emit("agent.exited", {
            "pid": handle.pid,
            "exit_code": handle.exit_code,
            "signal": handle.exit_signal,
            "stderr": handle.stderr_tail()[:500],
        })
        await self._notify(self._exit_listeners, handle, handle.exit_code, handle.exit_signal)

    async def _read_output(self, handle: ProcessHandle, proc: asyncio.subprocess.Process) -> None:
        async def _read_stream(stream: asyncio.StreamReader | None, name: str) -> None:
            if stream is None:
                return
            target = handle.stderr_lines if name == "stderr" else handle.stdout_lines
            while True:
                line = await stream.readline()
                if not line:
                    break
                decoded = line.decode("utf-8", errors="replace").rstrip()
                target.append(decoded)
                if len(target) > _OUTPUT_HISTORY:
                    del target[:_OUTPUT_HISTORY // 2]
                if name == "stderr":
                    _logger.warning("AKS-MCP server stderr: %s", decoded)
                else:
                    _logger.info("AKS-MCP server stdout: %s", decoded)
                await self._emit("agent.output", {
                    "pid": handle.pid,
                    "stream": name,
                    "line": decoded[:500],
                })
                await self._notify(self._output_listeners, handle, name, decoded)

        await asyncio.gather(
            _read_stream(proc.stdout, "stdout"),
            _read_stream(proc.stderr, "stderr"),
        )

    async def _notify(self, listeners: list, *args) -> None:
        for listener in listeners:
            try:
                await listener(*args)
            except Exception:
                _logger.exception("Process observer %r failed", listener)

    async def _emit(self, topic: str, data: dict) -> None:
        if self._bus:
            await self._bus.emit(topic, data, source="process_supervisor")
