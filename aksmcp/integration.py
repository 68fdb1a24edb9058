"""Host integration — connects the lifecycle manager to host entry points.

The host (an editor extension, a CLI, a service) calls ``activate()`` once
on load, routes its commands to ``toggle()``, ``restart()`` and
``show_status()``, forwards settings changes to ``config_changed()`` and
calls ``deactivate()`` on unload. Explicit commands report outcomes
through a ``Notifier``; background work only logs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Protocol

import structlog

from aksmcp.config import AksMcpSettings, load_settings
from aksmcp.exceptions import UnexpectedExit
from aksmcp.kernel.manager import LifecycleManager, StartResult

logger = structlog.get_logger()

SettingsLoader = Callable[[], AksMcpSettings]


class Notifier(Protocol):
    """User-facing messages; rendering is the host's business."""

    async def info(self, message: str) -> None: ...

    async def warning(self, message: str) -> None: ...

    async def error(self, message: str) -> None: ...


class LogNotifier:
    """Notifier for headless hosts: messages go to the log."""

    def __init__(self, name: str = "aksmcp.notify") -> None:
        self._logger = logging.getLogger(name)

    async def info(self, message: str) -> None:
        self._logger.info(message)

    async def warning(self, message: str) -> None:
        self._logger.warning(message)

    async def error(self, message: str) -> None:
        self._logger.error(message)


class ConfigReconciler:
    """Background task reacting to configuration changes.

    Change notifications are queued; a burst of them is coalesced into one
    reconciliation. Reconciling starts the agent when auto-start is on and
    it is not running, through the manager's serialized ``start()``.
    """

    def __init__(
        self,
        manager: LifecycleManager,
        settings_loader: SettingsLoader = load_settings,
    ) -> None:
        self._manager = manager
        self._settings_loader = settings_loader
        self._queue: asyncio.Queue[None] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def notify(self) -> None:
        """Record that configuration changed."""
        self._queue.put_nowait(None)

    async def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run_loop())

    async def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

    async def drain(self) -> None:
        """Wait until every queued change has been reconciled."""
        await self._queue.join()

    async def reconcile(self) -> bool:
        """Apply the current configuration. Returns True if a start happened."""
        settings = self._settings_loader()
        await self._manager.event_bus.emit(
            "config.changed",
            {"auto_start": settings.auto_start},
            source="config_reconciler",
        )
        if settings.auto_start and not self._manager.is_running():
            result = await self._manager.start()
            return result.started
        return False

    async def _run_loop(self) -> None:
        while True:
            await self._queue.get()
            pending = 1
            while not self._queue.empty():
                self._queue.get_nowait()
                pending += 1
            try:
                await self.reconcile()
            except Exception as e:
                logger.error("config_reconcile_failed", error=str(e))
            finally:
                for _ in range(pending):
                    self._queue.task_done()


class HostIntegration:
    """Host-facing commands around one LifecycleManager."""

    def __init__(
        self,
        manager: LifecycleManager,
        notifier: Notifier | None = None,
        settings_loader: SettingsLoader = load_settings,
    ) -> None:
        self._manager = manager
        self._notifier = notifier or LogNotifier()
        self._settings_loader = settings_loader
        self.reconciler = ConfigReconciler(manager, settings_loader)
        self._manager.on_unexpected_exit(self._on_unexpected_exit)

    @property
    def manager(self) -> LifecycleManager:
        return self._manager

    async def activate(self) -> None:
        """Host load: start reacting to config changes and auto-start if enabled.

        Never raises; a failed auto-start must not break host startup.
        """
        await self.reconciler.start()
        try:
            settings = self._settings_loader()
            if settings.auto_start:
                await self._manager.start()
        except Exception as e:
            logger.error("auto_start_failed", error=str(e))

    async def deactivate(self) -> None:
        await self.reconciler.stop()
        try:
            await self._manager.close()
        except Exception as e:
            logger.error("deactivate_stop_failed", error=str(e))

    def config_changed(self) -> None:
        self.reconciler.notify()

    async def start(self) -> bool:
        try:
            result = await self._manager.start()
        except Exception as e:
            await self._notifier.error(f"Failed to start AKS AI server: {e}")
            return False
        await self._announce(result)
        return True

    async def toggle(self) -> bool:
        """Stop if running, else start. Returns whether the agent is running after."""
        try:
            if self._manager.is_running():
                await self._manager.stop()
                await self._notifier.info("AKS AI capabilities disabled")
                return False
            result = await self._manager.start()
        except Exception as e:
            await self._notifier.error(f"Failed to toggle AKS AI: {e}")
            return self._manager.is_running()
        await self._announce(result)
        return True

    async def restart(self) -> bool:
        try:
            result = await self._manager.restart()
        except Exception as e:
            await self._notifier.error(f"Failed to restart AKS AI server: {e}")
            return False
        if result.publish_error:
            await self._notifier.warning(str(result.publish_error))
        await self._notifier.info("AKS AI server restarted")
        return True

    async def show_status(self) -> str:
        message = self.status_message()
        await self._notifier.info(message)
        return message

    def status_message(self) -> str:
        status = "running" if self._manager.is_running() else "stopped"
        return f"AKS AI server is {status}"

    async def _announce(self, result: StartResult) -> None:
        if not result.started:
            return
        if result.publish_error:
            await self._notifier.warning(str(result.publish_error))
        elif result.config is not None and result.config.notify:
            await self._notifier.info(
                "AKS AI capabilities enabled! You can now ask your assistant "
                "about your AKS clusters."
            )

    async def _on_unexpected_exit(self, error: UnexpectedExit) -> None:
        await self._notifier.error(f"AKS-MCP server error: {error}")
