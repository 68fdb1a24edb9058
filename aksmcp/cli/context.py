"""CLI runtime context — bridges the sync CLI to the async lifecycle kernel."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from rich.logging import RichHandler

from aksmcp.config import AgentConfig, AksMcpSettings, load_settings
from aksmcp.events.bus import EventBus
from aksmcp.installer import BinaryProvisioner
from aksmcp.kernel.manager import LifecycleManager


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def build_manager(overrides: dict[str, Any]) -> LifecycleManager:
    """Manager whose config provider re-reads the environment plus CLI overrides."""
    settings = load_settings(**overrides)
    bus = EventBus()

    def _provider() -> AgentConfig:
        return AgentConfig.from_settings(load_settings(**overrides))

    return LifecycleManager(
        _provider,
        settings=settings,
        event_bus=bus,
        provisioner=BinaryProvisioner.from_settings(settings, bus),
    )


def build_provisioner(settings: AksMcpSettings) -> BinaryProvisioner:
    return BinaryProvisioner.from_settings(settings)


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None

    if loop and loop.is_running():
        # Already inside an event loop (e.g. a notebook); run on a worker thread
        import concurrent.futures
        with concurrent.futures.ThreadPoolExecutor() as pool:
            return pool.submit(asyncio.run, coro).result()
    else:
        return asyncio.run(coro)
