"""Tests for the lifecycle manager, driving a fake aks-mcp binary end to end."""

import asyncio
import json
import os
import signal
from unittest.mock import AsyncMock

import httpx
import pytest

from aksmcp.config import AgentConfig
from aksmcp.events.bus import EventBus
from aksmcp.exceptions import ProvisionError, ReadinessTimeout, SpawnError, UnexpectedExit
from aksmcp.installer import BinaryProvisioner
from aksmcp.mcp.config import EndpointPublisher, mcp_config_path
from aksmcp.processes.readiness import ReadinessGate
from aksmcp.types import AccessLevel, LifecycleState

from tests.conftest import MutableConfig, read_invocations, write_fake_agent


def _artifact_url(workspace):
    data = json.loads(mcp_config_path(workspace).read_text())
    return data["servers"]["aks-mcp-server"]["url"]


def _process_gone(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


# ── start ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_start_spawns_with_config_and_publishes(
    make_manager, config_provider, invocation_record, workspace, free_port
):
    async with make_manager(config_provider) as manager:
        result = await manager.start()

        assert result.started
        assert result.state == LifecycleState.RUNNING
        assert result.endpoint_url == f"http://127.0.0.1:{free_port}/sse"
        assert result.artifact_path == workspace / ".vscode" / "mcp.json"
        assert result.publish_error is None

        assert read_invocations(invocation_record) == [[
            "--transport", "sse",
            "--host", "127.0.0.1",
            "--port", str(free_port),
            "--access-level", "readonly",
            "--additional-tools", "",
            "--timeout", "600",
        ]]
        assert _artifact_url(workspace) == f"http://127.0.0.1:{free_port}/sse"

        status = manager.status()
        assert status.state == LifecycleState.RUNNING
        assert status.running
        assert status.pid == result.pid
        assert status.endpoint_url == result.endpoint_url
        assert manager.is_running()


@pytest.mark.asyncio
async def test_start_downloads_missing_binary(
    make_manager, tmp_path, invocation_record, workspace, free_port
):
    launcher = write_fake_agent(tmp_path / "release")
    requested = []

    def handler(request):
        requested.append(str(request.url))
        if request.url.host == "github.com":
            return httpx.Response(302, headers={"Location": "https://objects.example.com/asset"})
        return httpx.Response(200, content=launcher.read_bytes())

    bus = EventBus()
    provisioner = BinaryProvisioner(
        tmp_path / "storage", event_bus=bus, transport=httpx.MockTransport(handler)
    )
    provider = MutableConfig(AgentConfig(
        port=free_port,
        access_level=AccessLevel.READONLY,
        extra_tools=[],
        timeout_seconds=600,
    ))

    async with make_manager(provider, provisioner=provisioner, bus=bus) as manager:
        result = await manager.start()

        assert result.started
        assert provisioner.default_path.exists()
        assert requested[0].startswith(
            "https://github.com/Azure/aks-mcp/releases/download/v0.0.2/aks-mcp-"
        )
        assert requested[1] == "https://objects.example.com/asset"
        args = read_invocations(invocation_record)[0]
        assert args[args.index("--port") + 1] == str(free_port)
        assert args[args.index("--access-level") + 1] == "readonly"
        assert args[args.index("--timeout") + 1] == "600"
        assert _artifact_url(workspace) == f"http://127.0.0.1:{free_port}/sse"

    topics = [e.topic for e in reversed(bus.history(limit=500)) if e.topic != "agent.output"]
    assert topics[:5] == [
        "agent.starting", "agent.provisioning", "agent.downloaded", "agent.spawned", "agent.started",
    ]


@pytest.mark.asyncio
async def test_start_is_idempotent_while_running(
    make_manager, config_provider, invocation_record, workspace
):
    async with make_manager(config_provider) as manager:
        first = await manager.start()
        artifact = mcp_config_path(workspace)
        before = (artifact.read_bytes(), artifact.stat().st_mtime_ns)

        second = await manager.start()

        assert not second.started
        assert second.pid == first.pid
        assert second.state == LifecycleState.RUNNING
        assert len(read_invocations(invocation_record)) == 1
        assert (artifact.read_bytes(), artifact.stat().st_mtime_ns) == before


@pytest.mark.asyncio
async def test_concurrent_starts_spawn_once(make_manager, config_provider, invocation_record):
    async with make_manager(config_provider) as manager:
        results = await asyncio.gather(manager.start(), manager.start(), manager.start())

        assert sum(r.started for r in results) == 1
        assert len(read_invocations(invocation_record)) == 1
        assert manager.state == LifecycleState.RUNNING


@pytest.mark.asyncio
async def test_start_while_starting_returns_immediately(make_manager, config_provider):
    async with make_manager(config_provider) as manager:
        first = asyncio.create_task(manager.start())
        await asyncio.sleep(0)

        second = await manager.start()
        assert not second.started
        assert second.state == LifecycleState.STARTING

        assert (await first).started


@pytest.mark.asyncio
async def test_config_read_fresh_per_start(make_manager, config_provider):
    async with make_manager(config_provider) as manager:
        await manager.start()
        await manager.stop()
        await manager.start()
        assert config_provider.calls == 2


# ── stop / restart ──────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stop_terminates_and_keeps_artifact(make_manager, config_provider, workspace):
    bus = EventBus()
    async with make_manager(config_provider, bus=bus) as manager:
        result = await manager.start()

        assert await manager.stop() is True
        assert manager.state == LifecycleState.STOPPED
        assert not manager.is_running()
        assert manager.status().pid is None
        assert manager.status().endpoint_url is None
        assert _process_gone(result.pid)
        assert mcp_config_path(workspace).exists()

        assert await manager.stop() is False

    stopped = bus.history("agent.stopped")
    assert len(stopped) == 1
    assert stopped[0].data["signal"] == "SIGTERM"
    assert bus.history("agent.unexpected_exit") == []


@pytest.mark.asyncio
async def test_stop_escalates_to_kill(make_manager, config_provider, monkeypatch):
    monkeypatch.setenv("FAKE_AGENT_MODE", "ignore-term")
    bus = EventBus()
    async with make_manager(config_provider, bus=bus) as manager:
        await manager.start()
        await manager.stop()

        assert manager.state == LifecycleState.STOPPED
        assert bus.history("agent.stopped")[0].data["signal"] == "SIGKILL"


@pytest.mark.asyncio
async def test_stop_is_deferred_until_start_settles(make_manager, config_provider):
    async with make_manager(config_provider) as manager:
        start_task = asyncio.create_task(manager.start())
        await asyncio.sleep(0)
        assert manager.state == LifecycleState.STARTING

        stopped = await manager.stop()

        assert start_task.done()
        assert start_task.result().started
        assert stopped is True
        assert manager.state == LifecycleState.STOPPED


@pytest.mark.asyncio
async def test_restart_passes_through_stopped_and_applies_new_port(
    make_manager, config_provider, invocation_record, workspace, port_factory
):
    transitions = []

    async def record(old, new):
        transitions.append(new)

    async with make_manager(config_provider) as manager:
        manager.on_transition(record)
        first = await manager.start()

        new_port = port_factory()
        config_provider.update(port=new_port)
        transitions.clear()
        second = await manager.restart()

        assert transitions == [
            LifecycleState.STOPPING,
            LifecycleState.STOPPED,
            LifecycleState.STARTING,
            LifecycleState.RUNNING,
        ]
        assert second.started
        assert second.pid != first.pid
        assert _process_gone(first.pid)
        assert _artifact_url(workspace) == f"http://127.0.0.1:{new_port}/sse"
        ports = [args[args.index("--port") + 1] for args in read_invocations(invocation_record)]
        assert ports[-1] == str(new_port)
        assert len(ports) == 2


@pytest.mark.asyncio
async def test_restart_from_stopped_just_starts(make_manager, config_provider):
    async with make_manager(config_provider) as manager:
        result = await manager.restart()
        assert result.started
        assert manager.state == LifecycleState.RUNNING


# ── failures ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_provision_failure_enters_failed(make_manager, config_provider, invocation_record):
    provisioner = AsyncMock()
    provisioner.ensure.side_effect = ProvisionError("Download failed with status 404", status_code=404)
    bus = EventBus()

    async with make_manager(config_provider, provisioner=provisioner, bus=bus) as manager:
        with pytest.raises(ProvisionError):
            await manager.start()

        status = manager.status()
        assert status.state == LifecycleState.FAILED
        assert status.failure_reason == "Download failed with status 404"
        assert not status.running
        assert read_invocations(invocation_record) == []

    failed = bus.history("agent.failed")[0]
    assert failed.data["error_type"] == "ProvisionError"


@pytest.mark.asyncio
async def test_crash_before_ready_enters_failed(make_manager, config_provider, monkeypatch):
    monkeypatch.setenv("FAKE_AGENT_MODE", "crash")
    async with make_manager(config_provider) as manager:
        with pytest.raises(SpawnError, match="code=3"):
            await manager.start()

        assert manager.state == LifecycleState.FAILED
        assert not manager.is_running()
        assert manager.status().pid is None


@pytest.mark.asyncio
async def test_non_executable_binary_fails_start(make_manager, config_provider, tmp_path):
    broken = tmp_path / "not-executable"
    broken.write_text("#!/bin/sh\n")
    broken.chmod(0o644)
    config_provider.update(executable_path=broken)

    async with make_manager(config_provider) as manager:
        with pytest.raises(SpawnError):
            await manager.start()
        assert manager.state == LifecycleState.FAILED


@pytest.mark.asyncio
async def test_readiness_timeout_terminates_process(make_manager, config_provider):
    bus = EventBus()
    gate = ReadinessGate(mode="delay", grace_seconds=10, timeout_seconds=0.5)

    async with make_manager(config_provider, readiness=gate, bus=bus) as manager:
        with pytest.raises(ReadinessTimeout):
            await manager.start()

        assert manager.state == LifecycleState.FAILED
        pid = bus.history("agent.spawned")[0].data["pid"]
        assert _process_gone(pid)


@pytest.mark.asyncio
async def test_retry_after_failure(make_manager, config_provider, monkeypatch):
    monkeypatch.setenv("FAKE_AGENT_MODE", "crash")
    async with make_manager(config_provider) as manager:
        with pytest.raises(SpawnError):
            await manager.start()

        monkeypatch.setenv("FAKE_AGENT_MODE", "serve")
        result = await manager.start()

        assert result.started
        assert manager.status().failure_reason is None
        assert manager.is_running()


@pytest.mark.asyncio
async def test_publish_failure_is_not_fatal(make_manager, config_provider):
    bus = EventBus()
    async with make_manager(config_provider, publisher=EndpointPublisher(None), bus=bus) as manager:
        result = await manager.start()

        assert result.started
        assert result.publish_error is not None
        assert result.artifact_path is None
        assert manager.state == LifecycleState.RUNNING
        assert len(bus.history("agent.publish_failed")) == 1


# ── unexpected exit ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unexpected_exit_detected(make_manager, config_provider):
    bus = EventBus()
    exits: list[UnexpectedExit] = []
    notified = asyncio.Event()

    async def on_exit(error):
        exits.append(error)
        notified.set()

    async with make_manager(config_provider, bus=bus) as manager:
        manager.on_unexpected_exit(on_exit)
        result = await manager.start()

        os.kill(result.pid, signal.SIGKILL)
        await asyncio.wait_for(notified.wait(), timeout=10)
        await asyncio.sleep(0.2)

        assert manager.state == LifecycleState.STOPPED
        assert not manager.is_running()
        assert len(exits) == 1
        assert exits[0].signal == "SIGKILL"
        assert len(bus.history("agent.unexpected_exit")) == 1
        assert bus.history("agent.stopped") == []

        # Can be started again afterwards
        assert (await manager.start()).started


@pytest.mark.asyncio
async def test_requested_stop_is_not_unexpected(make_manager, config_provider):
    exits = []

    async def on_exit(error):
        exits.append(error)

    async with make_manager(config_provider) as manager:
        manager.on_unexpected_exit(on_exit)
        await manager.start()
        await manager.restart()
        await manager.stop()
        await asyncio.sleep(0.2)

    assert exits == []


@pytest.mark.asyncio
async def test_close_stops_running_agent(make_manager, config_provider):
    manager = make_manager(config_provider)
    result = await manager.start()
    await manager.close()

    assert manager.state == LifecycleState.STOPPED
    assert _process_gone(result.pid)


# ── transition observers ────────────────────────────────────────

@pytest.mark.asyncio
async def test_failing_transition_listener_does_not_wedge_lifecycle(
    make_manager, config_provider, monkeypatch
):
    async def broken(old, new):
        raise RuntimeError("observer down")

    monkeypatch.setenv("FAKE_AGENT_MODE", "crash")
    async with make_manager(config_provider) as manager:
        manager.on_transition(broken)

        with pytest.raises(SpawnError):
            await manager.start()
        assert manager.state == LifecycleState.FAILED

        monkeypatch.setenv("FAKE_AGENT_MODE", "serve")
        result = await manager.start()
        assert result.started
        assert manager.state == LifecycleState.RUNNING

        assert await manager.stop() is True
        assert manager.state == LifecycleState.STOPPED


@pytest.mark.asyncio
async def test_failing_transition_listener_keeps_unexpected_exit_reported(
    make_manager, config_provider
):
    bus = EventBus()
    exits = []
    notified = asyncio.Event()

    async def broken(old, new):
        raise RuntimeError("observer down")

    async def on_exit(error):
        exits.append(error)
        notified.set()

    async with make_manager(config_provider, bus=bus) as manager:
        manager.on_transition(broken)
        manager.on_unexpected_exit(on_exit)
        result = await manager.start()

        os.kill(result.pid, signal.SIGKILL)
        await asyncio.wait_for(notified.wait(), timeout=10)

        assert manager.state == LifecycleState.STOPPED
        assert len(exits) == 1
        assert len(bus.history("agent.unexpected_exit")) == 1
