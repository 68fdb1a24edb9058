"""Shared test fixtures — a fake aks-mcp binary and manager wiring without network."""

from __future__ import annotations

import json
import socket
import stat
import sys
import textwrap
from pathlib import Path

import pytest

from aksmcp.config import AgentConfig, AksMcpSettings
from aksmcp.events.bus import EventBus
from aksmcp.installer import BinaryProvisioner
from aksmcp.kernel.manager import LifecycleManager
from aksmcp.mcp.config import EndpointPublisher
from aksmcp.processes.readiness import ReadinessGate
from aksmcp.processes.supervisor import ProcessSupervisor
from aksmcp.types import AccessLevel

# Behaves like aks-mcp in SSE mode: records its argv, binds --host/--port and
# serves until terminated. FAKE_AGENT_MODE switches to misbehaving variants.
FAKE_AGENT_SOURCE = textwrap.dedent("""\
    import json, os, signal, socket, sys, time

    args = sys.argv[1:]
    opts = dict(zip(args[::2], args[1::2]))
    record = os.environ.get("FAKE_AGENT_RECORD")
    if record:
        with open(record, "a") as f:
            f.write(json.dumps(args) + "\\n")

    mode = os.environ.get("FAKE_AGENT_MODE", "serve")
    if mode == "ignore-term":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    print("aks-mcp starting on port " + opts.get("--port", "?"), flush=True)
    print("loading kubeconfig", file=sys.stderr, flush=True)
    if mode == "crash":
        print("fatal: cannot reach cluster", file=sys.stderr, flush=True)
        sys.exit(3)

    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    sock.bind((opts.get("--host", "127.0.0.1"), int(opts.get("--port", "0"))))
    sock.listen(8)
    while True:
        time.sleep(0.1)
""")


def write_fake_agent(directory: Path, name: str = "aks-mcp") -> Path:
    """Write an executable that runs the fake agent with this interpreter."""
    directory.mkdir(parents=True, exist_ok=True)
    script = directory / "fake_agent.py"
    script.write_text(FAKE_AGENT_SOURCE)
    launcher = directory / name
    launcher.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{script}" "$@"\n')
    launcher.chmod(launcher.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return launcher


def read_invocations(record: Path) -> list[list[str]]:
    if not record.exists():
        return []
    return [json.loads(line) for line in record.read_text().splitlines() if line]


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def free_port():
    return _free_port()


@pytest.fixture
def port_factory():
    return _free_port


@pytest.fixture
def fake_agent(tmp_path):
    return write_fake_agent(tmp_path / "bin")


@pytest.fixture
def invocation_record(tmp_path, monkeypatch):
    record = tmp_path / "invocations.jsonl"
    monkeypatch.setenv("FAKE_AGENT_RECORD", str(record))
    return record


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


class MutableConfig:
    """Config provider whose answer tests can change between operations."""

    def __init__(self, config: AgentConfig) -> None:
        self.config = config
        self.calls = 0

    def update(self, **changes) -> None:
        self.config = self.config.model_copy(update=changes)

    def __call__(self) -> AgentConfig:
        self.calls += 1
        return self.config


@pytest.fixture
def config_provider(fake_agent, free_port):
    return MutableConfig(AgentConfig(
        executable_path=fake_agent,
        access_level=AccessLevel.READONLY,
        port=free_port,
        timeout_seconds=600,
    ))


@pytest.fixture
def make_manager(tmp_path, workspace):
    """Build a manager around a real supervisor and a TCP-probing readiness gate."""
    def _factory(provider, *, publisher=None, provisioner=None, readiness=None, bus=None):
        bus = bus or EventBus()
        return LifecycleManager(
            provider,
            settings=AksMcpSettings(shutdown_timeout_seconds=2.0),
            event_bus=bus,
            provisioner=provisioner or BinaryProvisioner(tmp_path / "storage", event_bus=bus),
            supervisor=ProcessSupervisor(event_bus=bus),
            readiness=readiness or ReadinessGate(mode="probe", timeout_seconds=15.0, poll_interval=0.05),
            publisher=publisher or EndpointPublisher(workspace),
        )
    return _factory
