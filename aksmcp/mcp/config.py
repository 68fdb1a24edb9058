"""MCP client configuration — publishes the agent endpoint.

Writes ``{workspace}/.vscode/mcp.json`` so that MCP clients in the
workspace discover the running AKS-MCP server over SSE:

    {"servers": {"aks-mcp-server": {"type": "sse", "url": "http://127.0.0.1:8000/sse"}}}

The file is replaced whole on every publish and left in place on stop;
readers must treat an unreachable URL as "not running".
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import orjson

from aksmcp.exceptions import PublishError
from aksmcp.types import EndpointArtifact

_logger = logging.getLogger(__name__)

SERVER_ID = "aks-mcp-server"
_CONFIG_DIRNAME = ".vscode"
_CONFIG_FILENAME = "mcp.json"


def mcp_config_path(workspace_dir: Path) -> Path:
    return workspace_dir / _CONFIG_DIRNAME / _CONFIG_FILENAME


def render_endpoint(url: str, server_id: str = SERVER_ID) -> bytes:
    """Serialize the MCP config document. Same input, same bytes."""
    document = {"servers": {server_id: {"type": "sse", "url": url}}}
    return orjson.dumps(
        document, option=orjson.OPT_INDENT_2 | orjson.OPT_SORT_KEYS
    ) + b"\n"


class EndpointPublisher:
    """Writes the endpoint artifact into the current workspace."""

    def __init__(self, workspace_dir: Path | None, server_id: str = SERVER_ID) -> None:
        self._workspace_dir = workspace_dir
        self._server_id = server_id

    @property
    def path(self) -> Path | None:
        if self._workspace_dir is None:
            return None
        return mcp_config_path(self._workspace_dir)

    async def publish(self, url: str) -> Path:
        """Atomically (re)write the artifact for *url*."""
        path = self.path
        if path is None:
            raise PublishError("No workspace folder found, skipping MCP configuration")

        tmp = path.with_name(path.name + ".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(render_endpoint(url, self._server_id))
            os.replace(tmp, path)
        except OSError as e:
            if tmp.exists():
                tmp.unlink()
            raise PublishError(f"Could not write {path}: {e}") from e

        _logger.info("Published MCP endpoint %s to %s", url, path)
        return path

    def read(self) -> EndpointArtifact | None:
        """Return the published endpoint, or None if absent or unreadable."""
        path = self.path
        if path is None or not path.exists():
            return None
        try:
            data = orjson.loads(path.read_bytes())
            return EndpointArtifact(**data["servers"][self._server_id])
        except (OSError, orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            _logger.warning("Ignoring unreadable MCP config %s: %s", path, e)
            return None
