"""aksmcp — provisions and supervises a local AKS-MCP server for editor assistants."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("aksmcp")
except PackageNotFoundError:
    __version__ = "0.1.0"  # fallback for development
