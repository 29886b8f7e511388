"""
LLM Gateway - multi-tenant inference front door with per-user MCP tool servers.

Callers authenticate with a bearer token, get their own set of OAuth-backed MCP
tool connections, and receive model output as a line-delimited event stream.
"""

try:
    from importlib.metadata import version, PackageNotFoundError
    __version__ = version("mcp-llm-gateway")
except (ImportError, PackageNotFoundError):
    __version__ = "unknown"

from .config import GatewayConfig
from .users import DownstreamServerConfig, User, load_users
from .oauth_session import OAuthSession
from .oauth_callback import CallbackRendezvous
from .tool_manager import ToolConnectionManager
from .gateway import InferenceGateway

__all__ = [
    "GatewayConfig",
    "DownstreamServerConfig",
    "User",
    "load_users",
    "OAuthSession",
    "CallbackRendezvous",
    "ToolConnectionManager",
    "InferenceGateway",
]
