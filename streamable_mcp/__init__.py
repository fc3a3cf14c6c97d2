from mcp.server.fastmcp import Context

from .app import AppBuilder, build_mcp_app
from .auth import JWTTokenValidator, TokenValidator
from .config import ServerSettings
from .context import (
    AuthContext,
    current_context,
    get_session_id,
    get_token,
    get_token_claims,
    is_authenticated,
    run_in_context,
)
from .core import StreamableMCP
from .registry import SessionRegistry
from .transport import SessionTransport, TransportState

__all__ = [
    "AppBuilder",
    "AuthContext",
    "Context",
    "JWTTokenValidator",
    "ServerSettings",
    "SessionRegistry",
    "SessionTransport",
    "StreamableMCP",
    "TokenValidator",
    "TransportState",
    "build_mcp_app",
    "current_context",
    "get_session_id",
    "get_token",
    "get_token_claims",
    "is_authenticated",
    "run_in_context",
]
