from typing import Any

from mcp.types import CONNECTION_CLOSED, ErrorData, RequestId

__all__ = [
    "SESSION_ERROR",
    "AuthenticationError",
    "InvalidToken",
    "MissingSessionId",
    "MissingToken",
    "SessionError",
    "StreamableMCPError",
    "UnknownSession",
    "jsonrpc_error",
]

# Session problems share the implementation-defined server error code
SESSION_ERROR = CONNECTION_CLOSED


class StreamableMCPError(Exception):
    """Base class for all errors raised by this package."""


class SessionError(StreamableMCPError):
    """The request cannot be bound to a live session."""

    code = SESSION_ERROR
    message = "Bad Request: Invalid session"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.message)

    def to_error_data(self) -> ErrorData:
        return ErrorData(code=self.code, message=str(self))


class MissingSessionId(SessionError):
    message = "Bad Request: No valid session ID provided"


class UnknownSession(SessionError):
    message = "Bad Request: Unknown or expired session ID"


class AuthenticationError(StreamableMCPError):
    """The bearer token is missing or was rejected."""


class MissingToken(AuthenticationError):
    def __init__(self) -> None:
        super().__init__("Bearer token required")


class InvalidToken(AuthenticationError):
    pass


def jsonrpc_error(
    code: int,
    message: str,
    request_id: RequestId | None = None,
    data: Any | None = None,
) -> dict[str, Any]:
    """Build a JSON-RPC error envelope.

    ``mcp.types.JSONRPCError`` requires an id, but errors raised before a request
    could be read (bad session, unparsable body) must answer with ``"id": null``.
    """
    return {
        "jsonrpc": "2.0",
        "error": ErrorData(code=code, message=message, data=data).model_dump(exclude_none=True),
        "id": request_id,
    }
