import json
import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from http import HTTPStatus

import anyio
from aiohttp import web
from mcp.shared.exceptions import McpError
from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import DEFAULT_NEGOTIATED_VERSION, INVALID_REQUEST, PARSE_ERROR, JSONRPCMessage, JSONRPCRequest
from pydantic import ValidationError

from .auth import (
    AUTH_CONTEXT_KEY,
    PROTECTED_RESOURCE_WELL_KNOWN,
    Authenticator,
    JWTTokenValidator,
    TokenValidator,
    auth_middleware,
    metadata_handler,
    protected_resource_metadata,
)
from .config import ServerSettings
from .context import AuthContext, run_in_context
from .core import StreamableMCP
from .cors import CORSPolicy, cors_middleware, setup_cors
from .errors import SessionError, jsonrpc_error
from .registry import Session, SessionRegistry
from .sse import CONTENT_TYPE_SSE
from .streams import setup_demo_streams
from .transport import (
    CONTENT_TYPE_JSON,
    MCP_PROTOCOL_VERSION_HEADER,
    MCP_SESSION_ID_HEADER,
    SessionTransport,
    TransportState,
)

__all__ = ["AppBuilder", "build_mcp_app"]

logger = logging.getLogger(__name__)


def _error_response(
    message: str,
    status: HTTPStatus,
    code: int = INVALID_REQUEST,
    headers: dict[str, str] | None = None,
) -> web.Response:
    """Create a JSON-RPC error response for errors not tied to a request id."""
    return web.json_response(jsonrpc_error(code, message), status=status, headers=headers)


def _session_error_response(error: SessionError) -> web.Response:
    return _error_response(str(error), HTTPStatus.BAD_REQUEST, error.code)


def _check_accept_headers(request: web.Request) -> tuple[bool, bool]:
    """Check if the request accepts the required media types."""
    accept_header = request.headers.get("accept", "")
    accept_types = [media_type.split(";")[0].strip() for media_type in accept_header.split(",")]

    accepts_any = any(media_type == "*/*" for media_type in accept_types)
    has_json = accepts_any or any(media_type in (CONTENT_TYPE_JSON, "application/*") for media_type in accept_types)
    has_sse = accepts_any or any(media_type in (CONTENT_TYPE_SSE, "text/*") for media_type in accept_types)
    return has_json, has_sse


def _check_content_type(request: web.Request) -> bool:
    """Check if the request has the correct Content-Type."""
    content_type = request.headers.get("content-type", "")
    content_type_parts = [part.strip() for part in content_type.split(";")[0].split(",")]

    return any(part == CONTENT_TYPE_JSON for part in content_type_parts)


def _validate_protocol_version(request: web.Request) -> web.Response | None:
    """Validate the protocol version header in the request."""
    # If no protocol version provided, assume default version
    protocol_version = request.headers.get(MCP_PROTOCOL_VERSION_HEADER, DEFAULT_NEGOTIATED_VERSION)

    if protocol_version not in SUPPORTED_PROTOCOL_VERSIONS:
        supported_versions = ", ".join(SUPPORTED_PROTOCOL_VERSIONS)
        return _error_response(
            f"Bad Request: Unsupported protocol version: {protocol_version}. "
            + f"Supported versions: {supported_versions}",
            HTTPStatus.BAD_REQUEST,
        )
    return None


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class AppBuilder:
    """Aiohttp application builder for a session-managed streamable HTTP MCP server."""

    __slots__ = ("_authenticator", "_cors", "_lifespan_context", "_mcp", "_registry", "_settings")

    def __init__(
        self,
        mcp: StreamableMCP,
        settings: ServerSettings | None = None,
        token_validator: TokenValidator | None = None,
    ) -> None:
        self._mcp = mcp
        self._settings = settings or ServerSettings()
        self._lifespan_context = None
        self._registry = SessionRegistry(self._create_transport)
        self._authenticator = self._create_authenticator(token_validator)
        self._cors = (
            CORSPolicy(self._settings.cors_allow_origins, max_age=self._settings.cors_max_age)
            if self._settings.cors_enabled
            else None
        )

    @property
    def path(self) -> str:
        """Return the path for the MCP server."""
        return self._settings.path

    @property
    def settings(self) -> ServerSettings:
        return self._settings

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def _create_transport(self, session: Session) -> SessionTransport:
        return SessionTransport(
            session,
            self._mcp,
            json_response=self._settings.json_response,
            event_retention=self._settings.event_retention,
            lifespan_context=self._lifespan_context,
            request_timeout=self._settings.request_timeout,
            ping_interval=self._settings.sse_ping_interval,
        )

    def _create_authenticator(self, token_validator: TokenValidator | None) -> Authenticator | None:
        settings = self._settings
        if token_validator is None and not settings.auth_enabled:
            return None
        if not settings.auth_server:
            raise ValueError("auth_server is required when authentication is enabled")

        if token_validator is None:
            token_validator = JWTTokenValidator(
                secret=settings.jwt_secret.get_secret_value() if settings.jwt_secret else None,
                jwks_url=settings.jwks_url,
                algorithms=settings.jwt_algorithms,
                issuer=settings.jwt_issuer,
                required_scopes=settings.required_scopes,
            )
        return Authenticator(
            token_validator,
            audience=settings.resource_id,
            resource_metadata_url=settings.resource_metadata_url or "",
            protected_paths=(settings.path,),
        )

    def build(self) -> web.Application:
        """Build the MCP server application."""
        middlewares = []
        if self._cors is not None:
            middlewares.append(cors_middleware(self._cors))
        if self._authenticator is not None:
            middlewares.append(auth_middleware(self._authenticator))

        app = web.Application(middlewares=middlewares, client_max_size=self._settings.max_message_size)
        self.setup_routes(app)
        if self._cors is not None:
            setup_cors(app, self._cors)
        app.cleanup_ctx.append(self._lifecycle)
        return app

    def setup_routes(self, app: web.Application) -> None:
        path = self.path
        app.router.add_post(path, self.post_handler)
        app.router.add_get(path, self.get_handler)
        app.router.add_delete(path, self.delete_handler)
        app.router.add_get("/health", self.health_handler)

        if self._authenticator is not None:
            settings = self._settings
            metadata = protected_resource_metadata(
                resource=settings.resource_id or "",
                authorization_servers=[settings.auth_server or ""],
                scopes_supported=settings.scopes,
                resource_documentation=settings.resource_documentation,
            )
            handler = metadata_handler(metadata)
            app.router.add_get(PROTECTED_RESOURCE_WELL_KNOWN, handler)
            app.router.add_get(f"{PROTECTED_RESOURCE_WELL_KNOWN}{path}", handler)
            app.router.add_get(f"{path}{PROTECTED_RESOURCE_WELL_KNOWN}", handler)

        if self._settings.demo_streams:
            setup_demo_streams(app)

    async def _lifecycle(self, app: web.Application) -> AsyncIterator[None]:
        async with self._mcp.lifespan() as lifespan_context, anyio.create_task_group() as tg:
            self._lifespan_context = lifespan_context
            if self._settings.session_idle_timeout is not None:
                tg.start_soon(self._sweep_idle_sessions, self._settings.session_idle_timeout)

            logger.info("MCP server %s is serving %s", self._mcp.name, self.path)
            try:
                yield
            finally:
                logger.info("Closing %d active sessions", len(self._registry))
                self._registry.close_all()
                tg.cancel_scope.cancel()

    async def _sweep_idle_sessions(self, max_idle: float) -> None:
        while True:
            await anyio.sleep(max_idle / 2)
            self._registry.evict_idle(max_idle)

    def _auth_context(self, request: web.Request, session_id: str | None) -> AuthContext:
        context = request.get(AUTH_CONTEXT_KEY) or AuthContext()
        return context.with_session(session_id)

    async def post_handler(self, request: web.Request) -> web.StreamResponse:
        """Handle POST requests containing JSON-RPC messages."""
        has_json, has_sse = _check_accept_headers(request)
        if request.headers.get("accept") and not (has_json or has_sse):
            return _error_response(
                "Not Acceptable: Client must accept application/json or text/event-stream",
                HTTPStatus.NOT_ACCEPTABLE,
            )

        if not _check_content_type(request):
            return _error_response(
                "Unsupported Media Type: Content-Type must be application/json",
                HTTPStatus.UNSUPPORTED_MEDIA_TYPE,
            )

        too_large = "Payload Too Large: Message exceeds maximum size"
        max_size = self._settings.max_message_size
        if request.content_length is not None and request.content_length > max_size:
            return _error_response(too_large, HTTPStatus.REQUEST_ENTITY_TOO_LARGE)
        try:
            body = await request.read()
        except web.HTTPRequestEntityTooLarge:
            return _error_response(too_large, HTTPStatus.REQUEST_ENTITY_TOO_LARGE)

        try:
            raw_message = json.loads(body)
        except ValueError as e:
            return _error_response(f"Parse error: {e!s}", HTTPStatus.BAD_REQUEST, PARSE_ERROR)

        if isinstance(raw_message, list):
            return _error_response("Invalid Request: Batch requests are not supported", HTTPStatus.BAD_REQUEST)

        try:
            message = JSONRPCMessage.model_validate(raw_message)
        except ValidationError as e:
            return _error_response(f"Invalid Request: {e!s}", HTTPStatus.BAD_REQUEST)

        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        is_initialization_request = isinstance(message.root, JSONRPCRequest) and message.root.method == "initialize"

        try:
            if is_initialization_request and not session_id:
                return await self._initialize_session(request, message, stream=has_sse)

            transport = self._registry.resolve(session_id)
            if error_response := _validate_protocol_version(request):
                return error_response
            context = self._auth_context(request, transport.session_id)
            return await run_in_context(context, transport.handle_post, request, message, has_sse)
        except SessionError as e:
            logger.info("Rejected POST for session %s: %s", session_id, e)
            return _session_error_response(e)

    async def _initialize_session(
        self,
        request: web.Request,
        message: JSONRPCMessage,
        stream: bool,
    ) -> web.StreamResponse:
        try:
            self._mcp.parse_request(message.root)
        except McpError as e:
            return _error_response(e.error.message, HTTPStatus.BAD_REQUEST, e.error.code)

        # The session is registered before the initialize response is written
        session_id, transport = await self._registry.create()
        try:
            context = self._auth_context(request, session_id)
            return await run_in_context(context, transport.handle_post, request, message, stream)
        finally:
            if transport.state is TransportState.UNINITIALIZED:
                logger.warning("Initialization failed, discarding session %s", session_id)
                transport.close()

    async def get_handler(self, request: web.Request) -> web.StreamResponse:
        """Handle GET requests opening the server-to-client event stream."""
        try:
            transport = self._registry.resolve(request.headers.get(MCP_SESSION_ID_HEADER))
        except SessionError as e:
            return _session_error_response(e)

        _, has_sse = _check_accept_headers(request)
        if not has_sse:
            return _error_response(
                "Not Acceptable: Client must accept text/event-stream",
                HTTPStatus.NOT_ACCEPTABLE,
            )
        if error_response := _validate_protocol_version(request):
            return error_response

        context = self._auth_context(request, transport.session_id)
        try:
            return await run_in_context(context, transport.handle_get, request)
        except SessionError as e:
            return _session_error_response(e)

    async def delete_handler(self, request: web.Request) -> web.Response:
        """Handle DELETE requests for explicit session termination."""
        try:
            transport = self._registry.resolve(request.headers.get(MCP_SESSION_ID_HEADER))
        except SessionError as e:
            return _session_error_response(e)

        if error_response := _validate_protocol_version(request):
            return error_response

        transport.close()
        return web.Response(status=HTTPStatus.OK)

    async def health_handler(self, request: web.Request) -> web.Response:
        payload = {
            "status": "healthy",
            "timestamp": _utc_timestamp(),
            "activeSessions": len(self._registry),
            "serverName": self._mcp.name,
            "serverVersion": self._mcp.version,
        }
        if self._authenticator is not None:
            payload["resourceId"] = self._settings.resource_id
            payload["authServer"] = self._settings.auth_server
        return web.json_response(payload)


def build_mcp_app(
    mcp: StreamableMCP,
    settings: ServerSettings | None = None,
    token_validator: TokenValidator | None = None,
) -> web.Application:
    """Build the MCP server application."""
    return AppBuilder(mcp, settings, token_validator).build()
