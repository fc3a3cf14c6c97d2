"""
Cross-origin access for browser clients.

Browsers only let scripts read the response headers a server exposes, so the
session id and the bearer challenge are listed in
``Access-Control-Expose-Headers``. Preflight requests are answered before
authentication and routing. The allow-origin headers are added when a response
is prepared, which also covers event streams whose headers are sent before
the handler returns.
"""

import logging
from collections.abc import Iterable
from http import HTTPStatus

from aiohttp import hdrs, web
from aiohttp.typedefs import Handler, Middleware

from .sse import LAST_EVENT_ID_HEADER
from .transport import MCP_PROTOCOL_VERSION_HEADER, MCP_SESSION_ID_HEADER

__all__ = ["CORSPolicy", "cors_middleware", "setup_cors"]

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "POST", "DELETE", "OPTIONS")
ALLOWED_HEADERS = (
    "Content-Type",
    "Authorization",
    MCP_SESSION_ID_HEADER,
    MCP_PROTOCOL_VERSION_HEADER,
    LAST_EVENT_ID_HEADER,
)
EXPOSED_HEADERS = ("WWW-Authenticate", MCP_SESSION_ID_HEADER)


class CORSPolicy:
    """Which origins may call the server, and what they may send and read.

    Credentials are never allowed; clients authenticate with bearer tokens.
    """

    __slots__ = ("_allow_any", "_allow_origins", "_max_age")

    def __init__(self, allow_origins: Iterable[str] = ("*",), max_age: int = 86400) -> None:
        self._allow_origins = frozenset(allow_origins)
        self._allow_any = "*" in self._allow_origins
        self._max_age = max_age

    def allowed_origin(self, origin: str | None) -> str | None:
        """Return the ``Access-Control-Allow-Origin`` value for a request origin, or None to refuse it."""
        if not origin:
            return None
        if self._allow_any:
            return "*"
        return origin if origin in self._allow_origins else None

    def _origin_headers(self, origin: str) -> dict[str, str]:
        headers = {hdrs.ACCESS_CONTROL_ALLOW_ORIGIN: origin}
        if not self._allow_any:
            headers[hdrs.VARY] = hdrs.ORIGIN
        return headers

    def preflight(self, request: web.Request) -> web.Response:
        request_origin = request.headers.get(hdrs.ORIGIN)
        origin = self.allowed_origin(request_origin)
        if origin is None:
            logger.warning("Rejected CORS preflight from origin %s", request_origin)
            return web.Response(status=HTTPStatus.FORBIDDEN)

        return web.Response(
            status=HTTPStatus.NO_CONTENT,
            headers={
                **self._origin_headers(origin),
                hdrs.ACCESS_CONTROL_ALLOW_METHODS: ", ".join(ALLOWED_METHODS),
                hdrs.ACCESS_CONTROL_ALLOW_HEADERS: ", ".join(ALLOWED_HEADERS),
                hdrs.ACCESS_CONTROL_MAX_AGE: str(self._max_age),
            },
        )

    async def on_response_prepare(self, request: web.Request, response: web.StreamResponse) -> None:
        if hdrs.ACCESS_CONTROL_ALLOW_ORIGIN in response.headers:
            return
        origin = self.allowed_origin(request.headers.get(hdrs.ORIGIN))
        if origin is None:
            return
        response.headers.update(self._origin_headers(origin))
        response.headers[hdrs.ACCESS_CONTROL_EXPOSE_HEADERS] = ", ".join(EXPOSED_HEADERS)


def is_preflight(request: web.Request) -> bool:
    return (
        request.method == hdrs.METH_OPTIONS
        and hdrs.ORIGIN in request.headers
        and hdrs.ACCESS_CONTROL_REQUEST_METHOD in request.headers
    )


def cors_middleware(policy: CORSPolicy) -> Middleware:
    """Answer CORS preflight requests for every route."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if is_preflight(request):
            return policy.preflight(request)
        return await handler(request)

    return middleware


def setup_cors(app: web.Application, policy: CORSPolicy) -> None:
    """Add the response headers of ``policy`` to every response of ``app``.

    The app must also be built with :func:`cors_middleware` as its outermost middleware.
    """
    app.on_response_prepare.append(policy.on_response_prepare)
