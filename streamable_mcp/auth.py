"""
Bearer token authentication for the MCP endpoint.

Tokens are validated as JWTs for the resource's audience. Rejected requests
get ``401 Unauthorized`` with a ``WWW-Authenticate`` challenge pointing at
the OAuth protected resource metadata, which is served publicly so clients
can discover the authorization server.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Collection, Iterable, Mapping
from http import HTTPStatus
from typing import Any

import anyio
import jwt
from aiohttp import web
from aiohttp.typedefs import Handler, Middleware
from mcp.shared.auth import ProtectedResourceMetadata
from pydantic import AnyHttpUrl

from .context import AuthContext
from .errors import AuthenticationError, InvalidToken, MissingToken

__all__ = [
    "AUTH_CONTEXT_KEY",
    "PROTECTED_RESOURCE_WELL_KNOWN",
    "Authenticator",
    "JWTTokenValidator",
    "TokenValidator",
    "auth_middleware",
    "metadata_handler",
    "protected_resource_metadata",
]

logger = logging.getLogger(__name__)

# Request key holding the AuthContext of an authenticated request
AUTH_CONTEXT_KEY = "auth_context"

PROTECTED_RESOURCE_WELL_KNOWN = "/.well-known/oauth-protected-resource"


class TokenValidator(ABC):
    """Validates raw bearer tokens."""

    @abstractmethod
    async def validate(self, token: str, audience: str | None) -> Mapping[str, Any]:
        """Return the claims of a valid token.

        Raises:
            InvalidToken: If the token is malformed, expired, for another
                audience or lacks a required scope.
        """


class JWTTokenValidator(TokenValidator):
    """Validates JWTs signed with a shared secret or with keys from a JWKS endpoint."""

    def __init__(
        self,
        *,
        secret: str | None = None,
        jwks_url: str | None = None,
        algorithms: Iterable[str] = ("RS256",),
        issuer: str | None = None,
        required_scopes: Iterable[str] = (),
        leeway: float = 0,
    ) -> None:
        if (secret is None) == (jwks_url is None):
            raise ValueError("Exactly one of secret or jwks_url must be provided")

        self._secret = secret
        self._jwks_client = jwt.PyJWKClient(jwks_url) if jwks_url else None
        self._algorithms = list(algorithms)
        self._issuer = issuer
        self._required_scopes = frozenset(required_scopes)
        self._leeway = leeway

    async def _signing_key(self, token: str) -> Any:
        if self._jwks_client is None:
            return self._secret
        # Fetching the key set is blocking I/O
        signing_key = await anyio.to_thread.run_sync(self._jwks_client.get_signing_key_from_jwt, token)
        return signing_key.key

    async def validate(self, token: str, audience: str | None) -> Mapping[str, Any]:
        try:
            key = await self._signing_key(token)
            claims = jwt.decode(
                token,
                key=key,
                algorithms=self._algorithms,
                audience=audience,
                issuer=self._issuer,
                leeway=self._leeway,
                options={
                    "require": ["exp"],
                    "verify_aud": audience is not None,
                    "verify_iss": self._issuer is not None,
                },
            )
        except jwt.PyJWTError as e:
            raise InvalidToken(f"Token validation failed: {e}") from e

        missing = self._required_scopes - _token_scopes(claims)
        if missing:
            raise InvalidToken(f"Token is missing required scopes: {' '.join(sorted(missing))}")
        return claims


def _token_scopes(claims: Mapping[str, Any]) -> frozenset[str]:
    scope = claims.get("scope") or claims.get("scp") or ""
    if isinstance(scope, str):
        return frozenset(scope.split())
    return frozenset(scope)


class Authenticator:
    """Turns the Authorization header of a request into an AuthContext."""

    __slots__ = ("_audience", "_protected_paths", "_resource_metadata_url", "_validator")

    def __init__(
        self,
        validator: TokenValidator,
        *,
        audience: str | None,
        resource_metadata_url: str,
        protected_paths: Collection[str] = ("/mcp",),
    ) -> None:
        self._validator = validator
        self._audience = audience
        self._resource_metadata_url = resource_metadata_url
        self._protected_paths = frozenset(protected_paths)

    def protects(self, path: str) -> bool:
        return path in self._protected_paths

    @property
    def challenge_header(self) -> str:
        return f'Bearer realm="OAuth", resource_metadata="{self._resource_metadata_url}"'

    @staticmethod
    def extract_token(request: web.Request) -> str | None:
        header = request.headers.get("Authorization", "")
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(self, request: web.Request) -> AuthContext:
        token = self.extract_token(request)
        if token is None:
            raise MissingToken()
        claims = await self._validator.validate(token, self._audience)
        return AuthContext(token=token, claims=claims, is_authenticated=True)

    def challenge(self) -> web.Response:
        return web.Response(
            status=HTTPStatus.UNAUTHORIZED,
            headers={"WWW-Authenticate": self.challenge_header},
        )


def auth_middleware(authenticator: Authenticator) -> Middleware:
    """Reject unauthenticated requests to the protected paths before they reach a session."""

    @web.middleware
    async def middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.method == "OPTIONS" or not authenticator.protects(request.path):
            return await handler(request)

        try:
            request[AUTH_CONTEXT_KEY] = await authenticator.authenticate(request)
        except AuthenticationError as e:
            logger.warning("Authentication failed for %s %s: %s", request.method, request.path, e)
            return authenticator.challenge()

        logger.debug("Authenticated request to %s", request.path)
        return await handler(request)

    return middleware


def protected_resource_metadata(
    resource: str,
    authorization_servers: Iterable[str],
    scopes_supported: Iterable[str] = (),
    resource_documentation: str | None = None,
) -> ProtectedResourceMetadata:
    scopes = list(scopes_supported)
    return ProtectedResourceMetadata(
        resource=AnyHttpUrl(resource),
        authorization_servers=[AnyHttpUrl(server) for server in authorization_servers],
        scopes_supported=scopes or None,
        bearer_methods_supported=["header"],
        resource_documentation=AnyHttpUrl(resource_documentation) if resource_documentation else None,
    )


def metadata_handler(metadata: ProtectedResourceMetadata) -> Handler:
    body = metadata.model_dump_json(exclude_none=True)

    async def handle_protected_resource(request: web.Request) -> web.Response:
        return web.Response(text=body, content_type="application/json")

    return handle_protected_resource
