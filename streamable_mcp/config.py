from typing import Annotated, Any

from aiohttp_sse import EventSourceResponse
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from .core import LogLevel
from .transport import DEFAULT_EVENT_RETENTION

__all__ = ["MAXIMUM_MESSAGE_SIZE", "ServerSettings"]

# Maximum size for incoming messages
MAXIMUM_MESSAGE_SIZE = 4 * 1024 * 1024  # 4MB

# Seconds between keep-alive comments on event streams
DEFAULT_PING_INTERVAL = EventSourceResponse.DEFAULT_PING_INTERVAL


class ServerSettings(BaseSettings):
    """Settings for the streamable HTTP MCP server.

    Every field can be set from the environment with the ``MCP_`` prefix,
    e.g. ``MCP_PORT=3000`` or ``MCP_SCOPES="read write"``.
    """

    model_config = SettingsConfigDict(env_prefix="MCP_", env_file=".env", extra="ignore")

    # Server settings
    host: str = "localhost"
    port: int = Field(default=3000, ge=1, le=65535)
    path: str = "/mcp"
    server_name: str = "streamable-mcp"
    server_version: str = "1.0.0"
    instructions: str | None = None
    log_level: LogLevel = "INFO"

    # Transport settings
    json_response: bool = False
    max_message_size: int = MAXIMUM_MESSAGE_SIZE
    event_retention: int = Field(default=DEFAULT_EVENT_RETENTION, ge=0)
    session_idle_timeout: float | None = None
    request_timeout: float | None = None
    sse_ping_interval: float = Field(default=DEFAULT_PING_INTERVAL, gt=0)
    demo_streams: bool = False

    # CORS settings
    cors_enabled: bool = True
    cors_allow_origins: Annotated[list[str], NoDecode] = ["*"]
    cors_max_age: int = Field(default=86400, ge=0)

    # Authentication settings
    auth_enabled: bool = False
    resource_id: str | None = None
    auth_server: str | None = None
    scopes: Annotated[list[str], NoDecode] = []
    required_scopes: Annotated[list[str], NoDecode] = []
    resource_metadata_url: str | None = None
    resource_documentation: str | None = None
    jwt_secret: SecretStr | None = None
    jwks_url: str | None = None
    jwt_algorithms: Annotated[list[str], NoDecode] = ["RS256"]
    jwt_issuer: str | None = None

    @field_validator("scopes", "required_scopes", "jwt_algorithms", "cors_allow_origins", mode="before")
    @classmethod
    def _split_words(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.replace(",", " ").split()
        return value

    @model_validator(mode="after")
    def _fill_resource_defaults(self) -> "ServerSettings":
        if self.resource_id is None:
            self.resource_id = f"http://localhost:{self.port}{self.path}"
        if self.resource_metadata_url is None:
            self.resource_metadata_url = f"{self.resource_id.rstrip('/')}/.well-known/oauth-protected-resource"
        if self.resource_documentation is None:
            self.resource_documentation = f"{self.resource_id.rstrip('/')}/docs"
        return self

    @model_validator(mode="after")
    def _check_auth(self) -> "ServerSettings":
        if self.auth_enabled:
            if not self.auth_server:
                raise ValueError("auth_server is required when authentication is enabled")
            if self.jwt_secret is None and self.jwks_url is None:
                raise ValueError("one of jwt_secret or jwks_url is required when authentication is enabled")
        return self
