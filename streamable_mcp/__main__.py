import importlib
import logging
from typing import Any

import click
from aiohttp import web
from pydantic import ValidationError

from .app import build_mcp_app
from .config import ServerSettings
from .core import StreamableMCP

logger = logging.getLogger(__name__)


def load_server(target: str) -> StreamableMCP:
    """Import a ``module:attribute`` reference to a StreamableMCP instance."""
    module_name, _, attribute = target.partition(":")
    module = importlib.import_module(module_name)
    server = getattr(module, attribute or "mcp", None)
    if not isinstance(server, StreamableMCP):
        raise click.BadParameter(f"{target} is not a StreamableMCP instance", param_hint="TARGET")
    return server


@click.command()
@click.argument("target", required=False)
@click.option("--host", default=None, help="Host to listen on")
@click.option("--port", type=int, default=None, help="Port to listen on for HTTP")
@click.option("--path", default=None, help="Path of the MCP endpoint")
@click.option("--log-level", default=None, help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
@click.option("--json-response", is_flag=True, default=None, help="Answer requests with JSON instead of SSE streams")
@click.option("--demo-streams", is_flag=True, default=None, help="Serve the /sse demonstration streams")
@click.option("--auth/--no-auth", "auth_enabled", default=None, help="Require bearer tokens on the MCP endpoint")
def main(target: str | None, **options: Any) -> None:
    """Serve TARGET (``package.module:attribute``) over streamable HTTP.

    Without TARGET an empty server is started. Options override the
    ``MCP_*`` environment variables.
    """
    overrides = {name: value for name, value in options.items() if value is not None}
    if "log_level" in overrides:
        overrides["log_level"] = overrides["log_level"].upper()
    try:
        settings = ServerSettings(**overrides)
    except ValidationError as e:
        raise click.UsageError(str(e)) from e

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if target:
        mcp = load_server(target)
    else:
        mcp = StreamableMCP(
            name=settings.server_name,
            version=settings.server_version,
            instructions=settings.instructions,
            log_level=settings.log_level,
        )

    app = build_mcp_app(mcp, settings)
    logger.info("Starting %s on http://%s:%d%s", mcp.name, settings.host, settings.port, settings.path)
    web.run_app(app, host=settings.host, port=settings.port, handler_cancellation=True, print=None)


if __name__ == "__main__":
    main()
