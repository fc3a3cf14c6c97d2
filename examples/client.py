"""Example client talking to examples/pony_server.py over streamable HTTP.

Answers the server's elicitation request and prints log messages sent
during tool calls.
"""

import asyncio
import logging
import os

import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamable_http_client
from mcp.shared.context import RequestContext
from mcp.types import ElicitRequestParams, ElicitResult, LoggingMessageNotificationParams, TextContent

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SERVER_URL = os.environ.get("MCP_SERVER_URL", "http://localhost:3000/mcp")


async def handle_elicitation(context: RequestContext[ClientSession, None], params: ElicitRequestParams) -> ElicitResult:
    logger.info("Server asks: %s", params.message)
    return ElicitResult(action="accept", content={"excluded_ponies": "Pinkie,Rarity"})


async def handle_log(params: LoggingMessageNotificationParams) -> None:
    logger.info("Server log [%s]: %s", params.level, params.data)


async def main() -> None:
    headers = {}
    if token := os.environ.get("MCP_TOKEN"):
        headers["Authorization"] = f"Bearer {token}"

    async with httpx.AsyncClient(headers=headers) as http_client:
        async with streamable_http_client(SERVER_URL, http_client=http_client) as (read_stream, write_stream, get_id):
            async with ClientSession(
                read_stream,
                write_stream,
                elicitation_callback=handle_elicitation,
                logging_callback=handle_log,
            ) as session:
                await session.initialize()
                logger.info("Session id: %s", get_id())

                tools = await session.list_tools()
                logger.info("Available tools: %s", [tool.name for tool in tools.tools])

                for name, arguments in [
                    ("whoami", {}),
                    ("pony_password", {"min_length": 20, "special": True}),
                    ("pony_password_with_preferences", {"min_length": 12}),
                ]:
                    result = await session.call_tool(name, arguments)
                    for content in result.content:
                        if isinstance(content, TextContent):
                            logger.info("%s: %s", name, content.text)


if __name__ == "__main__":
    asyncio.run(main())
