"""Example MCP server generating passwords from pony names.

Tools read the caller's token claims through the request-scoped auth context,
and one tool asks the client for preferences with an elicitation request.

Run without authentication:
    python examples/pony_server.py

Run with authentication, validating HS256 tokens issued for this server:
    MCP_AUTH_ENABLED=true MCP_AUTH_SERVER=https://auth.example.com \
    MCP_JWT_SECRET=... MCP_JWT_ALGORITHMS=HS256 python examples/pony_server.py
"""

import logging
import random

from aiohttp import web
from pydantic import BaseModel, Field

from streamable_mcp import Context, ServerSettings, StreamableMCP, build_mcp_app, get_token_claims, is_authenticated

PONIES = [
    ("Twilight", "Sparkle"),
    ("Rainbow", "Dash"),
    ("Pinkie", "Pie"),
    ("Apple", "Jack"),
    ("Fluttershy", None),
    ("Rarity", None),
    ("Princess", "Celestia"),
    ("Princess", "Luna"),
]

SUBSTITUTIONS = str.maketrans({"o": "0", "O": "0", "i": "!", "I": "!", "e": "€", "E": "€", "s": "$", "S": "$"})

settings = ServerSettings()
mcp = StreamableMCP(name="pony-sdk-streamable", version="0.1.0")


def build_password(min_length: int, special: bool, ponies: list[tuple[str, str | None]]) -> str:
    password = ""
    while len(password) < min_length and ponies:
        first, last = random.choice(ponies)
        password += random.choice([first + (last or ""), first, last or first])
    return password.translate(SUBSTITUTIONS) if special else password


class Preferences(BaseModel):
    excluded_ponies: str = Field(description="Names of ponies to exclude, separated by commas.")


@mcp.tool()
def pony_password(min_length: int = 16, special: bool = False) -> str:
    """Generates a password from My Little Pony character names."""
    return build_password(min_length, special, PONIES)


@mcp.tool()
def pony_password_batch(count: int = 5, min_length: int = 16, special: bool = False) -> list[str]:
    """Generates N passwords with the same options."""
    return [build_password(min_length, special, PONIES) for _ in range(min(count, 50))]


@mcp.tool()
async def pony_password_with_preferences(
    ctx: Context,  # type: ignore[type-arg]
    min_length: int = 16,
    special: bool = False,
) -> str:
    """Generates a password from pony names, excluding the ponies you don't like."""
    ponies = PONIES
    result = await ctx.elicit("Which ponies to exclude?", Preferences)
    if result.action == "accept":
        excluded = {name.strip() for name in result.data.excluded_ponies.split(",")}
        await ctx.info(f"Excluding ponies: {', '.join(sorted(excluded))}")
        ponies = [pony for pony in PONIES if pony[0] not in excluded and pony[1] not in excluded]
    return build_password(min_length, special, ponies)


@mcp.tool()
def whoami() -> dict[str, object]:
    """Show who the server thinks is calling."""
    claims = get_token_claims() or {}
    return {"authenticated": is_authenticated(), "subject": claims.get("sub"), "scope": claims.get("scope")}


@mcp.prompt()
def make_pony_password(min_length: str = "16", special: str = "false") -> str:
    """Prompt for generating a password from MLP character names"""
    return (
        "Generate a secure password from My Little Pony character names.\n"
        f"- Minimum length: {min_length}\n"
        f"- Special character substitution: {special}\n"
        "Substitutions (if active): o/O→0, i/I→!, e/E→€, s/S→$."
    )


if __name__ == "__main__":
    logging.basicConfig(level=settings.log_level)
    web.run_app(build_mcp_app(mcp, settings), host=settings.host, port=settings.port)
