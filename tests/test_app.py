import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Any

import aiohttp
import anyio
import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
from mcp import ClientSession
from mcp.client.streamable_http import streamable_http_client
from mcp.types import INVALID_REQUEST, LATEST_PROTOCOL_VERSION, PARSE_ERROR, TextContent

from streamable_mcp import AppBuilder, Context, ServerSettings, StreamableMCP, build_mcp_app, get_session_id
from streamable_mcp.errors import SESSION_ERROR
from streamable_mcp.transport import MCP_PROTOCOL_VERSION_HEADER, MCP_SESSION_ID_HEADER, STANDALONE_STREAM

logger = logging.getLogger(__name__)

# Set the pytest marker for async tests/fixtures
pytestmark = pytest.mark.anyio


TEST_PATH = "/test-mcp"

HEADERS = {"Accept": "application/json, text/event-stream", "Content-Type": "application/json"}

INITIALIZE = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": LATEST_PROTOCOL_VERSION,
        "capabilities": {},
        "clientInfo": {"name": "test-client", "version": "0.1.0"},
    },
}
INITIALIZED = {"jsonrpc": "2.0", "method": "notifications/initialized"}


@asynccontextmanager
async def aiohttp_server(app: web.Application) -> AsyncIterator[TestServer]:
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@asynccontextmanager
async def aiohttp_client(app: web.Application) -> AsyncIterator[TestClient[web.Request, web.Application]]:
    client = TestClient(TestServer(app))
    await client.start_server()
    yield client
    await client.close()


def get_mcp_server_url(server: TestServer) -> str:
    return f"http://{server.host}:{server.port}{TEST_PATH}"


def parse_sse(body: str) -> list[dict[str, str]]:
    """Split an event stream body into events with their fields."""
    events = []
    for record in body.split("\n\n"):
        if not record.strip():
            continue
        event: dict[str, str] = {}
        for line in record.split("\n"):
            name, _, value = line.partition(": ")
            if name == "data" and "data" in event:
                event["data"] += "\n" + value
            else:
                event[name] = value
        events.append(event)
    return events


async def read_event(response: aiohttp.ClientResponse) -> dict[str, str]:
    """Read the next event record from an open event stream."""
    lines = []
    with anyio.fail_after(5):
        while True:
            line = (await response.content.readline()).decode().rstrip("\n")
            if not line:
                if lines:
                    break
                continue
            lines.append(line)
    return parse_sse("\n".join(lines))[0]


def session_headers(session_id: str, **extra: str) -> dict[str, str]:
    return {**HEADERS, MCP_SESSION_ID_HEADER: session_id, MCP_PROTOCOL_VERSION_HEADER: LATEST_PROTOCOL_VERSION, **extra}


async def open_session(client: TestClient[web.Request, web.Application]) -> str:
    response = await client.post(TEST_PATH, json=INITIALIZE, headers=HEADERS)
    assert response.status == HTTPStatus.OK
    session_id = response.headers[MCP_SESSION_ID_HEADER]
    await response.read()

    response = await client.post(TEST_PATH, json=INITIALIZED, headers=session_headers(session_id))
    assert response.status == HTTPStatus.ACCEPTED
    return session_id


def register_mcp_resources(mcp: StreamableMCP) -> None:
    @mcp.tool()
    def echo_tool(message: str) -> str:
        """Echo a message as a tool"""
        return f"Tool echo: {message}"

    @mcp.tool()
    async def session_info(ctx: Context) -> str:  # type: ignore[type-arg]
        """Report the session and request the call belongs to."""
        await ctx.info("Looking up the session")
        await ctx.report_progress(1, 1)
        request = ctx.request_context.request
        agent = request.headers.get("User-Agent", "") if request else ""
        return json.dumps({"session": get_session_id(), "has_agent": bool(agent)})

    @mcp.resource("config://my-config")
    def config_resource() -> str:
        """Return a config resource. This is static resource"""
        return "This is a config resource"

    @mcp.prompt()
    def echo_prompt(message: str) -> str:
        """Create an echo prompt"""
        return f"Please process this message: {message}"


@pytest.fixture
def settings() -> ServerSettings:
    return ServerSettings(path=TEST_PATH)


@pytest.fixture
def app_builder(mcp: StreamableMCP, settings: ServerSettings) -> AppBuilder:
    register_mcp_resources(mcp)
    return AppBuilder(mcp, settings)


@pytest.fixture
def app(app_builder: AppBuilder) -> web.Application:
    return app_builder.build()


def has_route(app: web.Application, method: str, path: str) -> bool:
    """Check if the given path exists in the app."""
    return any(
        route.resource.canonical == path and route.method == method
        for route in app.router.routes()
        if isinstance(route.resource, web.Resource)
    )


async def test_app_routes(app: web.Application) -> None:
    assert has_route(app, "POST", TEST_PATH)
    assert has_route(app, "GET", TEST_PATH)
    assert has_route(app, "DELETE", TEST_PATH)
    assert has_route(app, "GET", "/health")
    assert not has_route(app, "GET", "/.well-known/oauth-protected-resource")
    assert not has_route(app, "GET", "/sse/data-only")


class TestSessionLifecycle:
    async def test_initialize_over_sse(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            response = await client.post(TEST_PATH, json=INITIALIZE, headers=HEADERS)

            assert response.status == HTTPStatus.OK
            assert response.content_type == "text/event-stream"
            assert response.headers[MCP_SESSION_ID_HEADER]
            events = parse_sse(await response.text())

        assert len(events) == 1
        assert events[0]["event"] == "message"
        assert events[0]["id"] == "0"
        message = json.loads(events[0]["data"])
        assert message["id"] == 1
        assert message["result"]["serverInfo"] == {"name": "test-server", "version": "1.2.3"}

    async def test_initialize_over_json(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            headers = {**HEADERS, "Accept": "application/json"}
            response = await client.post(TEST_PATH, json=INITIALIZE, headers=headers)

            assert response.status == HTTPStatus.OK
            assert response.content_type == "application/json"
            body = await response.json()

        assert body["id"] == 1
        assert body["result"]["protocolVersion"] == LATEST_PROTOCOL_VERSION

    async def test_session_reuse_and_termination(self, app_builder: AppBuilder, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            session_id = await open_session(client)
            assert session_id in app_builder.registry

            response = await client.post(
                TEST_PATH,
                json={
                    "jsonrpc": "2.0",
                    "id": 2,
                    "method": "tools/call",
                    "params": {"name": "echo_tool", "arguments": {"message": "hi"}},
                },
                headers=session_headers(session_id),
            )
            assert response.status == HTTPStatus.OK
            assert response.headers[MCP_SESSION_ID_HEADER] == session_id
            events = parse_sse(await response.text())
            assert json.loads(events[-1]["data"])["result"]["content"][0]["text"] == "Tool echo: hi"

            response = await client.delete(TEST_PATH, headers=session_headers(session_id))
            assert response.status == HTTPStatus.OK
            assert session_id not in app_builder.registry

            response = await client.post(
                TEST_PATH, json={"jsonrpc": "2.0", "id": 3, "method": "ping"}, headers=session_headers(session_id)
            )
            assert response.status == HTTPStatus.BAD_REQUEST
            body = await response.json()

        assert body["id"] is None
        assert body["error"]["code"] == SESSION_ERROR
        assert "Unknown or expired session ID" in body["error"]["message"]

    async def test_sessions_are_independent(self, app_builder: AppBuilder, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            first = await open_session(client)
            second = await open_session(client)

            assert first != second
            assert len(app_builder.registry) == 2

            await client.delete(TEST_PATH, headers=session_headers(first))

            assert first not in app_builder.registry
            assert second in app_builder.registry

    async def test_requests_in_a_session_run_in_arrival_order(
        self, mcp: StreamableMCP, app_builder: AppBuilder, app: web.Application
    ) -> None:
        steps: list[str] = []
        release = anyio.Event()

        @mcp.tool()
        async def slow_step() -> str:
            steps.append("slow started")
            await release.wait()
            steps.append("slow finished")
            return "slow"

        @mcp.tool()
        def quick_step() -> str:
            steps.append("quick ran")
            return "quick"

        async with aiohttp_client(app) as client:
            session_id = await open_session(client)
            transport = app_builder.registry.resolve(session_id)
            results: dict[str, str] = {}

            async def call(request_id: int, name: str) -> None:
                body = {"jsonrpc": "2.0", "id": request_id, "method": "tools/call", "params": {"name": name}}
                response = await client.post(TEST_PATH, json=body, headers=session_headers(session_id))
                events = parse_sse(await response.text())
                results[name] = json.loads(events[-1]["data"])["result"]["content"][0]["text"]

            async with anyio.create_task_group() as tg:
                tg.start_soon(call, 10, "slow_step")
                with anyio.fail_after(5):
                    while "slow started" not in steps:
                        await anyio.sleep(0.01)

                tg.start_soon(call, 11, "quick_step")
                with anyio.fail_after(5):
                    while transport.channel("11") is None:
                        await anyio.sleep(0.01)
                await anyio.sleep(0.05)

                # The second call has arrived but waits for the first one
                assert steps == ["slow started"]
                assert len(app_builder.registry) == 1
                release.set()

            assert len(app_builder.registry) == 1

        assert steps == ["slow started", "slow finished", "quick ran"]
        assert results == {"slow_step": "slow", "quick_step": "quick"}

    async def test_second_initialize_on_session(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            session_id = await open_session(client)

            response = await client.post(TEST_PATH, json=INITIALIZE, headers=session_headers(session_id))
            events = parse_sse(await response.text())

        assert json.loads(events[0]["data"])["error"]["code"] == INVALID_REQUEST

    async def test_failed_initialize_discards_session(self, app_builder: AppBuilder, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            bad = {**INITIALIZE, "params": {"capabilities": {}}}
            response = await client.post(TEST_PATH, json=bad, headers=HEADERS)

            assert response.status == HTTPStatus.BAD_REQUEST
            assert len(app_builder.registry) == 0


class TestRequestValidation:
    async def test_missing_session_id(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            response = await client.post(TEST_PATH, json={"jsonrpc": "2.0", "id": 1, "method": "ping"}, headers=HEADERS)

            assert response.status == HTTPStatus.BAD_REQUEST
            body = await response.json()

        assert body == {
            "jsonrpc": "2.0",
            "error": {"code": SESSION_ERROR, "message": "Bad Request: No valid session ID provided"},
            "id": None,
        }

    async def test_parse_error(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            response = await client.post(TEST_PATH, data="{not json", headers=HEADERS)

            assert response.status == HTTPStatus.BAD_REQUEST
            body = await response.json()

        assert body["error"]["code"] == PARSE_ERROR

    async def test_batch_is_rejected(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            response = await client.post(TEST_PATH, json=[INITIALIZE], headers=HEADERS)

            assert response.status == HTTPStatus.BAD_REQUEST
            body = await response.json()

        assert body["error"]["code"] == INVALID_REQUEST

    async def test_invalid_message(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            response = await client.post(TEST_PATH, json={"hello": "world"}, headers=HEADERS)

            assert response.status == HTTPStatus.BAD_REQUEST

    async def test_not_acceptable(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            headers = {**HEADERS, "Accept": "text/html"}
            response = await client.post(TEST_PATH, json=INITIALIZE, headers=headers)

            assert response.status == HTTPStatus.NOT_ACCEPTABLE

    async def test_unsupported_media_type(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            headers = {**HEADERS, "Content-Type": "text/plain"}
            response = await client.post(TEST_PATH, data=json.dumps(INITIALIZE), headers=headers)

            assert response.status == HTTPStatus.UNSUPPORTED_MEDIA_TYPE

    async def test_payload_too_large(self, mcp: StreamableMCP) -> None:
        app = build_mcp_app(mcp, ServerSettings(path=TEST_PATH, max_message_size=64))
        async with aiohttp_client(app) as client:
            response = await client.post(TEST_PATH, json=INITIALIZE, headers=HEADERS)

            assert response.status == HTTPStatus.REQUEST_ENTITY_TOO_LARGE

    async def test_unsupported_protocol_version(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            session_id = await open_session(client)
            headers = session_headers(session_id, **{MCP_PROTOCOL_VERSION_HEADER: "1999-01-01"})
            response = await client.post(TEST_PATH, json={"jsonrpc": "2.0", "id": 2, "method": "ping"}, headers=headers)

            assert response.status == HTTPStatus.BAD_REQUEST

    async def test_unsupported_method(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            response = await client.put(TEST_PATH, json=INITIALIZE, headers=HEADERS)

            assert response.status == HTTPStatus.METHOD_NOT_ALLOWED

    async def test_delete_without_session(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            response = await client.delete(TEST_PATH)

            assert response.status == HTTPStatus.BAD_REQUEST


class TestStandaloneStream:
    async def test_get_requires_session(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            response = await client.get(TEST_PATH, headers={"Accept": "text/event-stream"})

            assert response.status == HTTPStatus.BAD_REQUEST
            body = await response.json()

        assert body["error"]["code"] == SESSION_ERROR

    async def test_get_requires_event_stream(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            session_id = await open_session(client)
            response = await client.get(TEST_PATH, headers=session_headers(session_id, Accept="application/json"))

            assert response.status == HTTPStatus.NOT_ACCEPTABLE

    async def test_server_notifications(self, app_builder: AppBuilder, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            session_id = await open_session(client)
            transport = app_builder.registry.resolve(session_id)

            response = await client.get(TEST_PATH, headers=session_headers(session_id))
            assert response.status == HTTPStatus.OK
            assert response.content_type == "text/event-stream"

            conflict = await client.get(TEST_PATH, headers=session_headers(session_id))
            assert conflict.status == HTTPStatus.CONFLICT

            await transport.send_log_message("info", "hello")
            event = await read_event(response)
            assert json.loads(event["data"])["params"]["data"] == "hello"

            await client.delete(TEST_PATH, headers=session_headers(session_id))
            assert await response.content.read() == b""

    async def test_resume_after_last_event_id(self, app_builder: AppBuilder, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            session_id = await open_session(client)
            transport = app_builder.registry.resolve(session_id)

            # Published while no stream is open, kept for resumption
            for i in range(3):
                await transport.send_log_message("info", f"message {i}")
            first = transport.last_event_id - 2  # type: ignore[operator]

            headers = session_headers(session_id, **{"Last-Event-ID": str(first)})
            response = await client.get(TEST_PATH, headers=headers)
            received = [await read_event(response), await read_event(response)]

            assert [int(event["id"]) for event in received] == [first + 1, first + 2]
            assert [json.loads(event["data"])["params"]["data"] for event in received] == ["message 1", "message 2"]

            await client.delete(TEST_PATH, headers=session_headers(session_id))

    async def test_cursor_of_finished_request_stream_keeps_pending_notifications(
        self, app_builder: AppBuilder, app: web.Application
    ) -> None:
        async with aiohttp_client(app) as client:
            session_id = await open_session(client)
            transport = app_builder.registry.resolve(session_id)
            standalone = transport.channel(STANDALONE_STREAM)
            assert standalone is not None

            # Buffered while no stream is open
            await transport.send_resource_list_changed()
            pending_id = transport.last_event_id
            assert pending_id is not None

            response = await client.post(
                TEST_PATH, json={"jsonrpc": "2.0", "id": 2, "method": "tools/list"}, headers=session_headers(session_id)
            )
            reply_id = parse_sse(await response.text())[-1]["id"]
            assert int(reply_id) > pending_id
            assert len(standalone) == 1

            headers = session_headers(session_id, **{"Last-Event-ID": reply_id})
            response = await client.get(TEST_PATH, headers=headers)
            assert response.status == HTTPStatus.OK
            event = await read_event(response)

            assert int(event["id"]) == pending_id
            assert json.loads(event["data"])["method"] == "notifications/resources/list_changed"

            await client.delete(TEST_PATH, headers=session_headers(session_id))

    async def test_rejected_resume_leaves_buffer_untouched(self, app_builder: AppBuilder, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            session_id = await open_session(client)
            transport = app_builder.registry.resolve(session_id)
            standalone = transport.channel(STANDALONE_STREAM)
            assert standalone is not None

            await transport.send_log_message("info", "first")
            await transport.send_log_message("info", "second")

            response = await client.get(TEST_PATH, headers=session_headers(session_id))
            assert [json.loads((await read_event(response))["data"])["params"]["data"] for _ in range(2)] == [
                "first",
                "second",
            ]

            headers = session_headers(session_id, **{"Last-Event-ID": str(transport.last_event_id)})
            conflict = await client.get(TEST_PATH, headers=headers)

            assert conflict.status == HTTPStatus.CONFLICT
            assert len(standalone) == 2

            await client.delete(TEST_PATH, headers=session_headers(session_id))


async def test_health(app_builder: AppBuilder, app: web.Application) -> None:
    async with aiohttp_client(app) as client:
        await open_session(client)
        response = await client.get("/health")

        assert response.status == HTTPStatus.OK
        health = await response.json()

    assert health["status"] == "healthy"
    assert health["activeSessions"] == 1
    assert health["serverName"] == "test-server"
    assert health["serverVersion"] == "1.2.3"
    assert health["timestamp"].endswith("Z")
    assert "resourceId" not in health


async def test_idle_sessions_are_swept(mcp: StreamableMCP) -> None:
    app_builder = AppBuilder(mcp, ServerSettings(path=TEST_PATH, session_idle_timeout=0.05))
    async with aiohttp_client(app_builder.build()) as client:
        session_id = await open_session(client)

        with anyio.fail_after(5):
            while session_id in app_builder.registry:
                await anyio.sleep(0.02)

        response = await client.post(
            TEST_PATH, json={"jsonrpc": "2.0", "id": 2, "method": "ping"}, headers=session_headers(session_id)
        )
        assert response.status == HTTPStatus.BAD_REQUEST


class TestCORS:
    ORIGIN = "https://inspector.example.com"

    async def test_preflight(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            response = await client.options(
                TEST_PATH,
                headers={
                    "Origin": self.ORIGIN,
                    "Access-Control-Request-Method": "POST",
                    "Access-Control-Request-Headers": "mcp-session-id, content-type",
                },
            )

            assert response.status == HTTPStatus.NO_CONTENT
            assert response.headers["Access-Control-Allow-Origin"] == "*"
            assert "DELETE" in response.headers["Access-Control-Allow-Methods"]
            assert MCP_SESSION_ID_HEADER in response.headers["Access-Control-Allow-Headers"]
            assert MCP_PROTOCOL_VERSION_HEADER in response.headers["Access-Control-Allow-Headers"]
            assert response.headers["Access-Control-Max-Age"] == "86400"

    async def test_session_id_is_exposed(self, app: web.Application) -> None:
        async with aiohttp_client(app) as client:
            response = await client.post(TEST_PATH, json=INITIALIZE, headers={**HEADERS, "Origin": self.ORIGIN})

            assert response.status == HTTPStatus.OK
            assert response.content_type == "text/event-stream"
            assert response.headers["Access-Control-Allow-Origin"] == "*"
            assert MCP_SESSION_ID_HEADER in response.headers["Access-Control-Expose-Headers"]
            await response.read()

    async def test_allowed_origins(self, mcp: StreamableMCP) -> None:
        settings = ServerSettings(path=TEST_PATH, cors_allow_origins=[self.ORIGIN])
        async with aiohttp_client(build_mcp_app(mcp, settings)) as client:
            allowed = await client.get("/health", headers={"Origin": self.ORIGIN})
            other = await client.get("/health", headers={"Origin": "https://elsewhere.example.com"})
            preflight = await client.options(
                TEST_PATH, headers={"Origin": "https://elsewhere.example.com", "Access-Control-Request-Method": "POST"}
            )

            assert allowed.headers["Access-Control-Allow-Origin"] == self.ORIGIN
            assert allowed.headers["Vary"] == "Origin"
            assert "Access-Control-Allow-Origin" not in other.headers
            assert preflight.status == HTTPStatus.FORBIDDEN

    async def test_disabled(self, mcp: StreamableMCP) -> None:
        settings = ServerSettings(path=TEST_PATH, cors_enabled=False)
        async with aiohttp_client(build_mcp_app(mcp, settings)) as client:
            response = await client.get("/health", headers={"Origin": self.ORIGIN})
            preflight = await client.options(
                TEST_PATH, headers={"Origin": self.ORIGIN, "Access-Control-Request-Method": "POST"}
            )

            assert "Access-Control-Allow-Origin" not in response.headers
            assert preflight.status == HTTPStatus.METHOD_NOT_ALLOWED


async def test_lifespan_context_reaches_tools() -> None:
    @asynccontextmanager
    async def lifespan(_server: Any) -> AsyncIterator[dict[str, str]]:
        yield {"db": "connected"}

    mcp = StreamableMCP(name="lifespan-server", lifespan=lifespan)

    @mcp.tool()
    def db_status(ctx: Context) -> str:  # type: ignore[type-arg]
        return ctx.request_context.lifespan_context["db"]

    app = build_mcp_app(mcp, ServerSettings(path=TEST_PATH, json_response=True))
    async with aiohttp_client(app) as client:
        session_id = await open_session(client)
        response = await client.post(
            TEST_PATH,
            json={"jsonrpc": "2.0", "id": 2, "method": "tools/call", "params": {"name": "db_status"}},
            headers=session_headers(session_id),
        )
        body = await response.json()

    assert body["result"]["content"][0]["text"] == "connected"


async def test_mcp_client(app: web.Application) -> None:
    async with aiohttp_server(app) as server:
        url = get_mcp_server_url(server)
        async with streamable_http_client(url) as (read_stream, write_stream, get_session_id_callback):
            async with ClientSession(read_stream, write_stream) as session:
                await session.initialize()

                tools_result = await session.list_tools()
                assert {tool.name for tool in tools_result.tools} == {"echo_tool", "session_info"}

                result = await session.call_tool("echo_tool", {"message": "test"})
                assert isinstance(result.content[0], TextContent)
                assert result.content[0].text == "Tool echo: test"

                result = await session.call_tool("session_info", {})
                assert isinstance(result.content[0], TextContent)
                info = json.loads(result.content[0].text)
                assert info["session"] == get_session_id_callback()
                assert info["has_agent"]

                resources = await session.list_resources()
                assert [str(resource.uri) for resource in resources.resources] == ["config://my-config"]

                prompt = await session.get_prompt("echo_prompt", {"message": "test"})
                assert isinstance(prompt.messages[0].content, TextContent)
                assert prompt.messages[0].content.text == "Please process this message: test"
