"""
Session transport for streamable HTTP.

One ``SessionTransport`` owns the protocol state of one session: the
initialize handshake, in-flight requests, server-initiated requests waiting
for a client response, and the event channels that carry server messages to
the client over SSE.

Inbound requests are serialized per session and dispatched inside the HTTP
request's own task, so request-scoped context (authentication, FastMCP's
request context) is visible to tools. Every server message gets a
per-session, monotonically increasing event id. With resumability enabled,
events stay buffered until the client acknowledges them with
``Last-Event-ID``, so a dropped stream can be resumed without gaps.
"""

import logging
from collections import deque
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from typing import Any, TypeVar

import anyio
import mcp.types as types
from aiohttp import web
from anyio.streams.memory import MemoryObjectSendStream
from mcp.server.lowlevel.server import request_ctx
from mcp.shared.context import RequestContext
from mcp.shared.exceptions import McpError
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_REQUEST,
    ErrorData,
    JSONRPCError,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    RequestId,
)
from pydantic import AnyUrl, BaseModel

from .core import StreamableMCP
from .errors import SESSION_ERROR, UnknownSession
from .registry import Session
from .sse import LAST_EVENT_ID_HEADER, EventStreamWriter, EventType, SSEEvent, parse_last_event_id

__all__ = [
    "CONTENT_TYPE_JSON",
    "DEFAULT_EVENT_RETENTION",
    "MCP_PROTOCOL_VERSION_HEADER",
    "MCP_SESSION_ID_HEADER",
    "STANDALONE_STREAM",
    "EventChannel",
    "SessionTransport",
    "StreamEvent",
    "TransportState",
]

logger = logging.getLogger(__name__)

# Header names
MCP_SESSION_ID_HEADER = "mcp-session-id"
MCP_PROTOCOL_VERSION_HEADER = "mcp-protocol-version"

CONTENT_TYPE_JSON = "application/json"

# Key of the stream opened with GET, for messages unrelated to any request
STANDALONE_STREAM = "_GET_stream"

DEFAULT_EVENT_RETENTION = 1000

StreamKey = str
ResultT = TypeVar("ResultT", bound=BaseModel)
CloseCallback = Callable[[str], None]


class TransportState(str, Enum):  # for Py10 compatibility
    """Lifecycle of a session transport."""

    UNINITIALIZED = "uninitialized"
    AWAITING_INIT_RESULT = "awaiting_init_result"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"

    def __str__(self) -> str:  # for Py11+ compatibility
        return self.value


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """A server message with its resumption id."""

    id: int
    message: JSONRPCMessage

    @property
    def is_response(self) -> bool:
        return isinstance(self.message.root, JSONRPCResponse | JSONRPCError)

    def to_sse(self) -> SSEEvent:
        return SSEEvent(
            event=EventType.MESSAGE.value,
            data=self.message.model_dump_json(by_alias=True, exclude_none=True),
            id=self.id,
        )


class EventChannel:
    """Ordered buffer of events for one stream of a session.

    A resumable channel keeps events after they were written until they are
    acknowledged, up to ``retention`` events. A non-resumable channel drops
    each event once written, and drops events published while no writer is
    attached.
    """

    __slots__ = ("_attached", "_changed", "_closed", "_events", "_resumable", "_retention", "delivered_through", "key")

    def __init__(self, key: StreamKey, retention: int = DEFAULT_EVENT_RETENTION) -> None:
        self.key = key
        self._retention = retention
        self._resumable = retention > 0
        self._events: deque[StreamEvent] = deque()
        self._closed = False
        self._attached = False
        self._changed = anyio.Event()
        self.delivered_through: int | None = None

    def __len__(self) -> int:
        return len(self._events)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def attached(self) -> bool:
        return self._attached

    def attach(self) -> None:
        self._attached = True

    def detach(self) -> None:
        self._attached = False

    def publish(self, event: StreamEvent) -> bool:
        """Append an event. Returns False if the event was dropped."""
        if self._closed:
            logger.debug("Stream %s is closed, dropping event %s", self.key, event.id)
            return False
        if not self._resumable and not self._attached:
            logger.debug("No client attached to stream %s, dropping event %s", self.key, event.id)
            return False

        self._events.append(event)
        if self._resumable and len(self._events) > self._retention:
            dropped = self._events.popleft()
            logger.warning("Stream %s exceeded its retention, dropping unacknowledged event %s", self.key, dropped.id)
        self._notify()
        return True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._notify()

    def _notify(self) -> None:
        self._changed.set()
        self._changed = anyio.Event()

    def holds(self, event_id: int) -> bool:
        return any(event.id == event_id for event in self._events)

    def events_after(self, after: int | None) -> list[StreamEvent]:
        return [event for event in self._events if after is None or event.id > after]

    def mark_delivered(self, event_id: int) -> None:
        self.delivered_through = event_id
        if not self._resumable:
            self.acknowledge(event_id)

    def acknowledge(self, through: int) -> None:
        """Discard events the client confirmed it has seen."""
        while self._events and self._events[0].id <= through:
            self._events.popleft()
        if self.delivered_through is None or through > self.delivered_through:
            self.delivered_through = through

    async def follow(self, after: int | None = None) -> AsyncIterator[StreamEvent]:
        """Yield events with an id greater than ``after``, waiting for new ones until the channel closes."""
        position = after
        while True:
            changed = self._changed
            pending = self.events_after(position)
            for event in pending:
                yield event
                position = event.id
            if pending:
                continue
            if self._closed:
                return
            await changed.wait()


class SessionTransport:
    """Protocol state machine of one session.

    Also serves as the session object FastMCP's ``Context`` talks to, so tools
    can log, report progress, notify and elicit over this transport.
    """

    def __init__(
        self,
        session: Session,
        mcp: StreamableMCP,
        *,
        json_response: bool = False,
        event_retention: int = DEFAULT_EVENT_RETENTION,
        lifespan_context: Any = None,
        request_timeout: float | None = None,
        ping_interval: float | None = None,
    ) -> None:
        self.session = session
        self._mcp = mcp
        self.is_json_response_enabled = json_response
        self._retention = event_retention
        self._lifespan_context = lifespan_context
        self._request_timeout = request_timeout
        self._ping_interval = ping_interval

        self._state = TransportState.UNINITIALIZED
        self._client_params: types.InitializeRequestParams | None = None
        self.protocol_version: str | None = None

        # Inbound requests are handled one at a time, in arrival order
        self._request_lock = anyio.Lock()
        self._in_flight: dict[StreamKey, anyio.CancelScope] = {}

        self._channels: dict[StreamKey, EventChannel] = {
            STANDALONE_STREAM: EventChannel(STANDALONE_STREAM, event_retention),
        }
        self._event_streams: dict[int, StreamKey] = {}
        self._next_event_id = 0

        self._pending: dict[RequestId, MemoryObjectSendStream[JSONRPCResponse | JSONRPCError]] = {}
        self._next_request_id = 0

        self._close_callbacks: list[CloseCallback] = []

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state not in (TransportState.CLOSING, TransportState.CLOSED)

    @property
    def resumable(self) -> bool:
        return self._retention > 0

    @property
    def busy(self) -> bool:
        return bool(self._in_flight) or bool(self._pending)

    @property
    def last_event_id(self) -> int | None:
        """Highest event id issued so far."""
        return self._next_event_id - 1 if self._next_event_id else None

    @property
    def client_params(self) -> types.InitializeRequestParams | None:
        return self._client_params

    def channel(self, key: StreamKey) -> EventChannel | None:
        return self._channels.get(key)

    def add_close_callback(self, callback: CloseCallback) -> None:
        self._close_callbacks.append(callback)

    def _ensure_open(self) -> None:
        if not self.is_open:
            raise UnknownSession()

    # Inbound frames

    async def handle_message(
        self,
        message: JSONRPCMessage,
        http_request: web.Request | None = None,
    ) -> JSONRPCResponse | JSONRPCError | None:
        """Process one inbound frame.

        Returns the reply for requests and None for notifications and responses.

        Raises:
            UnknownSession: If the session is closing or closed.
        """
        self._ensure_open()
        return await self._process(message, http_request)

    async def _process(
        self,
        message: JSONRPCMessage,
        http_request: web.Request | None,
    ) -> JSONRPCResponse | JSONRPCError | None:
        self.session.touch()
        root = message.root
        if isinstance(root, JSONRPCRequest):
            return await self._handle_request(root, http_request)
        if isinstance(root, JSONRPCNotification):
            await self._handle_notification(root)
        else:
            self._handle_response(root)
        return None

    async def _handle_request(
        self,
        request: JSONRPCRequest,
        http_request: web.Request | None,
    ) -> JSONRPCResponse | JSONRPCError:
        async with self._request_lock:
            if not self.is_open:
                return JSONRPCError(
                    jsonrpc="2.0", id=request.id, error=ErrorData(code=SESSION_ERROR, message="Session closed")
                )

            reply: JSONRPCResponse | JSONRPCError | None = None
            key = str(request.id)
            with anyio.CancelScope() as scope:
                self._in_flight[key] = scope
                try:
                    result = await self._dispatch(request, http_request)
                    reply = JSONRPCResponse(
                        jsonrpc="2.0",
                        id=request.id,
                        result=result.model_dump(by_alias=True, mode="json", exclude_none=True),
                    )
                except McpError as e:
                    reply = JSONRPCError(jsonrpc="2.0", id=request.id, error=e.error)
                except Exception:
                    logger.exception(
                        "Error handling request %s (%s) in session %s", request.id, request.method, self.session_id
                    )
                    reply = JSONRPCError(
                        jsonrpc="2.0", id=request.id, error=ErrorData(code=INTERNAL_ERROR, message="Internal error")
                    )
                finally:
                    self._in_flight.pop(key, None)

            if reply is None:
                logger.info("Request %s cancelled in session %s", request.id, self.session_id)
                reply = JSONRPCError(jsonrpc="2.0", id=request.id, error=ErrorData(code=0, message="Request cancelled"))
            return reply

    async def _dispatch(self, request: JSONRPCRequest, http_request: web.Request | None) -> BaseModel:
        if request.method == "initialize":
            return self._initialize(request)

        client_request = self._mcp.parse_request(request)
        params = client_request.root.params
        token = request_ctx.set(
            RequestContext(
                request_id=request.id,
                meta=params.meta if params is not None else None,
                session=self,
                lifespan_context=self._lifespan_context,
                request=http_request,
            )
        )
        try:
            return await self._mcp.handle_request(client_request)
        finally:
            request_ctx.reset(token)

    def _initialize(self, request: JSONRPCRequest) -> types.InitializeResult:
        if self._state is not TransportState.UNINITIALIZED:
            raise McpError(ErrorData(code=INVALID_REQUEST, message="Session already initialized"))

        client_request = self._mcp.parse_request(request)
        if not isinstance(client_request.root, types.InitializeRequest):
            raise McpError(ErrorData(code=INVALID_REQUEST, message="Expected an initialize request"))
        params = client_request.root.params
        result = self._mcp.initialize_result(params)

        # Nothing is mutated until the result is known
        self._client_params = params
        self.protocol_version = result.protocolVersion
        self._state = TransportState.AWAITING_INIT_RESULT
        logger.info(
            "Session %s initialized by %s %s, protocol version %s",
            self.session_id,
            params.clientInfo.name,
            params.clientInfo.version,
            result.protocolVersion,
        )
        return result

    async def _handle_notification(self, notification: JSONRPCNotification) -> None:
        if notification.method == "notifications/initialized":
            if self._state is TransportState.AWAITING_INIT_RESULT:
                self._state = TransportState.ACTIVE
                logger.debug("Session %s is active", self.session_id)
            return

        if notification.method == "notifications/cancelled":
            request_id = (notification.params or {}).get("requestId")
            scope = self._in_flight.get(str(request_id))
            if scope is not None:
                logger.debug("Cancelling request %s in session %s", request_id, self.session_id)
                scope.cancel()
            return

        try:
            client_notification = types.ClientNotification.model_validate(
                notification.model_dump(by_alias=True, mode="json", exclude_none=True)
            )
        except ValueError:
            logger.warning("Ignoring invalid notification %s in session %s", notification.method, self.session_id)
            return

        try:
            await self._mcp.handle_notification(client_notification)
        except Exception:
            logger.exception("Error handling notification %s in session %s", notification.method, self.session_id)

    def _handle_response(self, response: JSONRPCResponse | JSONRPCError) -> None:
        stream = self._pending.pop(response.id, None)
        if stream is None:
            logger.warning("Received a response for unknown request %s in session %s", response.id, self.session_id)
            return
        try:
            stream.send_nowait(response)
        except (anyio.WouldBlock, anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug("Requester of %s is gone, dropping its response", response.id)

    # Outbound messages

    def _publish(self, message: JSONRPCMessage, related_request_id: RequestId | None = None) -> StreamEvent | None:
        channel = None
        if related_request_id is not None:
            channel = self._channels.get(str(related_request_id))
        if channel is None or channel.closed:
            channel = self._channels[STANDALONE_STREAM]
        return self._publish_to(channel, message)

    def _publish_to(self, channel: EventChannel, message: JSONRPCMessage) -> StreamEvent | None:
        event = StreamEvent(id=self._next_event_id, message=message)
        if not channel.publish(event):
            return None

        self._next_event_id += 1
        if channel.key != STANDALONE_STREAM:
            self._event_streams[event.id] = channel.key
        return event

    async def send_notification(
        self,
        notification: types.ServerNotification,
        related_request_id: RequestId | None = None,
    ) -> None:
        """Send a notification, on the stream of ``related_request_id`` when it has one."""
        if not self.is_open:
            logger.debug("Session %s is closed, dropping notification", self.session_id)
            return
        jsonrpc_notification = JSONRPCNotification(
            jsonrpc="2.0",
            **notification.model_dump(by_alias=True, mode="json", exclude_none=True),
        )
        self._publish(JSONRPCMessage(jsonrpc_notification), related_request_id)

    async def send_request(
        self,
        request: types.ServerRequest,
        result_type: type[ResultT],
        *,
        related_request_id: RequestId | None = None,
        timeout: float | None = None,
    ) -> ResultT:
        """Send a request to the client and wait for its response.

        Raises:
            McpError: If the client answers with an error, does not answer in
                time or the session closes first.
        """
        self._ensure_open()

        request_id = self._next_request_id
        self._next_request_id += 1
        send_stream, receive_stream = anyio.create_memory_object_stream[JSONRPCResponse | JSONRPCError](1)
        self._pending[request_id] = send_stream

        jsonrpc_request = JSONRPCRequest(
            jsonrpc="2.0",
            id=request_id,
            **request.model_dump(by_alias=True, mode="json", exclude_none=True),
        )
        try:
            if self._publish(JSONRPCMessage(jsonrpc_request), related_request_id) is None:
                raise McpError(ErrorData(code=INTERNAL_ERROR, message="No stream available to deliver the request"))
            with anyio.fail_after(timeout if timeout is not None else self._request_timeout):
                response = await receive_stream.receive()
        except TimeoutError:
            raise McpError(
                ErrorData(code=HTTPStatus.REQUEST_TIMEOUT, message=f"Timed out waiting for response to {request_id}")
            ) from None
        finally:
            self._pending.pop(request_id, None)
            await send_stream.aclose()
            await receive_stream.aclose()

        if isinstance(response, JSONRPCError):
            raise McpError(response.error)
        return result_type.model_validate(response.result)

    async def send_log_message(
        self,
        level: types.LoggingLevel,
        data: Any,
        logger: str | None = None,
        related_request_id: RequestId | None = None,
    ) -> None:
        await self.send_notification(
            types.ServerNotification(
                types.LoggingMessageNotification(
                    params=types.LoggingMessageNotificationParams(level=level, data=data, logger=logger),
                )
            ),
            related_request_id,
        )

    async def send_progress_notification(
        self,
        progress_token: str | int,
        progress: float,
        total: float | None = None,
        message: str | None = None,
        related_request_id: RequestId | None = None,
    ) -> None:
        await self.send_notification(
            types.ServerNotification(
                types.ProgressNotification(
                    params=types.ProgressNotificationParams(
                        progressToken=progress_token,
                        progress=progress,
                        total=total,
                        message=message,
                    ),
                )
            ),
            related_request_id,
        )

    async def send_resource_updated(self, uri: AnyUrl) -> None:
        await self.send_notification(
            types.ServerNotification(
                types.ResourceUpdatedNotification(params=types.ResourceUpdatedNotificationParams(uri=uri))
            )
        )

    async def send_resource_list_changed(self) -> None:
        await self.send_notification(types.ServerNotification(types.ResourceListChangedNotification()))

    async def send_tool_list_changed(self) -> None:
        await self.send_notification(types.ServerNotification(types.ToolListChangedNotification()))

    async def send_prompt_list_changed(self) -> None:
        await self.send_notification(types.ServerNotification(types.PromptListChangedNotification()))

    async def elicit_form(
        self,
        message: str,
        requestedSchema: types.ElicitRequestedSchema,
        related_request_id: RequestId | None = None,
    ) -> types.ElicitResult:
        return await self.send_request(
            types.ServerRequest(
                types.ElicitRequest(
                    params=types.ElicitRequestFormParams(message=message, requestedSchema=requestedSchema),
                )
            ),
            types.ElicitResult,
            related_request_id=related_request_id,
        )

    elicit = elicit_form

    def check_client_capability(self, capability: types.ClientCapabilities) -> bool:
        """Check if the client declared a capability during initialize."""
        if self._client_params is None:
            return False

        client_caps = self._client_params.capabilities
        if capability.roots is not None:
            if client_caps.roots is None:
                return False
            if capability.roots.listChanged and not client_caps.roots.listChanged:
                return False
        if capability.sampling is not None and client_caps.sampling is None:
            return False
        if capability.elicitation is not None and client_caps.elicitation is None:
            return False
        if capability.experimental is not None:
            if client_caps.experimental is None:
                return False
            for name in capability.experimental:
                if name not in client_caps.experimental:
                    return False
        return True

    # HTTP delivery

    def _headers(self) -> dict[str, str]:
        return {MCP_SESSION_ID_HEADER: self.session_id}

    def _json_response(
        self,
        message: JSONRPCMessage | JSONRPCResponse | JSONRPCError,
        status: int = HTTPStatus.OK,
    ) -> web.Response:
        return web.Response(
            text=message.model_dump_json(by_alias=True, exclude_none=True),
            status=status,
            content_type=CONTENT_TYPE_JSON,
            headers=self._headers(),
        )

    def _error_response(self, message: str, status: HTTPStatus, code: int = INVALID_REQUEST) -> web.Response:
        error = JSONRPCError(jsonrpc="2.0", id="server-error", error=ErrorData(code=code, message=message))
        return self._json_response(error, status)

    async def handle_post(
        self,
        request: web.Request,
        message: JSONRPCMessage,
        stream: bool = True,
    ) -> web.StreamResponse:
        """Answer a POSTed frame.

        Requests are answered over SSE when ``stream`` is set and JSON mode is
        off, else with a single JSON body. Notifications and responses get
        ``202 Accepted``.
        """
        self._ensure_open()

        if not isinstance(message.root, JSONRPCRequest):
            await self._process(message, request)
            return web.Response(status=HTTPStatus.ACCEPTED, headers=self._headers())

        if self.is_json_response_enabled or not stream:
            reply = await self._process(message, request)
            return self._json_response(reply)

        if str(message.root.id) in self._channels:
            return self._error_response(
                f"Bad Request: Request {message.root.id} is already in progress", HTTPStatus.BAD_REQUEST
            )
        return await self._stream_reply(request, message)

    async def _stream_reply(self, request: web.Request, message: JSONRPCMessage) -> web.StreamResponse:
        key = str(message.root.id)
        channel = EventChannel(key, self._retention)
        channel.attach()
        self._channels[key] = channel

        writer = EventStreamWriter(request, headers=self._headers(), ping_interval=self._ping_interval)
        replied = False
        try:
            async with anyio.create_task_group() as tg:

                async def pump() -> None:
                    nonlocal replied
                    try:
                        async for event in channel.follow():
                            await writer.send(event.to_sse())
                            channel.mark_delivered(event.id)
                            replied = replied or event.is_response
                    except ConnectionResetError:
                        logger.info("Client disconnected from stream %s of session %s", key, self.session_id)
                        channel.detach()
                        if not self.resumable:
                            tg.cancel_scope.cancel()

                tg.start_soon(pump)

                # With resumability the request completes even if the client goes away
                with anyio.CancelScope(shield=self.resumable):
                    try:
                        reply = await self._process(message, request)
                        if reply is not None:
                            self._publish_to(channel, JSONRPCMessage(reply))
                    finally:
                        channel.close()
        finally:
            channel.detach()
            if replied or not self.resumable:
                self._retire(channel)

        return await writer.close()

    async def handle_get(self, request: web.Request) -> web.StreamResponse:
        """Open the standalone stream, or resume a stream after ``Last-Event-ID``."""
        self._ensure_open()

        channel = self._channels[STANDALONE_STREAM]
        after = channel.delivered_through
        cursor = parse_last_event_id(request.headers.get(LAST_EVENT_ID_HEADER))
        owner = self._cursor_owner(cursor.last_event_id) if cursor.last_event_id is not None else None
        if owner is not None:
            channel = owner
            after = cursor.last_event_id
        elif cursor.last_event_id is not None:
            logger.info(
                "Last-Event-ID %s of session %s belongs to no open stream, replaying the standalone stream",
                cursor.last_event_id,
                self.session_id,
            )

        if channel.attached:
            return self._error_response(
                "Conflict: Only one SSE stream is allowed per session",
                HTTPStatus.CONFLICT,
            )

        if owner is not None and after is not None:
            owner.acknowledge(after)
        channel.attach()
        writer = EventStreamWriter(request, headers=self._headers(), ping_interval=self._ping_interval)
        replied = False
        try:
            await writer.prepare()
            async for event in channel.follow(after):
                await writer.send(event.to_sse())
                channel.mark_delivered(event.id)
                replied = replied or event.is_response
        except ConnectionResetError:
            logger.info("Client disconnected from stream %s of session %s", channel.key, self.session_id)
        finally:
            channel.detach()
            if replied and channel.key != STANDALONE_STREAM:
                self._retire(channel)

        return await writer.close()

    def _cursor_owner(self, event_id: int) -> EventChannel | None:
        """Return the open stream an event id was sent on, if it can still be resumed."""
        key = self._event_streams.get(event_id)
        if key is not None:
            return self._channels.get(key)
        standalone = self._channels[STANDALONE_STREAM]
        if standalone.holds(event_id):
            return standalone
        return None

    def _retire(self, channel: EventChannel) -> None:
        """Forget a request stream that was fully delivered."""
        if self._channels.get(channel.key) is channel:
            del self._channels[channel.key]
        for event_id in [event_id for event_id, key in self._event_streams.items() if key == channel.key]:
            del self._event_streams[event_id]

    def close(self) -> None:
        """Tear the session down. Safe to call more than once."""
        if not self.is_open:
            return

        self._state = TransportState.CLOSING
        logger.info("Terminating session: %s", self.session_id)

        for scope in list(self._in_flight.values()):
            scope.cancel()
        for channel in list(self._channels.values()):
            channel.close()

        for request_id, stream in list(self._pending.items()):
            error = JSONRPCError(
                jsonrpc="2.0", id=request_id, error=ErrorData(code=SESSION_ERROR, message="Connection closed")
            )
            try:
                stream.send_nowait(error)
            except (anyio.WouldBlock, anyio.BrokenResourceError, anyio.ClosedResourceError):
                logger.debug("Requester of %s is gone", request_id)
        self._pending.clear()

        self._state = TransportState.CLOSED
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback(self.session_id)
