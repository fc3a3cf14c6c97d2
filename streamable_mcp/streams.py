"""
Plain SSE demonstration endpoints.

``/sse/data-only``
    Unnamed events, ending with an empty data-only event.
``/sse/custom-events``
    Alternating ``even``/``odd`` named events, ending with ``eom``.
``/sse/custom-events-with-id``
    As above with event ids; resumes after ``Last-Event-ID``. The ``fail_at``
    query parameter breaks the stream right after that id, without ``eom``.
    An ``EventSource`` client treats this as an abnormal end and reconnects
    with the id it last saw, so the resumed stream continues and finishes.

``count`` and ``interval`` query parameters control the number of events and
the pause between them.
"""

import json
import logging

import anyio
from aiohttp import web

from .sse import (
    END_OF_STREAM,
    LAST_EVENT_ID_HEADER,
    EventStreamWriter,
    SSEEvent,
    accepts_event_stream,
    end_of_messages,
    parse_last_event_id,
)

__all__ = ["DemoStreams", "setup_demo_streams"]

logger = logging.getLogger(__name__)

DEFAULT_COUNT = 10
DEFAULT_INTERVAL = 1.0
MAX_COUNT = 1000
MAX_INTERVAL = 60.0


def _query_number(request: web.Request, name: str, default: float, maximum: float) -> float:
    raw = request.query.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise web.HTTPBadRequest(text=f"Query parameter {name} must be a number") from None
    if not 0 <= value <= maximum:
        raise web.HTTPBadRequest(text=f"Query parameter {name} must be between 0 and {maximum}")
    return value


def _parity(value: int) -> str:
    return "even" if value % 2 == 0 else "odd"


class DemoStreams:
    """Handlers for the demonstration streams."""

    __slots__ = ("_count", "_interval")

    def __init__(self, count: int = DEFAULT_COUNT, interval: float = DEFAULT_INTERVAL) -> None:
        self._count = count
        self._interval = interval

    def _params(self, request: web.Request) -> tuple[int, float]:
        count = int(_query_number(request, "count", self._count, MAX_COUNT))
        interval = _query_number(request, "interval", self._interval, MAX_INTERVAL)
        return count, interval

    async def data_only(self, request: web.Request) -> web.StreamResponse:
        count, interval = self._params(request)
        writer = EventStreamWriter(request)
        try:
            await writer.comment("Let's get started")
            for i in range(count):
                await writer.send(SSEEvent(data=f"Data {i}"))
                await anyio.sleep(interval)
            await writer.send(END_OF_STREAM)
        except ConnectionResetError:
            logger.info("Client closed the data-only stream")
        return await writer.close()

    async def custom_events(self, request: web.Request) -> web.StreamResponse:
        count, interval = self._params(request)
        writer = EventStreamWriter(request)
        try:
            for i in range(count):
                await writer.send(SSEEvent(event=_parity(i), data=json.dumps({"value": i})))
                await anyio.sleep(interval)
            await writer.send(end_of_messages())
        except ConnectionResetError:
            logger.info("Client closed the custom-events stream")
        return await writer.close()

    async def custom_events_with_id(self, request: web.Request) -> web.StreamResponse:
        if not accepts_event_stream(request):
            raise web.HTTPNotAcceptable(text="Client must accept text/event-stream")

        count, interval = self._params(request)
        fail_at = request.query.get("fail_at")
        truncate_at = int(_query_number(request, "fail_at", 0, MAX_COUNT)) if fail_at is not None else None
        cursor = parse_last_event_id(request.headers.get(LAST_EVENT_ID_HEADER))

        writer = EventStreamWriter(request)
        try:
            if cursor.invalid:
                await writer.comment("Invalid Last-Event-Id, starting from 0")
            elif cursor.last_event_id is not None:
                logger.info("Resuming custom-events stream after event %s", cursor.last_event_id)

            completed = True
            for i in range(cursor.start, count):
                await writer.send(SSEEvent(event=_parity(i), data=json.dumps({"value": i}), id=i))
                if i == truncate_at:
                    logger.info("Simulating a broken stream after event %s", i)
                    completed = False
                    break
                await anyio.sleep(interval)

            if completed:
                await writer.send(end_of_messages())
        except ConnectionResetError:
            logger.info("Client closed the custom-events-with-id stream")
        return await writer.close()


def setup_demo_streams(app: web.Application, streams: DemoStreams | None = None, prefix: str = "/sse") -> None:
    streams = streams or DemoStreams()
    app.router.add_get(f"{prefix}/data-only", streams.data_only)
    app.router.add_get(f"{prefix}/custom-events", streams.custom_events)
    app.router.add_get(f"{prefix}/custom-events-with-id", streams.custom_events_with_id)

