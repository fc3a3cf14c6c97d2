"""
Server-Sent Events framing.

Encodes event records to the ``text/event-stream`` wire format, parses the
``Last-Event-ID`` resumption header and writes events through
``aiohttp_sse``.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum

from aiohttp import web
from aiohttp_sse import EventSourceResponse

__all__ = [
    "CONTENT_TYPE_SSE",
    "END_OF_STREAM",
    "LAST_EVENT_ID_HEADER",
    "EventStreamWriter",
    "EventType",
    "ResumeCursor",
    "SSEEvent",
    "accepts_event_stream",
    "encode_comment",
    "encode_event",
    "end_of_messages",
    "parse_last_event_id",
]

logger = logging.getLogger(__name__)

CONTENT_TYPE_SSE = "text/event-stream"
LAST_EVENT_ID_HEADER = "last-event-id"

# SSE only recognises CRLF, CR and LF as line terminators
_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class EventType(str, Enum):  # for Py10 compatibility
    """Event names used on the wire."""

    MESSAGE = "message"
    END_OF_MESSAGES = "eom"

    def __str__(self) -> str:  # for Py11+ compatibility
        return self.value


@dataclass(frozen=True, slots=True, kw_only=True)
class SSEEvent:
    """One event record. An event without a name is data-only."""

    data: str = ""
    event: str | None = None
    id: int | str | None = None
    retry: int | None = None

    @property
    def data_lines(self) -> list[str]:
        return _LINE_BREAK.split(self.data)


# Data-only event with an empty payload
END_OF_STREAM = SSEEvent()


def end_of_messages() -> SSEEvent:
    """Named end-of-messages marker for streams that use named events."""
    return SSEEvent(event=EventType.END_OF_MESSAGES.value)


def _field(name: str, value: str) -> str:
    # A field with an empty value is written without the colon
    return f"{name}: {value}" if value else name


def encode_event(event: SSEEvent) -> str:
    lines = []
    if event.id is not None:
        lines.append(_field("id", str(event.id)))
    if event.event:
        lines.append(_field("event", event.event))
    lines.extend(_field("data", line) for line in event.data_lines)
    if event.retry is not None:
        lines.append(_field("retry", str(event.retry)))
    return "\n".join(lines) + "\n\n"


def encode_comment(text: str) -> str:
    return "".join(f": {line}\n" for line in _LINE_BREAK.split(text)) + "\n"


@dataclass(frozen=True, slots=True)
class ResumeCursor:
    """Where a resumed stream continues.

    ``last_event_id`` is the last id the client saw, or ``None`` to start from
    the beginning. ``invalid`` tells that a header was sent but was unusable.
    """

    last_event_id: int | None = None
    invalid: bool = False

    @property
    def start(self) -> int:
        """First event id that should be emitted."""
        return 0 if self.last_event_id is None else self.last_event_id + 1


def parse_last_event_id(header: str | None) -> ResumeCursor:
    """Parse a ``Last-Event-ID`` header value. Never raises."""
    if header is None or not header.strip():
        return ResumeCursor()

    try:
        last_event_id = int(header.strip())
    except ValueError:
        last_event_id = -1

    if last_event_id < 0:
        logger.warning("Invalid Last-Event-ID %r, restarting stream from the beginning", header)
        return ResumeCursor(invalid=True)
    return ResumeCursor(last_event_id)


def accepts_event_stream(request: web.Request) -> bool:
    """Check if the client accepts ``text/event-stream``. A missing Accept header accepts anything."""
    accept_header = request.headers.get("accept")
    if not accept_header:
        return True
    accept_types = [media_type.split(";")[0].strip() for media_type in accept_header.split(",")]
    return any(media_type in (CONTENT_TYPE_SSE, "text/*", "*/*") for media_type in accept_types)


class EventStreamWriter:
    """Writes SSE events to an ``aiohttp_sse.EventSourceResponse``.

    A client that went away shows up as ``ConnectionResetError`` raised from
    :meth:`send` and :meth:`comment`.
    """

    __slots__ = ("_request", "_response")

    def __init__(
        self,
        request: web.Request,
        headers: dict[str, str] | None = None,
        ping_interval: float | None = None,
    ) -> None:
        self._request = request
        self._response = EventSourceResponse(headers=headers, sep="\n")
        self._response.headers["Cache-Control"] = "no-cache, no-transform"
        if ping_interval is not None:
            self._response.ping_interval = ping_interval

    @property
    def response(self) -> EventSourceResponse:
        return self._response

    @property
    def prepared(self) -> bool:
        return self._response.prepared

    async def prepare(self) -> EventSourceResponse:
        """Send the response headers and start pinging. Safe to call more than once."""
        if not self._response.prepared:
            await self._response.prepare(self._request)
        return self._response

    async def send(self, event: SSEEvent) -> None:
        await self.prepare()
        logger.debug("Sending SSE event: %s", event)
        if not event.data:
            # Bare "data" sentinel, which the response cannot express
            await self._response.write(encode_event(event).encode("utf-8"))
            return
        await self._response.send(
            event.data,
            id=None if event.id is None else str(event.id),
            event=event.event,
            retry=event.retry,
        )

    async def comment(self, text: str) -> None:
        await self.prepare()
        await self._response.write(encode_comment(text).encode("utf-8"))

    async def close(self) -> EventSourceResponse:
        """Stop pinging and finish the response. A client that is already gone is not an error here."""
        await self.prepare()
        self._response.stop_streaming()
        await self._response.wait()
        try:
            await self._response.write_eof()
        except ConnectionResetError:
            logger.debug("Client disconnected before the end of the stream")
        return self._response
