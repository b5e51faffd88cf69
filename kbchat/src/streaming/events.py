"""
kbchat - Event Stream Codec
============================
Framing for the server → UI event stream.

Grammar
-------
Each event is a block of header lines terminated by a blank line::

    event: delta
    data: {"text": "Hello"}

``\\r\\n`` line endings are accepted on decode.  Several ``data:`` lines
in one block are joined with ``\\n`` before JSON parsing.  Lines starting
with ``:`` are comments (keep-alives) and are ignored.

Events: ``ready {thread_id}``, ``delta {text}``, ``end {thread_id?, text}``,
``error {message}``.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, Literal

from pydantic import BaseModel

EventName = Literal["ready", "delta", "end", "error"]

READY: EventName = "ready"
DELTA: EventName = "delta"
END: EventName = "end"
ERROR: EventName = "error"

EVENT_STREAM_MEDIA_TYPE = "text/event-stream"


class ServerEvent(BaseModel):
    event: str = "message"
    data: str = ""

    def payload(self) -> dict[str, Any]:
        """Parse ``data`` as JSON; a non-object body is wrapped as ``{"text": ...}``."""
        if not self.data:
            return {}
        try:
            value = json.loads(self.data)
        except json.JSONDecodeError:
            return {"text": self.data}
        return value if isinstance(value, dict) else {"text": value}


def encode_event(event: EventName, payload: dict[str, Any]) -> str:
    """Frame one event; multi-line JSON never occurs since ``json.dumps`` escapes newlines."""
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n"


class EventStreamDecoder:
    """
    Incremental decoder: feed raw bytes (or text) as they arrive, get
    complete events back.  Multi-byte UTF-8 sequences and CRLF pairs
    split across reads are handled.
    """

    __slots__ = ("_utf8", "_buffer")

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""


    def feed(self, data: bytes | str) -> list[ServerEvent]:
        text = self._utf8.decode(data) if isinstance(data, bytes) else data
        self._buffer += text
        return self._drain(final=False)


    def flush(self) -> list[ServerEvent]:
        """Decode whatever is left once the stream has closed."""
        self._buffer += self._utf8.decode(b"", final=True)
        return self._drain(final=True)


    def _drain(self, final: bool) -> list[ServerEvent]:
        # A trailing "\r" may be the first half of a CRLF pair
        hold_cr = not final and self._buffer.endswith("\r")
        if hold_cr:
            self._buffer = self._buffer[:-1]
        normalised = self._buffer.replace("\r\n", "\n").replace("\r", "\n")

        events: list[ServerEvent] = []
        while "\n\n" in normalised:
            block, normalised = normalised.split("\n\n", 1)
            event = _parse_block(block)
            if event is not None:
                events.append(event)

        if final and normalised.strip():
            event = _parse_block(normalised)
            if event is not None:
                events.append(event)
            normalised = ""

        self._buffer = normalised + ("\r" if hold_cr else "")
        return events


def _parse_block(block: str) -> ServerEvent | None:
    name = "message"
    data_lines: list[str] = []
    for line in block.split("\n"):
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            name = value
        elif field == "data":
            data_lines.append(value)
    if not data_lines and name == "message":
        return None
    return ServerEvent(event=name, data="\n".join(data_lines))
