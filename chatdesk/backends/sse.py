"""
Incremental decoder for OpenAI-style server-sent event streams.

Network chunks arrive on arbitrary byte boundaries: a line, or even a
multi-byte UTF-8 character, can be split across two reads. The decoder keeps
an accumulated text buffer plus a cursor into it and only emits events for
complete lines. Whatever is left after the last newline waits for the next
feed() (or for flush() at end of body).

Line handling:
    ": keep-alive"          comment, ignored (OpenRouter sends these while queueing)
    "data: [DONE]"          end-of-stream sentinel
    "data: {...}"           one JSON chunk
    "event: x" / "id: y"    other fields, ignored
"""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


@dataclass
class SSEEvent:
    """One decoded data line."""
    payload: dict = field(default_factory=dict)
    done: bool = False

    @property
    def content(self) -> str:
        """Text fragment at choices[0].delta.content, or ''."""
        choices = self.payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""
        delta = choices[0].get("delta") or {}
        content = delta.get("content")
        return content if isinstance(content, str) else ""

    @property
    def error(self) -> str | None:
        """Provider error reported mid-stream, if any."""
        err = self.payload.get("error")
        if not err:
            return None
        if isinstance(err, dict):
            return str(err.get("message") or err.get("code") or err)
        return str(err)


class SSEDecoder:
    """Buffer + cursor state machine turning byte chunks into SSEEvents."""

    def __init__(self):
        self._buffer = ""
        self._cursor = 0
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.skipped = 0

    def feed(self, chunk: bytes) -> list[SSEEvent]:
        """Consume a chunk and return every event completed by it."""
        self._buffer += self._utf8.decode(chunk)
        events: list[SSEEvent] = []

        while True:
            newline = self._buffer.find("\n", self._cursor)
            if newline == -1:
                break
            line = self._buffer[self._cursor:newline].rstrip("\r")
            self._cursor = newline + 1
            event = self._parse_line(line)
            if event is not None:
                events.append(event)

        # Drop consumed text so the buffer only holds the partial line
        self._buffer = self._buffer[self._cursor:]
        self._cursor = 0
        return events

    def flush(self) -> list[SSEEvent]:
        """Decode a trailing line that was never newline-terminated."""
        self._buffer += self._utf8.decode(b"", final=True)
        line = self._buffer[self._cursor:].rstrip("\r")
        self._buffer = ""
        self._cursor = 0
        event = self._parse_line(line)
        return [event] if event is not None else []

    @property
    def pending(self) -> str:
        """Text received but not yet terminated by a newline."""
        return self._buffer[self._cursor:]

    def _parse_line(self, line: str) -> SSEEvent | None:
        if not line or line.startswith(":"):
            return None

        name, _, value = line.partition(":")
        if name != "data":
            return None
        if value.startswith(" "):
            value = value[1:]

        if value.strip() == DONE_SENTINEL:
            return SSEEvent(done=True)

        try:
            payload = json.loads(value)
        except json.JSONDecodeError:
            self.skipped += 1
            logger.warning("Skipping malformed stream event: %r", value[:200])
            return None

        if not isinstance(payload, dict):
            self.skipped += 1
            logger.warning("Skipping non-object stream event: %r", value[:200])
            return None

        return SSEEvent(payload=payload)
