"""Server-sent-events framing.

SSEFramer turns arbitrary chunks of a byte stream into complete event
records. It is a push parser: callers feed whatever the transport delivers
(a chunk may hold half a line, or several records) and get back the records
that became complete.

Grammar handled:
- ``data:`` lines, with one optional space after the colon; several data
  lines in one record are joined with ``\\n``.
- ``event:``, ``id:`` and ``retry:`` fields; ``event:`` is kept, the others
  are accepted and ignored.
- ``:`` comment lines and blank-payload records (heartbeats) are dropped.
- ``\\n``, ``\\r\\n`` and ``\\r`` line endings.
- ``[DONE]`` ends the stream; anything after it is ignored.
"""

from __future__ import annotations

import codecs
import logging
import re
from dataclasses import dataclass
from enum import StrEnum

from open_agent.errors import ProtocolDecodeError

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

_KNOWN_FIELDS = frozenset({"data", "event", "id", "retry"})
_LINE_END = re.compile(r"\r\n|\r|\n")


class MalformedLinePolicy(StrEnum):
    SKIP = "skip"
    ABORT = "abort"


@dataclass
class SSEEvent:
    """A single framed record."""

    type: str  # data, done, error
    data: str = ""
    event: str = ""


class SSEFramer:
    """Incremental SSE parser.

    Partial lines and partial UTF-8 sequences are buffered across feed()
    calls. Under the ``skip`` policy a malformed line yields an ``error``
    record and parsing continues; under ``abort`` it raises
    ProtocolDecodeError.
    """

    def __init__(self, policy: MalformedLinePolicy | str = MalformedLinePolicy.SKIP) -> None:
        self.policy = MalformedLinePolicy(policy)
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._fragments: list[str] = []
        self._data_lines: list[str] = []
        self._event_name = ""
        self._finished = False
        # A chunk ending in \r may be followed by \n in the next chunk
        self._pending_cr = False

    @property
    def finished(self) -> bool:
        return self._finished

    def feed(self, chunk: bytes | str) -> list[SSEEvent]:
        """Consume a chunk, return the records it completed."""
        if self._finished:
            return []
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        if not text:
            return []
        events: list[SSEEvent] = []
        for line in self._split_lines(text):
            event = self._process_line(line)
            if event is not None:
                events.append(event)
            if self._finished:
                break
        return events

    def close(self) -> list[SSEEvent]:
        """Flush at end of stream. A trailing unterminated record is emitted."""
        if self._finished:
            return []
        lines = self._split_lines(self._decoder.decode(b"", final=True))
        if self._fragments:
            lines.append("".join(self._fragments))
            self._fragments = []

        events: list[SSEEvent] = []
        for line in lines:
            event = self._process_line(line)
            if event is not None:
                events.append(event)
            if self._finished:
                return events
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _split_lines(self, text: str) -> list[str]:
        """Cut the complete lines out of ``text``, buffering the unterminated tail.

        Only the new text is scanned; earlier fragments of the current line
        are joined once, when its terminator arrives.
        """
        if self._pending_cr:
            self._pending_cr = False
            if text.startswith("\n"):
                text = text[1:]
        lines: list[str] = []
        start = 0
        for match in _LINE_END.finditer(text):
            self._fragments.append(text[start:match.start()])
            lines.append("".join(self._fragments))
            self._fragments = []
            start = match.end()
        if start < len(text):
            self._fragments.append(text[start:])
        elif text.endswith("\r"):
            self._pending_cr = True
        return lines

    def _process_line(self, line: str) -> SSEEvent | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if not sep or name not in _KNOWN_FIELDS:
            return self._malformed(line)
        if value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data_lines.append(value)
        elif name == "event":
            self._event_name = value
        return None

    def _dispatch(self) -> SSEEvent | None:
        data = "\n".join(self._data_lines)
        event_name = self._event_name
        self._data_lines = []
        self._event_name = ""

        if not data.strip():
            return None
        if data.strip() == DONE_SENTINEL:
            self._finished = True
            self._fragments = []
            return SSEEvent(type="done", event=event_name)
        return SSEEvent(type="data", data=data, event=event_name)

    def _malformed(self, line: str) -> SSEEvent:
        if self.policy == MalformedLinePolicy.ABORT:
            raise ProtocolDecodeError(f"Malformed event-stream line: {line[:200]!r}")
        logger.warning("Skipping malformed event-stream line: %.200r", line)
        return SSEEvent(type="error", data=line)
