from __future__ import annotations

"""Incremental decoder for the upstream's newline-delimited event stream.

Network chunks split lines (and UTF-8 sequences) at arbitrary points, so
bytes are decoded incrementally into one growing text buffer and only
complete lines are parsed. A line that fails to parse is logged and
dropped; a trailing partial line at end of stream is discarded.
"""

import codecs
import logging
from typing import List

from ..domain.events import MalformedEventLine, StreamEvent, parse_event

LOG = logging.getLogger("personality.stream")


class EventStreamDecoder:
    def __init__(self) -> None:
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.lines_parsed = 0
        self.lines_dropped = 0
        self.closed = False

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        """Append ``chunk`` and return the events of every line it completed, in wire order."""

        if self.closed:
            raise RuntimeError("decoder already closed")
        self._buffer += self._text.decode(chunk)
        events: List[StreamEvent] = []
        while True:
            idx = self._buffer.find("\n")
            if idx == -1:
                break
            line = self._buffer[:idx].rstrip()
            self._buffer = self._buffer[idx + 1 :]
            if not line:
                continue
            try:
                events.append(parse_event(line))
                self.lines_parsed += 1
            except MalformedEventLine as exc:
                self.lines_dropped += 1
                LOG.warning("stream_line_dropped", extra={"reason": exc.reason, "line": line[:200]})
        return events

    def close(self) -> None:
        """Finish decoding; an unterminated trailing line is discarded."""

        if self.closed:
            return
        self.closed = True
        leftover = self._buffer + self._text.decode(b"", final=True)
        self._buffer = ""
        if leftover.strip():
            LOG.info("stream_partial_line_discarded", extra={"chars": len(leftover)})

    @property
    def pending(self) -> str:
        return self._buffer
