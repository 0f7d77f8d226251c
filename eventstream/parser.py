"""
MODULE OVERVIEW:
The incremental `text/event-stream` parser.

WHAT IS HAPPENING HERE:
Bytes arrive from the network cut at arbitrary places: half a line, three frames at once,
a lone "\\r". The parser accumulates them and walks the buffer one complete line at a time.
Field lines update the frame being built, and a blank line closes it. The stream-level
state (last event id, retry hint) survives from frame to frame and from one connection
to the next.

It is deliberately forgiving: nothing here raises on bad input. Unknown fields are
skipped, lines without a colon are fields with an empty value, undecodable bytes become
U+FFFD. The only thing that makes an Event is a blank-line-terminated frame carrying at
least one `data` line.
"""
from typing import Iterator

from shared.models import Event

BOM = b"\xef\xbb\xbf"


class EventStreamParser:
    def __init__(self):
        self._buffer = bytearray()
        self._scan_from = 0
        self._at_stream_start = True

        # Frame-local state, cleared at every blank line
        self._data_lines: list[str] = []
        self._name: str | None = None
        self._comment: str | None = None
        self._retry: int | None = None

        # Stream-level state
        self.last_event_id: str | None = None
        self.retry_ms: int | None = None

    def feed(self, data: bytes) -> Iterator[Event]:
        """Buffer `data` and return a lazy iterator over the events it completes.

        Lines are only consumed as the iterator advances. If the caller stops early,
        the rest stays buffered and comes out of the next `feed()` or `events()`.
        """
        self._buffer.extend(data)
        return self.events()

    def events(self) -> Iterator[Event]:
        while True:
            line = self._next_line()
            if line is None:
                return
            event = self._process_line(line)
            if event is not None:
                yield event

    def finish(self) -> bool:
        """End of stream: discard any partial line and unterminated frame.

        Returns True if something was discarded. The last event id and retry hint
        are kept for a possible reconnect.
        """
        dropped = bool(self._buffer) or self._frame_started()
        self._buffer.clear()
        self._scan_from = 0
        self._at_stream_start = True
        self._reset_frame()
        return dropped

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def _next_line(self) -> str | None:
        pos = self._buffer.find(b"\n", self._scan_from)
        if pos == -1:
            self._scan_from = len(self._buffer)
            return None

        raw = bytes(self._buffer[:pos])
        del self._buffer[:pos + 1]
        self._scan_from = 0

        if raw.endswith(b"\r"):
            raw = raw[:-1]
        if self._at_stream_start:
            self._at_stream_start = False
            if raw.startswith(BOM):
                raw = raw[len(BOM):]
        return raw.decode("utf-8", errors="replace")

    def _process_line(self, line: str) -> Event | None:
        if not line:
            return self._dispatch()

        if line.startswith(":"):
            self._comment = _strip_one_space(line[1:])
            return None

        field, _, value = line.partition(":")
        value = _strip_one_space(value)

        if field == "data":
            self._data_lines.append(value)
        elif field == "event":
            self._name = value
        elif field == "id":
            # An id containing NUL is ignored outright
            if "\x00" not in value:
                self.last_event_id = value
        elif field == "retry":
            if value.isascii() and value.isdigit():
                self._retry = int(value)
                self.retry_ms = self._retry
        return None

    def _dispatch(self) -> Event | None:
        if not self._data_lines:
            self._reset_frame()
            return None

        event = Event(
            id=self.last_event_id,
            name=self._name or "message",
            data="\n".join(self._data_lines),
            retry=self._retry,
            comment=self._comment,
        )
        self._reset_frame()
        return event

    def _frame_started(self) -> bool:
        return bool(self._data_lines) or self._name is not None or self._comment is not None or self._retry is not None

    def _reset_frame(self) -> None:
        self._data_lines = []
        self._name = None
        self._comment = None
        self._retry = None


def _strip_one_space(value: str) -> str:
    return value[1:] if value.startswith(" ") else value
