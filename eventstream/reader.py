"""
MODULE OVERVIEW:
Pulls the response body off the wire and feeds it through the parser.

WHAT IS HAPPENING HERE:
We use HTTPX `aiter_bytes()` on a response opened with `stream=True` so the body stays
open for as long as the server keeps writing. Every chunk goes into the parser, and
each event it completes is delivered through the session before the next one is parsed.
After every delivery we check whether a handler closed the session, so a `close()`
inside a handler stops the loop without touching the rest of the chunk.
"""
from enum import Enum
from typing import TYPE_CHECKING

import httpx
from loguru import logger

from eventstream.parser import EventStreamParser
from shared.models import ErrorEvent

if TYPE_CHECKING:
    from eventstream.session import Session


class StreamOutcome(str, Enum):
    EOF = "eof"
    CLOSED = "closed"
    FAILED = "failed"
    # Set by the session, not the reader: the server answered but refused the stream
    REJECTED = "rejected"


class StreamReader:
    def __init__(self, session: "Session", parser: EventStreamParser):
        self.session = session
        self.parser = parser

    async def pump(self, response: httpx.Response) -> StreamOutcome:
        sid = self.session.session_id
        received = 0
        try:
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                self.session.stats["bytes_received"] += len(chunk)
                for event in self.parser.feed(chunk):
                    await self.session.deliver(event)
                    if self.session.closed:
                        return StreamOutcome.CLOSED
                if self.session.closed:
                    return StreamOutcome.CLOSED
        except (httpx.HTTPError, OSError) as e:
            self.parser.finish()
            logger.warning(f"session_id={sid} event=stream_error bytes={received} reason='{e}'")
            await self.session.report(ErrorEvent(
                kind="stream",
                message=f"stream read failed: {e or type(e).__name__}",
                cause=e,
                status=response.status_code,
            ))
            return StreamOutcome.FAILED

        if self.parser.finish():
            logger.debug(f"session_id={sid} event=discard reason=unterminated_frame_at_eof")
        logger.debug(f"session_id={sid} event=eof bytes={received}")
        return StreamOutcome.EOF
