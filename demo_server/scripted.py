"""
MODULE OVERVIEW:
The canned streams the demo server plays back.

WHAT IS HAPPENING HERE:
These are the fixtures a client under test is pointed at. The payloads are fixed so a
script can assert on exact ids, names and data. The ticker emits numbered events at a
steady pace, which is what a "close after N events" script needs.
"""
import asyncio
import json
from datetime import datetime, timezone
from typing import AsyncIterator

from sse_starlette.sse import ServerSentEvent

# Raw bytes for /sse/invalid. Everything in here must be survivable by a permissive parser.
INVALID_STREAM = (
    b"this line has no colon\n"
    b"unknown: field\n"
    b"retry: soon\n"
    b"data: survived\n"
    b"\n"
    b"event: dangling\n"
    b"\n"
    b"data: unterminated"
)


def scripted_frames(body: str | None = None) -> list[ServerSentEvent]:
    """Two fixed frames for GET; a single echo frame when a POST body is given."""
    if body:
        return [ServerSentEvent(id="pong", data=body)]
    return [
        ServerSentEvent(id="ABCD", comment="hello", data='{"ping": "pong"}\n{"hello": "sse"}'),
        ServerSentEvent(event="EFGH", data='{"hello": "sse"}'),
    ]


async def replay(frames: list[ServerSentEvent]) -> AsyncIterator[ServerSentEvent]:
    for frame in frames:
        yield frame


async def ticker(count: int, interval_s: float, start_after: int = 0) -> AsyncIterator[ServerSentEvent]:
    """Emits events with ids start_after+1 .. count, `interval_s` apart.

    `start_after` lets a reconnecting client resume from its Last-Event-ID.
    """
    for seq in range(start_after + 1, count + 1):
        yield ServerSentEvent(
            id=str(seq),
            event="tick",
            data=json.dumps({"seq": seq, "at": datetime.now(timezone.utc).isoformat()}),
        )
        if seq < count:
            await asyncio.sleep(interval_s)
