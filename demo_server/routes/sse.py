"""
MODULE OVERVIEW:
The demo server's SSE endpoints.

WHAT IS HAPPENING HERE:
The scripted routes go through `EventSourceResponse`, so the bytes on the wire are
whatever a mainstream server library produces. `/sse/invalid` bypasses it on purpose
to send lines that library would never emit.
"""
from fastapi import APIRouter, Header, Query, Request, Response
from fastapi.responses import StreamingResponse
from loguru import logger
from sse_starlette.sse import EventSourceResponse, ServerSentEvent

from demo_server.scripted import INVALID_STREAM, replay, scripted_frames, ticker
from shared.config import settings

router = APIRouter()

stream_stats = {"streams_served": 0}


def _served(route: str, request: Request) -> None:
    stream_stats["streams_served"] += 1
    logger.info(f"route={route} method={request.method} event=stream client={request.client.host if request.client else '-'}")


@router.api_route("/sse", methods=["GET", "POST"])
async def scripted_stream(request: Request):
    body = (await request.body()).decode("utf-8", errors="replace").strip() if request.method == "POST" else None
    _served("/sse", request)
    return EventSourceResponse(replay(scripted_frames(body)))


@router.get("/sse/ticker")
async def ticker_stream(
    request: Request,
    count: int = Query(10, ge=1),
    interval: float | None = Query(None, ge=0),
    last_event_id: str | None = Header(None),
):
    start_after = int(last_event_id) if last_event_id and last_event_id.isdigit() else 0
    _served("/sse/ticker", request)
    pace = settings.DEMO_EVENT_INTERVAL_S if interval is None else interval
    return EventSourceResponse(ticker(count, pace, start_after))


@router.get("/sse/invalid")
async def invalid_stream(request: Request):
    _served("/sse/invalid", request)
    return StreamingResponse(iter([INVALID_STREAM]), media_type="text/event-stream")


@router.get("/sse/echo-useragent")
async def echo_user_agent(request: Request, user_agent: str | None = Header(None)):
    _served("/sse/echo-useragent", request)
    return EventSourceResponse(replay([ServerSentEvent(id="useragent", data=user_agent or "")]))


@router.get("/status/{code}")
async def status(code: int):
    return Response(status_code=code)
