"""
MODULE OVERVIEW:
The FastAPI application for the demo SSE server.

WHAT IS HAPPENING HERE:
A target to point the client at. It serves scripted streams with known ids, names and
payloads, a paced ticker, a deliberately malformed stream, and arbitrary status codes,
so every branch of the client's state machine can be driven from a script.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from loguru import logger

from demo_server.routes import sse
from shared.config import __version__


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Demo SSE server starting up...")
    yield
    logger.info(f"Demo SSE server shutting down. Streams served: {sse.stream_stats['streams_served']}")


app = FastAPI(
    title="eventstream-bench demo server",
    description="Scripted text/event-stream endpoints for exercising SSE clients",
    version=__version__,
    lifespan=lifespan
)

app.include_router(sse.router, tags=["SSE"])


@app.get("/healthz", tags=["Ops"])
async def health_check():
    return {"status": "ok"}


@app.get("/stats", tags=["Ops"])
async def get_stats():
    return dict(sse.stream_stats)
