"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import httpx
import pytest
import pytest_asyncio

from shared.config import settings
from shared.metrics import MetricsBus, MetricsSummary

URL = "http://sse.test/stream"


@dataclass
class Step:
    chunks: tuple[bytes, ...] = ()
    status: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    fail_with: Exception | None = None
    hang: bool = False
    refuse: str | None = None
    stall: bool = False


class ScriptedServer:
    """An httpx MockTransport that plays back byte chunks as a text/event-stream body.

    Each request consumes the next step of the script; the last step repeats.
    """

    def __init__(self):
        self.script: list[Step] = []
        self.requests: list[httpx.Request] = []
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(self._handle))

    def stream(self, *chunks: bytes, status: int = 200, headers: dict | None = None,
               fail_with: Exception | None = None, hang: bool = False) -> "ScriptedServer":
        self.script.append(Step(chunks, status, headers or {}, fail_with, hang))
        return self

    def refuse(self, message: str = "connection refused") -> "ScriptedServer":
        self.script.append(Step(refuse=message))
        return self

    def stall(self) -> "ScriptedServer":
        """Accept the request and never answer, leaving the client in `connecting`."""
        self.script.append(Step(stall=True))
        return self

    async def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        step = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if step.stall:
            await asyncio.Event().wait()
        if step.refuse is not None:
            raise httpx.ConnectError(step.refuse, request=request)

        async def body():
            for chunk in step.chunks:
                await asyncio.sleep(0)
                yield chunk
            if step.fail_with is not None:
                raise step.fail_with
            if step.hang:
                await asyncio.Event().wait()

        headers = {"content-type": "text/event-stream", **step.headers}
        return httpx.Response(step.status, headers=headers, content=body())


@pytest_asyncio.fixture
async def scripted():
    server = ScriptedServer()
    yield server
    await server.client.aclose()


@pytest.fixture
def metrics():
    """A private bus with a summary already subscribed."""
    bus = MetricsBus()
    summary = MetricsSummary()
    bus.subscribe(summary.record)
    return bus, summary


@pytest.fixture
def fast_backoff(monkeypatch):
    monkeypatch.setattr(settings, "SSE_RECONNECT_BASE_DELAY_S", 0.001)
    monkeypatch.setattr(settings, "SSE_RECONNECT_MAX_DELAY_S", 0.01)
