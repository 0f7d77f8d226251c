"""
MODULE OVERVIEW:
A small virtual-user runner on top of `eventstream.api.open`.

WHAT IS HAPPENING HERE:
Each virtual user is its own asyncio task and runs its iterations one after another.
Every iteration is one `open()` call with its own session, so VUs share nothing but
the metrics bus and the report they append to. After each iteration we record the
`status is 200` check, the same one the usage scripts assert on.
"""
import asyncio
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from eventstream.api import open as sse_open
from eventstream.sse_client import SSEClient
from shared.metrics import MetricsBus, MetricsSummary
from shared.models import ErrorEvent, Event, SSEResponse

CHECK_STATUS_200 = "status is 200"


class CheckResult(BaseModel):
    passes: int = 0
    fails: int = 0


class LoadReport(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    checks: dict[str, CheckResult] = Field(default_factory=dict)
    responses: list[SSEResponse] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    summary: MetricsSummary = Field(default_factory=MetricsSummary)

    def check(self, name: str, ok: bool) -> None:
        result = self.checks.setdefault(name, CheckResult())
        if ok:
            result.passes += 1
        else:
            result.fails += 1

    @property
    def events_received(self) -> int:
        return sum(r.events_received for r in self.responses)


async def run_iteration(
    vu: int,
    url: str,
    params: dict[str, Any] | None,
    report: LoadReport,
    close_after: int | None = None,
    http_client: httpx.AsyncClient | None = None,
    metrics: MetricsBus | None = None,
) -> SSEResponse:
    seen = 0

    def setup(client: SSEClient):
        def on_event(event: Event):
            nonlocal seen
            seen += 1
            if close_after is not None and seen >= close_after:
                client.close()

        def on_error(err: ErrorEvent):
            report.errors.append(f"vu={vu} {err.error()}")

        client.on("event", on_event)
        client.on("error", on_error)

    response = await sse_open(url, params, setup, http_client=http_client, metrics=metrics)
    report.responses.append(response)
    report.check(CHECK_STATUS_200, response.status == 200)
    return response


async def run_vu(vu: int, iterations: int, *args: Any, **kwargs: Any) -> None:
    for i in range(iterations):
        response = await run_iteration(vu, *args, **kwargs)
        logger.debug(f"vu={vu} iteration={i} status={response.status} events={response.events_received}")


async def run_load(
    url: str,
    params: dict[str, Any] | None = None,
    vus: int = 1,
    iterations: int = 1,
    close_after: int | None = None,
    http_client: httpx.AsyncClient | None = None,
    metrics: MetricsBus | None = None,
) -> LoadReport:
    report = LoadReport()
    bus = metrics or MetricsBus()
    bus.subscribe(report.summary.record)
    logger.info(f"url={url} event=load_start vus={vus} iterations={iterations}")
    try:
        await asyncio.gather(*(
            run_vu(vu, iterations, url, params, report, close_after, http_client, bus)
            for vu in range(vus)
        ))
    finally:
        bus.unsubscribe(report.summary.record)
    logger.info(f"url={url} event=load_done sessions={len(report.responses)} events={report.events_received}")
    return report
