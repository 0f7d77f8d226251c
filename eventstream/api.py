"""
MODULE OVERVIEW:
The invocation surface scripts call: `open(url, params, setup_fn)`.

WHAT IS HAPPENING HERE:
Two phases. First, configure: we build the session and hand a fresh client handle to
`setup_fn` so every handler is registered before a single byte can arrive. Second,
stream: we start the request and suspend the caller until the session is closed, then
resolve to an `SSEResponse`.

Runtime failures (refused connections, dropped streams, handler exceptions) never escape
from here. They go to `error` handlers and into the response. Only misuse of the API
itself raises.
"""
import asyncio
import inspect
from typing import Any, Callable

import httpx

from eventstream.session import Session
from eventstream.sse_client import SSEClient
from shared.metrics import MetricsBus
from shared.models import OpenParams, SSEResponse

SetupFn = Callable[[SSEClient], Any]


async def open(
    url: str,
    params: "OpenParams | dict[str, Any] | SetupFn | None" = None,
    setup_fn: SetupFn | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
    metrics: MetricsBus | None = None,
) -> SSEResponse:
    # `params` is optional: open(url, setup_fn) works too
    if setup_fn is None and callable(params) and not isinstance(params, (dict, OpenParams)):
        params, setup_fn = None, params
    if setup_fn is None or not callable(setup_fn):
        raise TypeError("last argument to open() must be a function")

    session = Session(url, OpenParams.from_value(params), http_client=http_client, metrics=metrics)
    client = SSEClient(session)
    try:
        result = setup_fn(client)
        if inspect.isawaitable(result):
            await result
    except Exception:
        # A broken setup function is a script bug: no request is made
        session.close()
        raise

    return await session.run()


def open_blocking(
    url: str,
    params: "OpenParams | dict[str, Any] | SetupFn | None" = None,
    setup_fn: SetupFn | None = None,
    **kwargs: Any,
) -> SSEResponse:
    """`open()` for plain synchronous scripts. Must not be called from a running event loop."""
    return asyncio.run(open(url, params, setup_fn, **kwargs))
