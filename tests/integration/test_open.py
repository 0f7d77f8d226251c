"""End-to-end tests for open(): scripted server -> session -> handlers -> response."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from eventstream.api import open as sse_open
from shared.config import settings
from shared.metrics import METRIC_HTTP_REQS, METRIC_SSE_EVENT
from shared.models import CloseReason, SessionState

URL = "http://sse.test/stream"


def recorder(calls: list):
    """Setup function registering open/event/error handlers that append to `calls`."""
    def setup(client):
        client.on("open", lambda: calls.append(("open", None)))
        client.on("event", lambda e: calls.append(("event", e)))
        client.on("error", lambda e: calls.append(("error", e)))
    return setup


@pytest.mark.asyncio
async def test_end_to_end_single_event(scripted):
    scripted.stream(b"id:1\nevent:message\ndata:hello\n\n")
    calls = []

    response = await sse_open(URL, {}, recorder(calls), http_client=scripted.client)

    assert [kind for kind, _ in calls] == ["open", "event"]
    event = calls[1][1]
    assert (event.id, event.name, event.data) == ("1", "message", "hello")
    assert response.status == 200
    assert response.close_reason is CloseReason.SERVER
    assert response.error == ""
    assert response.events_received == 1
    assert response.headers["Content-Type"] == "text/event-stream"


@pytest.mark.asyncio
async def test_request_carries_method_body_and_headers(scripted):
    scripted.stream(b"id: pong\ndata: {\"ping\": true}\n\n")
    params = {
        "method": " post ",
        "body": ' {"ping": true} ',
        "headers": {"content-type": "application/json", "Authorization": "Bearer XXXX", "accept": "text/event-stream; q=1"},
        "tags": {"my_tag": "hello sse"},
    }
    events = []

    response = await sse_open(URL, params, lambda c: c.on("event", events.append), http_client=scripted.client)

    [request] = scripted.requests
    assert request.method == "POST"
    assert request.content == b'{"ping": true}'
    assert request.headers["authorization"] == "Bearer XXXX"
    assert request.headers["user-agent"] == settings.SSE_USER_AGENT
    assert request.headers.get_list("accept") == ["text/event-stream; q=1"]
    assert request.headers["cache-control"] == "no-cache"
    assert "last-event-id" not in request.headers
    assert [e.id for e in events] == ["pong"]
    assert response.status == 200


@pytest.mark.asyncio
async def test_params_are_optional(scripted):
    scripted.stream(b"data: x\n\n")
    events = []

    response = await sse_open(URL, lambda c: c.on("event", events.append), http_client=scripted.client)

    assert [e.data for e in events] == ["x"]
    assert scripted.requests[0].method == "GET"
    assert response.status == 200


@pytest.mark.asyncio
async def test_setup_function_is_required():
    with pytest.raises(TypeError):
        await sse_open(URL, {})
    with pytest.raises(TypeError):
        await sse_open(URL, {}, "not callable")


@pytest.mark.asyncio
async def test_close_inside_handler_stops_the_rest_of_the_chunk(scripted):
    scripted.stream(b"id: 1\ndata: a\n\nid: 2\ndata: b\n\nid: 3\ndata: c\n\n")
    events = []

    def setup(client):
        def on_event(event):
            events.append(event)
            client.close()
        client.on("event", on_event)

    response = await sse_open(URL, None, setup, http_client=scripted.client)

    assert [e.id for e in events] == ["1"]
    assert response.status == 200
    assert response.close_reason is CloseReason.CALLER


@pytest.mark.asyncio
async def test_close_is_idempotent(scripted):
    scripted.stream(b"data: a\n\ndata: b\n\n")
    handle = {}
    errors = []

    def setup(client):
        handle["client"] = client

        def on_event(event):
            client.close()
            client.close()
            assert client.state is SessionState.CLOSED
        client.on("event", on_event)
        client.on("error", errors.append)

    response = await sse_open(URL, None, setup, http_client=scripted.client)

    handle["client"].close()
    assert handle["client"].state is SessionState.CLOSED
    assert response.close_reason is CloseReason.CALLER
    assert errors == []


@pytest.mark.asyncio
async def test_close_during_setup_never_connects(scripted):
    scripted.stream(b"data: a\n\n")
    calls = []

    def setup(client):
        recorder(calls)(client)
        client.close()

    response = await sse_open(URL, None, setup, http_client=scripted.client)

    assert scripted.requests == []
    assert calls == []
    assert response.status == 0
    assert response.close_reason is CloseReason.CALLER


@pytest.mark.asyncio
async def test_setup_error_propagates_without_connecting(scripted):
    scripted.stream(b"data: a\n\n")

    def setup(client):
        raise RuntimeError("error in setup")

    with pytest.raises(RuntimeError, match="error in setup"):
        await sse_open(URL, None, setup, http_client=scripted.client)
    assert scripted.requests == []


@pytest.mark.asyncio
async def test_handler_isolation_across_events(scripted):
    scripted.stream(b"id: 1\ndata: a\n\nid: 2\ndata: b\n\n")
    seen = []
    errors = []

    def explode_on_first(event):
        if event.id == "1":
            raise ValueError("bad event")

    def setup(client):
        client.on("event", explode_on_first)
        client.on("event", lambda e: seen.append(e.id))
        client.on("error", errors.append)

    response = await sse_open(URL, None, setup, http_client=scripted.client)

    assert seen == ["1", "2"]
    [err] = errors
    assert err.kind == "handler"
    assert isinstance(err.cause, ValueError)
    assert "bad event" in err.error()
    # A handler fault is not a stream failure
    assert response.close_reason is CloseReason.SERVER
    assert response.error == ""


@pytest.mark.asyncio
async def test_faulty_error_handler_is_not_redispatched(scripted):
    scripted.refuse()
    calls = []

    def bad_error_handler(err):
        calls.append("bad")
        raise RuntimeError("error handler broke")

    def setup(client):
        client.on("error", bad_error_handler)
        client.on("error", lambda e: calls.append("good"))

    response = await sse_open(URL, None, setup, http_client=scripted.client)

    assert calls == ["bad", "good"]
    assert response.close_reason is CloseReason.ERROR


@pytest.mark.asyncio
async def test_non_2xx_status_is_a_connection_error(scripted):
    scripted.stream(b"data: never\n\n", status=404)
    calls = []

    response = await sse_open(URL, None, recorder(calls), http_client=scripted.client)

    assert [kind for kind, _ in calls] == ["error"]
    err = calls[0][1]
    assert err.kind == "connection"
    assert err.status == 404
    assert response.status == 404
    assert "404" in response.error
    assert response.close_reason is CloseReason.ERROR


@pytest.mark.asyncio
async def test_refused_connection_never_fires_open(scripted):
    scripted.refuse("connection refused")
    calls = []

    response = await sse_open(URL, None, recorder(calls), http_client=scripted.client)

    assert [kind for kind, _ in calls] == ["error"]
    err = calls[0][1]
    assert err.kind == "connection"
    assert isinstance(err.cause, httpx.ConnectError)
    assert "connection refused" in err.error()
    assert response.status == 0
    assert response.close_reason is CloseReason.ERROR


@pytest.mark.asyncio
async def test_invalid_url_is_reported_not_raised():
    calls = []

    response = await sse_open("INVALID", None, recorder(calls))

    assert [kind for kind, _ in calls] == ["error"]
    assert response.status == 0
    assert response.error
    assert response.close_reason is CloseReason.ERROR


@pytest.mark.asyncio
async def test_stream_error_after_open(scripted):
    scripted.stream(b"id: 1\ndata: a\n\ndata: partial", fail_with=httpx.ReadError("connection reset"))
    calls = []

    response = await sse_open(URL, None, recorder(calls), http_client=scripted.client)

    assert [kind for kind, _ in calls] == ["open", "event", "error"]
    err = calls[2][1]
    assert err.kind == "stream"
    assert isinstance(err.cause, httpx.ReadError)
    assert response.status == 200
    assert response.close_reason is CloseReason.ERROR
    assert "connection reset" in response.error


@pytest.mark.asyncio
async def test_unterminated_frame_at_eof_is_discarded(scripted):
    scripted.stream(b"data: a\n\n", b"data: b\n")
    events = []

    response = await sse_open(URL, None, lambda c: c.on("event", events.append), http_client=scripted.client)

    assert [e.data for e in events] == ["a"]
    assert response.close_reason is CloseReason.SERVER


@pytest.mark.asyncio
async def test_failures_without_error_handler_are_swallowed(scripted):
    scripted.stream(b"data: a\n\n", fail_with=httpx.ReadError("gone"))

    response = await sse_open(URL, None, lambda c: None, http_client=scripted.client)

    assert response.close_reason is CloseReason.ERROR
    assert response.error


@pytest.mark.asyncio
async def test_async_handlers(scripted):
    scripted.stream(b"data: a\n\ndata: b\n\n")
    seen = []

    async def on_event(event):
        await asyncio.sleep(0)
        seen.append(event.data)

    response = await sse_open(URL, None, lambda c: c.on("event", on_event), http_client=scripted.client)

    assert seen == ["a", "b"]
    assert response.status == 200


@pytest.mark.asyncio
async def test_registration_after_close_is_ignored(scripted):
    scripted.stream(b"data: a\n\ndata: b\n\n")
    late = []

    def setup(client):
        def on_event(event):
            client.close()
            client.on("event", late.append)
        client.on("event", on_event)

    await sse_open(URL, None, setup, http_client=scripted.client)

    assert late == []


@pytest.mark.asyncio
async def test_close_from_another_task_cancels_blocked_read(scripted):
    scripted.stream(b"id: 1\ndata: a\n\n", hang=True)
    handle = {}
    events = []

    def setup(client):
        handle["client"] = client
        client.on("event", events.append)

    task = asyncio.create_task(sse_open(URL, None, setup, http_client=scripted.client))
    for _ in range(200):
        await asyncio.sleep(0.005)
        if events:
            break
    assert handle["client"].state is SessionState.OPEN

    handle["client"].close()
    response = await asyncio.wait_for(task, timeout=2)

    assert [e.id for e in events] == ["1"]
    assert response.status == 200
    assert response.close_reason is CloseReason.CALLER
    assert handle["client"].last_event_id == "1"


@pytest.mark.asyncio
async def test_outer_cancellation_propagates(scripted):
    scripted.stream(hang=True)
    task = asyncio.create_task(sse_open(URL, None, lambda c: None, http_client=scripted.client))
    await asyncio.sleep(0.05)

    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_metrics_samples_are_tagged(scripted, metrics):
    bus, summary = metrics
    scripted.stream(b"data: a\n\ndata: b\n\n")

    await sse_open(URL, {"tags": {"my_tag": "hello"}}, lambda c: None, http_client=scripted.client, metrics=bus)

    assert summary.count(METRIC_SSE_EVENT, url=URL, my_tag="hello", status="200") == 2
    assert summary.counters[METRIC_HTTP_REQS] == 1
    assert summary.trends["http_req_duration"].count == 1
    assert summary.trends["http_req_sending"].count == 1


@pytest.mark.asyncio
async def test_sessions_are_independent(scripted):
    scripted.stream(b"id: 1\ndata: a\n\n")
    first, second = [], []

    r1, r2 = await asyncio.gather(
        sse_open(URL, None, lambda c: c.on("event", first.append), http_client=scripted.client),
        sse_open(URL, None, lambda c: c.on("event", second.append), http_client=scripted.client),
    )

    assert len(first) == len(second) == 1
    assert r1.status == r2.status == 200


@pytest.mark.asyncio
async def test_close_while_connecting_cancels_the_request(scripted):
    scripted.stall()
    handle = {}
    calls = []

    def setup(client):
        handle["client"] = client
        recorder(calls)(client)

    task = asyncio.create_task(sse_open(URL, None, setup, http_client=scripted.client))
    for _ in range(200):
        await asyncio.sleep(0.005)
        if scripted.requests:
            break
    assert handle["client"].state is SessionState.CONNECTING

    handle["client"].close()
    response = await asyncio.wait_for(task, timeout=2)

    assert calls == []
    assert response.status == 0
    assert response.close_reason is CloseReason.CALLER


@pytest.mark.asyncio
async def test_cookies_reach_an_injected_client(scripted):
    scripted.stream(b"data: a\n\n")
    scripted.client.cookies.set("jar", "1", domain="sse.test")

    await sse_open(URL, {"cookies": {"session": "abc", "n": 2}}, lambda c: None, http_client=scripted.client)

    assert scripted.requests[0].headers["cookie"] == "jar=1; session=abc; n=2"


@pytest.mark.asyncio
async def test_cookies_only_when_given(scripted):
    scripted.stream(b"data: a\n\n")

    await sse_open(URL, {"cookies": {"session": "abc"}}, lambda c: None, http_client=scripted.client)
    await sse_open(URL, None, lambda c: None, http_client=scripted.client)

    first, second = scripted.requests
    assert first.headers["cookie"] == "session=abc"
    assert "cookie" not in second.headers


@pytest.mark.asyncio
async def test_response_headers_use_canonical_names(scripted):
    scripted.stream(b"data: a\n\n", headers={"x-request-id": "r1", "cache-control": "no-cache"})

    response = await sse_open(URL, None, lambda c: None, http_client=scripted.client)

    assert response.headers["Content-Type"] == "text/event-stream"
    assert response.headers["X-Request-Id"] == "r1"
    assert response.headers["Cache-Control"] == "no-cache"
    assert "content-type" not in response.headers


@pytest.mark.asyncio
async def test_misuse_after_close_still_raises(scripted):
    scripted.stream(b"data: a\n\n")
    handle = {}

    def setup(client):
        handle["client"] = client
        client.close()

    await sse_open(URL, None, setup, http_client=scripted.client)

    client = handle["client"]
    with pytest.raises(TypeError):
        client.on("event", "not a function")
    with pytest.raises(TypeError):
        client.on(42, lambda e: None)
    # Valid registrations after close are dropped quietly
    client.on("event", lambda e: None)
