"""
MODULE OVERVIEW:
One `open()` call's whole connection lifecycle: request, state machine, dispatch.

WHAT IS HAPPENING HERE:
A session moves idle -> connecting -> open -> closed and never comes back from closed.
All of it (connecting, reading, parsing, running handlers) happens on a single asyncio
task, so handlers never run concurrently with each other or with the read loop, and no
locks are needed. Other sessions share nothing with this one.

`close()` is cooperative. Inside a handler it only flips the state, and the read loop
notices right after that handler's dispatch. From anywhere else, when no handler is
running, it also cancels the I/O task so a read blocked on a silent server returns.

Reconnection is opt-in (`params.reconnect`). When enabled, a dropped stream or a
transport-level connect failure sends the session back to `connecting`, carrying the last
event id in `Last-Event-ID`, after the server's `retry:` hint or a backoff delay.
"""
import asyncio
import time

import httpx
from loguru import logger

from eventstream.parser import EventStreamParser
from eventstream.reader import StreamOutcome, StreamReader
from eventstream.registry import EventKind, Handler, HandlerRegistry, check_handler, handler_name
from shared.client_utils import make_session_id, make_session_stats, reconnect_delay, utcnow_iso
from shared.config import settings
from shared.metrics import (
    METRIC_HTTP_REQ_DURATION,
    METRIC_HTTP_REQ_SENDING,
    METRIC_HTTP_REQS,
    METRIC_SSE_EVENT,
    MetricsBus,
    Sample,
    metrics_bus,
)
from shared.models import CloseReason, ErrorEvent, Event, OpenParams, SessionState, SSEResponse

_TRANSITIONS = {
    SessionState.IDLE: {SessionState.CONNECTING, SessionState.CLOSED},
    SessionState.CONNECTING: {SessionState.OPEN, SessionState.CLOSED},
    # open -> connecting only happens on an opt-in reconnect
    SessionState.OPEN: {SessionState.CONNECTING, SessionState.CLOSED},
    SessionState.CLOSED: set(),
}


class Session:
    def __init__(
        self,
        url: str,
        params: OpenParams | None = None,
        http_client: httpx.AsyncClient | None = None,
        metrics: MetricsBus | None = None,
    ):
        self.url = url
        self.params = params or OpenParams()
        self.session_id = make_session_id()
        self.state = SessionState.IDLE
        self.close_reason: CloseReason | None = None

        self.registry = HandlerRegistry()
        self.parser = EventStreamParser()
        self.reader = StreamReader(self, self.parser)
        self.stats = make_session_stats()
        self.metrics = metrics if metrics is not None else metrics_bus

        self._http = http_client
        self._owns_http = http_client is None
        self._io_task: asyncio.Task | None = None
        self._dispatching = 0
        self._opened = False

        self._status = 0
        self._headers: dict[str, str] = {}
        self._error = ""

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    @property
    def last_event_id(self) -> str | None:
        return self.parser.last_event_id

    # ==========================
    # CALLER SURFACE
    # ==========================
    def on(self, kind: "EventKind | str", handler: Handler) -> None:
        check_handler(kind, handler)
        if self.closed:
            logger.warning(f"session_id={self.session_id} event=register_ignored kind={kind} reason=closed")
            return
        self.registry.on(kind, handler)

    def close(self) -> None:
        if self.closed:
            return
        self._finish(CloseReason.CALLER)

        task = self._io_task
        if task is not None and not task.done() and not self._dispatching and task is not _current_task():
            task.cancel()

    # ==========================
    # LIFECYCLE
    # ==========================
    async def run(self) -> SSEResponse:
        sid = self.session_id
        if self.closed:
            logger.info(f"session_id={sid} url={self.url} event=close reason=caller_before_connect")
            return self.response()

        self._io_task = asyncio.create_task(self._drive())
        try:
            await self._io_task
        except asyncio.CancelledError:
            outer = _current_task()
            if self.close_reason is not CloseReason.CALLER or (outer is not None and outer.cancelling()):
                self._finish(CloseReason.ERROR)
                raise
        finally:
            self._io_task = None
            if self._owns_http and self._http is not None:
                await self._http.aclose()
                self._http = None

        if not self.closed:
            self._finish(CloseReason.SERVER)
        logger.info(
            f"session_id={sid} url={self.url} event=close reason={self.close_reason.value} "
            f"status={self._status} events={self.stats['events_received']}"
        )
        return self.response()

    def response(self) -> SSEResponse:
        return SSEResponse(
            url=self.url,
            status=self._status,
            headers=self._headers,
            error=self._error,
            close_reason=self.close_reason,
            events_received=self.stats["events_received"],
        )

    async def _drive(self) -> None:
        failures = 0
        while True:
            if self.state is not SessionState.CONNECTING:
                self._transition(SessionState.CONNECTING)

            outcome = await self._attempt()
            if self.closed:
                return
            if outcome is StreamOutcome.REJECTED:
                self._finish(CloseReason.ERROR)
                return

            terminal = CloseReason.SERVER if outcome is StreamOutcome.EOF else CloseReason.ERROR
            if not self._may_reconnect():
                self._finish(terminal)
                return

            failures = 0 if outcome is StreamOutcome.EOF else failures + 1
            self.stats["reconnect_count"] += 1
            delay = reconnect_delay(max(failures, 1), self.parser.retry_ms)
            logger.warning(
                f"session_id={self.session_id} event=reconnect attempt={self.stats['reconnect_count']} "
                f"delay={delay:.2f}s last_event_id={self.last_event_id}"
            )
            await asyncio.sleep(delay)
            if self.closed:
                return

    async def _attempt(self) -> StreamOutcome:
        sid = self.session_id
        http = self._client()
        started = time.perf_counter()
        try:
            request = http.build_request(
                self.params.method,
                self.url,
                headers=self._request_headers(),
                content=self.params.body.encode() if self.params.body else None,
                timeout=self._timeout(),
            )
            self._apply_cookies(request)
            response = await http.send(request, stream=True)
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            self._push_request_metrics(started, None)
            logger.warning(f"session_id={sid} url={self.url} event=connect_error reason='{e}'")
            await self.report(ErrorEvent(kind="connection", message=f"connection failed: {e or type(e).__name__}", cause=e))
            retryable = isinstance(e, (httpx.TransportError, OSError)) and not isinstance(e, httpx.UnsupportedProtocol)
            return StreamOutcome.FAILED if retryable else StreamOutcome.REJECTED

        headers_at = time.perf_counter()
        self._status = response.status_code
        self._headers = _canonical_headers(response.headers)
        try:
            if not response.is_success:
                logger.warning(f"session_id={sid} url={self.url} event=rejected status={self._status}")
                await self.report(ErrorEvent(
                    kind="connection",
                    message=f"unexpected status code {self._status}",
                    status=self._status,
                ))
                return StreamOutcome.REJECTED

            content_type = response.headers.get("content-type", "")
            if not content_type.startswith("text/event-stream"):
                logger.warning(f"session_id={sid} event=content_type_mismatch content_type='{content_type}'")

            await self._mark_open()
            if self.closed:
                return StreamOutcome.CLOSED
            return await self.reader.pump(response)
        finally:
            await response.aclose()
            self._push_request_metrics(started, headers_at)

    async def _mark_open(self) -> None:
        self._transition(SessionState.OPEN)
        self._error = ""
        if self._opened:
            logger.info(f"session_id={self.session_id} url={self.url} event=reconnected status={self._status}")
            return
        self._opened = True
        self.stats["connected_at"] = utcnow_iso()
        logger.info(f"session_id={self.session_id} url={self.url} event=open status={self._status}")
        await self._emit(EventKind.OPEN)

    # ==========================
    # DISPATCH
    # ==========================
    async def deliver(self, event: Event) -> None:
        if self.closed:
            return
        self.stats["events_received"] += 1
        self.stats["last_event_at"] = utcnow_iso()
        self._publish(METRIC_SSE_EVENT, 1)
        await self._emit(EventKind.EVENT, event)

    async def report(self, error: ErrorEvent) -> None:
        """Send `error` to the error handlers. Faults raised by those handlers are only logged."""
        if error.kind != "handler":
            self._error = error.message
        if not self.registry.handlers(EventKind.ERROR):
            logger.warning(f"session_id={self.session_id} event=error_unhandled kind={error.kind} reason='{error.message}'")
            return

        self._dispatching += 1
        try:
            faults = await self.registry.dispatch(EventKind.ERROR, error)
        finally:
            self._dispatching -= 1
        for fault in faults:
            self.stats["handler_errors"] += 1
            logger.error(
                f"session_id={self.session_id} event=error_handler_failed "
                f"handler={handler_name(fault.handler)} reason='{fault.exc}'"
            )

    async def _emit(self, kind: EventKind, *args) -> None:
        self._dispatching += 1
        try:
            faults = await self.registry.dispatch(kind, *args)
        finally:
            self._dispatching -= 1
        for fault in faults:
            self.stats["handler_errors"] += 1
            name = handler_name(fault.handler)
            logger.warning(f"session_id={self.session_id} event=handler_error kind={fault.kind} handler={name} reason='{fault.exc}'")
            await self.report(ErrorEvent(
                kind="handler",
                message=f"{fault.kind} handler {name} raised {type(fault.exc).__name__}: {fault.exc}",
                cause=fault.exc,
            ))

    # ==========================
    # HELPERS
    # ==========================
    def _transition(self, new: SessionState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid session transition {self.state.value} -> {new.value}")
        logger.debug(f"session_id={self.session_id} event=state from={self.state.value} to={new.value}")
        self.state = new

    def _finish(self, reason: CloseReason) -> None:
        if self.closed:
            return
        self._transition(SessionState.CLOSED)
        self.close_reason = reason

    def _may_reconnect(self) -> bool:
        if not self.params.reconnect:
            return False
        limit = self.params.max_reconnects
        if limit is None:
            limit = settings.SSE_MAX_RECONNECTS
        if self.stats["reconnect_count"] >= limit:
            logger.warning(f"session_id={self.session_id} event=reconnect_exhausted attempts={limit}")
            return False
        return True

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(follow_redirects=True)
        return self._http

    def _timeout(self) -> httpx.Timeout:
        read = self.params.timeout if self.params.timeout is not None else settings.SSE_READ_TIMEOUT_S
        return httpx.Timeout(read, connect=settings.SSE_CONNECT_TIMEOUT_S)

    def _request_headers(self) -> httpx.Headers:
        headers = httpx.Headers({
            "User-Agent": settings.SSE_USER_AGENT,
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
        })
        for name, value in self.params.headers.items():
            headers[name] = value
        if self.stats["reconnect_count"] and self.last_event_id:
            headers["Last-Event-ID"] = self.last_event_id
        return headers

    def _apply_cookies(self, request: httpx.Request) -> None:
        # Appended after the client's own jar has been applied, so both reach the server
        if not self.params.cookies:
            return
        pairs = "; ".join(f"{name}={value}" for name, value in self.params.cookies.items())
        existing = request.headers.get("Cookie")
        request.headers["Cookie"] = f"{existing}; {pairs}" if existing else pairs

    def _tags(self) -> dict[str, str]:
        return {
            **self.params.tags,
            "url": self.url,
            "method": self.params.method,
            "status": str(self._status),
        }

    def _publish(self, metric: str, value: float) -> None:
        self.metrics.publish(Sample(metric=metric, value=value, tags=self._tags()))

    def _push_request_metrics(self, started: float, headers_at: float | None) -> None:
        self._publish(METRIC_HTTP_REQS, 1)
        if headers_at is not None:
            self._publish(METRIC_HTTP_REQ_SENDING, (headers_at - started) * 1000)
        self._publish(METRIC_HTTP_REQ_DURATION, (time.perf_counter() - started) * 1000)


def _canonical_headers(headers: httpx.Headers) -> dict[str, str]:
    """Response headers keyed like `Content-Type`, repeated values joined with ", "."""
    merged: dict[str, str] = {}
    for name, value in headers.multi_items():
        key = "-".join(part.capitalize() for part in name.split("-"))
        merged[key] = f"{merged[key]}, {value}" if key in merged else value
    return merged


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
