"""
MODULE OVERVIEW:
The Rich terminal feed for a single SSE session.

WHAT IS HAPPENING HERE:
The session runs in a background task. Its handlers, registered in the setup function,
only append to a few deques, and the Live layout re-renders from those deques four
times a second, so a bursty server never blocks on the terminal.
"""
import asyncio
from collections import deque
from datetime import datetime
from typing import Any

from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from eventstream.api import open as sse_open
from eventstream.sse_client import SSEClient
from shared.models import ErrorEvent, Event, SSEResponse


class Visualizer:
    def __init__(self, url: str, params: dict[str, Any] | None = None, close_after: int | None = None):
        self.url = url
        self.params = params
        self.close_after = close_after
        self.client: SSEClient | None = None
        self.recent_events = deque(maxlen=10)
        self.timeline = deque(maxlen=5)
        self.status = "IDLE"
        self.events_received = 0
        self.errors = 0
        self.response: SSEResponse | None = None

    def on_status_change(self, status: str):
        self.status = status
        ts = datetime.now().strftime("%H:%M:%S")
        self.timeline.appendleft(f"[{ts}] State: {status}")

    def on_event(self, event: Event):
        self.events_received += 1
        ts = datetime.now().strftime("%H:%M:%S")
        data = event.data.replace("\n", " | ")
        data = data[:40] + "..." if len(data) > 40 else data
        self.recent_events.appendleft((ts, event.id or "", event.name, data))
        if self.close_after is not None and self.events_received >= self.close_after and self.client:
            self.client.close()

    def on_error(self, err: ErrorEvent):
        self.errors += 1
        self.on_status_change(f"ERROR ({err.kind}): {err.error()}")

    def setup(self, client: SSEClient):
        self.client = client
        client.on("open", lambda: self.on_status_change("OPEN"))
        client.on("event", self.on_event)
        client.on("error", self.on_error)
        self.on_status_change("CONNECTING")

    def generate_layout(self) -> Layout:
        layout = Layout()
        layout.split_column(
            Layout(name="header", size=3),
            Layout(name="main")
        )
        layout["main"].split_row(
            Layout(name="left", ratio=2),
            Layout(name="right", ratio=1)
        )
        layout["right"].split_column(
            Layout(name="stats"),
            Layout(name="timeline")
        )

        color = "green" if "OPEN" in self.status else "red" if "ERROR" in self.status else "yellow"
        layout["header"].update(Panel(f"[{color} bold]{self.url} | Status: {self.status}[/]", style=color))

        table = Table(title=f"Last {self.recent_events.maxlen} events", expand=True)
        table.add_column("Received", style="cyan", no_wrap=True)
        table.add_column("Id", style="blue")
        table.add_column("Name", style="magenta")
        table.add_column("Data", style="green")
        for e in self.recent_events:
            table.add_row(*e)
        layout["left"].update(Panel(table, title="Stream"))

        last_id = self.client.last_event_id if self.client else None
        stats_text = (
            f"Events Received: {self.events_received}\n"
            f"Errors: {self.errors}\n"
            f"Last Event ID: {last_id or '-'}"
        )
        layout["stats"].update(Panel(stats_text, title="Session Stats"))
        layout["timeline"].update(Panel("\n".join(self.timeline), title="Timeline"))
        return layout

    async def run(self) -> SSEResponse:
        session_task = asyncio.create_task(sse_open(self.url, self.params, self.setup))

        with Live(self.generate_layout(), refresh_per_second=4) as live:
            while not session_task.done():
                live.update(self.generate_layout())
                await asyncio.sleep(0.25)
            self.response = session_task.result()
            self.on_status_change(f"CLOSED ({self.response.close_reason.value if self.response.close_reason else '-'})")
            live.update(self.generate_layout())
        return self.response
