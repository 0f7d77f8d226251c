"""
CLI entrypoint for eventstream-bench.
"""
import asyncio
import json
import sys
from typing import List, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from eventstream.api import open as sse_open
from loadtest.visualizer import Visualizer
from loadtest.vu import run_load
from shared.config import settings

app = typer.Typer(help="eventstream-bench: drive and load-test Server-Sent Events endpoints")
console = Console()


@app.callback()
def main(log_level: str = typer.Option(settings.LOG_LEVEL, help="Log level for the engine's logger")):
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())


def _params(method: str, header: List[str], body: Optional[str], reconnect: bool = False) -> dict:
    headers = {}
    for h in header:
        name, sep, value = h.partition(":")
        if not sep:
            raise typer.BadParameter(f"header must look like 'Name: value', got {h!r}")
        headers[name.strip()] = value.strip()
    return {"method": method, "headers": headers, "body": body, "reconnect": reconnect}


@app.command("open")
def open_stream(
    url: str = typer.Argument(..., help="text/event-stream endpoint"),
    method: str = typer.Option("GET", help="HTTP method"),
    header: List[str] = typer.Option([], "--header", "-H", help="Extra header, 'Name: value'"),
    body: Optional[str] = typer.Option(None, help="Request body (for non-GET methods)"),
    close_after: Optional[int] = typer.Option(None, help="Close the stream after N events"),
    reconnect: bool = typer.Option(False, help="Reconnect with Last-Event-ID when the stream drops"),
):
    """Open one stream, print every event, then the response."""
    seen = 0

    def setup(client):
        def on_event(event):
            nonlocal seen
            seen += 1
            typer.echo(f"event id={event.id} name={event.name} data={event.data}")
            if close_after is not None and seen >= close_after:
                client.close()

        client.on("open", lambda: typer.echo("connected"))
        client.on("event", on_event)
        client.on("error", lambda e: typer.echo(f"error: {e.error()}", err=True))

    response = asyncio.run(sse_open(url, _params(method, header, body, reconnect), setup))
    typer.echo(response.model_dump_json(indent=2))
    if response.status != 200:
        raise typer.Exit(1)


@app.command()
def watch(
    url: str = typer.Argument(..., help="text/event-stream endpoint"),
    close_after: Optional[int] = typer.Option(None, help="Close the stream after N events"),
):
    """Open one stream with the rich live feed."""
    visualizer = Visualizer(url, close_after=close_after)
    try:
        asyncio.run(visualizer.run())
    except KeyboardInterrupt:
        pass


@app.command()
def load(
    url: str = typer.Argument(..., help="text/event-stream endpoint"),
    vus: int = typer.Option(1, help="Concurrent virtual users"),
    iterations: int = typer.Option(1, help="Sessions per virtual user"),
    close_after: Optional[int] = typer.Option(None, help="Each session closes after N events"),
    method: str = typer.Option("GET", help="HTTP method"),
    header: List[str] = typer.Option([], "--header", "-H", help="Extra header, 'Name: value'"),
    body: Optional[str] = typer.Option(None, help="Request body"),
    tag: List[str] = typer.Option([], help="Metric tag, 'key=value'"),
):
    """Run virtual users against an endpoint and print checks and metrics."""
    params = _params(method, header, body)
    params["tags"] = dict(t.partition("=")[::2] for t in tag)
    report = asyncio.run(run_load(url, params, vus=vus, iterations=iterations, close_after=close_after))

    checks = Table(title="Checks")
    checks.add_column("Check")
    checks.add_column("Passes", style="green", justify="right")
    checks.add_column("Fails", style="red", justify="right")
    for name, result in report.checks.items():
        checks.add_row(name, str(result.passes), str(result.fails))
    console.print(checks)

    metrics = Table(title="Metrics")
    metrics.add_column("Metric")
    metrics.add_column("Value", justify="right")
    for name, value in sorted(report.summary.counters.items()):
        metrics.add_row(name, f"{value:.0f}")
    for name, trend in sorted(report.summary.trends.items()):
        metrics.add_row(name, f"avg={trend.avg:.2f}ms min={trend.min or 0:.2f}ms max={trend.max or 0:.2f}ms")
    console.print(metrics)

    for err in report.errors[:10]:
        console.print(f"[red]{err}[/]")
    if any(r.fails for r in report.checks.values()):
        raise typer.Exit(1)


@app.command()
def serve():
    """Start the demo SSE server using Uvicorn."""
    import uvicorn
    typer.echo(f"Starting demo server on port {settings.PORT}...")
    uvicorn.run("demo_server.main:app", host="0.0.0.0", port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


@app.command()
def stats():
    """Query the demo server for how many streams it has served."""
    import httpx
    resp = httpx.get(f"http://127.0.0.1:{settings.PORT}/stats")
    typer.echo(json.dumps(resp.json()))


if __name__ == "__main__":
    app()
