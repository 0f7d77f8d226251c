"""
MODULE OVERVIEW:
The metrics hand-off between the SSE engine and whatever reports on it.

WHAT IS HAPPENING HERE:
The engine does not know who consumes its numbers. It publishes `Sample`s on a bus and
any number of subscribers (the load runner's `MetricsSummary`, a test, an exporter)
pick them up. Publishing never fails the session: a broken subscriber is logged and skipped.
"""
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, List

from loguru import logger
from pydantic import BaseModel, Field

METRIC_SSE_EVENT = "sse_event"
METRIC_HTTP_REQS = "http_reqs"
METRIC_HTTP_REQ_SENDING = "http_req_sending"
METRIC_HTTP_REQ_DURATION = "http_req_duration"

COUNTERS = {METRIC_SSE_EVENT, METRIC_HTTP_REQS}


class Sample(BaseModel):
    metric: str
    value: float
    tags: dict[str, str] = Field(default_factory=dict)
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class MetricsBus:
    """
    A minimal pub/sub bus decoupling the sessions that emit samples from the sinks that aggregate them.
    """
    def __init__(self):
        self._subscribers: List[Callable[[Sample], None]] = []

    def subscribe(self, callback: Callable[[Sample], None]):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[Sample], None]):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def publish(self, sample: Sample):
        for sub in self._subscribers:
            try:
                sub(sample)
            except Exception as e:
                logger.error(f"Error in metrics subscriber during publish: {e}")


class TrendStats(BaseModel):
    count: int = 0
    total: float = 0.0
    min: float | None = None
    max: float | None = None

    @property
    def avg(self) -> float:
        return self.total / self.count if self.count else 0.0

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.min = value if self.min is None else min(self.min, value)
        self.max = value if self.max is None else max(self.max, value)


class MetricsSummary:
    """Aggregates samples into counters and trends. Subscribe it to a bus with `summary.record`."""

    def __init__(self):
        self.counters: dict[str, float] = defaultdict(float)
        self.trends: dict[str, TrendStats] = defaultdict(TrendStats)
        self.samples: List[Sample] = []

    def record(self, sample: Sample) -> None:
        self.samples.append(sample)
        if sample.metric in COUNTERS:
            self.counters[sample.metric] += sample.value
        else:
            self.trends[sample.metric].add(sample.value)

    def count(self, metric: str, **tags: str) -> int:
        """Number of samples for `metric` whose tags include every given tag."""
        return sum(
            1 for s in self.samples
            if s.metric == metric and all(s.tags.get(k) == v for k, v in tags.items())
        )


# The singleton bus used when a session is not handed one explicitly
metrics_bus = MetricsBus()
