import random
import uuid
from datetime import datetime, timezone

from shared.config import settings


def make_session_stats() -> dict:
    """
    Returns a fresh stats dictionary with zeroed counters.
    Every session calls this once in __init__.
    Keys: events_received, bytes_received, reconnect_count,
          handler_errors, last_event_at, connected_at.
    """
    return {
        "events_received": 0,
        "bytes_received": 0,
        "reconnect_count": 0,
        "handler_errors": 0,
        "last_event_at": None,
        "connected_at": None,
    }


def make_session_id() -> str:
    """Short readable id like 'sse-a3f2c1' so concurrent sessions are distinguishable in logs."""
    return f"sse-{uuid.uuid4().hex[:6]}"


def reconnect_delay(
    attempt: int,
    retry_ms: int | None = None,
    base_delay_s: float | None = None,
    max_delay_s: float | None = None,
) -> float:
    """
    Seconds to wait before reconnect number `attempt` (1-based).

    A `retry:` hint from the server wins and is used as-is. Without one we back off
    exponentially from the base delay, capped, plus up to 10% jitter so a fleet of
    sessions dropped at once does not reconnect in lockstep.
    """
    if retry_ms is not None:
        return max(retry_ms, 0) / 1000.0
    base = settings.SSE_RECONNECT_BASE_DELAY_S if base_delay_s is None else base_delay_s
    cap = settings.SSE_RECONNECT_MAX_DELAY_S if max_delay_s is None else max_delay_s
    delay = min(base * (2 ** max(attempt - 1, 0)), cap)
    return delay + random.uniform(0, delay * 0.1)


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
