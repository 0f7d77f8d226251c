"""
MODULE OVERVIEW:
The per-session table of caller handlers, keyed by event kind.

WHAT IS HAPPENING HERE:
Handlers run in registration order, one at a time, on the session's own task. A handler
that raises does not stop the ones after it. The fault is collected and handed back to
the session, which turns it into an `error` dispatch. Handlers may be plain functions
or coroutine functions; an awaitable result is awaited before the next handler runs.
"""
import inspect
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple

Handler = Callable[..., Any]


class EventKind(str, Enum):
    OPEN = "open"
    EVENT = "event"
    ERROR = "error"


class HandlerFault(NamedTuple):
    kind: str
    handler: Handler
    exc: Exception


def _key(kind: Any) -> str:
    if isinstance(kind, EventKind):
        return kind.value
    if not isinstance(kind, str):
        raise TypeError(f"event kind must be a string, got {type(kind).__name__}")
    return kind


def check_handler(kind: Any, handler: Any) -> str:
    """Validate a registration and return its key. Misuse raises TypeError."""
    key = _key(kind)
    if not callable(handler):
        raise TypeError(f"handler for {key!r} must be callable, got {type(handler).__name__}")
    return key


def handler_name(handler: Handler) -> str:
    return getattr(handler, "__qualname__", None) or repr(handler)


class HandlerRegistry:
    def __init__(self):
        # Unknown kinds are kept too; they just never fire.
        self._handlers: Dict[str, List[Handler]] = {}

    def on(self, kind: "EventKind | str", handler: Handler) -> None:
        key = check_handler(kind, handler)
        self._handlers.setdefault(key, []).append(handler)

    def handlers(self, kind: "EventKind | str") -> List[Handler]:
        return list(self._handlers.get(_key(kind), ()))

    def __len__(self) -> int:
        return sum(len(v) for v in self._handlers.values())

    async def dispatch(self, kind: "EventKind | str", *args: Any) -> List[HandlerFault]:
        key = _key(kind)
        faults: List[HandlerFault] = []
        # Snapshot: handlers registered mid-dispatch fire from the next dispatch on
        for handler in self.handlers(key):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                faults.append(HandlerFault(key, handler, e))
        return faults
