"""
MODULE OVERVIEW:
The typed data structures passed between the SSE engine, its handlers and the glue
around it (load runner, live feed, CLI), powered by Pydantic v2.

WHAT IS HAPPENING HERE:
`Event` and `ErrorEvent` are what caller handlers receive. `OpenParams` is the validated
form of the loose `params` mapping a script hands to `open()`. `SSEResponse` is the
descriptor `open()` resolves to once the session is closed.
"""
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class CloseReason(str, Enum):
    CALLER = "caller"
    SERVER = "server"
    ERROR = "error"


# WHAT IS HAPPENING HERE:
# One fully-formed SSE frame. Frozen: once the parser emits it, nobody mutates it.
# `id` is the last id seen on the stream, not only the one set by this frame.
class Event(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str = "message"
    data: str = ""
    retry: int | None = None
    comment: str | None = None


class ErrorEvent(BaseModel):
    """What `error` handlers receive. `error()` gives the human-readable description."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    kind: Literal["connection", "stream", "handler"]
    message: str
    cause: BaseException | None = None
    status: int | None = None

    def error(self) -> str:
        return self.message

    def __str__(self) -> str:
        return self.message


class OpenParams(BaseModel):
    model_config = ConfigDict(extra="ignore")

    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None
    # Opaque to the engine; only forwarded to metrics samples.
    tags: dict[str, str] = Field(default_factory=dict)
    cookies: dict[str, str] = Field(default_factory=dict)
    timeout: float | None = None
    reconnect: bool = False
    max_reconnects: int | None = None

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value: Any) -> str:
        method = str(value or "").strip().upper()
        return method or "GET"

    @field_validator("body", mode="before")
    @classmethod
    def _strip_body(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value).strip()

    @field_validator("headers", "tags", "cookies", mode="before")
    @classmethod
    def _stringify_values(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        return {str(k): str(v) for k, v in dict(value).items()}

    @classmethod
    def from_value(cls, value: "OpenParams | dict[str, Any] | None") -> "OpenParams":
        if value is None:
            return cls()
        if isinstance(value, cls):
            return value
        return cls.model_validate(value)


class SSEResponse(BaseModel):
    url: str
    status: int = 0
    headers: dict[str, str] = Field(default_factory=dict)
    error: str = ""
    close_reason: CloseReason | None = None
    events_received: int = 0
