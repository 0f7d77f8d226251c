"""
MODULE OVERVIEW:
The client handle a script's setup function receives.

WHAT IS HAPPENING HERE:
This is the only piece of the session a script touches directly. `on()` registers
handlers and `close()` asks the session to stop. Everything else (the socket, the
parser, the state machine) stays behind the session.
"""
from typing import TYPE_CHECKING

from eventstream.registry import EventKind, Handler
from shared.models import SessionState

if TYPE_CHECKING:
    from eventstream.session import Session


class SSEClient:
    def __init__(self, session: "Session"):
        self._session = session

    def on(self, kind: "EventKind | str", handler: Handler) -> "SSEClient":
        self._session.on(kind, handler)
        return self

    def close(self) -> None:
        """Stop the session. Safe to call any number of times, from any handler."""
        self._session.close()

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def url(self) -> str:
        return self._session.url

    @property
    def last_event_id(self) -> str | None:
        return self._session.last_event_id

    def __repr__(self) -> str:
        return f"<SSEClient {self._session.session_id} {self.state.value} {self.url}>"
