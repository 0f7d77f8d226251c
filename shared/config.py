"""
MODULE OVERVIEW:
Application-wide configuration using Pydantic Settings.

WHAT IS HAPPENING HERE:
Every timing and sizing knob of the SSE engine lives here instead of being hardcoded
deep inside the session or the reader. The engine reads `settings` at call time, so the
CLI (or a test) can adjust a value once and every new session picks it up.
"""
from pydantic_settings import BaseSettings

__version__ = "0.3.0"


class Settings(BaseSettings):
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Request defaults
    SSE_USER_AGENT: str = f"eventstream-bench/{__version__}"
    SSE_CONNECT_TIMEOUT_S: float = 10.0
    # None means a read may block forever; streams are expected to be long-lived.
    SSE_READ_TIMEOUT_S: float | None = None

    # Reconnection (only used when a session opts in)
    SSE_RECONNECT_BASE_DELAY_S: float = 1.0
    SSE_RECONNECT_MAX_DELAY_S: float = 32.0
    SSE_MAX_RECONNECTS: int = 5

    # Demo server
    DEMO_EVENT_INTERVAL_S: float = 0.5

    class Config:
        env_file = ".env"
        # Tolerate missing env vars to allow easy out-of-the-box execution
        env_file_encoding = 'utf-8'
        extra = 'ignore'


settings = Settings()
