"""
Configuration for Sofa SDK.

Uses pydantic-settings for environment variable loading. Every setting has
a default suitable for a local development server, so constructing the SDK
without any environment works out of the box.

How to change safely:
    - Add new settings with defaults that keep existing callers working
    - Tracker policy values flow through TrackerPolicy; add fields there
      rather than reading settings from inside the tracker
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import Field
from pydantic_settings import BaseSettings

DEFAULT_SERVER_URL = "http://127.0.0.1:5984/"


class SofaSettings(BaseSettings):
    """Client configuration loaded from environment."""

    # Server connection
    server_url: str = Field(default=DEFAULT_SERVER_URL, description="Database server base URL")
    request_timeout: float = Field(default=30.0, description="HTTP request timeout seconds")

    # Change feed
    heartbeat_ms: int = Field(default=30000, description="Change feed heartbeat interval (ms)")
    reconnect_initial_delay: float = Field(default=0.5, description="First reconnect delay seconds")
    reconnect_max_delay: float = Field(default=30.0, description="Upper bound on reconnect delay")
    reconnect_backoff: float = Field(default=2.0, description="Reconnect delay multiplier")
    reconnect_max_attempts: int = Field(
        default=5, description="Consecutive failed reconnects before giving up (0 = forever)"
    )
    reorder_window: int = Field(
        default=0, description="Out-of-order change events held while waiting for a gap to fill"
    )
    max_sequence_gap: int | None = Field(
        default=None, description="Sequence jump that is reported as a possible gap"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_format: str = Field(default="text", description="Log format: text or json")

    model_config = {"env_prefix": "SOFA_"}


@dataclass(frozen=True)
class TrackerPolicy:
    """Reconnect and sequence-gap policy for the change tracker.

    Attributes:
        heartbeat_ms: Heartbeat interval requested from the change feed
        initial_delay: Delay before the first reconnect attempt
        max_delay: Upper bound on any reconnect delay
        backoff: Multiplier applied per consecutive failed attempt
        max_attempts: Consecutive failures tolerated (0 = unlimited)
        reorder_window: Out-of-order events held back (0 = no reordering)
        max_sequence_gap: Jump reported as a SequenceGap (None = never)
    """

    heartbeat_ms: int = 30000
    initial_delay: float = 0.5
    max_delay: float = 30.0
    backoff: float = 2.0
    max_attempts: int = 5
    reorder_window: int = 0
    max_sequence_gap: int | None = None

    @classmethod
    def from_settings(cls, settings: SofaSettings) -> TrackerPolicy:
        """Build the policy from loaded settings."""
        return cls(
            heartbeat_ms=settings.heartbeat_ms,
            initial_delay=settings.reconnect_initial_delay,
            max_delay=settings.reconnect_max_delay,
            backoff=settings.reconnect_backoff,
            max_attempts=settings.reconnect_max_attempts,
            reorder_window=settings.reorder_window,
            max_sequence_gap=settings.max_sequence_gap,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect attempt number ``attempt`` (1-based)."""
        delay = self.initial_delay * (self.backoff ** max(attempt - 1, 0))
        return min(delay, self.max_delay)

    def gives_up_after(self, attempt: int) -> bool:
        """Whether ``attempt`` consecutive failures exhaust the policy."""
        return self.max_attempts > 0 and attempt > self.max_attempts
