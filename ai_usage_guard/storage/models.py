"""
Data models for storage layer.

Defines the persisted entities: token usage records, source file cursors
and usage snapshots.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class TokenUsageRecord:
    """Token usage of one completed API call.

    request_id is the dedup key. When a call is observed more than once the
    observation with the greater-or-equal output_tokens wins, since the
    output count only grows while a response streams.
    """
    request_id: str
    timestamp: datetime
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    speed: str = "standard"
    web_search_requests: int = 0  # parsed, not persisted

    @property
    def total_tokens(self) -> int:
        """All tokens billed for the call."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_creation_tokens
        )


@dataclass(frozen=True)
class SourceFileCursor:
    """Sync bookkeeping for one ingested log file."""
    path: str
    mod_time: float
    record_count: int = 0


@dataclass(frozen=True)
class UsageSnapshot:
    """One poll of the two rolling usage windows."""
    timestamp: datetime
    short_window_percent: Optional[float] = None
    long_window_percent: Optional[float] = None
    short_window_resets_at: Optional[datetime] = None
    long_window_resets_at: Optional[datetime] = None
    short_window_status: Optional[int] = None  # 0=within, 1=approaching, 2=exceeded
    long_window_status: Optional[int] = None
    short_window_limit: Optional[float] = None
    short_window_remaining: Optional[float] = None
    long_window_limit: Optional[float] = None
    long_window_remaining: Optional[float] = None
    raw_json: Optional[str] = None

    @property
    def has_usage(self) -> bool:
        """Whether at least one window percentage is known."""
        return self.short_window_percent is not None or self.long_window_percent is not None


class Window(Enum):
    """The two rolling rate-limit windows."""
    SHORT = "five_hour"
    LONG = "seven_day"

    def percent_of(self, snapshot: UsageSnapshot) -> Optional[float]:
        if self is Window.SHORT:
            return snapshot.short_window_percent
        return snapshot.long_window_percent

    def resets_at_of(self, snapshot: UsageSnapshot) -> Optional[datetime]:
        if self is Window.SHORT:
            return snapshot.short_window_resets_at
        return snapshot.long_window_resets_at
