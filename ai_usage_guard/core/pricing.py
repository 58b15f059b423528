"""
Pricing calculations and rate management.

Handles cost computations for the supported model families and aggregates
record sets into cost summaries.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from ai_usage_guard.storage.db import to_utc
from ai_usage_guard.storage.models import TokenUsageRecord

PER_MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a model family, in USD per 1M tokens."""
    input: Decimal
    output: Decimal
    cache_write: Decimal
    cache_read: Decimal


OPUS = ModelPricing(
    input=Decimal("15.00"),
    output=Decimal("75.00"),
    cache_write=Decimal("18.75"),
    cache_read=Decimal("1.50"),
)
SONNET = ModelPricing(
    input=Decimal("3.00"),
    output=Decimal("15.00"),
    cache_write=Decimal("3.75"),
    cache_read=Decimal("0.30"),
)
HAIKU = ModelPricing(
    input=Decimal("0.80"),
    output=Decimal("4.00"),
    cache_write=Decimal("1.00"),
    cache_read=Decimal("0.08"),
)

# Checked in order; the first case-sensitive substring match wins
MODEL_TIERS: List[Tuple[str, ModelPricing]] = [
    ("opus", OPUS),
    ("haiku", HAIKU),
]
DEFAULT_PRICING = SONNET


@dataclass(frozen=True)
class TokenBreakdown:
    """Token totals per billing category."""
    input_tokens: int
    output_tokens: int
    cache_read_tokens: int
    cache_creation_tokens: int

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_creation_tokens
        )


@dataclass(frozen=True)
class CostSummary:
    """Aggregated cost of a record set."""
    total_cost: float
    token_breakdown: TokenBreakdown
    record_count: int
    oldest_record: Optional[datetime]
    newest_record: Optional[datetime]


@dataclass(frozen=True)
class CostPoint:
    """Cost of a single call at the time it happened."""
    timestamp: datetime
    cost_usd: float


def pricing_for_model(model: str) -> ModelPricing:
    """Get pricing for a free-text model identifier.

    Unrecognized models are priced as the default (sonnet) family.
    """
    for family, pricing in MODEL_TIERS:
        if family in model:
            return pricing
    return DEFAULT_PRICING


def calculate_cost(record: TokenUsageRecord) -> float:
    """Calculate the USD cost of one call without rounding.

    Args:
        record: Token usage record

    Returns:
        Cost in USD
    """
    pricing = pricing_for_model(record.model)
    cost = (
        Decimal(record.input_tokens) / PER_MILLION * pricing.input
        + Decimal(record.output_tokens) / PER_MILLION * pricing.output
        + Decimal(record.cache_creation_tokens) / PER_MILLION * pricing.cache_write
        + Decimal(record.cache_read_tokens) / PER_MILLION * pricing.cache_read
    )
    return float(cost)


def estimate(
    records: Iterable[TokenUsageRecord],
    window_hours: float,
    now: Optional[datetime] = None,
) -> CostSummary:
    """Summarize the records that fall inside a trailing window.

    A record is included when now - timestamp <= window_hours, so a record
    exactly at the cutoff counts.

    Raises:
        ValueError: If window_hours is negative
    """
    if window_hours < 0:
        raise ValueError("window_hours cannot be negative")
    now = to_utc(now) if now is not None else datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=window_hours)
    return _summarize([r for r in records if to_utc(r.timestamp) >= cutoff])


def estimate_all(records: Iterable[TokenUsageRecord]) -> CostSummary:
    """Summarize every record."""
    return _summarize(list(records))


def cost_points(records: Iterable[TokenUsageRecord]) -> List[CostPoint]:
    """Annotate records with their cost, ordered by timestamp."""
    points = [CostPoint(timestamp=to_utc(r.timestamp), cost_usd=calculate_cost(r)) for r in records]
    points.sort(key=lambda p: p.timestamp)
    return points


def cumulative_cost(records: Iterable[TokenUsageRecord]) -> List[Tuple[datetime, float]]:
    """Running total of spend over time, rounded to cents."""
    total = 0.0
    series = []
    for point in cost_points(records):
        total += point.cost_usd
        series.append((point.timestamp, round(total, 2)))
    return series


def _summarize(records: List[TokenUsageRecord]) -> CostSummary:
    total_cost = 0.0
    input_tokens = output_tokens = cache_read_tokens = cache_creation_tokens = 0
    oldest: Optional[datetime] = None
    newest: Optional[datetime] = None

    for record in records:
        total_cost += calculate_cost(record)
        input_tokens += record.input_tokens
        output_tokens += record.output_tokens
        cache_read_tokens += record.cache_read_tokens
        cache_creation_tokens += record.cache_creation_tokens

        timestamp = to_utc(record.timestamp)
        if oldest is None or timestamp < oldest:
            oldest = timestamp
        if newest is None or timestamp > newest:
            newest = timestamp

    return CostSummary(
        total_cost=total_cost,
        token_breakdown=TokenBreakdown(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_read_tokens=cache_read_tokens,
            cache_creation_tokens=cache_creation_tokens,
        ),
        record_count=len(records),
        oldest_record=oldest,
        newest_record=newest,
    )
