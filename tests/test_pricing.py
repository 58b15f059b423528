"""
Unit tests for pricing calculations.

Tests model routing, cost accuracy, and cost summaries.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ai_usage_guard.core.pricing import (
    HAIKU,
    MODEL_TIERS,
    OPUS,
    SONNET,
    calculate_cost,
    cost_points,
    cumulative_cost,
    estimate,
    estimate_all,
    pricing_for_model,
)
from ai_usage_guard.storage.models import TokenUsageRecord

NOW = datetime(2026, 2, 21, 12, 0, tzinfo=timezone.utc)


def make_record(
    model: str = "claude-sonnet-4-5",
    input_tokens: int = 0,
    output_tokens: int = 0,
    cache_read_tokens: int = 0,
    cache_creation_tokens: int = 0,
    timestamp: datetime = NOW,
    request_id: str = "req",
) -> TokenUsageRecord:
    return TokenUsageRecord(
        request_id=request_id,
        timestamp=timestamp,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cache_read_tokens=cache_read_tokens,
        cache_creation_tokens=cache_creation_tokens,
    )


class TestModelRouting:
    """Test model family matching."""

    def test_opus_substring(self):
        """Verify any model containing 'opus' uses opus pricing."""
        assert pricing_for_model("claude-opus-4-6") is OPUS
        assert pricing_for_model("opus") is OPUS

    def test_haiku_substring(self):
        """Verify any model containing 'haiku' uses haiku pricing."""
        assert pricing_for_model("claude-haiku-4-5-20251001") is HAIKU

    def test_unknown_defaults_to_sonnet(self):
        """Verify unknown and empty models fall back to sonnet."""
        assert pricing_for_model("claude-sonnet-4-5") is SONNET
        assert pricing_for_model("gpt-4") is SONNET
        assert pricing_for_model("") is SONNET

    def test_matching_is_case_sensitive(self):
        """Verify matching does not ignore case."""
        assert pricing_for_model("Claude-OPUS") is SONNET

    def test_opus_checked_before_haiku(self):
        """Verify opus wins when both substrings are present."""
        assert [family for family, _ in MODEL_TIERS] == ["opus", "haiku"]
        assert pricing_for_model("haiku-distilled-from-opus") is OPUS


class TestPricingTable:
    """Test the structure of the pricing table."""

    @pytest.mark.parametrize("pricing", [OPUS, SONNET, HAIKU])
    def test_cache_read_is_tenth_of_input(self, pricing):
        """Verify cache reads cost exactly 0.1x the input rate."""
        assert pricing.cache_read == pricing.input * Decimal("0.1")

    @pytest.mark.parametrize("pricing", [OPUS, SONNET, HAIKU])
    def test_cache_write_is_input_plus_quarter(self, pricing):
        """Verify cache writes cost exactly 1.25x the input rate."""
        assert pricing.cache_write == pricing.input * Decimal("1.25")

    @pytest.mark.parametrize("model", ["claude-opus-4-6", "claude-sonnet-4-5", "claude-haiku-4-5"])
    def test_cache_read_cost_ratio_for_equal_tokens(self, model):
        """Verify cache-read cost is 0.1x input cost for equal token counts."""
        input_cost = calculate_cost(make_record(model=model, input_tokens=1_000_000))
        cache_cost = calculate_cost(make_record(model=model, cache_read_tokens=1_000_000))
        assert cache_cost == pytest.approx(input_cost * 0.1)


class TestCostCalculation:
    """Test cost calculation accuracy."""

    def test_sonnet_mixed_tokens(self):
        """Verify the combined sonnet example."""
        record = make_record(
            input_tokens=150_000,
            output_tokens=50_000,
            cache_read_tokens=800_000,
            cache_creation_tokens=200_000,
        )
        # 0.15*3.00 + 0.05*15.00 + 0.80*0.30 + 0.20*3.75 = 0.45+0.75+0.24+0.75
        assert calculate_cost(record) == pytest.approx(2.19)

    def test_opus_one_million_output(self):
        """Verify 1M opus output tokens cost $75."""
        assert calculate_cost(make_record(model="claude-opus-4-6", output_tokens=1_000_000)) == pytest.approx(75.0)

    def test_haiku_mixed_tokens(self):
        """Verify haiku pricing is applied per token type."""
        record = make_record(
            model="claude-haiku-4-5",
            input_tokens=500_000,
            output_tokens=100_000,
            cache_creation_tokens=1_000_000,
        )
        # 0.5*0.80 + 0.1*4.00 + 1.0*1.00 = 0.40+0.40+1.00
        assert calculate_cost(record) == pytest.approx(1.80)

    def test_zero_tokens_cost(self):
        """Verify zero tokens cost nothing."""
        assert calculate_cost(make_record()) == 0.0

    def test_no_rounding(self):
        """Verify small costs are not rounded away."""
        # 1/1e6 * 3.00
        assert calculate_cost(make_record(input_tokens=1)) == pytest.approx(0.000003)


class TestEstimate:
    """Test cost summaries."""

    def test_window_filter(self):
        """Verify only records inside the window are summarized."""
        records = [
            make_record(input_tokens=1_000_000, timestamp=NOW - timedelta(hours=1), request_id="a"),
            make_record(input_tokens=1_000_000, timestamp=NOW - timedelta(hours=6), request_id="b"),
        ]
        summary = estimate(records, window_hours=5, now=NOW)
        assert summary.record_count == 1
        assert summary.total_cost == pytest.approx(3.0)

    def test_window_boundary_inclusive(self):
        """Verify a record exactly at the cutoff is included."""
        records = [make_record(output_tokens=10, timestamp=NOW - timedelta(hours=5))]
        assert estimate(records, window_hours=5, now=NOW).record_count == 1

    def test_window_just_outside(self):
        """Verify a record just before the cutoff is excluded."""
        records = [make_record(output_tokens=10, timestamp=NOW - timedelta(hours=5, seconds=1))]
        assert estimate(records, window_hours=5, now=NOW).record_count == 0

    def test_negative_window_rejected(self):
        """Verify a negative window raises."""
        with pytest.raises(ValueError, match="window_hours cannot be negative"):
            estimate([], window_hours=-1, now=NOW)

    def test_empty_records(self):
        """Verify an empty summary."""
        summary = estimate_all([])
        assert summary.total_cost == 0.0
        assert summary.record_count == 0
        assert summary.oldest_record is None
        assert summary.newest_record is None
        assert summary.token_breakdown.total_tokens == 0

    def test_token_breakdown_and_bounds(self):
        """Verify token sums and oldest/newest timestamps."""
        records = [
            make_record(input_tokens=1, output_tokens=2, cache_read_tokens=3, cache_creation_tokens=4,
                        timestamp=NOW - timedelta(hours=2), request_id="a"),
            make_record(input_tokens=10, output_tokens=20, cache_read_tokens=30, cache_creation_tokens=40,
                        timestamp=NOW, request_id="b"),
            make_record(input_tokens=100, timestamp=NOW - timedelta(hours=1), request_id="c"),
        ]
        summary = estimate_all(records)
        breakdown = summary.token_breakdown
        assert breakdown.input_tokens == 111
        assert breakdown.output_tokens == 22
        assert breakdown.cache_read_tokens == 33
        assert breakdown.cache_creation_tokens == 44
        assert summary.oldest_record == NOW - timedelta(hours=2)
        assert summary.newest_record == NOW

    def test_mixed_models_summed(self):
        """Verify each record is priced by its own model."""
        records = [
            make_record(model="claude-opus-4-6", output_tokens=1_000_000, request_id="a"),
            make_record(model="claude-haiku-4-5", output_tokens=1_000_000, request_id="b"),
        ]
        assert estimate_all(records).total_cost == pytest.approx(79.0)


class TestCostSeries:
    """Test costed record streams."""

    def test_cost_points_sorted(self):
        """Verify cost points are ordered by timestamp."""
        records = [
            make_record(input_tokens=1_000_000, timestamp=NOW, request_id="late"),
            make_record(input_tokens=2_000_000, timestamp=NOW - timedelta(hours=1), request_id="early"),
        ]
        points = cost_points(records)
        assert [p.cost_usd for p in points] == pytest.approx([6.0, 3.0])

    def test_cumulative_cost(self):
        """Verify the running total is rounded to cents."""
        records = [
            make_record(input_tokens=1_001, timestamp=NOW - timedelta(minutes=2), request_id="a"),
            make_record(input_tokens=1_000_000, timestamp=NOW, request_id="b"),
        ]
        series = cumulative_cost(records)
        # 0.003003 -> 0.00, then 3.003003 -> 3.00
        assert [total for _, total in series] == [0.0, 3.0]
