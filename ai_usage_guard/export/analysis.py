"""
Analysis data export.

Serializes usage history and token records into the JSON arrays consumed
by the rendering surface, which computes costs and deltas on its own.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ai_usage_guard.core.pricing import estimate_all
from ai_usage_guard.storage.db import format_timestamp, to_utc
from ai_usage_guard.storage.models import TokenUsageRecord, UsageSnapshot


@dataclass(frozen=True)
class AnalysisStats:
    """Headline numbers shown above the analysis charts."""
    usage_record_count: int
    token_record_count: int
    total_cost: float
    usage_span_hours: float
    latest_short_window_percent: Optional[float]
    latest_long_window_percent: Optional[float]


def usage_data(history: Iterable[UsageSnapshot]) -> List[Dict[str, Any]]:
    """Usage snapshots as JSON-ready dicts, oldest first."""
    return [
        {
            "timestamp": format_timestamp(s.timestamp),
            "short_window_percent": s.short_window_percent,
            "long_window_percent": s.long_window_percent,
            "short_window_resets_at": _optional_timestamp(s.short_window_resets_at),
            "long_window_resets_at": _optional_timestamp(s.long_window_resets_at),
        }
        for s in sorted(history, key=lambda s: to_utc(s.timestamp))
    ]


def token_data(records: Iterable[TokenUsageRecord]) -> List[Dict[str, Any]]:
    """Token records as JSON-ready dicts, oldest first."""
    return [
        {
            "timestamp": format_timestamp(r.timestamp),
            "model": r.model,
            "input_tokens": r.input_tokens,
            "output_tokens": r.output_tokens,
            "cache_read_tokens": r.cache_read_tokens,
            "cache_creation_tokens": r.cache_creation_tokens,
        }
        for r in sorted(records, key=lambda r: to_utc(r.timestamp))
    ]


def build_analysis_payload(
    history: Iterable[UsageSnapshot],
    records: Iterable[TokenUsageRecord],
) -> Dict[str, List[Dict[str, Any]]]:
    """Combine both arrays into one document."""
    return {
        "usageData": usage_data(history),
        "tokenData": token_data(records),
    }


def write_analysis_json(
    path: Union[str, Path],
    history: Iterable[UsageSnapshot],
    records: Iterable[TokenUsageRecord],
) -> Path:
    """Write the analysis payload to a JSON file.

    Raises:
        OSError: If the file cannot be written
    """
    output = Path(path).expanduser()
    output.parent.mkdir(parents=True, exist_ok=True)
    payload = build_analysis_payload(history, records)
    output.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    return output


def summarize(
    history: Iterable[UsageSnapshot],
    records: Iterable[TokenUsageRecord],
) -> AnalysisStats:
    """Compute the headline numbers for a dataset."""
    snapshots = sorted(history, key=lambda s: to_utc(s.timestamp))
    records = list(records)

    span_hours = 0.0
    if len(snapshots) > 1:
        span = to_utc(snapshots[-1].timestamp) - to_utc(snapshots[0].timestamp)
        span_hours = span.total_seconds() / 3600.0

    latest = snapshots[-1] if snapshots else None
    return AnalysisStats(
        usage_record_count=len(snapshots),
        token_record_count=len(records),
        total_cost=estimate_all(records).total_cost,
        usage_span_hours=span_hours,
        latest_short_window_percent=latest.short_window_percent if latest else None,
        latest_long_window_percent=latest.long_window_percent if latest else None,
    )


def _optional_timestamp(value: Optional[datetime]) -> Optional[str]:
    return format_timestamp(value) if value is not None else None
