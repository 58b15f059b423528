"""
Token usage log parsing.

Turns JSONL transcript lines written by the client tool into token usage
records. Parsing is best effort: unrelated event types and malformed lines
contribute nothing and never raise.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ai_usage_guard.storage.db import parse_timestamp
from ai_usage_guard.storage.models import TokenUsageRecord

logger = logging.getLogger(__name__)

RECORD_EVENT_TYPE = "assistant"

# Largest value a SQLite INTEGER column holds
MAX_TOKEN_COUNT = 2 ** 63 - 1


def parse_line(line: str) -> Optional[TokenUsageRecord]:
    """Parse one JSONL line into a record.

    Only completed model calls qualify: an "assistant" event carrying a
    requestId, a timestamp and a non-empty message.usage block.

    Args:
        line: Raw text line

    Returns:
        The parsed record, or None for any other line
    """
    try:
        event = json.loads(line)
    except (TypeError, ValueError, RecursionError):
        return None
    if not isinstance(event, dict):
        return None

    if event.get("type") != RECORD_EVENT_TYPE:
        return None
    request_id = _text(event.get("requestId"))
    if not request_id:
        return None
    message = event.get("message")
    if not isinstance(message, dict):
        return None
    usage = message.get("usage")
    if not isinstance(usage, dict) or not usage:
        return None

    timestamp = parse_timestamp(event.get("timestamp"))
    if timestamp is None:
        return None

    model = _text(message.get("model"))
    speed = _text(usage.get("speed"))
    server_tool_use = usage.get("server_tool_use")
    if not isinstance(server_tool_use, dict):
        server_tool_use = {}

    return TokenUsageRecord(
        request_id=request_id,
        timestamp=timestamp,
        model=model if model is not None else "unknown",
        speed=speed if speed is not None else "standard",
        input_tokens=_count(usage, "input_tokens"),
        output_tokens=_count(usage, "output_tokens"),
        cache_read_tokens=_count(usage, "cache_read_input_tokens"),
        cache_creation_tokens=_count(usage, "cache_creation_input_tokens"),
        web_search_requests=_count(server_tool_use, "web_search_requests"),
    )


def parse_lines(lines: Iterable[str]) -> List[TokenUsageRecord]:
    """Parse a batch of lines and deduplicate by request id."""
    records = []
    for line in lines:
        line = line.strip()
        if not line:
            continue
        record = parse_line(line)
        if record is not None:
            records.append(record)
    return deduplicate(records)


def parse_file(path: Union[str, Path]) -> List[TokenUsageRecord]:
    """Parse every line of a JSONL file.

    Records are returned in file order without deduplication; the record
    store applies its own upsert rule. An unreadable file yields no records.
    """
    try:
        content = Path(path).read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning(f"Failed to read log file {path}: {e}")
        return []

    records = []
    skipped = 0
    for line in content.splitlines():
        line = line.strip()
        if not line:
            continue
        record = parse_line(line)
        if record is None:
            skipped += 1
            continue
        records.append(record)
    logger.debug(f"Parsed {path}: {len(records)} records, {skipped} lines skipped")
    return records


def deduplicate(records: Iterable[TokenUsageRecord]) -> List[TokenUsageRecord]:
    """Keep one record per request id.

    The observation with the greater-or-equal output_tokens wins, so on a
    tie the later one in iteration order replaces the earlier one.

    Returns:
        Deduplicated records ordered by timestamp
    """
    best_by_request_id: Dict[str, TokenUsageRecord] = {}
    for record in records:
        existing = best_by_request_id.get(record.request_id)
        if existing is None or record.output_tokens >= existing.output_tokens:
            best_by_request_id[record.request_id] = record
    return sorted(best_by_request_id.values(), key=lambda r: r.timestamp)


def _count(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    if not 0 <= value <= MAX_TOKEN_COUNT:
        return 0
    return value


def _text(value: Any) -> Optional[str]:
    """Return value if it is a string SQLite can store as UTF-8."""
    if not isinstance(value, str):
        return None
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return None
    return value
