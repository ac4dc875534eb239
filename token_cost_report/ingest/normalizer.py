"""
Raw record to usage event mapping.

Pure functions: the same record and path always give the same event.
"""

import math
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Optional

from token_cost_report.core.pricing import matches_model_filter
from token_cost_report.core.token_counter import TokenUsage
from token_cost_report.storage.models import UsageEvent
from .reader import LOG_SUFFIX

_FRACTION = re.compile(r"(\.\d{6})\d+")

USAGE_FIELDS = {
    "input_tokens": "input_tokens",
    "output_tokens": "output_tokens",
    "cache_creation_input_tokens": "cache_creation_tokens",
    "cache_read_input_tokens": "cache_read_tokens",
}


def derive_session_key(path, root) -> str:
    """Session key from a log file's location relative to the scan root.

    ``<root>/my-project/1234.jsonl`` becomes ``my-project/1234``. Separators
    are always ``/`` so keys are stable across platforms and runs.

    Raises:
        ValueError: If path is not inside root
    """
    relative = Path(path).relative_to(Path(root))
    key = PurePosixPath(*relative.parts).as_posix()
    if key.endswith(LOG_SUFFIX):
        key = key[: -len(LOG_SUFFIX)]
    return key


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Naive timestamps are taken to be UTC. Anything unparseable gives None,
    and so does an instant on the first or last representable date: those
    cannot be shifted into another timezone or given a block end.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # fromisoformat accepts at most microsecond precision
    text = _FRACTION.sub(r"\1", text)
    try:
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        else:
            parsed = parsed.astimezone(timezone.utc)
    except (ValueError, OverflowError):
        return None
    if not date.min < parsed.date() < date.max:
        return None
    return parsed


def _token_count(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError("token count must be a number")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise ValueError(f"invalid token count: {value!r}")
    return value


def _reported_cost(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    cost = float(value)
    if not math.isfinite(cost) or cost < 0:
        return None
    return cost


def normalize_record(raw: Dict[str, Any], session_key: str) -> Optional[UsageEvent]:
    """Map one decoded log record to a UsageEvent.

    Args:
        raw: Decoded JSON object from one log line
        session_key: Key derived from the record's file

    Returns:
        The event, or None when the record has no usable timestamp or
        carries token counts that are not non-negative integers
    """
    timestamp = parse_timestamp(raw.get("timestamp"))
    if timestamp is None:
        return None

    message = raw.get("message")
    if not isinstance(message, dict):
        message = {}
    usage_raw = message.get("usage")
    if not isinstance(usage_raw, dict):
        usage_raw = {}

    try:
        counts = {field: _token_count(usage_raw.get(key)) for key, field in USAGE_FIELDS.items()}
    except ValueError:
        return None

    model = message.get("model")
    if not isinstance(model, str) or not model.strip():
        model = None
    else:
        model = model.strip()

    return UsageEvent(
        timestamp=timestamp,
        session_key=session_key,
        usage=TokenUsage(**counts),
        model=model,
        reported_cost=_reported_cost(raw.get("costUSD")),
    )


@dataclass(frozen=True)
class EventFilter:
    """Inclusive date range and model filter applied after normalization."""
    since: Optional[date] = None
    until: Optional[date] = None
    model: Optional[str] = None

    def __post_init__(self):
        """Validate the date range."""
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must be on or before until")

    @property
    def is_active(self) -> bool:
        return bool(self.since or self.until or self.model)

    def accepts(self, event: UsageEvent, tz: tzinfo = timezone.utc) -> bool:
        """Check whether an event passes the filter."""
        day = event.timestamp.astimezone(tz).date()
        if self.since and day < self.since:
            return False
        if self.until and day > self.until:
            return False
        if self.model:
            if event.model is None:
                return False
            return matches_model_filter(event.model, self.model)
        return True
