"""
Data models for ingested usage.

Defines the canonical usage event produced from one log line.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from token_cost_report.core.token_counter import TokenUsage


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of token consumption at one instant.

    Built only by the normalizer. The timestamp is always timezone-aware
    UTC; events without a timestamp never exist.
    """
    timestamp: datetime
    session_key: str
    usage: TokenUsage
    model: Optional[str] = None
    reported_cost: Optional[float] = None

    def __post_init__(self):
        """Validate the event invariants."""
        if self.timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        if not self.session_key:
            raise ValueError("session_key cannot be empty")

    @property
    def unpriced_by_model(self) -> bool:
        """True when no model identifier was recorded for this event."""
        return self.model is None

    @property
    def total_tokens(self) -> int:
        return self.usage.total_tokens
