"""
Pricing cache persistence.

Stores a resolved pricing table on disk with a timestamp and schema version.
The cache is a convenience store: every failure here degrades to the
built-in table and is reported as a warning, never raised.
"""

import json
import logging
import os
import sys
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional

from token_cost_report.core.pricing import ModelPricing

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = "1"
CACHE_TTL = timedelta(days=7)
CACHE_FILENAME = "pricing_cache.json"
APP_DIRNAME = "token-cost-report"


def default_cache_path() -> Path:
    """Return the platform cache location for the pricing cache file."""
    if sys.platform == "darwin":
        base = Path.home() / "Library" / "Caches"
    elif sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    else:
        base = Path(os.environ.get("XDG_CACHE_HOME", Path.home() / ".cache"))
    return base / APP_DIRNAME / CACHE_FILENAME


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheState(Enum):
    """Outcome of reading the cache file."""
    VALID = "valid"
    MISSING = "missing"
    STALE = "stale"
    VERSION_MISMATCH = "version_mismatch"
    CORRUPT = "corrupt"
    UNREADABLE = "unreadable"


@dataclass(frozen=True)
class PricingCacheEntry:
    """Decoded cache contents."""
    entries: Dict[str, ModelPricing]
    last_updated: datetime
    version: str

    def age(self, now: datetime) -> timedelta:
        return now - self.last_updated

    def is_valid(self, now: datetime) -> bool:
        """Valid when the version matches and the age is within the TTL."""
        if self.version != CACHE_SCHEMA_VERSION:
            return False
        age = self.age(now)
        return timedelta(0) <= age <= CACHE_TTL


@dataclass(frozen=True)
class CacheLoadResult:
    """What load() found; ``table`` is set only when the cache is usable."""
    state: CacheState
    table: Optional[Dict[str, ModelPricing]] = None
    warning: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.state == CacheState.VALID


@dataclass(frozen=True)
class CacheStatus:
    """Read-only snapshot of the cache for display."""
    path: Path
    state: CacheState
    entry_count: int = 0
    last_updated: Optional[datetime] = None
    age: Optional[timedelta] = None
    version: Optional[str] = None


class PricingCache:
    """File-backed pricing cache with a 7-day validity window.

    Args:
        path: Cache file location (defaults to the platform cache dir)
        clock: Callable returning the current aware UTC time
    """

    def __init__(self, path: Optional[Path] = None, clock: Optional[Callable[[], datetime]] = None):
        self.path = Path(path) if path is not None else default_cache_path()
        self.clock = clock or _utcnow

    def _read_entry(self) -> PricingCacheEntry:
        """Decode the cache file; raises on any I/O or format problem."""
        with open(self.path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError("cache root must be an object")
        entries_raw = raw.get("entries")
        if not isinstance(entries_raw, dict):
            raise ValueError("cache 'entries' must be an object")
        last_updated = datetime.fromisoformat(str(raw["last_updated"]).replace("Z", "+00:00"))
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=timezone.utc)
        entries = {str(model): ModelPricing.from_dict(data) for model, data in entries_raw.items()}
        return PricingCacheEntry(entries=entries, last_updated=last_updated, version=str(raw.get("version")))

    def _inspect(self):
        """Return (state, entry, warning) without touching the file."""
        if not self.path.exists():
            return CacheState.MISSING, None, None
        try:
            entry = self._read_entry()
        except OSError as e:
            return CacheState.UNREADABLE, None, f"Pricing cache unreadable at {self.path}: {e}"
        except (ValueError, KeyError, TypeError) as e:
            return CacheState.CORRUPT, None, f"Pricing cache corrupt at {self.path}: {e}"
        if entry.version != CACHE_SCHEMA_VERSION:
            return (
                CacheState.VERSION_MISMATCH,
                entry,
                f"Pricing cache version {entry.version} does not match {CACHE_SCHEMA_VERSION}",
            )
        if not entry.is_valid(self.clock()):
            return CacheState.STALE, entry, f"Pricing cache is stale (last updated {entry.last_updated.isoformat()})"
        return CacheState.VALID, entry, None

    def load(self) -> CacheLoadResult:
        """Return the cached table if present, current-version and fresh."""
        state, entry, warning = self._inspect()
        if warning:
            logger.warning(warning)
        if state == CacheState.VALID:
            return CacheLoadResult(state=state, table=dict(entry.entries))
        return CacheLoadResult(state=state, warning=warning)

    def save(self, table: Mapping[str, ModelPricing]) -> bool:
        """Write the table atomically (temp file then rename).

        Returns:
            True when the cache file was replaced, False on any failure
        """
        payload = {
            "version": CACHE_SCHEMA_VERSION,
            "last_updated": self.clock().isoformat(),
            "entries": {model: pricing.as_dict() for model, pricing in sorted(table.items())},
        }
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".pricing-", suffix=".tmp", dir=str(self.path.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
            return True
        except OSError as e:
            logger.warning("Could not write pricing cache %s: %s", self.path, e)
            return False
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.debug("Could not remove temporary cache file %s", tmp_path)

    def clear(self) -> bool:
        """Delete the cache file. A missing file counts as cleared."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return True
        except OSError as e:
            logger.warning("Could not remove pricing cache %s: %s", self.path, e)
            return False
        return True

    def status(self) -> CacheStatus:
        """Report validity, age and entry count without modifying anything."""
        state, entry, _ = self._inspect()
        if entry is None:
            return CacheStatus(path=self.path, state=state)
        return CacheStatus(
            path=self.path,
            state=state,
            entry_count=len(entry.entries),
            last_updated=entry.last_updated,
            age=entry.age(self.clock()),
            version=entry.version,
        )
