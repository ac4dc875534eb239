"""
Error taxonomy for report runs.

Only FatalConfigError aborts a run. Every other condition is recorded as an
Issue on the run diagnostics next to a best-effort result.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class UsageReportError(Exception):
    """Base class for errors raised by token_cost_report."""


class FatalConfigError(UsageReportError):
    """Raised when the scan root cannot be used at all."""
    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class IssueKind(Enum):
    """Non-fatal conditions collected during a run."""
    FILE_SKIPPED = "file_skipped"
    LINE_SKIPPED = "line_skipped"
    PRICING_UNRESOLVED = "pricing_unresolved"
    CACHE_DEGRADED = "cache_degraded"


@dataclass(frozen=True)
class Issue:
    """A single non-fatal problem with enough context to report it."""
    kind: IssueKind
    message: str
    path: Optional[str] = None
    line_number: Optional[int] = None


@dataclass
class RunDiagnostics:
    """Counts and messages accumulated alongside a report.

    Line-level problems are only counted; file and cache problems keep a
    message because there are few of them and each needs explaining.
    """
    files_scanned: int = 0
    files_skipped: int = 0
    lines_read: int = 0
    lines_skipped: int = 0
    events_accepted: int = 0
    events_filtered: int = 0
    events_unpriced: int = 0
    cost_discrepancies: int = 0
    issues: List[Issue] = field(default_factory=list)

    def record(self, issue: Issue) -> None:
        """Record a non-fatal issue and bump the matching counter."""
        if issue.kind == IssueKind.FILE_SKIPPED:
            self.files_skipped += 1
        elif issue.kind == IssueKind.LINE_SKIPPED:
            self.lines_skipped += 1
            # Per-line messages would swamp the list on a badly damaged file.
            return
        self.issues.append(issue)

    @property
    def warnings(self) -> List[str]:
        return [issue.message for issue in self.issues]

    def merge(self, other: "RunDiagnostics") -> "RunDiagnostics":
        """Combine two diagnostics into a new one (commutative on counts)."""
        return RunDiagnostics(
            files_scanned=self.files_scanned + other.files_scanned,
            files_skipped=self.files_skipped + other.files_skipped,
            lines_read=self.lines_read + other.lines_read,
            lines_skipped=self.lines_skipped + other.lines_skipped,
            events_accepted=self.events_accepted + other.events_accepted,
            events_filtered=self.events_filtered + other.events_filtered,
            events_unpriced=self.events_unpriced + other.events_unpriced,
            cost_discrepancies=self.cost_discrepancies + other.cost_discrepancies,
            issues=self.issues + other.issues,
        )

    def absorb(self, other: "RunDiagnostics") -> None:
        """Add another diagnostics' counts and issues into this one."""
        self.files_scanned += other.files_scanned
        self.files_skipped += other.files_skipped
        self.lines_read += other.lines_read
        self.lines_skipped += other.lines_skipped
        self.events_accepted += other.events_accepted
        self.events_filtered += other.events_filtered
        self.events_unpriced += other.events_unpriced
        self.cost_discrepancies += other.cost_discrepancies
        self.issues.extend(other.issues)
