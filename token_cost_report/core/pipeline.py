"""
Report pipeline.

Scans a directory snapshot, folds every file in a worker pool and merges
the per-file partials at one barrier. A run is all-or-nothing from the
caller's view: an interrupt discards every partial and propagates.

Only an unusable scan root raises. Unreadable files, bad lines, unpriced
events and cache trouble are recorded on the diagnostics instead.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timezone, tzinfo
from pathlib import Path
from typing import List, Optional, Set

from .aggregation import (
    AggregationPartial,
    DailyAggregate,
    MonthlyAggregate,
    SessionAggregate,
    SortField,
    SortOrder,
    merge_partials,
)
from .billing_blocks import BillingBlock, BlockPartial, merge_block_partials
from .errors import Issue, IssueKind, RunDiagnostics
from .resolver import PricingResolver
from token_cost_report.ingest.normalizer import EventFilter, derive_session_key, normalize_record
from token_cost_report.ingest.reader import decode_line, find_log_files, read_log_lines

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 8


@dataclass(frozen=True)
class ReportOptions:
    """Per-run options passed in by the caller."""
    event_filter: EventFilter = field(default_factory=EventFilter)
    tz: tzinfo = timezone.utc
    max_workers: int = DEFAULT_WORKERS

    def __post_init__(self):
        """Validate worker count."""
        if self.max_workers <= 0:
            raise ValueError("max_workers must be > 0")


@dataclass
class FileResult:
    """Everything one worker produced for one file."""
    aggregation: AggregationPartial
    blocks: BlockPartial
    diagnostics: RunDiagnostics
    unresolved_models: Set[str] = field(default_factory=set)


@dataclass
class UsageReport:
    """Merged result of one run, handed to display and export code."""
    aggregation: AggregationPartial
    block_partial: BlockPartial
    diagnostics: RunDiagnostics

    @property
    def daily(self) -> List[DailyAggregate]:
        return self.aggregation.daily_report()

    @property
    def monthly(self) -> List[MonthlyAggregate]:
        return self.aggregation.monthly_report()

    @property
    def sessions(self) -> List[SessionAggregate]:
        return self.aggregation.session_report()

    @property
    def blocks(self) -> List[BillingBlock]:
        return self.block_partial.blocks()

    def daily_report(self, order: SortOrder = SortOrder.DESC, sort_field: SortField = SortField.DATE):
        return self.aggregation.daily_report(order, sort_field)

    def monthly_report(self, order: SortOrder = SortOrder.DESC, sort_field: SortField = SortField.DATE):
        return self.aggregation.monthly_report(order, sort_field)

    def session_report(self, order: SortOrder = SortOrder.DESC, sort_field: SortField = SortField.COST):
        return self.aggregation.session_report(order, sort_field)

    def peak_block(self) -> Optional[BillingBlock]:
        return self.block_partial.peak_block()

    def average_block_cost(self) -> Optional[float]:
        return self.block_partial.average_block_cost()


def process_file(path: Path, root: Path, resolver: PricingResolver, options: ReportOptions) -> FileResult:
    """Decode, normalize, price and fold one log file.

    Lines are handled strictly in order. If the file cannot be opened or
    fails part-way through, the whole file is skipped so a report never
    holds half of a file.
    """
    diagnostics = RunDiagnostics(files_scanned=1)
    aggregation = AggregationPartial(options.tz)
    blocks = BlockPartial()
    unresolved: Set[str] = set()
    session_key = derive_session_key(path, root)

    try:
        for line_number, text in read_log_lines(path):
            diagnostics.lines_read += 1
            raw = decode_line(text)
            event = normalize_record(raw, session_key) if raw is not None else None
            if event is None:
                logger.debug("Skipping malformed line %s:%d", path, line_number)
                diagnostics.record(Issue(IssueKind.LINE_SKIPPED, "malformed line", str(path), line_number))
                continue
            if not options.event_filter.accepts(event, options.tz):
                diagnostics.events_filtered += 1
                continue

            resolution = resolver.resolve(event.model, event.usage, event.reported_cost)
            if not resolution.is_priced:
                diagnostics.events_unpriced += 1
            if resolution.pricing_key is None and event.model is not None:
                unresolved.add(event.model)
            if resolution.discrepancy:
                diagnostics.cost_discrepancies += 1

            aggregation.add(event, resolution)
            blocks.add(event, resolution)
            diagnostics.events_accepted += 1
    except OSError as e:
        logger.warning("Skipping unreadable file %s: %s", path, e)
        skipped = RunDiagnostics(files_scanned=1)
        skipped.record(Issue(IssueKind.FILE_SKIPPED, f"Unreadable file {path}: {e}", str(path)))
        return FileResult(AggregationPartial(options.tz), BlockPartial(), skipped)

    return FileResult(aggregation, blocks, diagnostics, unresolved)


def _issue_sort_key(issue: Issue):
    return (issue.kind.value, issue.path or "", issue.line_number or 0, issue.message)


def build_report(root, resolver: PricingResolver, options: Optional[ReportOptions] = None) -> UsageReport:
    """Run the whole ingestion-to-aggregation pipeline over one directory.

    Args:
        root: Directory holding the usage logs
        resolver: Pricing resolver (owns the pricing cache for this run)
        options: Filters, reporting timezone and worker count

    Returns:
        UsageReport with merged aggregates, billing blocks and diagnostics

    Raises:
        FatalConfigError: If root is missing or unreadable
    """
    options = options or ReportOptions()
    root_path = Path(root)
    files = find_log_files(root_path)
    if not files:
        logger.warning("No usage logs found under %s", root_path)

    executor = ThreadPoolExecutor(max_workers=options.max_workers)
    try:
        futures = [executor.submit(process_file, path, root_path, resolver, options) for path in files]
        results = [future.result() for future in futures]
    except BaseException:
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)

    aggregation = merge_partials((r.aggregation for r in results), options.tz)
    blocks = merge_block_partials(r.blocks for r in results)
    diagnostics = RunDiagnostics()
    for result in results:
        diagnostics.absorb(result.diagnostics)

    unresolved = set().union(*(r.unresolved_models for r in results))
    for model in sorted(unresolved):
        diagnostics.record(Issue(IssueKind.PRICING_UNRESOLVED, f"No pricing found for model {model}"))
    for warning in resolver.warnings:
        diagnostics.record(Issue(IssueKind.CACHE_DEGRADED, warning))
    diagnostics.issues.sort(key=_issue_sort_key)

    if diagnostics.lines_skipped:
        logger.warning("Skipped %d malformed line(s)", diagnostics.lines_skipped)
    if diagnostics.cost_discrepancies:
        logger.warning(
            "%d event(s) had a computed cost far from the reported cost; computed cost was used",
            diagnostics.cost_discrepancies,
        )

    return UsageReport(aggregation=aggregation, block_partial=blocks, diagnostics=diagnostics)
