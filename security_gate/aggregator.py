"""
Aggregator: merges ScanResults from every source into one AggregatedReport.

Findings from different scanners are never deduplicated against each other,
since each tool uses its own identifiers. Only exact (source, id) repeats
across reruns of the same source are collapsed.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import InternalInvariantError
from .models import AggregatedReport, Finding, ScanResult, Severity, Source

logger = logging.getLogger(__name__)

ALL_SOURCES: Tuple[Source, ...] = tuple(sorted(Source, key=lambda s: s.value))


def finding_sort_key(finding: Finding):
    return (finding.severity.rank, finding.source.value, finding.id)


def tally(findings: Iterable[Finding]) -> Dict[str, int]:
    """Count findings per tier in a single pass; every tier is present."""
    counts = {tier.value: 0 for tier in Severity.ordered()}
    for finding in findings:
        counts[finding.severity.value] += 1
    return counts


def _chronological(result: ScanResult):
    return (
        result.completed_at,
        result.started_at,
        result.status.value,
        tuple(sorted(f.id for f in result.findings)),
    )


def _unique_by_id(result: ScanResult) -> ScanResult:
    """Collapse ids repeated inside one result, keeping the most severe occurrence."""
    by_id: Dict[str, Finding] = {}
    for finding in result.findings:
        kept = by_id.get(finding.id)
        if kept is None or finding.severity.rank < kept.severity.rank:
            by_id[finding.id] = finding
    if len(by_id) == len(result.findings):
        return result

    logger.warning(
        "%s result repeats %d finding id(s); keeping the most severe of each",
        result.source.value, len(result.findings) - len(by_id),
    )
    return result.model_copy(update={"findings": tuple(by_id.values())})


def _merge_reruns(source: Source, runs: List[ScanResult]) -> ScanResult:
    """Fold several results of one source into one; the latest run wins."""
    runs = [_unique_by_id(run) for run in runs]
    if len(runs) == 1:
        return runs[0]

    latest = runs[-1]
    by_id: Dict[str, Finding] = {}
    for run in runs:
        for finding in run.findings:
            kept = by_id.get(finding.id)
            if kept is None or finding.first_seen >= kept.first_seen:
                by_id[finding.id] = finding

    logger.info("Merged %d runs of %s into %d finding(s)", len(runs), source.value, len(by_id))
    return ScanResult(
        source=source,
        started_at=min(run.started_at for run in runs),
        completed_at=latest.completed_at,
        status=latest.status,
        findings=tuple(sorted(by_id.values(), key=lambda f: f.id)),
        error=latest.error,
    )


def verify_counts(report: AggregatedReport) -> None:
    """Cross-check countsBySeverity against the findings actually held."""
    held = sum(len(result.findings) for result in report.results)
    counted = sum(report.counts_by_severity.values())
    if counted != held or len(report.findings) != held:
        raise InternalInvariantError(
            "countsBySeverity does not match the aggregated findings",
            diagnostics={
                "run_id": report.run_id,
                "counted": counted,
                "held_in_results": held,
                "ordered_findings": len(report.findings),
                "counts_by_severity": dict(report.counts_by_severity),
            },
        )


def aggregate(
    results: Sequence[ScanResult],
    *,
    run_id: str,
    expected_sources: Optional[Iterable[Source]] = None,
    generated_at: Optional[datetime] = None,
) -> AggregatedReport:
    """
    Combine zero or more ScanResults into one AggregatedReport.

    The output does not depend on the order of `results`. Expected sources
    without a result are kept as explicit absences on the report.

    Raises:
        InternalInvariantError: If a result carries a finding from another
            source or the severity counts do not add up
    """
    expected = tuple(sorted(set(expected_sources if expected_sources is not None else ALL_SOURCES),
                            key=lambda s: s.value))

    by_source: Dict[Source, List[ScanResult]] = {}
    for result in sorted(results, key=_chronological):
        for finding in result.findings:
            if finding.source != result.source:
                raise InternalInvariantError(
                    f"{result.source.value} result carries a {finding.source.value} finding",
                    diagnostics={"finding_id": finding.id, "result_source": result.source.value},
                )
        by_source.setdefault(result.source, []).append(result)

    merged = tuple(
        _merge_reruns(source, by_source[source])
        for source in sorted(by_source, key=lambda s: s.value)
    )
    findings = tuple(sorted((f for result in merged for f in result.findings), key=finding_sort_key))

    report = AggregatedReport(
        run_id=run_id,
        generated_at=generated_at or datetime.now(timezone.utc),
        expected_sources=expected,
        results=merged,
        counts_by_severity=tally(findings),
        findings=findings,
    )
    verify_counts(report)

    logger.info(
        "Aggregated run %s: %d finding(s) from %d source(s) %s",
        run_id, report.total_findings, len(merged), report.counts_by_severity,
    )
    return report


def group_by_category(report: AggregatedReport) -> Dict[str, Tuple[Finding, ...]]:
    """
    Group findings by category across sources for reporting.

    Categories are matched case-insensitively; the first spelling seen (in
    report order) names the group. Groups are ordered by their most severe
    finding, then by name.
    """
    groups: Dict[str, List[Finding]] = {}
    names: Dict[str, str] = {}
    for finding in report.findings:
        key = finding.category.strip().casefold()
        names.setdefault(key, finding.category.strip())
        groups.setdefault(key, []).append(finding)

    ordered = sorted(groups, key=lambda k: (groups[k][0].severity.rank, k))
    return {names[key]: tuple(groups[key]) for key in ordered}
