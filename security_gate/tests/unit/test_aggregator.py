"""
Unit Tests for the Aggregator (aggregator.py)
"""

import itertools
from datetime import datetime, timedelta

import pytest

from security_gate.aggregator import ALL_SOURCES, aggregate, group_by_category, tally, verify_counts
from security_gate.errors import InternalInvariantError
from security_gate.models import ScanStatus, Severity, Source


@pytest.fixture
def three_results(make_finding, make_result):
    return [
        make_result(Source.STATIC_ANALYSIS, [
            make_finding("sast-1", severity=Severity.CRITICAL),
            make_finding("sast-2", severity=Severity.LOW, category="Cookie"),
        ]),
        make_result(Source.DEPENDENCY_SCAN, [
            make_finding("dep-1", source=Source.DEPENDENCY_SCAN, severity=Severity.HIGH,
                         category="Prototype Pollution"),
        ]),
        make_result(Source.DYNAMIC_SCAN, [
            make_finding("dast-1", source=Source.DYNAMIC_SCAN, severity=Severity.HIGH, category="sql injection"),
        ]),
    ]


@pytest.mark.unit
class TestAggregate:

    def test_counts_and_ordering(self, three_results, fixed_time):
        report = aggregate(three_results, run_id="run-1", generated_at=fixed_time)

        assert report.counts_by_severity == {"critical": 1, "high": 2, "medium": 0, "low": 1, "info": 0}
        assert report.total_findings == 4
        # severity desc, then source, then id
        assert [f.id for f in report.findings] == ["sast-1", "dep-1", "dast-1", "sast-2"]
        assert report.expected_sources == ALL_SOURCES

    def test_order_independent(self, three_results, fixed_time):
        reports = {
            aggregate(list(order), run_id="run-1", generated_at=fixed_time).model_dump_json()
            for order in itertools.permutations(three_results)
        }
        assert len(reports) == 1

    def test_idempotent(self, three_results, fixed_time):
        first = aggregate(three_results, run_id="run-1", generated_at=fixed_time)
        second = aggregate(three_results, run_id="run-1", generated_at=fixed_time)
        assert first == second

    def test_empty_input(self, fixed_time):
        report = aggregate([], run_id="run-1", generated_at=fixed_time)

        assert report.total_findings == 0
        assert report.results == ()
        assert report.missing_sources() == ALL_SOURCES

    def test_cross_source_duplicates_are_kept(self, make_finding, make_result, fixed_time):
        results = [
            make_result(Source.STATIC_ANALYSIS, [make_finding("same-id")]),
            make_result(Source.DYNAMIC_SCAN, [make_finding("same-id", source=Source.DYNAMIC_SCAN)]),
        ]
        report = aggregate(results, run_id="run-1", generated_at=fixed_time)
        assert report.count(Severity.HIGH) == 2

    def test_rerun_keeps_latest_first_seen(self, make_finding, make_result, fixed_time):
        later = fixed_time + timedelta(hours=1)
        results = [
            make_result(Source.STATIC_ANALYSIS, [make_finding("a"), make_finding("b")], minutes=0),
            make_result(Source.STATIC_ANALYSIS, [make_finding("a", first_seen=later)], minutes=5),
        ]
        report = aggregate(results, run_id="run-1", generated_at=fixed_time)

        assert len(report.results) == 1
        assert report.total_findings == 2
        merged = {f.id: f for f in report.findings}
        assert merged["a"].first_seen == later

    def test_rerun_latest_status_wins(self, make_result, fixed_time):
        results = [
            make_result(Source.DYNAMIC_SCAN, status=ScanStatus.ERRORED, error="crashed", minutes=0),
            make_result(Source.DYNAMIC_SCAN, minutes=10),
        ]
        report = aggregate(results, run_id="run-1", generated_at=fixed_time,
                           expected_sources=[Source.DYNAMIC_SCAN])

        assert report.result_for(Source.DYNAMIC_SCAN).status == ScanStatus.OK
        assert report.unavailable_sources() == ()

    def test_rerun_with_naive_first_seen(self, make_finding, make_result, fixed_time):
        naive = datetime(2025, 1, 1)
        results = [
            make_result(Source.STATIC_ANALYSIS, [make_finding("X", first_seen=naive)], minutes=0),
            make_result(Source.STATIC_ANALYSIS, [make_finding("X")], minutes=5),
        ]
        report = aggregate(results, run_id="run-1", generated_at=fixed_time)

        (finding,) = report.findings
        assert finding.first_seen == fixed_time

    def test_repeated_id_in_one_result_counted_once(self, make_finding, make_result, fixed_time, caplog):
        result = make_result(Source.DEPENDENCY_SCAN, [
            make_finding("dup", source=Source.DEPENDENCY_SCAN, severity=Severity.MEDIUM),
            make_finding("dup", source=Source.DEPENDENCY_SCAN, severity=Severity.CRITICAL),
            make_finding("other", source=Source.DEPENDENCY_SCAN, severity=Severity.LOW),
        ])

        report = aggregate([result], run_id="run-1", generated_at=fixed_time)

        assert report.total_findings == 2
        assert report.count(Severity.CRITICAL) == 1
        assert report.count(Severity.MEDIUM) == 0
        assert len(report.result_for(Source.DEPENDENCY_SCAN).findings) == 2
        assert "repeats 1 finding id(s)" in caplog.text

    def test_foreign_finding_is_an_invariant_error(self, make_finding, make_result):
        result = make_result(Source.STATIC_ANALYSIS, [make_finding("x", source=Source.DYNAMIC_SCAN)])
        with pytest.raises(InternalInvariantError) as exc_info:
            aggregate([result], run_id="run-1")
        assert exc_info.value.diagnostics["finding_id"] == "x"


@pytest.mark.unit
class TestInvariants:

    def test_verify_counts_detects_mismatch(self, three_results, fixed_time):
        report = aggregate(three_results, run_id="run-1", generated_at=fixed_time)
        tampered = report.model_copy(update={"counts_by_severity": {"critical": 5}})

        with pytest.raises(InternalInvariantError) as exc_info:
            verify_counts(tampered)
        assert exc_info.value.diagnostics["counted"] == 5
        assert exc_info.value.diagnostics["held_in_results"] == 4

    def test_tally_includes_every_tier(self):
        assert tally([]) == {tier.value: 0 for tier in Severity}


@pytest.mark.unit
@pytest.mark.reporting
class TestGroupByCategory:

    def test_groups_case_insensitively_across_sources(self, three_results, fixed_time):
        report = aggregate(three_results, run_id="run-1", generated_at=fixed_time)
        groups = group_by_category(report)

        assert list(groups) == ["SQL Injection", "Prototype Pollution", "Cookie"]
        assert [f.id for f in groups["SQL Injection"]] == ["sast-1", "dast-1"]
