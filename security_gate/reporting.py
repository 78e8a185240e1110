"""
Report Generator

Renders an AggregatedReport and its GateVerdict into:
- a structured JSON artifact (canonical bytes, stable across runs)
- a Markdown summary for CI logs and pull request comments
- an HTML export with all scanner-supplied text escaped
"""
import html
import json
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict

from .aggregator import group_by_category, tally, verify_counts
from .compliance import ComplianceMapping
from .models import AggregatedReport, GateOutcome, GateVerdict, ScanStatus, Severity

logger = logging.getLogger(__name__)

ARTIFACT_SCHEMA_VERSION = 1

OUTCOME_BANNERS = {
    GateOutcome.PASS: "PASS",
    GateOutcome.BLOCKED: "BLOCKED",
    GateOutcome.INDETERMINATE: "INDETERMINATE",
}

SEVERITY_COLORS = {
    Severity.CRITICAL: "#7f1d1d",
    Severity.HIGH: "#dc2626",
    Severity.MEDIUM: "#d97706",
    Severity.LOW: "#2563eb",
    Severity.INFO: "#6b7280",
}


class RenderedReport(BaseModel):
    """The immutable documents produced for one run."""
    model_config = ConfigDict(frozen=True)

    structured: bytes
    summary: str
    html: bytes


def _verdict_for(report: AggregatedReport, verdict: Optional[GateVerdict]) -> GateVerdict:
    verdict = verdict or report.verdict
    if verdict is None:
        raise ValueError(f"report {report.run_id} has no verdict to render")
    return verdict


def _md_cell(value: Any) -> str:
    return str(value).replace("|", "\\|").replace("\n", " ")


class ReportGenerator:

    @staticmethod
    def generate_json(report: AggregatedReport, verdict: Optional[GateVerdict] = None) -> bytes:
        """
        Structured artifact for machine consumption and archival.

        Keys are sorted and findings keep the report order
        (severity desc, source, id), so identical inputs give identical bytes.
        """
        verdict = _verdict_for(report, verdict)
        document = {
            "schemaVersion": ARTIFACT_SCHEMA_VERSION,
            "report": report.model_dump(mode="json", by_alias=True, exclude={"verdict"}),
            "verdict": verdict.model_dump(mode="json", by_alias=True),
        }
        return json.dumps(document, indent=2, sort_keys=True, ensure_ascii=False).encode("utf-8")

    @staticmethod
    def parse_json(data: bytes) -> AggregatedReport:
        """Parse a structured artifact back into a report carrying its verdict."""
        document = json.loads(data.decode("utf-8") if isinstance(data, (bytes, bytearray)) else data)
        version = document.get("schemaVersion")
        if version != ARTIFACT_SCHEMA_VERSION:
            raise ValueError(f"unsupported artifact schema version: {version!r}")
        report = AggregatedReport.model_validate(document["report"])
        if document.get("verdict") is not None:
            report = report.with_verdict(GateVerdict.model_validate(document["verdict"]))
        verify_counts(report)
        return report

    @staticmethod
    def generate_markdown(
        report: AggregatedReport,
        verdict: Optional[GateVerdict] = None,
        mapping: Optional[ComplianceMapping] = None,
    ) -> str:
        """Human summary: verdict, reasons, severity table, availability, findings."""
        verdict = _verdict_for(report, verdict)
        mapping = mapping if mapping is not None else ComplianceMapping()
        tiers = Severity.ordered()

        lines: List[str] = [
            f"# Security Gate Report: {report.run_id}",
            "",
            f"**Verdict:** {OUTCOME_BANNERS[verdict.outcome]}",
            f"**Generated:** {report.generated_at.isoformat()}",
        ]
        if verdict.blocking_sources:
            lines.append(f"**Blocking sources:** {', '.join(s.value for s in verdict.blocking_sources)}")
        lines += ["", "## Reasons", ""]
        lines += [f"- {_md_cell(reason)}" for reason in verdict.reasons]

        if verdict.outcome == GateOutcome.INDETERMINATE:
            lines += [
                "",
                "> The gate could not reach a decision. Missing or failed scans are not "
                "a clean result; re-run the pipeline once every scanner reports.",
            ]

        lines += ["", "## Severity Breakdown", ""]
        header = ["Source", "Status"] + [tier.value.capitalize() for tier in tiers] + ["Total"]
        lines.append("| " + " | ".join(header) + " |")
        lines.append("|" + "---|" * len(header))
        for result in report.results:
            counts = tally(result.findings)
            row = [result.source.value, result.status.value]
            row += [str(counts[tier.value]) for tier in tiers] + [str(len(result.findings))]
            lines.append("| " + " | ".join(row) + " |")
        for source in report.missing_sources():
            lines.append("| " + " | ".join([source.value, "absent"] + ["-"] * (len(tiers) + 1)) + " |")
        total_row = ["**Total**", ""] + [str(report.count(tier)) for tier in tiers] + [str(report.total_findings)]
        lines.append("| " + " | ".join(total_row) + " |")

        lines += ["", "## Source Availability", ""]
        unavailable = report.unavailable_sources()
        if unavailable:
            lines += [f"- **{source.value}** unavailable: {_md_cell(why)}" for source, why in unavailable]
        else:
            lines.append("All expected sources reported successfully.")

        lines += ["", "## Findings by Category", ""]
        groups = group_by_category(report)
        if not groups:
            lines.append("No findings.")
        for category, findings in groups.items():
            controls = mapping.controls_for(category)
            lines += ["", f"### {_md_cell(category)} ({len(findings)})"]
            lines.append(f"Controls: {', '.join(controls) if controls else 'unmapped'}")
            lines += ["", "| Severity | Source | ID | Location |", "|---|---|---|---|"]
            for finding in findings:
                lines.append(
                    f"| {finding.severity.value} | {finding.source.value} | "
                    f"{_md_cell(finding.id)} | {_md_cell(finding.location or '-')} |"
                )

        return "\n".join(lines) + "\n"

    @staticmethod
    def generate_html(
        report: AggregatedReport,
        verdict: Optional[GateVerdict] = None,
        mapping: Optional[ComplianceMapping] = None,
    ) -> bytes:
        """HTML export. Every scanner-controlled string is escaped."""
        verdict = _verdict_for(report, verdict)
        mapping = mapping if mapping is not None else ComplianceMapping()
        esc = html.escape
        tiers = Severity.ordered()

        reasons = "".join(f"<li>{esc(reason)}</li>" for reason in verdict.reasons)
        header = "".join(f"<th>{esc(tier.value.capitalize())}</th>" for tier in tiers)
        rows = []
        for result in report.results:
            counts = tally(result.findings)
            cells = "".join(f"<td>{counts[tier.value]}</td>" for tier in tiers)
            status_class = "ok" if result.status == ScanStatus.OK else "unavailable"
            rows.append(
                f"<tr><td>{esc(result.source.value)}</td>"
                f"<td class=\"{status_class}\">{esc(result.status.value)}</td>{cells}"
                f"<td>{len(result.findings)}</td></tr>"
            )
        for source in report.missing_sources():
            rows.append(
                f"<tr><td>{esc(source.value)}</td><td class=\"unavailable\">absent</td>"
                + "<td>-</td>" * (len(tiers) + 1) + "</tr>"
            )

        unavailable = report.unavailable_sources()
        availability = (
            "".join(f"<li><strong>{esc(s.value)}</strong> unavailable: {esc(why)}</li>" for s, why in unavailable)
            if unavailable else "<li>All expected sources reported successfully.</li>"
        )

        sections = []
        for category, findings in group_by_category(report).items():
            controls = mapping.controls_for(category)
            items = "".join(
                f"<tr><td style=\"color:{SEVERITY_COLORS[f.severity]}\">{esc(f.severity.value)}</td>"
                f"<td>{esc(f.source.value)}</td><td>{esc(f.id)}</td>"
                f"<td>{esc(f.location or '-')}</td><td>{esc(f.description)}</td></tr>"
                for f in findings
            )
            sections.append(
                f"<section><h3>{esc(category)} ({len(findings)})</h3>"
                f"<p>Controls: {esc(', '.join(controls) if controls else 'unmapped')}</p>"
                f"<table><tr><th>Severity</th><th>Source</th><th>ID</th><th>Location</th>"
                f"<th>Description</th></tr>{items}</table></section>"
            )

        document = (
            "<!DOCTYPE html>\n"
            "<html lang=\"en\"><head><meta charset=\"utf-8\">"
            f"<title>Security Gate Report {esc(report.run_id)}</title></head><body>"
            f"<h1>Security Gate Report: {esc(report.run_id)}</h1>"
            f"<p class=\"verdict {esc(verdict.outcome.value)}\">Verdict: {OUTCOME_BANNERS[verdict.outcome]}</p>"
            f"<p>Generated: {esc(report.generated_at.isoformat())}</p>"
            f"<h2>Reasons</h2><ul>{reasons}</ul>"
            f"<h2>Severity Breakdown</h2><table><tr><th>Source</th><th>Status</th>{header}<th>Total</th></tr>"
            f"{''.join(rows)}</table>"
            f"<h2>Source Availability</h2><ul>{availability}</ul>"
            f"<h2>Findings by Category</h2>{''.join(sections) or '<p>No findings.</p>'}"
            "</body></html>\n"
        )
        return document.encode("utf-8")

    @classmethod
    def render(
        cls,
        report: AggregatedReport,
        verdict: Optional[GateVerdict] = None,
        mapping: Optional[ComplianceMapping] = None,
    ) -> RenderedReport:
        verdict = _verdict_for(report, verdict)
        rendered = RenderedReport(
            structured=cls.generate_json(report, verdict),
            summary=cls.generate_markdown(report, verdict, mapping),
            html=cls.generate_html(report, verdict, mapping),
        )
        logger.info("Rendered report for run %s (%d bytes structured)", report.run_id, len(rendered.structured))
        return rendered

    @staticmethod
    def summary_dict(report: AggregatedReport, verdict: Optional[GateVerdict] = None) -> Dict[str, Any]:
        """Compact verdict summary for task results and API responses."""
        verdict = _verdict_for(report, verdict)
        return {
            "runId": report.run_id,
            "outcome": verdict.outcome.value,
            "reasons": list(verdict.reasons),
            "blockingSources": [s.value for s in verdict.blocking_sources],
            "countsBySeverity": dict(report.counts_by_severity),
            "unavailableSources": {s.value: why for s, why in report.unavailable_sources()},
        }
