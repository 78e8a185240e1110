"""
Finding Normalizer

Translates each scanner's native report into Finding records on the common
five-tier severity scale.

Supported formats per source:
- static-analysis: SARIF 2.1.0, Semgrep JSON
- dependency-scan: Snyk JSON, npm audit (v2) JSON
- dynamic-scan: OWASP ZAP JSON and XML reports
- any source: the gate's own pre-normalized {"findings": [...]} document

Severity tables are explicit and exhaustive for every label the tools emit.
A label missing from a table fails closed to HIGH.
"""
import hashlib
import json
import logging
import math
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from xml.parsers.expat import ExpatError

import xmltodict
from pydantic import ValidationError

from .errors import NormalizationError
from .models import Finding, Severity, Source

logger = logging.getLogger(__name__)

SNIPPET_LENGTH = 200
UNMAPPED_SEVERITY = Severity.HIGH

# =============================================================================
# SEVERITY TABLES
# =============================================================================

# SARIF result.level (https://docs.oasis-open.org/sarif/sarif/v2.1.0)
SARIF_LEVELS: Dict[str, Severity] = {
    "error": Severity.HIGH,
    "warning": Severity.MEDIUM,
    "note": Severity.LOW,
    "none": Severity.INFO,
}

# Semgrep extra.severity (legacy and current vocabularies)
SEMGREP_SEVERITIES: Dict[str, Severity] = {
    "CRITICAL": Severity.CRITICAL,
    "ERROR": Severity.HIGH,
    "HIGH": Severity.HIGH,
    "WARNING": Severity.MEDIUM,
    "MEDIUM": Severity.MEDIUM,
    "INFO": Severity.LOW,
    "LOW": Severity.LOW,
    "INVENTORY": Severity.INFO,
    "EXPERIMENT": Severity.INFO,
}

SNYK_SEVERITIES: Dict[str, Severity] = {
    "critical": Severity.CRITICAL,
    "high": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "low": Severity.LOW,
}

NPM_AUDIT_SEVERITIES: Dict[str, Severity] = {
    "critical": Severity.CRITICAL,
    "high": Severity.HIGH,
    "moderate": Severity.MEDIUM,
    "low": Severity.LOW,
    "info": Severity.INFO,
}

# ZAP riskcode; ZAP has no critical tier
ZAP_RISK_CODES: Dict[str, Severity] = {
    "3": Severity.HIGH,
    "2": Severity.MEDIUM,
    "1": Severity.LOW,
    "0": Severity.INFO,
}

ZAP_RISK_DESCRIPTIONS: Dict[str, Severity] = {
    "high": Severity.HIGH,
    "medium": Severity.MEDIUM,
    "low": Severity.LOW,
    "informational": Severity.INFO,
}

GATE_SEVERITIES: Dict[str, Severity] = {tier.value: tier for tier in Severity}

SEVERITY_TABLES: Dict[str, Dict[str, Severity]] = {
    "sarif": SARIF_LEVELS,
    "semgrep": SEMGREP_SEVERITIES,
    "snyk": SNYK_SEVERITIES,
    "npm-audit": NPM_AUDIT_SEVERITIES,
    "zap": ZAP_RISK_CODES,
    "gate": GATE_SEVERITIES,
}


def map_severity(table: Dict[str, Severity], label: Any, fmt: str) -> Severity:
    """Look a native label up in a table; unknown labels fail closed to HIGH."""
    if isinstance(label, Enum):
        label = label.value
    key = str(label).strip() if label is not None else ""
    if key in table:
        return table[key]
    for candidate, severity in table.items():
        if candidate.lower() == key.lower():
            return severity
    logger.warning("Unmapped %s severity label %r; treating as %s", fmt, label, UNMAPPED_SEVERITY.value)
    return UNMAPPED_SEVERITY


def severity_from_cvss(score: Any) -> Optional[Severity]:
    """CVSS v3 qualitative rating, as used by SARIF security-severity."""
    try:
        value = float(score)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or not 0.0 <= value <= 10.0:
        return None
    if value >= 9.0:
        return Severity.CRITICAL
    if value >= 7.0:
        return Severity.HIGH
    if value >= 4.0:
        return Severity.MEDIUM
    if value >= 0.1:
        return Severity.LOW
    return Severity.INFO


# =============================================================================
# HELPERS
# =============================================================================

def fingerprint(*parts: Any) -> str:
    digest = hashlib.sha256("|".join("" if p is None else str(p) for p in parts).encode("utf-8"))
    return digest.hexdigest()[:16]


def _snippet(payload: Any) -> str:
    if isinstance(payload, (bytes, bytearray)):
        text = payload[:SNIPPET_LENGTH].decode("utf-8", "replace")
    elif isinstance(payload, str):
        text = payload
    else:
        try:
            text = json.dumps(payload, default=str)
        except (TypeError, ValueError):
            text = repr(payload)
    return text[:SNIPPET_LENGTH]


_TAG_RE = re.compile(r"<[^>]+>")


def _strip_html(text: Optional[str]) -> str:
    if not text:
        return ""
    return " ".join(_TAG_RE.sub(" ", text).split())


def _as_list(value: Any) -> List[Any]:
    """xmltodict yields a dict for a single child and a list for several."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _collapse(findings: Iterable[Finding]) -> Tuple[Finding, ...]:
    """Keep one finding per id, the most severe one, in first-emitted order."""
    by_id: Dict[str, Finding] = {}
    for finding in findings:
        kept = by_id.get(finding.id)
        if kept is None or finding.severity.rank < kept.severity.rank:
            if kept is not None:
                logger.debug("Collapsing repeated finding %s", finding.id)
            by_id[finding.id] = finding
    return tuple(by_id.values())


# =============================================================================
# FORMAT PARSERS
# =============================================================================

def _parse_sarif(doc: Dict[str, Any], source: Source, observed_at: datetime) -> List[Finding]:
    findings = []
    for run in doc["runs"]:
        driver = run.get("tool", {}).get("driver", {})
        rules = {rule.get("id"): rule for rule in driver.get("rules") or []}
        for result in run.get("results") or []:
            rule_id = result.get("ruleId") or result.get("rule", {}).get("id") or "unknown-rule"
            rule = rules.get(rule_id, {})

            cvss = (result.get("properties") or {}).get("security-severity")
            if cvss is None:
                cvss = (rule.get("properties") or {}).get("security-severity")
            severity = severity_from_cvss(cvss) if cvss is not None else None
            if severity is None:
                level = result.get("level") or (rule.get("defaultConfiguration") or {}).get("level") or "warning"
                severity = map_severity(SARIF_LEVELS, level, "sarif")

            location = None
            locations = result.get("locations") or []
            if locations:
                physical = locations[0].get("physicalLocation") or {}
                uri = (physical.get("artifactLocation") or {}).get("uri")
                line = (physical.get("region") or {}).get("startLine")
                if uri:
                    location = f"{uri}:{line}" if line else uri

            prints = result.get("partialFingerprints") or result.get("fingerprints") or {}
            if prints:
                print_id = prints[sorted(prints)[0]]
            else:
                print_id = fingerprint(rule_id, location)

            category = (
                (rule.get("shortDescription") or {}).get("text")
                or rule.get("name")
                or rule_id
            )
            findings.append(Finding(
                id=f"{rule_id}:{print_id}",
                source=source,
                severity=severity,
                category=category,
                location=location,
                description=(result.get("message") or {}).get("text", ""),
                first_seen=observed_at,
            ))
    return findings


def _parse_semgrep(doc: Dict[str, Any], source: Source, observed_at: datetime) -> List[Finding]:
    findings = []
    for result in doc["results"]:
        check_id = result["check_id"]
        extra = result.get("extra") or {}
        metadata = extra.get("metadata") or {}
        path = result.get("path")
        line = (result.get("start") or {}).get("line")
        location = f"{path}:{line}" if path and line else path

        print_id = extra.get("fingerprint")
        if not print_id or print_id == "requires login":
            print_id = fingerprint(check_id, location)

        classes = metadata.get("vulnerability_class") or []
        category = classes[0] if classes else check_id.rsplit(".", 1)[-1]
        findings.append(Finding(
            id=f"{check_id}:{print_id}",
            source=source,
            severity=map_severity(SEMGREP_SEVERITIES, extra.get("severity"), "semgrep"),
            category=category,
            location=location,
            description=extra.get("message", ""),
            first_seen=observed_at,
        ))
    return findings


def _parse_snyk(doc: Any, source: Source, observed_at: datetime) -> List[Finding]:
    # `snyk test --all-projects --json` emits a list of project documents
    projects = doc if isinstance(doc, list) else [doc]
    findings = []
    for project in projects:
        for vuln in project["vulnerabilities"]:
            package = f"{vuln.get('packageName', 'unknown')}@{vuln.get('version', '?')}"
            title = vuln.get("title") or vuln["id"]
            path = vuln.get("from") or []
            description = f"{title} in {package}"
            if len(path) > 1:
                description += f" (introduced via {' > '.join(path)})"
            findings.append(Finding(
                id=f"{vuln['id']}:{package}",
                source=source,
                severity=map_severity(SNYK_SEVERITIES, vuln.get("severity"), "snyk"),
                category=title,
                location=package,
                description=description,
                first_seen=observed_at,
            ))
    return findings


def _parse_npm_audit(doc: Dict[str, Any], source: Source, observed_at: datetime) -> List[Finding]:
    findings = []
    for name in sorted(doc["vulnerabilities"]):
        entry = doc["vulnerabilities"][name]
        advisories = [via for via in entry.get("via") or [] if isinstance(via, dict)]
        titles = [adv.get("title") for adv in advisories if adv.get("title")]
        if titles:
            category = titles[0]
            description = "; ".join(titles)
        else:
            transitive = [via for via in entry.get("via") or [] if isinstance(via, str)]
            category = "Vulnerable Dependency"
            description = f"Depends on vulnerable {', '.join(transitive)}" if transitive else category
        findings.append(Finding(
            id=f"npm:{entry.get('name', name)}",
            source=source,
            severity=map_severity(NPM_AUDIT_SEVERITIES, entry.get("severity"), "npm-audit"),
            category=category,
            location=f"{entry.get('name', name)}@{entry.get('range', '*')}",
            description=description,
            first_seen=observed_at,
        ))
    return findings


def _zap_severity(alert: Dict[str, Any]) -> Severity:
    code = alert.get("riskcode")
    if code is not None and str(code) in ZAP_RISK_CODES:
        return ZAP_RISK_CODES[str(code)]
    riskdesc = alert.get("riskdesc") or ""
    label = riskdesc.split("(")[0].strip()
    if code is None and label:
        return map_severity(ZAP_RISK_DESCRIPTIONS, label, "zap")
    return map_severity(ZAP_RISK_CODES, code, "zap")


def _parse_zap(doc: Dict[str, Any], source: Source, observed_at: datetime) -> List[Finding]:
    findings = []
    for site in _as_list(doc["site"]):
        site_name = site.get("@name", "")
        alerts = site.get("alerts") or []
        if isinstance(alerts, dict):
            # XML shape: <alerts><alertitem>...</alertitem></alerts>
            alerts = _as_list(alerts.get("alertitem"))
        for alert in alerts:
            instances = alert.get("instances") or []
            if isinstance(instances, dict):
                instances = _as_list(instances.get("instance"))
            location = instances[0].get("uri") if instances else site_name
            ref = alert.get("alertRef") or alert.get("pluginid") or fingerprint(alert.get("alert"))
            findings.append(Finding(
                id=f"{ref}@{site_name}",
                source=source,
                severity=_zap_severity(alert),
                category=alert.get("alert") or alert.get("name") or f"ZAP plugin {ref}",
                location=location or None,
                description=_strip_html(alert.get("desc")),
                first_seen=observed_at,
            ))
    return findings


def _parse_zap_xml(doc: Dict[str, Any], source: Source, observed_at: datetime) -> List[Finding]:
    report = doc["OWASPZAPReport"]
    return _parse_zap({"site": report.get("site")}, source, observed_at)


def _parse_gate(doc: Dict[str, Any], source: Source, observed_at: datetime) -> List[Finding]:
    findings = []
    for item in doc["findings"]:
        data = dict(item)
        data["source"] = source
        data["severity"] = map_severity(GATE_SEVERITIES, data.get("severity"), "gate")
        if not data.get("firstSeen") and not data.get("first_seen"):
            data["firstSeen"] = observed_at
        if not data.get("id"):
            data["id"] = fingerprint(data.get("category"), data.get("location"), data.get("description"))
        findings.append(Finding.model_validate(data))
    return findings


PARSERS: Dict[str, Callable[[Any, Source, datetime], List[Finding]]] = {
    "sarif": _parse_sarif,
    "semgrep": _parse_semgrep,
    "snyk": _parse_snyk,
    "npm-audit": _parse_npm_audit,
    "zap": _parse_zap,
    "zap-xml": _parse_zap_xml,
    "gate": _parse_gate,
}

FORMATS_BY_SOURCE: Dict[Source, Tuple[str, ...]] = {
    Source.STATIC_ANALYSIS: ("sarif", "semgrep", "gate"),
    Source.DEPENDENCY_SCAN: ("snyk", "npm-audit", "gate"),
    Source.DYNAMIC_SCAN: ("zap", "zap-xml", "gate"),
}


# =============================================================================
# DETECTION & ENTRY POINT
# =============================================================================

def detect_format(doc: Any) -> Optional[str]:
    """Guess the report format from the decoded document's shape."""
    if isinstance(doc, list):
        if doc and all(isinstance(p, dict) and isinstance(p.get("vulnerabilities"), list) for p in doc):
            return "snyk"
        return None
    if not isinstance(doc, dict):
        return None
    if "OWASPZAPReport" in doc:
        return "zap-xml"
    if isinstance(doc.get("runs"), list):
        return "sarif"
    if isinstance(doc.get("results"), list):
        return "semgrep"
    if isinstance(doc.get("vulnerabilities"), list):
        return "snyk"
    if isinstance(doc.get("vulnerabilities"), dict):
        return "npm-audit"
    if "site" in doc:
        return "zap"
    if isinstance(doc.get("findings"), list):
        return "gate"
    return None


def decode_payload(source: Source, payload: Any) -> Any:
    """Turn raw bytes/text into a document; dicts and lists pass through."""
    if isinstance(payload, (dict, list)):
        return payload
    if isinstance(payload, (bytes, bytearray)):
        try:
            payload = bytes(payload).decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise NormalizationError(source.value, _snippet(payload), f"payload is not UTF-8 ({e.reason})")
    if not isinstance(payload, str):
        raise NormalizationError(source.value, _snippet(payload), f"unsupported payload type {type(payload).__name__}")

    text = payload.strip()
    if not text:
        raise NormalizationError(source.value, "", "empty payload")
    if text.startswith("<"):
        try:
            return xmltodict.parse(text)
        except ExpatError as e:
            raise NormalizationError(source.value, _snippet(text), f"invalid XML: {e}")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise NormalizationError(source.value, _snippet(text), f"invalid JSON: {e.msg} at line {e.lineno}")


def normalize(
    source: Source,
    payload: Any,
    *,
    fmt: Optional[str] = None,
    observed_at: Optional[datetime] = None,
) -> Tuple[Finding, ...]:
    """
    Convert one scanner report into findings.

    Args:
        source: Scanner category the payload came from
        payload: Raw report (bytes, text, or an already decoded dict/list)
        fmt: Report format; detected from the document when omitted
        observed_at: Detection timestamp stamped on findings (defaults to now)

    Returns:
        Findings in the order the scanner reported them, unique by id

    Raises:
        NormalizationError: If the payload cannot be parsed
    """
    source = Source(source)
    observed_at = observed_at or datetime.now(timezone.utc)
    doc = decode_payload(source, payload)

    fmt = fmt or detect_format(doc)
    if fmt is None:
        raise NormalizationError(source.value, _snippet(payload), "unrecognized report format")
    if fmt not in FORMATS_BY_SOURCE[source]:
        raise NormalizationError(
            source.value, _snippet(payload),
            f"format '{fmt}' is not accepted for {source.value} "
            f"(expected one of {', '.join(FORMATS_BY_SOURCE[source])})",
        )

    try:
        findings = PARSERS[fmt](doc, source, observed_at)
    except NormalizationError:
        raise
    except (KeyError, TypeError, AttributeError, IndexError, ValueError, ValidationError) as e:
        raise NormalizationError(source.value, _snippet(payload), f"malformed {fmt} report ({type(e).__name__}: {e})")

    collapsed = _collapse(findings)
    logger.info("Normalized %d %s finding(s) from %s report", len(collapsed), source.value, fmt)
    return collapsed
