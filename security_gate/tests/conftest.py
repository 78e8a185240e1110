# Security Gate Test Configuration
# This file contains shared pytest fixtures and configuration

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, MagicMock
from typing import Dict, List

from security_gate.models import Finding, ScanResult, ScanStatus, Severity, Source


FIXED_TIME = datetime(2025, 11, 24, 10, 0, 0, tzinfo=timezone.utc)


# ============================================================================
# Mock Redis Client
# ============================================================================

@pytest.fixture
def mock_redis_client():
    """Mock Redis client for testing without actual Redis connection."""
    mock_client = MagicMock()

    # In-memory storage for testing
    storage = {}

    def mock_get(key):
        return storage.get(key, None)

    def mock_set(key, value):
        storage[key] = value
        return True

    def mock_rpush(key, value):
        storage.setdefault(key, []).append(value)
        return len(storage[key])

    def mock_lrange(key, start, end):
        if key not in storage:
            return []
        return storage[key][start:end + 1] if end != -1 else storage[key][start:]

    mock_client.get = Mock(side_effect=mock_get)
    mock_client.set = Mock(side_effect=mock_set)
    mock_client.rpush = Mock(side_effect=mock_rpush)
    mock_client.lrange = Mock(side_effect=mock_lrange)
    mock_client.expire = Mock(return_value=True)
    mock_client.ping = Mock(return_value=True)
    mock_client.storage = storage

    return mock_client


# ============================================================================
# Finding / ScanResult Factories
# ============================================================================

@pytest.fixture
def fixed_time():
    return FIXED_TIME


@pytest.fixture
def make_finding():
    """Factory for Finding records with sensible defaults."""
    def _make(
        finding_id: str,
        source: Source = Source.STATIC_ANALYSIS,
        severity: Severity = Severity.HIGH,
        category: str = "SQL Injection",
        location: str = None,
        first_seen: datetime = FIXED_TIME,
        description: str = "",
    ) -> Finding:
        return Finding(
            id=finding_id,
            source=source,
            severity=severity,
            category=category,
            location=location,
            description=description,
            first_seen=first_seen,
        )
    return _make


@pytest.fixture
def make_result():
    """Factory for ScanResults; `minutes` shifts completion for rerun ordering."""
    def _make(
        source: Source,
        findings: List[Finding] = (),
        status: ScanStatus = ScanStatus.OK,
        error: str = None,
        minutes: int = 0,
    ) -> ScanResult:
        return ScanResult(
            source=source,
            started_at=FIXED_TIME + timedelta(minutes=minutes),
            completed_at=FIXED_TIME + timedelta(minutes=minutes, seconds=30),
            status=status,
            findings=tuple(findings),
            error=error,
        )
    return _make


@pytest.fixture
def severity_findings(make_finding):
    """Build `count` findings of one tier for one source."""
    def _make(source: Source, severity: Severity, count: int, prefix: str = "") -> List[Finding]:
        return [
            make_finding(f"{prefix or severity.value}-{i}", source=source, severity=severity)
            for i in range(count)
        ]
    return _make


# ============================================================================
# Scanner Report Samples
# ============================================================================

@pytest.fixture
def sample_sarif() -> Dict:
    """SARIF 2.1.0 report as emitted by `semgrep --sarif`."""
    return {
        "$schema": "https://json.schemastore.org/sarif-2.1.0.json",
        "version": "2.1.0",
        "runs": [
            {
                "tool": {
                    "driver": {
                        "name": "Semgrep OSS",
                        "rules": [
                            {
                                "id": "python.lang.security.audit.formatted-sql-query",
                                "shortDescription": {"text": "SQL Injection"},
                                "properties": {"security-severity": "9.8"},
                            },
                            {
                                "id": "python.flask.security.audit.debug-enabled",
                                "name": "Flask Debug Mode",
                                "defaultConfiguration": {"level": "warning"},
                            },
                        ],
                    }
                },
                "results": [
                    {
                        "ruleId": "python.lang.security.audit.formatted-sql-query",
                        "level": "error",
                        "message": {"text": "Detected string formatting in a SQL query."},
                        "locations": [
                            {
                                "physicalLocation": {
                                    "artifactLocation": {"uri": "app/db.py"},
                                    "region": {"startLine": 42},
                                }
                            }
                        ],
                        "partialFingerprints": {"primaryLocationLineHash": "abc123"},
                    },
                    {
                        "ruleId": "python.flask.security.audit.debug-enabled",
                        "message": {"text": "Flask app run with debug=True."},
                        "locations": [
                            {
                                "physicalLocation": {
                                    "artifactLocation": {"uri": "app.py"},
                                    "region": {"startLine": 10},
                                }
                            }
                        ],
                    },
                ],
            }
        ],
    }


@pytest.fixture
def sample_semgrep() -> Dict:
    """Semgrep native JSON output (`semgrep --json`)."""
    return {
        "results": [
            {
                "check_id": "javascript.express.security.audit.xss.direct-response-write",
                "path": "src/routes.js",
                "start": {"line": 12, "col": 5},
                "end": {"line": 12, "col": 40},
                "extra": {
                    "severity": "ERROR",
                    "message": "User input flows into res.send().",
                    "fingerprint": "f00d",
                    "metadata": {"vulnerability_class": ["Cross-Site-Scripting (XSS)"]},
                },
            }
        ],
        "errors": [],
    }


@pytest.fixture
def sample_snyk() -> Dict:
    """Snyk Open Source JSON output (`snyk test --json`)."""
    return {
        "ok": False,
        "projectName": "demo-app",
        "vulnerabilities": [
            {
                "id": "SNYK-JS-LODASH-567746",
                "title": "Prototype Pollution",
                "severity": "high",
                "packageName": "lodash",
                "version": "4.17.15",
                "from": ["demo-app@1.0.0", "lodash@4.17.15"],
            },
            {
                "id": "SNYK-JS-MINIMIST-559764",
                "title": "Prototype Pollution",
                "severity": "medium",
                "packageName": "minimist",
                "version": "0.0.8",
                "from": ["demo-app@1.0.0", "mkdirp@0.5.1", "minimist@0.0.8"],
            },
        ],
    }


@pytest.fixture
def sample_npm_audit() -> Dict:
    """npm audit v2 JSON output (`npm audit --json`)."""
    return {
        "auditReportVersion": 2,
        "vulnerabilities": {
            "minimist": {
                "name": "minimist",
                "severity": "critical",
                "via": [
                    {
                        "source": 1179,
                        "title": "Prototype Pollution in minimist",
                        "severity": "critical",
                        "range": "<0.2.4",
                    }
                ],
                "range": "<0.2.4",
                "fixAvailable": True,
            },
            "mkdirp": {
                "name": "mkdirp",
                "severity": "moderate",
                "via": ["minimist"],
                "range": "0.4.1 - 0.5.1",
                "fixAvailable": True,
            },
        },
        "metadata": {"vulnerabilities": {"critical": 1, "moderate": 1, "total": 2}},
    }


@pytest.fixture
def sample_zap_json() -> Dict:
    """OWASP ZAP traditional JSON report."""
    return {
        "@programName": "ZAP",
        "@version": "2.14.0",
        "site": [
            {
                "@name": "https://app.example.com",
                "@host": "app.example.com",
                "@port": "443",
                "alerts": [
                    {
                        "pluginid": "10038",
                        "alertRef": "10038-1",
                        "alert": "Content Security Policy (CSP) Header Not Set",
                        "riskcode": "2",
                        "confidence": "3",
                        "riskdesc": "Medium (High)",
                        "desc": "<p>Content Security Policy (CSP) is an added layer of security.</p>",
                        "instances": [{"uri": "https://app.example.com/", "method": "GET"}],
                    },
                    {
                        "pluginid": "40012",
                        "alertRef": "40012",
                        "alert": "Cross Site Scripting (Reflected)",
                        "riskcode": "3",
                        "confidence": "2",
                        "riskdesc": "High (Medium)",
                        "desc": "<p>Reflected XSS in the search parameter.</p>",
                        "instances": [{"uri": "https://app.example.com/search?q=x", "method": "GET"}],
                    },
                ],
            }
        ],
    }


@pytest.fixture
def sample_zap_xml() -> str:
    """OWASP ZAP traditional XML report with a single alert."""
    return """<?xml version="1.0"?>
<OWASPZAPReport version="2.14.0" generated="Mon, 24 Nov 2025 10:00:00">
    <site name="https://app.example.com" host="app.example.com" port="443" ssl="true">
        <alerts>
            <alertitem>
                <pluginid>10020</pluginid>
                <alertRef>10020-1</alertRef>
                <alert>Missing Anti-clickjacking Header</alert>
                <name>Missing Anti-clickjacking Header</name>
                <riskcode>2</riskcode>
                <confidence>2</confidence>
                <riskdesc>Medium (Medium)</riskdesc>
                <desc>&lt;p&gt;The response does not protect against &apos;ClickJacking&apos; attacks.&lt;/p&gt;</desc>
                <instances>
                    <instance>
                        <uri>https://app.example.com/login</uri>
                        <method>GET</method>
                    </instance>
                </instances>
            </alertitem>
        </alerts>
    </site>
</OWASPZAPReport>
"""
