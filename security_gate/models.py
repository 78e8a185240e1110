"""
Centralized Pydantic Data Models for the Security Gate
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import PolicyConfigError


class Severity(str, Enum):
    """Common severity tiers, most severe first."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    @classmethod
    def ordered(cls) -> Tuple["Severity", ...]:
        return tuple(_SEVERITY_ORDER)


_SEVERITY_ORDER = [Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM, Severity.LOW, Severity.INFO]


class Source(str, Enum):
    """Scanner category that produced a result."""
    STATIC_ANALYSIS = "static-analysis"
    DEPENDENCY_SCAN = "dependency-scan"
    DYNAMIC_SCAN = "dynamic-scan"


class ScanStatus(str, Enum):
    OK = "ok"
    TIMED_OUT = "timed-out"
    ERRORED = "errored"


class GateOutcome(str, Enum):
    PASS = "pass"
    BLOCKED = "blocked"
    INDETERMINATE = "indeterminate"


class GateModel(BaseModel):
    """Base for wire models: camelCase on the wire, immutable once built."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps are read as UTC so every comparison is between aware values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Finding(GateModel):
    """A single security issue reported by one scanner."""
    id: str
    source: Source
    severity: Severity
    category: str
    location: Optional[str] = None
    description: str = ""
    first_seen: datetime

    @field_validator("first_seen")
    @classmethod
    def _aware_first_seen(cls, value: datetime) -> datetime:
        return _as_utc(value)


class ScanResult(GateModel):
    """One scanner's complete output for a run."""
    source: Source
    started_at: datetime
    completed_at: datetime
    status: ScanStatus = ScanStatus.OK
    findings: Tuple[Finding, ...] = ()
    error: Optional[str] = None

    @field_validator("started_at", "completed_at")
    @classmethod
    def _aware_times(cls, value: datetime) -> datetime:
        return _as_utc(value)


class RawReport(BaseModel):
    """Un-normalized scanner output handed over by a scan runner."""
    source: Source
    payload: Any
    fmt: Optional[str] = None


class GateVerdict(GateModel):
    """The pass/blocked/indeterminate decision for a pipeline run."""
    outcome: GateOutcome
    reasons: Tuple[str, ...] = ()
    blocking_sources: Tuple[Source, ...] = ()


class AggregatedReport(GateModel):
    """Merged view across all ScanResults for one pipeline run."""
    run_id: str
    generated_at: datetime
    expected_sources: Tuple[Source, ...] = ()
    results: Tuple[ScanResult, ...] = ()
    counts_by_severity: Dict[str, int] = Field(default_factory=dict)
    findings: Tuple[Finding, ...] = ()
    verdict: Optional[GateVerdict] = None

    @field_validator("generated_at")
    @classmethod
    def _aware_generated_at(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @field_validator("counts_by_severity")
    @classmethod
    def _tier_order(cls, value: Dict[str, int]) -> Dict[str, int]:
        """Keep counts in tier order however the mapping arrived (e.g. from sorted JSON)."""
        ordered = {tier.value: value[tier.value] for tier in Severity.ordered() if tier.value in value}
        ordered.update((key, count) for key, count in value.items() if key not in ordered)
        return ordered

    def count(self, severity: Severity) -> int:
        return self.counts_by_severity.get(severity.value, 0)

    @property
    def total_findings(self) -> int:
        return sum(self.counts_by_severity.values())

    def result_for(self, source: Source) -> Optional[ScanResult]:
        for result in self.results:
            if result.source == source:
                return result
        return None

    def missing_sources(self) -> Tuple[Source, ...]:
        present = {result.source for result in self.results}
        return tuple(s for s in self.expected_sources if s not in present)

    def unavailable_sources(self) -> Tuple[Tuple[Source, str], ...]:
        """Expected sources that are absent or did not finish cleanly, with the reason."""
        unavailable = []
        for source in self.expected_sources:
            result = self.result_for(source)
            if result is None:
                unavailable.append((source, "no result received"))
            elif result.status != ScanStatus.OK:
                reason = result.status.value
                if result.error:
                    reason = f"{reason}: {result.error}"
                unavailable.append((source, reason))
        return tuple(unavailable)

    def with_verdict(self, verdict: GateVerdict) -> "AggregatedReport":
        return self.model_copy(update={"verdict": verdict})


# Thresholds used when the operator does not configure a tier.
DEFAULT_MAX_ALLOWED: Dict[Severity, Optional[int]] = {
    Severity.CRITICAL: 0,
    Severity.HIGH: 0,
    Severity.MEDIUM: None,
    Severity.LOW: None,
    Severity.INFO: None,
}

_UNLIMITED_LABELS = {"unlimited", "inf", "infinity", "none", "*"}


def _coerce_limits(value: Any) -> Any:
    if not isinstance(value, dict):
        return value
    coerced = {}
    for tier, limit in value.items():
        if isinstance(limit, str) and limit.strip().lower() in _UNLIMITED_LABELS:
            limit = None
        elif isinstance(limit, float) and limit == float("inf"):
            limit = None
        coerced[tier] = limit
    return coerced


class SeverityPolicyConfig(GateModel):
    """
    Operator-supplied thresholds.

    max_allowed maps each tier to the highest tolerated count (None means
    unlimited). Tiers left out fall back to DEFAULT_MAX_ALLOWED.
    source_overrides replaces the global limit of a tier for one source.
    """
    max_allowed: Dict[Severity, Optional[int]] = Field(default_factory=lambda: dict(DEFAULT_MAX_ALLOWED))
    source_overrides: Dict[Source, Dict[Severity, Optional[int]]] = Field(default_factory=dict)
    indeterminate_on_missing_source: bool = True

    @field_validator("max_allowed", mode="before")
    @classmethod
    def _parse_max_allowed(cls, value):
        return _coerce_limits(value)

    @field_validator("source_overrides", mode="before")
    @classmethod
    def _parse_overrides(cls, value):
        if isinstance(value, dict):
            return {source: _coerce_limits(limits) for source, limits in value.items()}
        return value

    @model_validator(mode="after")
    def _check_limits(self):
        merged = dict(DEFAULT_MAX_ALLOWED)
        merged.update(self.max_allowed)
        object.__setattr__(self, "max_allowed", merged)

        for tier, limit in merged.items():
            if limit is not None and limit < 0:
                raise PolicyConfigError(f"max allowed {tier.value} findings must be >= 0, got {limit}")
        for source, limits in self.source_overrides.items():
            for tier, limit in limits.items():
                if limit is not None and limit < 0:
                    raise PolicyConfigError(
                        f"override for {source.value} allows {limit} {tier.value} findings; must be >= 0"
                    )
        return self

    def has_override(self, source: Source, tier: Severity) -> bool:
        return tier in self.source_overrides.get(source, {})

    def limit_for(self, tier: Severity, source: Optional[Source] = None) -> Optional[int]:
        if source is not None and self.has_override(source, tier):
            return self.source_overrides[source][tier]
        return self.max_allowed[tier]

