"""
Severity Policy: the pure decision function of the gate.

decide() is referentially transparent; identical (report, config) pairs
always produce an identical GateVerdict, which is what makes a gate decision
reproducible during an audit.
"""
import logging
from typing import Any, Dict, List, Mapping, Optional, Set, Union

from pydantic import ValidationError

from .aggregator import tally
from .errors import PolicyConfigError
from .models import (
    AggregatedReport,
    GateOutcome,
    GateVerdict,
    Severity,
    SeverityPolicyConfig,
    Source,
)

logger = logging.getLogger(__name__)


def load_policy(data: Union[SeverityPolicyConfig, Mapping[str, Any], None]) -> SeverityPolicyConfig:
    """
    Build a SeverityPolicyConfig from operator configuration.

    Accepts camelCase or snake_case keys. `None` yields the default policy.

    Raises:
        PolicyConfigError: On unknown tiers or sources, negative or
            non-integer counts, or any other invalid value
    """
    if isinstance(data, SeverityPolicyConfig):
        return data
    if data is None:
        return SeverityPolicyConfig()
    if not isinstance(data, Mapping):
        raise PolicyConfigError(f"policy must be a mapping, got {type(data).__name__}")
    try:
        return SeverityPolicyConfig.model_validate(dict(data))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'policy'}: {err['msg']}" for err in e.errors()
        )
        raise PolicyConfigError(f"invalid severity policy: {problems}") from e


def _plural(count: int, tier: Severity) -> str:
    noun = "finding" if count == 1 else "findings"
    return f"{count} {tier.value} {noun}"


def _exceed(count: int) -> str:
    return "exceeds" if count == 1 else "exceed"


def _breakdown(counts: Dict[Source, int]) -> str:
    return ", ".join(f"{source.value}: {n}" for source, n in counts.items() if n)


def decide(report: AggregatedReport, config: SeverityPolicyConfig) -> GateVerdict:
    """
    Map an aggregated report and thresholds to a gate verdict.

    Every tier is checked from critical down; all violations are reported,
    not only the first. Sources with a per-source override for a tier are
    checked against it individually, the rest are pooled against the
    global limit. An unavailable expected source makes the verdict
    indeterminate when the policy asks for it, but blocked always wins.
    """
    per_source = {
        result.source: tally(result.findings)
        for result in sorted(report.results, key=lambda r: r.source.value)
    }

    reasons: List[str] = []
    blocking: Set[Source] = set()

    for tier in Severity.ordered():
        pooled: Dict[Source, int] = {}
        override_reasons: List[str] = []

        for source, counts in per_source.items():
            count = counts[tier.value]
            if config.has_override(source, tier):
                limit = config.limit_for(tier, source)
                if limit is not None and count > limit:
                    override_reasons.append(
                        f"{_plural(count, tier)} from {source.value} {_exceed(count)} its limit of {limit}"
                    )
                    blocking.add(source)
            else:
                pooled[source] = count

        limit = config.limit_for(tier)
        total = sum(pooled.values())
        if limit is not None and total > limit:
            reasons.append(f"{_plural(total, tier)} {_exceed(total)} the limit of {limit} ({_breakdown(pooled)})")
            blocking.update(source for source, n in pooled.items() if n)
        reasons.extend(override_reasons)

    blocked = bool(blocking)

    unavailable = report.unavailable_sources()
    for source, why in unavailable:
        if config.indeterminate_on_missing_source:
            reasons.append(f"{source.value} unavailable ({why})")
        else:
            reasons.append(f"{source.value} unavailable ({why}); ignored by policy")

    if blocked:
        outcome = GateOutcome.BLOCKED
    elif unavailable and config.indeterminate_on_missing_source:
        outcome = GateOutcome.INDETERMINATE
    else:
        outcome = GateOutcome.PASS
        if not reasons:
            reasons.append("all severity tiers within configured limits")

    verdict = GateVerdict(
        outcome=outcome,
        reasons=tuple(reasons),
        blocking_sources=tuple(sorted(blocking, key=lambda s: s.value)),
    )
    logger.info("Run %s verdict: %s (%d reason(s))", report.run_id, outcome.value, len(reasons))
    return verdict


def failure_verdict(stage: str, error: BaseException, diagnostics: Optional[Dict[str, Any]] = None) -> GateVerdict:
    """Verdict used when the gate itself fails; never a pass."""
    reasons = [f"gate failed while {stage}: {type(error).__name__}: {error}"]
    for key in sorted(diagnostics or {}):
        reasons.append(f"diagnostic {key}={diagnostics[key]!r}")
    return GateVerdict(outcome=GateOutcome.INDETERMINATE, reasons=tuple(reasons))
