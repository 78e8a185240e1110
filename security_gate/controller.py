"""
Gate Controller with concurrent result collection

Runs one gate evaluation end to end:
- fans out to every scan runner concurrently and fans in under a wall-clock budget
- normalizes raw reports, degrading a failed source to errored/timed-out
- aggregates, decides and renders the reports
- turns the verdict into the exit code read by the CI system
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict

from .aggregator import ALL_SOURCES, aggregate
from .artifacts import ArtifactStore, check_name
from .compliance import ComplianceMapping
from .errors import InternalInvariantError, NormalizationError, SourceTimeoutError
from .models import (
    AggregatedReport,
    GateOutcome,
    GateVerdict,
    RawReport,
    ScanResult,
    ScanStatus,
    SeverityPolicyConfig,
    Source,
)
from .normalizer import normalize
from .policy import decide, failure_verdict, load_policy
from .reporting import RenderedReport, ReportGenerator
from .run_logger import RunLogger
from .runners import ScanRunner

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 900.0

EXIT_CODES = {
    GateOutcome.PASS: 0,
    GateOutcome.BLOCKED: 1,
    GateOutcome.INDETERMINATE: 2,
}

ARTIFACT_NAMES = {
    "structured": "gate-report.json",
    "summary": "gate-summary.md",
    "html": "gate-report.html",
}


class GateState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    AGGREGATING = "aggregating"
    DECIDING = "deciding"
    REPORTING = "reporting"
    DONE = "done"


class GateRun(BaseModel):
    """Everything one gate run produced."""
    model_config = ConfigDict(frozen=True)

    run_id: str
    states: Tuple[GateState, ...]
    verdict: GateVerdict
    report: Optional[AggregatedReport] = None
    documents: Optional[RenderedReport] = None
    artifacts: Dict[str, str] = {}
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.verdict.outcome]

    def summary(self) -> Dict[str, Any]:
        if self.report is not None:
            data = ReportGenerator.summary_dict(self.report, self.verdict)
        else:
            data = {
                "runId": self.run_id,
                "outcome": self.verdict.outcome.value,
                "reasons": list(self.verdict.reasons),
                "blockingSources": [],
                "countsBySeverity": {},
                "unavailableSources": {},
            }
        data["exitCode"] = self.exit_code
        data["artifacts"] = dict(self.artifacts)
        data["error"] = self.error
        return data


class GateController:
    """
    Orchestrates one pipeline run through the gate.

    All inputs arrive as constructor/run arguments and all outputs are
    returned in a GateRun; the controller keeps no state between runs.
    """
    def __init__(
        self,
        runners: Sequence[ScanRunner],
        policy: Union[SeverityPolicyConfig, Dict[str, Any], None] = None,
        *,
        mapping: Optional[ComplianceMapping] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        expected_sources: Optional[Iterable[Source]] = None,
        artifact_store: Optional[ArtifactStore] = None,
        max_concurrency: int = 0,
        redis_client=None,
    ):
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.runners = list(runners)
        self.policy = policy
        self.mapping = mapping if mapping is not None else ComplianceMapping()
        self.timeout = timeout
        self.expected_sources = tuple(expected_sources) if expected_sources is not None else ALL_SOURCES
        self.artifact_store = artifact_store
        self.max_concurrency = max_concurrency
        self.redis = redis_client

    # -------------------------------------------------------------------------
    # Collection (fan-out / fan-in)
    # -------------------------------------------------------------------------

    def _to_result(self, source: Source, started_at: datetime, outcome: Union[RawReport, ScanResult]) -> ScanResult:
        completed_at = datetime.now(timezone.utc)
        if isinstance(outcome, ScanResult):
            if outcome.source != source:
                raise NormalizationError(
                    source.value, f"<ScanResult source={outcome.source.value}>",
                    "runner returned a result for another source",
                )
            return outcome
        findings = normalize(source, outcome.payload, fmt=outcome.fmt, observed_at=completed_at)
        return ScanResult(
            source=source,
            started_at=started_at,
            completed_at=completed_at,
            status=ScanStatus.OK,
            findings=findings,
        )

    async def _collect_one(self, runner: ScanRunner, semaphore: asyncio.Semaphore, run_log: RunLogger) -> ScanResult:
        """Run one collaborator; every failure except cancellation becomes data."""
        source = Source(runner.source)
        async with semaphore:
            started_at = datetime.now(timezone.utc)
            run_log.log("COLLECT", f"Starting {source.value} collection...")
            try:
                outcome = await runner.collect()
                result = self._to_result(source, started_at, outcome)
            except NormalizationError as e:
                run_log.log("COLLECT", f"{source.value} report rejected: {e}", level=logging.WARNING)
                return ScanResult(
                    source=source,
                    started_at=started_at,
                    completed_at=datetime.now(timezone.utc),
                    status=ScanStatus.ERRORED,
                    error=f"{e.reason}; payload starts with {e.raw_snippet[:80]!r}",
                )
            except Exception as e:
                run_log.log("COLLECT", f"{source.value} collection failed: {e}", level=logging.WARNING)
                return ScanResult(
                    source=source,
                    started_at=started_at,
                    completed_at=datetime.now(timezone.utc),
                    status=ScanStatus.ERRORED,
                    error=f"{type(e).__name__}: {e}",
                )

        run_log.log("COLLECT", f"Finished {source.value}. Found {len(result.findings)} finding(s).")
        return result

    async def _collect(self, run_log: RunLogger) -> List[ScanResult]:
        if not self.runners:
            run_log.log("COLLECT", "No scan runners configured", level=logging.WARNING)
            return []

        limit = self.max_concurrency if self.max_concurrency > 0 else len(self.runners)
        semaphore = asyncio.Semaphore(limit)
        collection_started = datetime.now(timezone.utc)

        tasks = [asyncio.create_task(self._collect_one(r, semaphore, run_log)) for r in self.runners]
        run_log.log("CONTROLLER", f"Scheduling {len(tasks)} collector(s) (max {limit} concurrent, "
                                  f"budget {self.timeout:g}s)...")
        try:
            done, pending = await asyncio.wait(tasks, timeout=self.timeout)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            run_log.log("CONTROLLER", "Run cancelled; partial results discarded", level=logging.WARNING)
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results = []
        for task, runner in zip(tasks, self.runners):
            if task in done:
                results.append(task.result())
                continue
            timeout_error = SourceTimeoutError(Source(runner.source).value, self.timeout)
            run_log.log("COLLECT", str(timeout_error), level=logging.WARNING)
            results.append(ScanResult(
                source=runner.source,
                started_at=collection_started,
                completed_at=datetime.now(timezone.utc),
                status=ScanStatus.TIMED_OUT,
                error=str(timeout_error),
            ))
        return results

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def _store_artifacts(self, run_id: str, documents: RenderedReport) -> Dict[str, str]:
        if self.artifact_store is None:
            return {}
        return {
            "structured": self.artifact_store.put(run_id, ARTIFACT_NAMES["structured"], documents.structured),
            "summary": self.artifact_store.put(run_id, ARTIFACT_NAMES["summary"], documents.summary.encode("utf-8")),
            "html": self.artifact_store.put(run_id, ARTIFACT_NAMES["html"], documents.html),
        }

    async def run(self, run_id: Optional[str] = None) -> GateRun:
        """
        Execute the gate once.

        Returns:
            GateRun with the verdict, report, rendered documents and artifact refs

        Raises:
            PolicyConfigError: Before any collection, if the policy is invalid
            asyncio.CancelledError: If the run is aborted while collecting
        """
        run_id = check_name(run_id or str(uuid.uuid4()), "run id")
        policy = load_policy(self.policy)

        run_log = RunLogger(run_id, self.redis)
        states: List[GateState] = [GateState.IDLE]

        def advance(state: GateState):
            if state in states:
                raise InternalInvariantError(f"state {state.value} re-entered", {"states": [s.value for s in states]})
            states.append(state)
            run_log.update_state(state.value)

        advance(GateState.COLLECTING)
        results = await self._collect(run_log)

        report: Optional[AggregatedReport] = None
        documents: Optional[RenderedReport] = None
        artifacts: Dict[str, str] = {}
        error: Optional[str] = None

        try:
            advance(GateState.AGGREGATING)
            report = aggregate(results, run_id=run_id, expected_sources=self.expected_sources)

            advance(GateState.DECIDING)
            verdict = decide(report, policy)
            report = report.with_verdict(verdict)

            advance(GateState.REPORTING)
            documents = ReportGenerator.render(report, verdict, self.mapping)
            artifacts = self._store_artifacts(run_id, documents)
        except InternalInvariantError as e:
            logger.exception("Invariant violated during run %s", run_id)
            run_log.log("FATAL", f"Invariant violated while {states[-1].value}: {e}", level=logging.ERROR)
            verdict = failure_verdict(states[-1].value, e, e.diagnostics)
            error = str(e)
        except Exception as e:
            logger.exception("Gate run %s failed", run_id)
            run_log.log("FATAL", f"Gate failed while {states[-1].value}: {e}", level=logging.ERROR)
            verdict = failure_verdict(states[-1].value, e)
            error = str(e)

        if error is not None and report is not None:
            report = report.with_verdict(verdict)

        advance(GateState.DONE)
        run_log.save_verdict(verdict)
        run_log.log("CONTROLLER", f"Run complete. Outcome: {verdict.outcome.value} "
                                  f"(exit code {EXIT_CODES[verdict.outcome]})")

        return GateRun(
            run_id=run_id,
            states=tuple(states),
            verdict=verdict,
            report=report,
            documents=documents,
            artifacts=artifacts,
            error=error,
        )
