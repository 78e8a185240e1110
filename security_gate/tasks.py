"""
Celery task wrapper around the GateController.

Lets a CI orchestrator that already drives a Celery/Redis stack queue a gate
evaluation instead of running the CLI in-process. Results and rendered
artifacts land in Redis next to the run log.
"""
import asyncio
import os
from typing import Any, Dict

import redis
from celery.exceptions import SoftTimeLimitExceeded

from .artifacts import RedisArtifactStore
from .celery_config import celery_app
from .config import GateSettings
from .controller import EXIT_CODES, GateController
from .errors import PolicyConfigError
from .models import GateOutcome, Source
from .run_logger import RunLogger
from .runners import FileScanRunner

# Initialize Redis for run logs and artifacts
redis_client = redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"))


def _runners_from(request: Dict[str, Any]):
    runners = []
    for source_name, entry in sorted((request.get("reports") or {}).items()):
        if isinstance(entry, str):
            entry = {"path": entry}
        runners.append(FileScanRunner(Source(source_name), entry["path"], entry.get("format")))
    return runners


@celery_app.task(name="gate.run_security_gate")
def run_security_gate(request: Dict[str, Any], run_id: str) -> Dict[str, Any]:
    """
    Evaluate the gate for one pipeline run.

    Args:
        request: {"reports": {"<source>": {"path": ..., "format": ...} | "<path>"},
                  "policy": {...} (optional; GATE_POLICY_FILE/defaults otherwise),
                  "expectedSources": [...] (optional)}
        run_id: Pipeline run identifier

    Returns:
        Verdict summary dict including exitCode and artifact keys
    """
    logger = RunLogger(run_id, redis_client)
    settings = GateSettings.from_env()
    logger.log("WORKER", "Gate evaluation picked up by worker")

    try:
        runners = _runners_from(request)
        policy = request.get("policy") or settings.load_policy()
        expected = request.get("expectedSources")
        controller = GateController(
            runners,
            policy,
            mapping=settings.load_compliance(),
            timeout=settings.timeout_seconds,
            expected_sources=[Source(s) for s in expected] if expected else None,
            artifact_store=RedisArtifactStore(redis_client),
            max_concurrency=settings.max_concurrency,
            redis_client=redis_client,
        )
        gate_run = asyncio.run(controller.run(run_id))
    except PolicyConfigError as e:
        logger.log("FATAL", f"Invalid severity policy: {e}")
        return {"status": "FAILED", "runId": run_id, "error": str(e), "exitCode": 3}
    except (KeyError, ValueError) as e:
        logger.log("FATAL", f"Invalid gate request: {e}")
        return {"status": "FAILED", "runId": run_id, "error": str(e), "exitCode": 3}
    except SoftTimeLimitExceeded:
        logger.log("FATAL", "Worker time limit exceeded before the gate finished")
        logger.update_state("done")
        return {
            "status": "TIMEOUT",
            "runId": run_id,
            "outcome": GateOutcome.INDETERMINATE.value,
            "exitCode": EXIT_CODES[GateOutcome.INDETERMINATE],
        }

    summary = gate_run.summary()
    summary["status"] = "COMPLETED"
    return summary
