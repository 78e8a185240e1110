# --- Imports ---
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from collections import OrderedDict
from datetime import datetime, timezone
import logging
import os
import time
import uuid

from .artifacts import check_name
from .config import GateSettings, configure_logging
from .controller import GateController, GateRun
from .errors import PolicyConfigError
from .models import Source
from .runners import StaticScanRunner
from . import __version__

# --- Logging Configuration ---
settings = GateSettings.from_env()
configure_logging(settings.log_level)
logger = logging.getLogger("security_gate.api")

STARTED_AT = time.monotonic()

app = FastAPI(title="Security Gate", version=__version__)

# ============================================================================
# Rate Limiting
# ============================================================================

# Uses IP address for rate limiting by default
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.rate_limit_default]
)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

logger.info(f"Rate limiting enabled: {settings.rate_limit_default}")

# ============================================================================
# HTTPS Enforcement & CORS Configuration
# ============================================================================

if settings.environment == "production":
    for origin in settings.allowed_origins:
        if origin.startswith("http://") and "localhost" not in origin:
            raise ValueError(
                f"HTTPS required in production: invalid origin {origin}. "
                f"All production origins must use https://."
            )
    logger.info("HTTPS enforcement validated for production")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'; style-src 'unsafe-inline'"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response

app.add_middleware(SecurityHeadersMiddleware)


class RunRegistry:
    """
    Completed gate runs kept for lookup and export, oldest evicted first.

    A run id is reserved before evaluation starts so a concurrent request
    with the same id gets a 409 instead of overwriting it.
    """
    def __init__(self, capacity: int):
        self.capacity = max(capacity, 1)
        self._runs: "OrderedDict[str, Optional[GateRun]]" = OrderedDict()

    def __len__(self) -> int:
        return sum(1 for gate_run in self._runs.values() if gate_run is not None)

    def __contains__(self, run_id: str) -> bool:
        return run_id in self._runs

    def get(self, run_id: str) -> Optional[GateRun]:
        return self._runs.get(run_id)

    def reserve(self, run_id: str) -> bool:
        if run_id in self._runs:
            return False
        self._runs[run_id] = None
        return True

    def release(self, run_id: str):
        if run_id in self._runs and self._runs[run_id] is None:
            del self._runs[run_id]

    def store(self, gate_run: GateRun):
        self._runs[gate_run.run_id] = gate_run
        self._runs.move_to_end(gate_run.run_id)
        completed = [run_id for run_id, kept in self._runs.items() if kept is not None]
        for run_id in completed[:max(len(completed) - self.capacity, 0)]:
            logger.info(f"Evicting gate run {run_id} from the in-memory registry")
            del self._runs[run_id]

    def clear(self):
        self._runs.clear()


# Completed runs, keyed by run id. Process-local; the worker path persists to Redis instead.
_RUNS = RunRegistry(settings.max_stored_runs)

EXPORT_FORMATS = {
    "json": ("application/json", "gate-report.json"),
    "markdown": ("text/markdown; charset=utf-8", "gate-summary.md"),
    "html": ("text/html; charset=utf-8", "gate-report.html"),
}


# --- Request Models ---

class SubmittedReport(BaseModel):
    source: Source
    format: Optional[str] = None
    payload: Any


class EvaluateRequest(BaseModel):
    run_id: Optional[str] = Field(default=None, alias="runId")
    reports: List[SubmittedReport] = []
    policy: Optional[Dict[str, Any]] = None
    expected_sources: Optional[List[Source]] = Field(default=None, alias="expectedSources")

    model_config = {"populate_by_name": True}


def _get_run(run_id: str) -> GateRun:
    try:
        check_name(run_id, "run id")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    gate_run = _RUNS.get(run_id)
    if gate_run is None:
        raise HTTPException(status_code=404, detail="Gate run not found")
    return gate_run


# --- Endpoints ---

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "security-gate",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": round(time.monotonic() - STARTED_AT, 3),
        "environment": settings.environment,
    }


@app.post("/gate/runs")
@limiter.limit("30/minute")
async def evaluate(request: Request, body: EvaluateRequest):
    """
    Evaluate already-collected scanner reports and return the verdict.

    Reports are passed inline; each becomes one collaborator of the
    controller, so malformed payloads degrade that source to errored
    instead of failing the request.
    """
    run_id = body.run_id or str(uuid.uuid4())
    if not _RUNS.reserve(run_id):
        raise HTTPException(status_code=409, detail="Gate run already exists")

    runners = [StaticScanRunner(r.source, r.payload, r.format) for r in body.reports]
    try:
        policy = body.policy if body.policy is not None else settings.load_policy()
        controller = GateController(
            runners,
            policy,
            mapping=settings.load_compliance(),
            timeout=settings.timeout_seconds,
            expected_sources=body.expected_sources,
            max_concurrency=settings.max_concurrency,
        )
        gate_run = await controller.run(run_id)
    except PolicyConfigError as e:
        raise HTTPException(status_code=422, detail=f"Invalid severity policy: {e}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        _RUNS.release(run_id)

    _RUNS.store(gate_run)
    logger.info(f"Gate run {gate_run.run_id} finished: {gate_run.verdict.outcome.value}")

    response = gate_run.summary()
    if gate_run.report is not None:
        response["report"] = gate_run.report.model_dump(mode="json", by_alias=True)
    return response


@app.get("/gate/runs/{run_id}")
async def get_run(run_id: str):
    gate_run = _get_run(run_id)
    response = gate_run.summary()
    if gate_run.report is not None:
        response["report"] = gate_run.report.model_dump(mode="json", by_alias=True)
    return response


@app.get("/gate/runs/{run_id}/summary")
async def get_summary(run_id: str):
    gate_run = _get_run(run_id)
    if gate_run.documents is None:
        raise HTTPException(status_code=409, detail="Gate run produced no report")
    return Response(content=gate_run.documents.summary, media_type="text/markdown; charset=utf-8")


@app.get("/gate/runs/{run_id}/export")
async def export_run(run_id: str, format: str = "json"):
    """Download one of the rendered artifacts (json, markdown or html)."""
    if format not in EXPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid format '{format}'. Allowed: {', '.join(sorted(EXPORT_FORMATS))}"
        )
    gate_run = _get_run(run_id)
    if gate_run.documents is None or gate_run.report is None:
        raise HTTPException(status_code=409, detail="Gate run produced no report")

    media_type, filename = EXPORT_FORMATS[format]
    if format == "json":
        content = gate_run.documents.structured
    elif format == "html":
        content = gate_run.documents.html
    else:
        content = gate_run.documents.summary.encode("utf-8")
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f"attachment; filename={run_id}-{filename}"},
    )


@app.get("/")
async def root():
    return {"message": "Security Gate running", "docs": "/docs"}


def serve():
    """Run the API with uvicorn (``security-gate-api``)."""
    import uvicorn
    uvicorn.run(app, host=os.getenv("GATE_API_HOST", "127.0.0.1"), port=int(os.getenv("GATE_API_PORT", "8000")))


if __name__ == "__main__":
    serve()
