"""
Environment-driven settings for the gate's outer surfaces (CLI, worker, API).

The core components never read the environment; they receive these values
as arguments.
"""
import json
import logging
import os
import sys
from typing import List, Mapping, Optional

from pydantic import BaseModel

from .compliance import ComplianceMapping
from .errors import PolicyConfigError
from .models import SeverityPolicyConfig
from .policy import load_policy

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class GateSettings(BaseModel):
    timeout_seconds: float = 900.0
    max_concurrency: int = 0
    max_stored_runs: int = 500
    policy_file: Optional[str] = None
    compliance_file: Optional[str] = None
    artifact_dir: str = "gate-artifacts"
    redis_url: Optional[str] = None
    log_level: str = "INFO"
    environment: str = "development"
    allowed_origins: List[str] = ["http://localhost:3000"]
    rate_limit_default: str = "60/minute"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GateSettings":
        env = os.environ if environ is None else environ
        origins = env.get("ALLOWED_ORIGINS", "http://localhost:3000")
        return cls(
            timeout_seconds=float(env.get("GATE_TIMEOUT_SECONDS", "900")),
            max_concurrency=int(env.get("GATE_MAX_CONCURRENCY", "0")),
            max_stored_runs=int(env.get("GATE_MAX_STORED_RUNS", "500")),
            policy_file=env.get("GATE_POLICY_FILE") or None,
            compliance_file=env.get("GATE_COMPLIANCE_FILE") or None,
            artifact_dir=env.get("GATE_ARTIFACT_DIR", "gate-artifacts"),
            redis_url=env.get("REDIS_URL") or None,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
            environment=env.get("ENVIRONMENT", "development"),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
            rate_limit_default=env.get("RATE_LIMIT_DEFAULT", "60/minute"),
        )

    def load_policy(self) -> SeverityPolicyConfig:
        """Read the policy file if one is configured, else use the defaults."""
        if not self.policy_file:
            logger.info("No policy file configured; using default thresholds")
            return load_policy(None)
        try:
            with open(self.policy_file, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            raise PolicyConfigError(f"cannot read policy file {self.policy_file}: {e}") from e
        return load_policy(data)

    def load_compliance(self) -> ComplianceMapping:
        if not self.compliance_file:
            return ComplianceMapping()
        return ComplianceMapping.from_file(self.compliance_file)


def configure_logging(level: str = "INFO"):
    logging.basicConfig(stream=sys.stdout, level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
