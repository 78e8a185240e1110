"""
Error taxonomy for the Security Gate.

Per-source failures (NormalizationError, SourceTimeoutError, ScanRunnerError)
are absorbed by the GateController and recorded as data on the affected
ScanResult. PolicyConfigError and InternalInvariantError are hard failures.
"""
from typing import Any, Dict, Optional


class GateError(Exception):
    """Base class for every error raised by the gate."""


class NormalizationError(GateError):
    """A scanner payload could not be parsed into findings."""

    def __init__(self, source: str, raw_snippet: str, reason: Optional[str] = None):
        self.source = source
        self.raw_snippet = raw_snippet
        self.reason = reason or "malformed payload"
        super().__init__(f"{source}: {self.reason} (payload starts with {raw_snippet!r})")


class SourceTimeoutError(GateError):
    """A scan runner did not answer within the gate's time budget."""

    def __init__(self, source: str, timeout: float):
        self.source = source
        self.timeout = timeout
        super().__init__(f"{source}: no result within {timeout:g}s")


class ScanRunnerError(GateError):
    """A scan runner failed to produce a report (bad exit code, missing binary)."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class PolicyConfigError(GateError):
    """The severity policy configuration is invalid."""


class InternalInvariantError(GateError):
    """An aggregation invariant does not hold. Always a programming defect."""

    def __init__(self, message: str, diagnostics: Optional[Dict[str, Any]] = None):
        self.diagnostics = diagnostics or {}
        super().__init__(message)
