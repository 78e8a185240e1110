"""
Scan runners: the external collaborators that hand scanner output to the gate.

Each runner is tagged with its Source and returns either a RawReport (to be
normalized by the controller) or an already normalized ScanResult.
"""
import asyncio
import logging
import shutil
from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, Union

from .errors import ScanRunnerError
from .models import RawReport, ScanResult, Source

logger = logging.getLogger(__name__)


class ScanRunner(Protocol):
    source: Source

    async def collect(self) -> Union[RawReport, ScanResult]:
        ...


class FileScanRunner:
    """Reads a report artifact written by an earlier CI step."""

    def __init__(self, source: Source, path: Union[str, Path], fmt: Optional[str] = None):
        self.source = Source(source)
        self.path = Path(path)
        self.fmt = fmt

    async def collect(self) -> RawReport:
        try:
            data = await asyncio.to_thread(self.path.read_bytes)
        except FileNotFoundError:
            raise ScanRunnerError(self.source.value, f"report file not found: {self.path}")
        logger.info("Read %d bytes of %s report from %s", len(data), self.source.value, self.path)
        return RawReport(source=self.source, payload=data, fmt=self.fmt)


class StaticScanRunner:
    """Hands over a payload (or ScanResult) that is already in memory."""

    def __init__(self, source: Source, payload: Any, fmt: Optional[str] = None):
        self.source = Source(source)
        self.payload = payload
        self.fmt = fmt

    async def collect(self) -> Union[RawReport, ScanResult]:
        if isinstance(self.payload, ScanResult):
            return self.payload
        return RawReport(source=self.source, payload=self.payload, fmt=self.fmt)


class CommandScanRunner:
    """
    Runs a scanner binary and captures its stdout as the report.

    Scanners commonly exit non-zero when they find issues (snyk exits 1,
    semgrep --error exits 1, zap-baseline exits 1 or 2), so the accepted
    return codes are configurable.
    """

    def __init__(
        self,
        source: Source,
        argv: Sequence[str],
        fmt: Optional[str] = None,
        ok_returncodes: Sequence[int] = (0, 1),
        cwd: Optional[Union[str, Path]] = None,
    ):
        if not argv:
            raise ValueError("argv must name the scanner executable")
        self.source = Source(source)
        self.argv = list(argv)
        self.fmt = fmt
        self.ok_returncodes = tuple(ok_returncodes)
        self.cwd = cwd

    async def collect(self) -> RawReport:
        executable = shutil.which(self.argv[0])
        if not executable:
            raise ScanRunnerError(self.source.value, f"scanner binary '{self.argv[0]}' is not installed")

        logger.info("Executing %s scanner: %s", self.source.value, " ".join(self.argv))
        process = await asyncio.create_subprocess_exec(
            executable, *self.argv[1:],
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
        )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            # Timeout or operator abort: do not leave the scanner running
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode not in self.ok_returncodes:
            tail = stderr.decode("utf-8", "replace").strip()[-500:]
            raise ScanRunnerError(self.source.value, f"exited with code {process.returncode}: {tail}")
        return RawReport(source=self.source, payload=stdout, fmt=self.fmt)
