"""
Unit tests for scan runners (runners.py)
"""
import json
import sys

import pytest

from security_gate.errors import ScanRunnerError
from security_gate.models import RawReport, ScanResult, Source
from security_gate.runners import CommandScanRunner, FileScanRunner, StaticScanRunner


@pytest.mark.unit
class TestFileScanRunner:

    @pytest.mark.asyncio
    async def test_reads_report_bytes(self, tmp_path, sample_snyk):
        path = tmp_path / "snyk.json"
        path.write_text(json.dumps(sample_snyk), encoding="utf-8")

        raw = await FileScanRunner(Source.DEPENDENCY_SCAN, path, "snyk").collect()

        assert isinstance(raw, RawReport)
        assert raw.source == Source.DEPENDENCY_SCAN
        assert raw.fmt == "snyk"
        assert json.loads(raw.payload) == sample_snyk

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        runner = FileScanRunner("static-analysis", tmp_path / "nope.sarif")

        with pytest.raises(ScanRunnerError, match="report file not found"):
            await runner.collect()


@pytest.mark.unit
class TestStaticScanRunner:

    @pytest.mark.asyncio
    async def test_wraps_payload(self, sample_sarif):
        raw = await StaticScanRunner(Source.STATIC_ANALYSIS, sample_sarif).collect()
        assert raw.payload == sample_sarif
        assert raw.fmt is None

    @pytest.mark.asyncio
    async def test_passes_scan_result_through(self, make_result):
        result = make_result(Source.DYNAMIC_SCAN)
        collected = await StaticScanRunner(Source.DYNAMIC_SCAN, result).collect()
        assert isinstance(collected, ScanResult)
        assert collected is result


@pytest.mark.unit
class TestCommandScanRunner:

    @pytest.mark.asyncio
    async def test_captures_stdout(self):
        runner = CommandScanRunner(
            Source.STATIC_ANALYSIS,
            [sys.executable, "-c", "import sys; print('{\"results\": []}'); sys.exit(1)"],
            fmt="semgrep",
        )

        raw = await runner.collect()

        assert json.loads(raw.payload) == {"results": []}
        assert raw.fmt == "semgrep"

    @pytest.mark.asyncio
    async def test_unexpected_exit_code(self):
        runner = CommandScanRunner(
            Source.DYNAMIC_SCAN,
            [sys.executable, "-c", "import sys; sys.stderr.write('zap crashed'); sys.exit(3)"],
        )

        with pytest.raises(ScanRunnerError, match="exited with code 3: zap crashed"):
            await runner.collect()

    @pytest.mark.asyncio
    async def test_missing_binary(self):
        runner = CommandScanRunner(Source.DEPENDENCY_SCAN, ["definitely-not-a-scanner-binary", "test"])

        with pytest.raises(ScanRunnerError, match="is not installed"):
            await runner.collect()

    def test_requires_argv(self):
        with pytest.raises(ValueError):
            CommandScanRunner(Source.DEPENDENCY_SCAN, [])
