#!/usr/bin/env python3
"""
Security Gate CLI

Run by the CI orchestrator once per pipeline, after the scanner jobs have
written their reports:

  security-gate --run-id "$GITHUB_RUN_ID" \\
      --static-analysis semgrep.sarif \\
      --dependency-scan snyk.json \\
      --dynamic-scan zap-report.xml \\
      --policy gate-policy.json --out gate-artifacts

Exit codes:
  0  pass
  1  blocked
  2  indeterminate (a scanner was missing/failed, or the gate itself failed)
  3  invalid configuration
"""
import argparse
import asyncio
import logging
import sys
from typing import Dict, List, Optional

from .artifacts import FileArtifactStore
from .config import GateSettings, configure_logging
from .controller import GateController
from .errors import PolicyConfigError
from .models import Source
from .runners import FileScanRunner

logger = logging.getLogger("security_gate.cli")

EXIT_CONFIG_ERROR = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="security-gate",
        description="Aggregate scanner reports and decide whether a change may merge.",
    )
    parser.add_argument("--run-id", help="Pipeline run identifier (random UUID if omitted)")
    for source in Source:
        parser.add_argument(
            f"--{source.value}", dest=source.name.lower(), metavar="PATH",
            help=f"Report file produced by the {source.value} job",
        )
    parser.add_argument(
        "--format", action="append", default=[], metavar="SOURCE=FORMAT",
        help="Force a report format, e.g. dynamic-scan=zap-xml (repeatable)",
    )
    parser.add_argument("--policy", help="JSON severity policy (overrides GATE_POLICY_FILE)")
    parser.add_argument("--compliance", help="JSON compliance mapping (overrides GATE_COMPLIANCE_FILE)")
    parser.add_argument("--out", help="Artifact directory (overrides GATE_ARTIFACT_DIR)")
    parser.add_argument("--timeout", type=float, help="Overall budget in seconds (overrides GATE_TIMEOUT_SECONDS)")
    parser.add_argument(
        "--allow-missing", action="store_true",
        help="Do not turn a missing or failed scanner into an indeterminate verdict",
    )
    parser.add_argument("--quiet", action="store_true", help="Do not print the summary")
    return parser


def _parse_formats(values: List[str]) -> Dict[Source, str]:
    formats = {}
    for value in values:
        source, sep, fmt = value.partition("=")
        if not sep or not fmt:
            raise ValueError(f"--format expects SOURCE=FORMAT, got {value!r}")
        formats[Source(source.strip())] = fmt.strip()
    return formats


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = GateSettings.from_env()
    except ValueError as e:
        configure_logging()
        logger.error("Invalid gate configuration: %s", e)
        return EXIT_CONFIG_ERROR
    configure_logging(settings.log_level)

    if args.policy:
        settings.policy_file = args.policy
    if args.compliance:
        settings.compliance_file = args.compliance
    if args.out:
        settings.artifact_dir = args.out
    if args.timeout is not None:
        settings.timeout_seconds = args.timeout

    try:
        formats = _parse_formats(args.format)
        policy = settings.load_policy()
        if args.allow_missing:
            policy = policy.model_copy(update={"indeterminate_on_missing_source": False})
        mapping = settings.load_compliance()

        runners = []
        for source in Source:
            path = getattr(args, source.name.lower())
            if path:
                runners.append(FileScanRunner(source, path, formats.get(source)))

        controller = GateController(
            runners,
            policy,
            mapping=mapping,
            timeout=settings.timeout_seconds,
            artifact_store=FileArtifactStore(settings.artifact_dir),
            max_concurrency=settings.max_concurrency,
        )
    except (PolicyConfigError, ValueError, OSError) as e:
        logger.error("Invalid gate configuration: %s", e)
        return EXIT_CONFIG_ERROR

    try:
        gate_run = asyncio.run(controller.run(args.run_id))
    except ValueError as e:
        logger.error("Invalid gate configuration: %s", e)
        return EXIT_CONFIG_ERROR

    if gate_run.documents is not None and not args.quiet:
        print(gate_run.documents.summary)
    for name, ref in sorted(gate_run.artifacts.items()):
        logger.info("Artifact %s: %s", name, ref)

    logger.info("Gate outcome: %s", gate_run.verdict.outcome.value)
    return gate_run.exit_code


if __name__ == "__main__":
    sys.exit(main())
