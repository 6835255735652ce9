"""Scanner backed by an external command (sonar-scanner, npm audit, ...)."""

import logging
import re
from typing import Any, Dict, Optional

from gantry.errors import ConfigurationError
from gantry.pipeline.cancellation import CancellationToken
from gantry.pipeline.environment import Environment
from gantry.runners.base import ProcessRunner
from gantry.scanners.base import ScanReport, Scanner

logger = logging.getLogger(__name__)


class CommandScanner(Scanner):
    """
    Runs a command and turns its output into a ScanReport.

    Step config keys:
        command: overrides the scanner's default command
        findings_pattern: regex; each matching output line is one finding
        max_findings: the scan fails when findings exceed this (default 0
            when a pattern is set, otherwise unlimited)

    A non-zero exit code always fails the scan.
    """

    def __init__(
        self,
        name: str,
        runner: ProcessRunner,
        command: Optional[str] = None,
        findings_pattern: Optional[str] = None,
    ):
        self.name = name
        self.runner = runner
        self.command = command
        self.findings_pattern = findings_pattern

    def scan(
        self,
        config: Dict[str, Any],
        env: Environment,
        token: Optional[CancellationToken] = None,
        cwd: Optional[str] = None,
    ) -> ScanReport:
        command = config.get("command") or self.command
        if not command:
            raise ConfigurationError(f"Scanner '{self.name}' has no command configured")

        result = self.runner.run(command, cwd=cwd, env=env.process_env(), token=token)

        pattern = config.get("findings_pattern") or self.findings_pattern
        findings = []
        if pattern:
            regex = re.compile(pattern)
            findings = [line for line in result.output.splitlines() if regex.search(line)]

        max_findings = config.get("max_findings")
        if max_findings is None and pattern:
            max_findings = 0

        passed = result.succeeded
        summary = f"exit code {result.exit_code}"
        if passed and max_findings is not None and len(findings) > int(max_findings):
            passed = False
            summary = f"{len(findings)} finding(s) exceed the limit of {max_findings}"
        elif findings:
            summary = f"{len(findings)} finding(s), {summary}"

        logger.info(f"Scanner {self.name}: {'passed' if passed else 'failed'} ({summary})")
        return ScanReport(
            scanner=self.name,
            passed=passed,
            findings=findings,
            summary=summary,
            output=result.output,
        )
