"""Read-only diagnosis of a SageMaker remote connection setup."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import boto3
from botocore.exceptions import ClientError, NoCredentialsError

from spacelink.constants import CANONICAL_RETRY_COUNT, SPACE_PROFILES_PATH
from spacelink.core.probe import PrerequisiteProbe
from spacelink.repair.engine import read_text_preserving_newlines
from spacelink.repair.script import ScriptRepair, inspect_script
from spacelink.repair.ssh_config import ConfigRepair
from spacelink.services.process import ProcessRunner
from spacelink.services.server import LocalServerProbe

logger = logging.getLogger(__name__)

UNCLOSED_WRITE_ERROR = re.compile(r"Write-Error\s+['\"]([^'\"]*)$", re.M)
REGION_ASSIGNMENT = re.compile(r"\$REGION\s*=\s*\(\$AWS_RESOURCE_ARN")
MALFORMED_ARN_CONVERSION = re.compile(r"if \(\$AWS_RESOURCE_ARN -match '[^']*'\} else \{")


@dataclass(frozen=True)
class Finding:
    """One diagnostic observation."""

    section: str
    ok: bool
    message: str


@dataclass
class DiagnosisReport:
    """Findings and numbered recommendations of a diagnosis run."""

    findings: list[Finding] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def add(self, section: str, ok: bool, message: str) -> None:
        self.findings.append(Finding(section, ok, message))

    @property
    def healthy(self) -> bool:
        return all(f.ok for f in self.findings)

    def problems(self) -> list[Finding]:
        return [f for f in self.findings if not f.ok]


def script_structure_problems(text: str) -> list[str]:
    """Structural problems of a connection script.

    Parameters
    ----------
    text : str
        Script text

    Returns
    -------
    list[str]
        Descriptions of problems found, empty when none
    """
    problems = []

    for opener, closer, name in (("{", "}", "braces"), ("(", ")", "parentheses")):
        opened, closed = text.count(opener), text.count(closer)
        if opened != closed:
            problems.append(f"Mismatched {name}: {opened} open, {closed} close")

    if UNCLOSED_WRITE_ERROR.search(text):
        problems.append("Unclosed string in Write-Error statement")

    region_assignments = len(REGION_ASSIGNMENT.findall(text))
    if region_assignments > 1:
        problems.append(f"Duplicate $REGION assignments ({region_assignments} found)")

    if MALFORMED_ARN_CONVERSION.search(text):
        problems.append("Malformed ARN conversion block")

    return problems


class Diagnostics:
    """Collect findings across the local setup without changing anything.

    Parameters
    ----------
    probe : PrerequisiteProbe
        Prerequisite checks
    server_probe : LocalServerProbe
        Local server status
    script_repair : ScriptRepair
        Connection script inspection
    config_repair : ConfigRepair
        SSH config inspection
    runner : ProcessRunner | None
        Runner for ``ssh -G``
    region : str
        Region for the credentials check
    profiles_path : Path | None
        Space profile mapping maintained by the toolkit
    boto3_client_factory : Callable[..., Any] | None
        Factory for boto3 clients
    """

    def __init__(
        self,
        probe: PrerequisiteProbe,
        server_probe: LocalServerProbe,
        script_repair: ScriptRepair,
        config_repair: ConfigRepair,
        runner: ProcessRunner | None = None,
        region: str = "us-east-1",
        profiles_path: Path | None = None,
        boto3_client_factory: Callable[..., Any] | None = None,
    ) -> None:
        self.probe = probe
        self.server_probe = server_probe
        self.script_repair = script_repair
        self.config_repair = config_repair
        self.runner = runner
        self.region = region
        self.profiles_path = Path(profiles_path or SPACE_PROFILES_PATH).expanduser()
        self.boto3_client_factory = boto3_client_factory or boto3.client

    def check_aws_credentials(self) -> bool:
        """Check if AWS credentials are configured.

        Returns
        -------
        bool
            True if credentials exist, even when the call itself is denied
        """
        sts_client = None
        try:
            sts_client = self.boto3_client_factory("sts", region_name=self.region)
            sts_client.get_caller_identity()
            return True
        except NoCredentialsError:
            return False
        except ClientError:
            return True
        finally:
            if sts_client:
                sts_client.close()

    def run(self) -> DiagnosisReport:
        """Run every diagnostic.

        Returns
        -------
        DiagnosisReport
            Findings per section and numbered recommendations
        """
        report = DiagnosisReport()
        recommendations: list[str] = []

        capabilities = self.probe.check_all()
        for tool, present in capabilities.tool_present.items():
            report.add("prerequisites", present, f"{tool}: {'installed' if present else 'not found'}")
        for extension, present in capabilities.extension_present.items():
            report.add(
                "prerequisites", present, f"{extension}: {'installed' if present else 'not found'}"
            )
        for warning in capabilities.warnings:
            report.add("prerequisites", False, warning)
        if not capabilities.tool_present.get("aws", True):
            recommendations.append("Install the AWS CLI: https://aws.amazon.com/cli/")
        if not capabilities.tool_present.get("session-manager-plugin", True):
            recommendations.append("Install the Session Manager plugin: spacelink install_plugin")

        if self.check_aws_credentials():
            report.add("credentials", True, "AWS credentials found")
        else:
            report.add("credentials", False, "AWS credentials not found")
            recommendations.append("Configure AWS credentials: aws configure")

        server = self.server_probe.check()
        if server.running:
            report.add("server", True, f"Local server running (pid {server.pid}, port {server.port})")
        else:
            report.add("server", False, f"Local server not running: {server.error}")
            recommendations.append(
                "Start the local server: AWS Toolkit > SageMaker AI > Studio > your space > "
                "Open Remote Connection"
            )

        self._diagnose_script(report, recommendations)
        self._diagnose_ssh_config(report, recommendations)
        self._diagnose_profiles(report)

        if len(recommendations) > 1:
            recommendations.append("Or apply all fixes at once: spacelink fix_all")
        report.recommendations = [f"{n}. {text}" for n, text in enumerate(recommendations, start=1)]
        return report

    def _diagnose_script(self, report: DiagnosisReport, recommendations: list[str]) -> None:
        path = self.script_repair.script_path
        if not path.is_file():
            report.add("script", True, f"Connection script not generated yet ({path})")
            return

        try:
            text = read_text_preserving_newlines(path).replace("\r\n", "\n")
        except (OSError, UnicodeDecodeError) as e:
            report.add("script", False, f"Could not read {path}: {e}")
            return

        status = inspect_script(text)
        report.add(
            "script",
            status.arn_normalized,
            "ARN conversion " + ("applied" if status.arn_normalized else "missing"),
        )
        report.add(
            "script",
            status.retry_installed,
            f"Retry logic {'installed' if status.retry_installed else 'missing'} "
            f"(retry count {status.retry_count}, expected {CANONICAL_RETRY_COUNT})",
        )
        report.add(
            "script",
            status.debug_suppressed,
            "Debug output suppression " + ("applied" if status.debug_suppressed else "missing"),
        )
        for fragment in status.bad_fragments:
            report.add("script", False, f"Invalid interpolation: {fragment}")

        problems = script_structure_problems(text)
        for problem in problems:
            report.add("script", False, problem)

        if status.broken or problems:
            recommendations.append("Restore the last good script: spacelink restore_script")
        if not status.fully_patched or status.bad_fragments:
            recommendations.append("Repair the connection script: spacelink fix_script")

    def _diagnose_ssh_config(self, report: DiagnosisReport, recommendations: list[str]) -> None:
        analysis = self.config_repair.analyze(runner=self.runner)
        if analysis.ok:
            report.add("ssh_config", True, f"Host {self.config_repair.host_alias} entry looks good")
        for issue in analysis.issues:
            report.add("ssh_config", False, issue)
        for warning in analysis.warnings:
            report.add("ssh_config", False, warning)

        if not analysis.block_found:
            recommendations.append("Create the SSH entry: spacelink setup --space_arn=<space ARN>")
        elif analysis.issues or analysis.warnings:
            recommendations.append("Repair the SSH entry: spacelink fix_ssh_config")

    def _diagnose_profiles(self, report: DiagnosisReport) -> None:
        if not self.profiles_path.exists():
            report.add("profiles", True, f"No space profile mapping at {self.profiles_path}")
            return
        try:
            mapping = json.loads(self.profiles_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            report.add("profiles", False, f"Space profile mapping is unreadable: {e}")
            return
        count = len(mapping) if isinstance(mapping, dict) else 0
        report.add("profiles", True, f"Space profile mapping has {count} entr{'y' if count == 1 else 'ies'}")
