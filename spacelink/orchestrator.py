"""Quick-start workflow tying the probes, repairs and monitor together."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from spacelink.constants import (
    AWS_CLI_INSTALL_URL,
    CANONICAL_RETRY_COUNT,
    MonitorState,
    StepStatus,
)
from spacelink.core.errors import SpaceLinkError
from spacelink.core.monitor import ConnectionMonitor
from spacelink.core.probe import REMOTE_SSH_EXTENSION_ID, CapabilityReport, PrerequisiteProbe
from spacelink.repair.engine import PatchResult
from spacelink.repair.script import ScriptRepair, retry_count
from spacelink.repair.ssh_config import ConfigRepair, prune_known_hosts
from spacelink.services.installer import PluginInstaller
from spacelink.services.server import LocalServerProbe

logger = logging.getLogger(__name__)

MANUAL_SERVER_START = (
    "Start the local server from the AWS Toolkit: open the AWS Toolkit view, "
    "expand SageMaker AI > Studio > your domain > SPACES, right-click the space "
    "and choose 'Open Remote Connection', then wait 10-15 seconds."
)

TROUBLESHOOTING_TIPS = (
    "If the connection times out while installing the remote server, clean up a "
    "partial install with: spacelink cleanup",
    "Run spacelink diagnose for a full report of what is misconfigured.",
    "Check the Remote-SSH output panel for the exact error.",
)


@dataclass
class StepOutcome:
    """Outcome of one workflow step."""

    name: str
    status: StepStatus
    detail: str = ""


@dataclass
class WorkflowReport:
    """Outcome of a whole workflow run.

    Attributes
    ----------
    steps : list[StepOutcome]
        Outcomes in the order the steps ran
    halted : bool
        Whether the workflow stopped before its last step
    cancelled : bool
        Whether it stopped because of cancellation
    next_actions : list[str]
        What the user should do next
    """

    steps: list[StepOutcome] = field(default_factory=list)
    halted: bool = False
    cancelled: bool = False
    next_actions: list[str] = field(default_factory=list)

    def by_status(self, status: StepStatus) -> list[StepOutcome]:
        return [step for step in self.steps if step.status is status]

    @property
    def succeeded(self) -> bool:
        return not self.halted and not self.by_status(StepStatus.FAILED)

    def summary(self) -> list[str]:
        """Human-readable lines describing the run."""
        symbols = {
            StepStatus.SUCCEEDED: "[ok]  ",
            StepStatus.SKIPPED: "[skip]",
            StepStatus.FAILED: "[fail]",
        }
        lines = [f"{symbols[step.status]} {step.name}: {step.detail}" for step in self.steps]

        if self.cancelled:
            lines.append("Cancelled before completion.")
        elif self.halted:
            lines.append("Stopped early because a required step failed.")

        if self.next_actions:
            lines.append("")
            lines.append("Next steps:")
            lines.extend(f"  {n}. {action}" for n, action in enumerate(self.next_actions, start=1))
        return lines


@dataclass
class _Run:
    space_arn: str | None
    monitor: bool
    capabilities: CapabilityReport | None = None
    server_running: bool = False
    halt: bool = False
    next_actions: list[str] = field(default_factory=list)


Step = Callable[[_Run], StepOutcome]


class Orchestrator:
    """Run the quick-start workflow step by step.

    Failures of individual steps are recorded and the workflow moves on,
    except for the few prerequisites nothing else can work without.

    Parameters
    ----------
    probe : PrerequisiteProbe
        Prerequisite checks
    config_repair : ConfigRepair
        SSH entry setup and repair
    script_repair : ScriptRepair
        Connection script repair
    server_probe : LocalServerProbe
        Local server status and start
    monitor : ConnectionMonitor
        Connection monitor
    installer : PluginInstaller
        Session Manager plugin installer
    known_hosts_path : Path
        known_hosts file pruned of stale space keys
    host_alias : str
        SSH host alias
    server_start_wait : float
        Seconds to wait after launching the server start command
    """

    def __init__(
        self,
        probe: PrerequisiteProbe,
        config_repair: ConfigRepair,
        script_repair: ScriptRepair,
        server_probe: LocalServerProbe,
        monitor: ConnectionMonitor,
        installer: PluginInstaller,
        known_hosts_path: Path,
        host_alias: str,
        server_start_wait: float = 5,
    ) -> None:
        self.probe = probe
        self.config_repair = config_repair
        self.script_repair = script_repair
        self.server_probe = server_probe
        self.monitor = monitor
        self.installer = installer
        self.known_hosts_path = Path(known_hosts_path).expanduser()
        self.host_alias = host_alias
        self.server_start_wait = server_start_wait
        self._cancel_event = threading.Event()

    def cancel(self) -> None:
        """Stop before the next step and cancel any running monitor."""
        self._cancel_event.set()
        self.monitor.stop_all()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def quick_start(self, space_arn: str | None = None, monitor: bool = False) -> WorkflowReport:
        """Prepare everything needed to connect to a space.

        Parameters
        ----------
        space_arn : str | None
            Space ARN used when the SSH entry has to be created
        monitor : bool
            Watch the connection after preparing it

        Returns
        -------
        WorkflowReport
            Outcome of every step that ran
        """
        steps: list[tuple[str, Step]] = [
            ("prerequisites", self._check_prerequisites),
            ("session_manager_plugin", self._ensure_plugin),
            ("remote_ssh_extension", self._check_remote_ssh),
            ("ssh_config", self._ensure_ssh_config),
            ("connection_script", self._repair_script),
            ("storage_dir", self._ensure_storage_dir),
            ("known_hosts", self._prune_known_hosts),
            ("local_server", self._ensure_server),
            ("server_ready", self._verify_server),
            ("script_verification", self._verify_script),
            ("monitor", self._run_monitor),
        ]
        report = self._execute(steps, _Run(space_arn=space_arn, monitor=monitor))

        if not report.halted:
            report.next_actions.append(
                f"In the editor press F1, run 'Remote-SSH: Connect to Host' and pick '{self.host_alias}'."
            )
        return report

    def fix_all(self) -> WorkflowReport:
        """Repair the SSH entry and the connection script only."""
        steps: list[tuple[str, Step]] = [
            ("ssh_config", self._ensure_ssh_config),
            ("connection_script", self._repair_script),
            ("known_hosts", self._prune_known_hosts),
        ]
        return self._execute(steps, _Run(space_arn=None, monitor=False))

    def _execute(self, steps: list[tuple[str, Step]], run: _Run) -> WorkflowReport:
        self._cancel_event.clear()
        report = WorkflowReport()

        for name, step in steps:
            if self.cancelled:
                report.cancelled = True
                report.halted = True
                break

            try:
                outcome = step(run)
            except SpaceLinkError as e:
                logger.warning("Step %s failed: %s", name, e)
                outcome = StepOutcome(name, StepStatus.FAILED, str(e))

            outcome.name = name
            report.steps.append(outcome)
            logger.info("%s: %s %s", name, outcome.status.value, outcome.detail)

            if run.halt:
                report.halted = True
                break

        if self.cancelled and not report.cancelled:
            report.cancelled = True
            report.halted = True

        report.next_actions = run.next_actions + report.next_actions
        return report

    def _check_prerequisites(self, run: _Run) -> StepOutcome:
        capabilities = self.probe.check_all()
        run.capabilities = capabilities

        if not capabilities.tool_present.get("aws", False):
            run.halt = True
            run.next_actions.append(f"Install the AWS CLI: {AWS_CLI_INSTALL_URL}")
            return StepOutcome("", StepStatus.FAILED, "AWS CLI not found")

        detail = "; ".join(capabilities.errors) if capabilities.errors else "all tools found"
        if capabilities.warnings:
            detail = f"{detail} (warnings: {'; '.join(capabilities.warnings)})"
        return StepOutcome("", StepStatus.SUCCEEDED, detail)

    def _ensure_plugin(self, run: _Run) -> StepOutcome:
        if run.capabilities is not None and run.capabilities.tool_present.get(
            "session-manager-plugin", False
        ):
            return StepOutcome("", StepStatus.SKIPPED, "already installed")

        try:
            self.installer.install()
        except SpaceLinkError as e:
            run.next_actions.append(
                "Install the Session Manager plugin manually: "
                "https://docs.aws.amazon.com/systems-manager/latest/userguide/"
                "session-manager-working-with-install-plugin.html"
            )
            return StepOutcome("", StepStatus.FAILED, str(e))
        return StepOutcome("", StepStatus.SUCCEEDED, "installed")

    def _check_remote_ssh(self, run: _Run) -> StepOutcome:
        capabilities = run.capabilities
        if capabilities is None:
            return StepOutcome("", StepStatus.SKIPPED, "prerequisites not checked")

        if capabilities.remote_ssh_present:
            return StepOutcome("", StepStatus.SUCCEEDED, "installed")

        if any(REMOTE_SSH_EXTENSION_ID in warning for warning in capabilities.warnings):
            return StepOutcome("", StepStatus.SKIPPED, "could not verify, continuing")

        run.halt = True
        run.next_actions.append("Install the Remote-SSH extension from the marketplace.")
        return StepOutcome("", StepStatus.FAILED, "Remote-SSH extension not installed")

    @staticmethod
    def _patch_outcome(result: PatchResult, what: str) -> StepOutcome:
        warnings = "; ".join(str(w) for w in result.warnings)
        if result.failed:
            detail = f"{what} left unchanged, validation failed: {'; '.join(result.violations)}"
            if result.backup_location:
                detail += f" (backup {result.backup_location})"
            return StepOutcome("", StepStatus.FAILED, detail)
        if result.needs_fix:
            detail = f"applied {', '.join(result.applied_rules)}"
            if warnings:
                detail += f" (warnings: {warnings})"
            return StepOutcome("", StepStatus.SUCCEEDED, detail)
        detail = f"{what} already up to date"
        if warnings:
            detail += f" (warnings: {warnings})"
        return StepOutcome("", StepStatus.SKIPPED, detail)

    def _ensure_ssh_config(self, run: _Run) -> StepOutcome:
        if not self.config_repair.has_entry():
            if not run.space_arn:
                run.next_actions.append(
                    "Create the SSH entry: spacelink setup --space_arn=<space ARN>"
                )
                return StepOutcome(
                    "", StepStatus.FAILED, f"no 'Host {self.host_alias}' entry and no space ARN given"
                )
            try:
                self.config_repair.setup_entry(run.space_arn)
            except ValueError as e:
                return StepOutcome("", StepStatus.FAILED, str(e))
            return StepOutcome("", StepStatus.SUCCEEDED, f"added 'Host {self.host_alias}' entry")

        return self._patch_outcome(self.config_repair.repair(), "SSH config")

    def _repair_script(self, run: _Run) -> StepOutcome:
        if not self.script_repair.exists():
            return StepOutcome("", StepStatus.SKIPPED, "connection script not generated yet")

        restored = self.script_repair.restore_if_broken()
        outcome = self._patch_outcome(self.script_repair.repair(), "connection script")
        if restored is not None:
            outcome.detail = f"restored {restored.name}; {outcome.detail}"
        return outcome

    def _ensure_storage_dir(self, run: _Run) -> StepOutcome:
        if self.server_probe.ensure_storage_dir():
            return StepOutcome("", StepStatus.SUCCEEDED, f"created {self.server_probe.storage_dir}")
        return StepOutcome("", StepStatus.SKIPPED, "already exists")

    def _prune_known_hosts(self, run: _Run) -> StepOutcome:
        removed = prune_known_hosts(self.known_hosts_path)
        if removed:
            return StepOutcome("", StepStatus.SUCCEEDED, f"removed {removed} stale host key(s)")
        return StepOutcome("", StepStatus.SKIPPED, "no stale host keys")

    def _ensure_server(self, run: _Run) -> StepOutcome:
        info = self.server_probe.check()
        if info.running:
            run.server_running = True
            return StepOutcome("", StepStatus.SKIPPED, f"already running on port {info.port}")

        if self.server_probe.start():
            self._cancel_event.wait(self.server_start_wait)
            info = self.server_probe.check()
            if info.running:
                run.server_running = True
                return StepOutcome("", StepStatus.SUCCEEDED, f"started on port {info.port}")

        run.next_actions.append(MANUAL_SERVER_START)
        return StepOutcome("", StepStatus.FAILED, f"not running: {info.error}")

    def _verify_server(self, run: _Run) -> StepOutcome:
        if not run.server_running:
            return StepOutcome("", StepStatus.SKIPPED, "local server not running")

        info = self.server_probe.check()
        if not info.running:
            run.server_running = False
            run.next_actions.append(MANUAL_SERVER_START)
            return StepOutcome("", StepStatus.FAILED, f"server stopped: {info.error}")

        if not self.server_probe.wait_for_http_ready(info.port):
            return StepOutcome("", StepStatus.FAILED, f"port {info.port} open but HTTP not answering")
        return StepOutcome("", StepStatus.SUCCEEDED, f"HTTP ready on port {info.port}")

    def _verify_script(self, run: _Run) -> StepOutcome:
        if not self.script_repair.exists():
            run.next_actions.append(
                "After the server has generated the connection script, run: spacelink fix_script"
            )
            return StepOutcome("", StepStatus.SKIPPED, "connection script not generated yet")

        result = self.script_repair.repair()
        if result.failed:
            return self._patch_outcome(result, "connection script")

        count = retry_count(result.patched_text)
        if count != CANONICAL_RETRY_COUNT:
            return StepOutcome(
                "", StepStatus.FAILED, f"retry count is {count}, expected {CANONICAL_RETRY_COUNT}"
            )
        return StepOutcome("", StepStatus.SUCCEEDED, f"retry count {count}")

    def _run_monitor(self, run: _Run) -> StepOutcome:
        if not run.monitor:
            return StepOutcome("", StepStatus.SKIPPED, "not requested")

        session = self.monitor.run(self.host_alias)
        if session.state is MonitorState.SUCCEEDED:
            return StepOutcome(
                "", StepStatus.SUCCEEDED, f"remote server running after {session.check_count} check(s)"
            )
        if session.state is MonitorState.CANCELLED:
            return StepOutcome("", StepStatus.SKIPPED, "monitor cancelled")

        run.next_actions.extend(TROUBLESHOOTING_TIPS)
        return StepOutcome(
            "", StepStatus.FAILED, f"remote server not running after {session.check_count} check(s)"
        )
