#!/usr/bin/env python3
"""spacelink - keep SageMaker Studio remote editor connections working."""

from __future__ import annotations

import logging
import os
import sys
import threading
import types
from collections.abc import Callable
from pathlib import Path
from typing import Any

from spacelink.core.signals import set_cleanup_instance, setup_signal_handlers

setup_signal_handlers()

import boto3  # noqa: E402

for _noisy_module in ["botocore", "boto3", "urllib3", "paramiko"]:
    logging.getLogger(_noisy_module).setLevel(logging.WARNING)

from spacelink.cli.main import main  # noqa: E402
from spacelink.constants import MonitorState  # noqa: E402
from spacelink.core.config import ConfigLoader  # noqa: E402
from spacelink.core.diagnostics import Diagnostics  # noqa: E402
from spacelink.core.errors import StructuralValidationFailed  # noqa: E402
from spacelink.core.interfaces import ExtensionRegistry  # noqa: E402
from spacelink.core.monitor import ConnectionMonitor, RemoteProbe, TickStatus  # noqa: E402
from spacelink.core.probe import PrerequisiteProbe  # noqa: E402
from spacelink.orchestrator import Orchestrator, WorkflowReport  # noqa: E402
from spacelink.repair.engine import PatchResult  # noqa: E402
from spacelink.repair.script import ScriptRepair  # noqa: E402
from spacelink.repair.ssh_config import ConfigRepair  # noqa: E402
from spacelink.services.extensions import EditorExtensionDirectory  # noqa: E402
from spacelink.services.installer import PluginInstaller  # noqa: E402
from spacelink.services.process import ProcessRunner  # noqa: E402
from spacelink.services.server import LocalServerProbe  # noqa: E402
from spacelink.services.ssh import RemoteChannel  # noqa: E402
from spacelink.templates import CONFIG_TEMPLATE  # noqa: E402
from spacelink.utils import log_and_print_error  # noqa: E402

logger = logging.getLogger(__name__)


def _say(message: str = "") -> None:
    logger.debug(message)
    print(message)


class SpaceLink:
    """Set up, repair and watch SSH connections to SageMaker Studio spaces."""

    def __init__(
        self,
        config_path: str | None = None,
        runner: ProcessRunner | None = None,
        registry: ExtensionRegistry | None = None,
        channel_factory: Callable[[str], RemoteProbe] | None = None,
        boto3_client_factory: Callable | None = None,
        installer: PluginInstaller | None = None,
    ) -> None:
        """Initialize SpaceLink with optional dependency injection."""
        self._config_path = config_path
        self._config_loader = ConfigLoader()
        self._runner = runner or ProcessRunner()
        self._registry = registry
        self._channel_factory = channel_factory
        self._boto3_client_factory = boto3_client_factory or boto3.client
        self._installer = installer
        self._cleanup_lock = threading.RLock()
        self._active_monitor: ConnectionMonitor | None = None
        self._active_orchestrator: Orchestrator | None = None

        set_cleanup_instance(self)

    def _settings(self, **overrides: Any) -> dict[str, Any]:
        config = self._config_loader.load_config(self._config_path)
        merged = self._config_loader.merge(config, **overrides)
        self._config_loader.validate_config(merged)
        return merged

    def _make_channel(self, settings: dict[str, Any]) -> Callable[[str], RemoteProbe]:
        if self._channel_factory is not None:
            return self._channel_factory
        timeout = settings["remote_timeout"]
        return lambda host: RemoteChannel(host, runner=self._runner, timeout=timeout)

    def _make_probe(self, settings: dict[str, Any]) -> PrerequisiteProbe:
        registry = self._registry or EditorExtensionDirectory.for_editor(
            settings["editor"], settings.get("extensions_dir")
        )
        return PrerequisiteProbe(
            runner=self._runner,
            registry=registry,
            ssh_config_path=Path(settings["ssh_config_path"]),
            host_alias=settings["host_alias"],
        )

    def _make_script_repair(self, settings: dict[str, Any]) -> ScriptRepair:
        config_repair = self._make_config_repair(settings)
        return ScriptRepair(config_repair.script_path)

    def _make_config_repair(self, settings: dict[str, Any]) -> ConfigRepair:
        return ConfigRepair(
            ssh_config_path=Path(settings["ssh_config_path"]),
            host_alias=settings["host_alias"],
            storage_dir=Path(settings["storage_dir"]).expanduser(),
            editor=settings["editor"],
        )

    def _make_server_probe(self, settings: dict[str, Any]) -> LocalServerProbe:
        return LocalServerProbe(
            storage_dir=Path(settings["storage_dir"]).expanduser(),
            runner=self._runner,
            start_command=settings.get("server_start_command"),
        )

    def _make_monitor(
        self,
        settings: dict[str, Any],
        on_status: Callable[[TickStatus], None] | None = None,
    ) -> ConnectionMonitor:
        return ConnectionMonitor(
            channel_factory=self._make_channel(settings),
            server_probe=self._make_server_probe(settings),
            interval=settings["monitor_interval"],
            max_checks=settings["monitor_max_checks"],
            on_status=on_status,
        )

    def _make_installer(self) -> PluginInstaller:
        return self._installer or PluginInstaller(runner=self._runner)

    def _make_orchestrator(self, settings: dict[str, Any]) -> Orchestrator:
        return Orchestrator(
            probe=self._make_probe(settings),
            config_repair=self._make_config_repair(settings),
            script_repair=self._make_script_repair(settings),
            server_probe=self._make_server_probe(settings),
            monitor=self._make_monitor(settings),
            installer=self._make_installer(),
            known_hosts_path=Path(settings["known_hosts_path"]),
            host_alias=settings["host_alias"],
            server_start_wait=settings.get("server_start_wait", 5),
        )

    def _make_diagnostics(self, settings: dict[str, Any]) -> Diagnostics:
        return Diagnostics(
            probe=self._make_probe(settings),
            server_probe=self._make_server_probe(settings),
            script_repair=self._make_script_repair(settings),
            config_repair=self._make_config_repair(settings),
            runner=self._runner,
            region=settings["region"],
            boto3_client_factory=self._boto3_client_factory,
        )

    def _cleanup_resources(
        self, signum: int | None = None, frame: types.FrameType | None = None
    ) -> None:
        """Cancel the running workflow and monitors.

        With nothing running the process exits, so an interrupt at a prompt
        still ends the program.
        """
        with self._cleanup_lock:
            orchestrator = self._active_orchestrator
            monitor = self._active_monitor

            if orchestrator is None and monitor is None:
                if signum is not None:
                    sys.exit(128 + signum)
                return

            print("\nCancelling, waiting for the current step to finish...", file=sys.stderr)
            if orchestrator is not None:
                orchestrator.cancel()
            if monitor is not None:
                stopped = monitor.stop_all()
                logger.debug("Stopped %d monitor session(s)", stopped)

    def _run_workflow(
        self, orchestrator: Orchestrator, action: Callable[[], WorkflowReport]
    ) -> WorkflowReport:
        with self._cleanup_lock:
            self._active_orchestrator = orchestrator
            self._active_monitor = orchestrator.monitor
        try:
            return action()
        finally:
            with self._cleanup_lock:
                self._active_orchestrator = None
                self._active_monitor = None

    @staticmethod
    def _print_workflow(report: WorkflowReport) -> None:
        for line in report.summary():
            _say(line)

    @staticmethod
    def _print_patch_result(result: PatchResult, what: str, dry_run: bool) -> None:
        if not result.needs_fix:
            _say(f"{what} is already up to date.")
        else:
            verb = "Would apply" if dry_run else "Applied"
            _say(f"{verb}: {', '.join(result.applied_rules)}")

        if result.skipped_rules:
            _say(f"Skipped: {', '.join(result.skipped_rules)}")
        for warning in result.warnings:
            _say(f"Warning: {warning}")
        if result.backup_location is not None:
            _say(f"Backup: {result.backup_location}")
        if result.written:
            _say(f"{what} updated.")

    def status(self, host: str | None = None) -> None:
        """Show prerequisites, local server and connection script state.

        Parameters
        ----------
        host : str | None
            SSH host alias, the configured one by default
        """
        settings = self._settings(host_alias=host)
        capabilities = self._make_probe(settings).check_all()

        _say("Prerequisites:")
        for tool, present in capabilities.tool_present.items():
            _say(f"  {tool}: {'installed' if present else 'not found'}")
        for extension, present in capabilities.extension_present.items():
            _say(f"  {extension}: {'installed' if present else 'not found'}")
        _say(
            f"  Host {settings['host_alias']}: "
            f"{'configured' if capabilities.host_entry_present else 'missing'}"
        )
        for warning in capabilities.warnings:
            _say(f"  Warning: {warning}")

        server = self._make_server_probe(settings).check()
        if server.running:
            _say(f"Local server: running (pid {server.pid}, port {server.port})")
        else:
            _say(f"Local server: not running ({server.error})")

        script = self._make_script_repair(settings).inspect()
        if not script.exists:
            _say("Connection script: not generated yet")
        elif script.fully_patched and not script.bad_fragments:
            _say(f"Connection script: patched (retry count {script.retry_count})")
        else:
            _say("Connection script: needs repair (run: spacelink fix_script)")

    def diagnose(self, host: str | None = None) -> None:
        """Report everything that is misconfigured, without changing anything.

        Parameters
        ----------
        host : str | None
            SSH host alias, the configured one by default
        """
        settings = self._settings(host_alias=host)
        report = self._make_diagnostics(settings).run()

        section = None
        for finding in report.findings:
            if finding.section != section:
                section = finding.section
                _say(f"{section}:")
            _say(f"  [{'ok' if finding.ok else '!!'}] {finding.message}")

        if report.healthy:
            _say("No problems found.")
            return

        _say()
        _say("Recommendations:")
        for recommendation in report.recommendations:
            _say(f"  {recommendation}")

    def quickstart(
        self,
        space_arn: str | None = None,
        monitor: bool = False,
        host: str | None = None,
    ) -> None:
        """Prepare everything needed to connect to a space.

        Parameters
        ----------
        space_arn : str | None
            Space ARN used if the SSH entry does not exist yet
        monitor : bool
            Watch the remote server installation afterwards
        host : str | None
            SSH host alias, the configured one by default
        """
        settings = self._settings(host_alias=host, space_arn=space_arn)
        orchestrator = self._make_orchestrator(settings)

        report = self._run_workflow(
            orchestrator,
            lambda: orchestrator.quick_start(space_arn=settings.get("space_arn"), monitor=monitor),
        )
        self._print_workflow(report)

        if not report.succeeded:
            sys.exit(1)

    def setup(self, space_arn: str | None = None, host: str | None = None) -> None:
        """Add the SSH entry for a space and install what is missing.

        Parameters
        ----------
        space_arn : str | None
            Space (or app) ARN, the configured one by default
        host : str | None
            SSH host alias, the configured one by default

        Raises
        ------
        ValueError
            If no space ARN is given or configured, or it is not valid
        """
        settings = self._settings(host_alias=host, space_arn=space_arn)
        arn = settings.get("space_arn")
        if not arn:
            raise ValueError("space_arn is required: pass --space_arn or set it in spacelink.yaml")

        capabilities = self._make_probe(settings).check_all()
        for error in capabilities.errors:
            _say(f"Missing: {error}")

        if not capabilities.tool_present.get("session-manager-plugin", False):
            installer = self._make_installer()
            if installer.supported:
                _say("Installing the Session Manager plugin...")
                installer.install()
                _say("Session Manager plugin installed.")

        if not capabilities.remote_ssh_present:
            _say("Install the Remote-SSH extension in your editor before connecting.")

        config_repair = self._make_config_repair(settings)
        if config_repair.setup_entry(arn):
            _say(f"Added Host {settings['host_alias']} to {config_repair.ssh_config_path}")
        else:
            _say(
                f"Host {settings['host_alias']} already exists in {config_repair.ssh_config_path}; "
                "run spacelink fix_ssh_config to repair it."
            )

        if self._make_server_probe(settings).ensure_storage_dir():
            _say(f"Created {settings['storage_dir']}")

        _say()
        _say("Next: start the local server from the AWS Toolkit, then run: spacelink quickstart")

    def fix_script(self, dry_run: bool = False) -> None:
        """Repair the connection script.

        Parameters
        ----------
        dry_run : bool
            Show what would change without writing

        Raises
        ------
        StructuralValidationFailed
            If the repaired script failed validation and was not written
        """
        settings = self._settings()
        script_repair = self._make_script_repair(settings)

        if not script_repair.exists():
            log_and_print_error(
                "Connection script %s not found. Open a remote connection from the "
                "AWS Toolkit once so it is generated.",
                script_repair.script_path,
            )
            sys.exit(1)

        if not dry_run:
            restored = script_repair.restore_if_broken()
            if restored is not None:
                _say(f"Restored broken script from {restored}")

        result = script_repair.repair(dry_run=dry_run)
        self._print_patch_result(result, "Connection script", dry_run)

        if result.failed:
            raise StructuralValidationFailed(
                result.violations,
                str(result.backup_location) if result.backup_location else None,
            )

    def fix_ssh_config(self, dry_run: bool = False, host: str | None = None) -> None:
        """Repair the SSH entry of the host alias.

        Parameters
        ----------
        dry_run : bool
            Show what would change without writing
        host : str | None
            SSH host alias, the configured one by default
        """
        settings = self._settings(host_alias=host)
        config_repair = self._make_config_repair(settings)

        if not config_repair.has_entry():
            log_and_print_error(
                "No 'Host %s' entry in %s. Create it with: spacelink setup --space_arn=<ARN>",
                config_repair.host_alias,
                config_repair.ssh_config_path,
            )
            sys.exit(1)

        result = config_repair.repair(dry_run=dry_run)
        self._print_patch_result(result, "SSH config", dry_run)

        if result.failed:
            raise StructuralValidationFailed(
                result.violations,
                str(result.backup_location) if result.backup_location else None,
            )

    def fix_all(self, host: str | None = None) -> None:
        """Repair the SSH entry, the connection script and known_hosts."""
        settings = self._settings(host_alias=host)
        orchestrator = self._make_orchestrator(settings)

        report = self._run_workflow(orchestrator, orchestrator.fix_all)
        self._print_workflow(report)

        if not report.succeeded:
            sys.exit(1)

    def restore_script(self) -> None:
        """Restore the connection script from its newest backup."""
        settings = self._settings()
        script_repair = self._make_script_repair(settings)

        restored = script_repair.restore()
        if restored is None:
            log_and_print_error("No backup of %s found", script_repair.script_path)
            sys.exit(1)

        _say(f"Restored {script_repair.script_path} from {restored}")

    def debug_ssh_config(self, host: str | None = None) -> None:
        """Show how ssh resolves the host alias and what is wrong with it.

        Parameters
        ----------
        host : str | None
            SSH host alias, the configured one by default
        """
        settings = self._settings(host_alias=host)
        analysis = self._make_config_repair(settings).analyze(runner=self._runner)

        _say(f"SSH config: {analysis.config_path}")
        if analysis.settings:
            _say("Parsed settings:")
            for key, value in sorted(analysis.settings.items()):
                _say(f"  {key} = {value}")
        if analysis.resolved:
            _say("Resolved by ssh -G:")
            for key, value in sorted(analysis.resolved.items()):
                _say(f"  {key} = {value}")

        for issue in analysis.issues:
            _say(f"Issue: {issue}")
        for warning in analysis.warnings:
            _say(f"Warning: {warning}")

        if analysis.ok and not analysis.warnings:
            _say("No problems found.")
        elif analysis.block_found:
            _say("Repair with: spacelink fix_ssh_config")

    def monitor(
        self,
        host: str | None = None,
        max_checks: int | None = None,
        interval: float | None = None,
    ) -> None:
        """Watch the remote server installation until it is running.

        Parameters
        ----------
        host : str | None
            SSH host alias, the configured one by default
        max_checks : int | None
            Checks before giving up
        interval : float | None
            Seconds between checks
        """
        settings = self._settings(
            host_alias=host, monitor_max_checks=max_checks, monitor_interval=interval
        )
        host_key = settings["host_alias"]
        monitor = self._make_monitor(settings)

        connection = monitor.check_connection(host_key)
        if connection.ok:
            _say(f"SSH connection to {host_key} works.")
        else:
            kind = connection.failure.value if connection.failure else "unknown"
            _say(f"SSH connection to {host_key} failed ({kind}).")
            for line in connection.lines:
                _say(f"  {line}")

        with self._cleanup_lock:
            self._active_monitor = monitor
        try:
            session = monitor.run(host_key)
        finally:
            with self._cleanup_lock:
                self._active_monitor = None

        if session.state is MonitorState.SUCCEEDED:
            _say(f"Remote server is running on {host_key}. Connect from the editor now.")
            return
        if session.state is MonitorState.CANCELLED:
            _say("Monitoring cancelled.")
            return

        _say(f"Remote server did not start after {session.check_count} checks.")
        status = session.last_status
        if status is not None and status.remote is not None and status.remote.partially_installed:
            _say(f"A partial install was found. Clean it up with: spacelink cleanup --host={host_key}")
        sys.exit(1)

    def cleanup(self, host: str | None = None, yes: bool = False) -> None:
        """Remove the editor server directories on the space.

        Parameters
        ----------
        host : str | None
            SSH host alias, the configured one by default
        yes : bool
            Do not ask for confirmation
        """
        settings = self._settings(host_alias=host)
        host_key = settings["host_alias"]
        channel = self._make_channel(settings)(host_key)

        state = channel.check_installation()
        if state.failure is not None:
            log_and_print_error("%s", state.details)
            sys.exit(1)

        if not state.dir_exists:
            _say(f"No editor server directories on {host_key}, nothing to clean up.")
            return

        _say(f"Remote state: {state.details}")
        if not yes:
            answer = input(f"Remove the editor server directories on {host_key}? [y/N] ")
            if answer.strip().lower() not in ("y", "yes"):
                _say("Cleanup aborted.")
                return

        if not channel.cleanup_server_dirs():
            log_and_print_error("Cleanup on %s did not report success", host_key)
            sys.exit(1)

        _say(f"Removed the editor server directories on {host_key}. Reconnect to reinstall.")

    def install_plugin(self) -> None:
        """Download and install the Session Manager plugin."""
        installer = self._make_installer()
        if installer.supported:
            _say(f"Downloading {installer.url}...")
        installer.install()
        _say("Session Manager plugin installed. Restart your editor so it is picked up.")

    def init(self, force: bool = False) -> None:
        """Create a default spacelink.yaml configuration file."""
        config_path = self._config_path or os.environ.get("SPACELINK_CONFIG", "spacelink.yaml")
        config_file = Path(config_path)

        if config_file.exists() and not force:
            log_and_print_error(
                "%s already exists. Use --force to overwrite.",
                config_path,
            )
            sys.exit(1)

        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w") as f:
            f.write(CONFIG_TEMPLATE)

        print(f"Created {config_path} configuration file.")


if __name__ == "__main__":
    main()
