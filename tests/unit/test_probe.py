"""Tests for PrerequisiteProbe."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from spacelink.core.errors import ProbeFailed
from spacelink.core.probe import (
    AWS_CLI,
    REMOTE_SSH_EXTENSION_ID,
    SESSION_MANAGER_PLUGIN,
    CapabilityReport,
    PrerequisiteProbe,
)
from spacelink.services.extensions import EditorExtensionDirectory
from tests.fakes.fake_runner import FakeProcessRunner


def _registry(installed: set[str]) -> MagicMock:
    registry = MagicMock()
    registry.is_installed.side_effect = lambda extension_id: extension_id in installed
    return registry


class TestPrerequisiteProbe:
    """Test prerequisite checks."""

    def test_all_present(self, ssh_config_file: Path) -> None:
        """Every check passes when tools, extensions and entry exist."""
        runner = FakeProcessRunner(available=[AWS_CLI, SESSION_MANAGER_PLUGIN])
        registry = _registry({REMOTE_SSH_EXTENSION_ID, "amazonwebservices.aws-toolkit-vscode"})

        report = PrerequisiteProbe(runner, registry, ssh_config_file, "sagemaker").check_all()

        assert report.errors == ()
        assert report.warnings == ()
        assert report.host_entry_present
        assert report.remote_ssh_present
        assert report.all_passed

    def test_cli_absent_with_failing_registry(self, ssh_config_file: Path) -> None:
        """A failing registry is a warning and does not stop the other checks."""
        runner = FakeProcessRunner(available=[SESSION_MANAGER_PLUGIN])
        registry = MagicMock()
        registry.is_installed.side_effect = ProbeFailed("extensions directory unreadable")

        report = PrerequisiteProbe(runner, registry, ssh_config_file, "sagemaker").check_all()

        assert report.host_entry_present
        assert report.errors == ("AWS CLI not found",)
        assert dict(report.tool_present) == {AWS_CLI: False, SESSION_MANAGER_PLUGIN: True}
        assert not report.remote_ssh_present
        assert any(REMOTE_SSH_EXTENSION_ID in w for w in report.warnings)
        assert not report.all_passed

    def test_missing_plugin_is_an_error(self, ssh_config_file: Path) -> None:
        runner = FakeProcessRunner(available=[AWS_CLI])

        report = PrerequisiteProbe(
            runner, _registry({REMOTE_SSH_EXTENSION_ID}), ssh_config_file, "sagemaker"
        ).check_all()

        assert report.errors == ("Session Manager Plugin not found",)

    def test_plugin_found_by_resolved_path(self, tmp_path: Path, ssh_config_file: Path) -> None:
        """A plugin outside PATH counts as installed when its known location exists."""
        plugin = tmp_path / "session-manager-plugin.exe"
        plugin.write_text("")
        runner = FakeProcessRunner(
            available=[AWS_CLI], resolved={SESSION_MANAGER_PLUGIN: str(plugin)}
        )

        report = PrerequisiteProbe(
            runner, _registry(set()), ssh_config_file, "sagemaker"
        ).check_all()

        assert report.tool_present[SESSION_MANAGER_PLUGIN]

    def test_alternate_remote_ssh_extension(self, ssh_config_file: Path) -> None:
        runner = FakeProcessRunner(available=[AWS_CLI, SESSION_MANAGER_PLUGIN])

        report = PrerequisiteProbe(
            runner, _registry({"anysphere.remote-ssh"}), ssh_config_file, "sagemaker"
        ).check_all()

        assert report.remote_ssh_present

    def test_missing_ssh_config(self, tmp_path: Path) -> None:
        runner = FakeProcessRunner(available=[AWS_CLI, SESSION_MANAGER_PLUGIN])

        report = PrerequisiteProbe(
            runner, _registry(set()), tmp_path / "missing", "sagemaker"
        ).check_all()

        assert not report.host_entry_present
        assert report.warnings == ()

    def test_alias_must_match_exactly(self, ssh_config_file: Path) -> None:
        runner = FakeProcessRunner(available=[AWS_CLI, SESSION_MANAGER_PLUGIN])

        report = PrerequisiteProbe(
            runner, _registry(set()), ssh_config_file, "sage"
        ).check_all()

        assert not report.host_entry_present

    def test_reports_are_fresh(self, tmp_path: Path) -> None:
        """Each run reflects the current state, nothing is cached."""
        config = tmp_path / "config"
        runner = FakeProcessRunner(available=[AWS_CLI, SESSION_MANAGER_PLUGIN])
        probe = PrerequisiteProbe(runner, _registry(set()), config, "sagemaker")

        assert not probe.check_all().host_entry_present
        config.write_text("Host sagemaker\n    HostName x\n")
        assert probe.check_all().host_entry_present


class TestEditorExtensionDirectory:
    def test_strips_versions(self, tmp_path: Path) -> None:
        (tmp_path / "ms-vscode-remote.remote-ssh-0.113.1").mkdir()
        (tmp_path / "anysphere.remote-ssh-1.0.2-win32-x64").mkdir()
        (tmp_path / "extensions.json").write_text("[]")

        registry = EditorExtensionDirectory([tmp_path])

        assert registry.installed_ids() == {"ms-vscode-remote.remote-ssh", "anysphere.remote-ssh"}
        assert registry.is_installed("MS-VSCODE-REMOTE.Remote-SSH")

    def test_unreadable_registry_raises(self, tmp_path: Path) -> None:
        registry = EditorExtensionDirectory([tmp_path / "missing"])

        with pytest.raises(ProbeFailed, match="missing"):
            registry.is_installed("ms-vscode-remote.remote-ssh")

    def test_for_editor_override(self, tmp_path: Path) -> None:
        registry = EditorExtensionDirectory.for_editor("cursor", str(tmp_path))

        assert registry.directories == [tmp_path]

    def test_for_editor_prefers_its_own_directory(self) -> None:
        registry = EditorExtensionDirectory.for_editor("code")

        assert registry.directories[0].name == "extensions"
        assert registry.directories[0].parent.name == ".vscode"


class TestCapabilityReport:
    def test_presence_maps_are_read_only(self) -> None:
        tools = {AWS_CLI: True}
        report = CapabilityReport(tool_present=tools, extension_present={})

        with pytest.raises(TypeError):
            report.tool_present[AWS_CLI] = False  # type: ignore[index]
        with pytest.raises(TypeError):
            report.extension_present[REMOTE_SSH_EXTENSION_ID] = True  # type: ignore[index]

        tools[SESSION_MANAGER_PLUGIN] = True
        assert SESSION_MANAGER_PLUGIN not in report.tool_present
