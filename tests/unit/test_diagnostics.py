"""Tests for Diagnostics."""

import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, NoCredentialsError

from spacelink.core.diagnostics import Diagnostics, script_structure_problems
from spacelink.core.probe import REMOTE_SSH_EXTENSION_ID, CapabilityReport
from spacelink.repair.script import ScriptRepair
from spacelink.repair.ssh_config import ConfigRepair
from spacelink.services.server import ServerInfo


@pytest.fixture
def sts_client() -> MagicMock:
    return MagicMock()


@pytest.fixture
def diagnostics(
    tmp_path: Path, storage_dir: Path, ssh_config_file: Path, sts_client: MagicMock
) -> Diagnostics:
    probe = MagicMock()
    probe.check_all.return_value = CapabilityReport(
        tool_present={"aws": True, "ssh": True, "session-manager-plugin": True},
        extension_present={REMOTE_SSH_EXTENSION_ID: True},
        host_entry_present=True,
    )
    server_probe = MagicMock()
    server_probe.check.return_value = ServerInfo(pid=1, port=51000, running=True, accessible=True)

    return Diagnostics(
        probe=probe,
        server_probe=server_probe,
        script_repair=ScriptRepair(storage_dir / "sagemaker_connect.ps1"),
        config_repair=ConfigRepair(ssh_config_file, "sagemaker", storage_dir),
        profiles_path=tmp_path / "profiles.json",
        boto3_client_factory=MagicMock(return_value=sts_client),
    )


def messages(report, section: str) -> list[str]:
    return [f.message for f in report.findings if f.section == section]


class TestCredentials:
    def test_credentials_found(self, diagnostics: Diagnostics, sts_client: MagicMock) -> None:
        assert diagnostics.check_aws_credentials()
        diagnostics.boto3_client_factory.assert_called_once_with("sts", region_name="us-east-1")
        sts_client.close.assert_called_once()

    def test_no_credentials(self, diagnostics: Diagnostics, sts_client: MagicMock) -> None:
        sts_client.get_caller_identity.side_effect = NoCredentialsError()

        assert not diagnostics.check_aws_credentials()
        sts_client.close.assert_called_once()

    def test_denied_call_still_means_credentials(
        self, diagnostics: Diagnostics, sts_client: MagicMock
    ) -> None:
        sts_client.get_caller_identity.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "GetCallerIdentity"
        )

        assert diagnostics.check_aws_credentials()


class TestRun:
    """Test findings and recommendations."""

    def test_reports_config_problems(self, diagnostics: Diagnostics) -> None:
        report = diagnostics.run()

        assert not report.healthy
        assert "Entry uses %n instead of %h" in messages(report, "ssh_config")
        assert "Connection script not generated yet" in messages(report, "script")[0]
        assert any("spacelink fix_ssh_config" in r for r in report.recommendations)
        assert report.recommendations[0].startswith("1. ")

    def test_missing_credentials_recommended_first(
        self, diagnostics: Diagnostics, sts_client: MagicMock
    ) -> None:
        sts_client.get_caller_identity.side_effect = NoCredentialsError()

        report = diagnostics.run()

        assert "AWS credentials not found" in messages(report, "credentials")
        assert report.recommendations[0] == "1. Configure AWS credentials: aws configure"
        assert report.recommendations[-1].endswith("Or apply all fixes at once: spacelink fix_all")

    def test_unpatched_script(
        self, diagnostics: Diagnostics, storage_dir: Path, unpatched_script: str
    ) -> None:
        (storage_dir / "sagemaker_connect.ps1").write_text(unpatched_script)

        report = diagnostics.run()

        assert "ARN conversion missing" in messages(report, "script")
        assert "Debug output suppression missing" in messages(report, "script")
        assert any("spacelink fix_script" in r for r in report.recommendations)

    def test_missing_entry(self, diagnostics: Diagnostics) -> None:
        diagnostics.config_repair.ssh_config_path.write_text("Host other\n    User x\n")

        report = diagnostics.run()

        assert any("spacelink setup --space_arn" in r for r in report.recommendations)

    def test_server_down(self, diagnostics: Diagnostics) -> None:
        diagnostics.server_probe.check.return_value = ServerInfo(error="Process not running")

        report = diagnostics.run()

        assert "Local server not running: Process not running" in messages(report, "server")
        assert any("Open Remote Connection" in r for r in report.recommendations)

    def test_missing_tools(self, diagnostics: Diagnostics) -> None:
        diagnostics.probe.check_all.return_value = CapabilityReport(
            tool_present={"aws": False, "ssh": True, "session-manager-plugin": False}
        )

        report = diagnostics.run()

        assert "aws: not found" in messages(report, "prerequisites")
        assert any("spacelink install_plugin" in r for r in report.recommendations)

    def test_profiles(self, diagnostics: Diagnostics) -> None:
        diagnostics.profiles_path.write_text(json.dumps({"arn:x": "default"}))

        report = diagnostics.run()

        assert messages(report, "profiles") == ["Space profile mapping has 1 entry"]

    def test_unreadable_profiles(self, diagnostics: Diagnostics) -> None:
        diagnostics.profiles_path.write_text("{broken")

        report = diagnostics.run()

        assert not next(f for f in report.findings if f.section == "profiles").ok


class TestScriptStructure:
    def test_clean(self) -> None:
        assert script_structure_problems("if ($a) {\n    Write-Error 'x'\n}\n") == []

    def test_mismatched_braces(self) -> None:
        assert script_structure_problems("if ($a) {\n") == ["Mismatched braces: 1 open, 0 close"]

    def test_unclosed_write_error(self) -> None:
        problems = script_structure_problems('Write-Error "Failed to get\n')

        assert "Unclosed string in Write-Error statement" in problems

    def test_duplicate_region(self) -> None:
        text = (
            "$REGION = ($AWS_RESOURCE_ARN -split ':')[3]\n"
            "$REGION = ($AWS_RESOURCE_ARN -split ':')[3]\n"
        )

        assert "Duplicate $REGION assignments (2 found)" in script_structure_problems(text)

    def test_malformed_arn_conversion(self) -> None:
        text = "if ($AWS_RESOURCE_ARN -match '^arn'} else {\n}\n"

        assert "Malformed ARN conversion block" in script_structure_problems(text)
