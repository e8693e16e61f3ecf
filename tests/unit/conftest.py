"""Pytest configuration and fixtures for spacelink tests."""

import os
import sys
from collections.abc import Generator
from pathlib import Path

import pytest

tests_root = Path(__file__).parent.parent
if str(tests_root.parent) not in sys.path:
    sys.path.insert(0, str(tests_root.parent))

from spacelink.repair.script import ARN_CONVERSION_BLOCK, CURRENT_ARN_LINE  # noqa: E402
from spacelink.services.process import ProcessRunner  # noqa: E402
from tests.fakes.fake_runner import FakeProcessRunner  # noqa: E402

SPACE_ARN = "arn:aws:sagemaker:us-east-1:123456789012:space/d-abc123/my-space"

SCRIPT_HEADER = """<#
.SYNOPSIS
Connects to a SageMaker space through the local server.
#>
param(
    [Parameter(Mandatory=$true)]
    [string]$Hostname
)

$ErrorActionPreference = 'Stop'
"""

LEGACY_FETCH_FUNCTION = """
function Get-SSMSessionInfo {
    $serverInfo = Get-Content $env:SAGEMAKER_LOCAL_SERVER_FILE_PATH | ConvertFrom-Json
    $url = "http://localhost:$($serverInfo.port)/get_session?connection_identifier=$AWS_RESOURCE_ARN"
    $maxRetries = 50
    $retryInterval = 2
    for ($i = 1; $i -le $maxRetries; $i++) {
        try {
            $response = Invoke-WebRequest -Uri $url -UseBasicParsing
            $script:SSM_SESSION_JSON = $response.Content
            return
        } catch {
            Start-Sleep -Seconds $retryInterval
        }
    }
    Write-Error "Failed to get SSM session info after $maxRetries attempts"
    exit 1
}
"""

TRY_CATCH_FETCH_FUNCTION = """
function Get-SSMSessionInfo {
    $serverInfo = Get-Content $env:SAGEMAKER_LOCAL_SERVER_FILE_PATH | ConvertFrom-Json
    $url = "http://localhost:$($serverInfo.port)/get_session?connection_identifier=$AWS_RESOURCE_ARN"
    try {
        $response = Invoke-WebRequest -Uri $url -UseBasicParsing
        $script:SSM_SESSION_JSON = $response.Content
        Write-Host "Session JSON successfully retrieved"
    } catch {
        Write-Error "Exception in Get-SSMSessionInfo: $_"
        exit 1
    }
}
"""

SCRIPT_FOOTER = """
Get-SSMSessionInfo
Write-Host "Starting session"
& session-manager-plugin $SSM_SESSION_JSON $AWS_REGION StartSession
"""

LEGACY_ARN_LINE = "$AWS_RESOURCE_ARN = $matches[2] -replace '_\\._', ':' -replace '__', '/'"


def _hostname_section(arn_lines: list[str]) -> str:
    body = "\n".join(f"    {line}" for line in arn_lines)
    return (
        "\nif ($Hostname -match '^(sm_lc_arn_|sm_dl_arn_|sm_arn_)(.*)$') {\n"
        f"{body}\n"
        "}\n"
    )


def build_script(arn_lines: list[str], fetch_function: str) -> str:
    return SCRIPT_HEADER + _hostname_section(arn_lines) + fetch_function + SCRIPT_FOOTER


@pytest.fixture(autouse=True)
def clean_spacelink_env() -> Generator[None, None, None]:
    """Keep SPACELINK_* variables from the developer's shell out of tests.

    Yields
    ------
    None
        Control back to the test
    """
    saved = {key: os.environ.pop(key) for key in list(os.environ) if key.startswith("SPACELINK_")}
    ProcessRunner.clear_cache()

    yield

    for key in [key for key in os.environ if key.startswith("SPACELINK_")]:
        del os.environ[key]
    os.environ.update(saved)
    ProcessRunner.clear_cache()


@pytest.fixture
def fake_runner() -> FakeProcessRunner:
    """Runner with no tools installed and no scripted responses.

    Returns
    -------
    FakeProcessRunner
        Fresh fake runner
    """
    return FakeProcessRunner()


@pytest.fixture
def legacy_retry_script() -> str:
    """Script with current ARN handling, a 50-attempt fetch loop and no debug suppression.

    Returns
    -------
    str
        Script text
    """
    return build_script([CURRENT_ARN_LINE, *ARN_CONVERSION_BLOCK], LEGACY_FETCH_FUNCTION)


@pytest.fixture
def unpatched_script() -> str:
    """Script as an older toolkit generates it, needing every repair.

    Returns
    -------
    str
        Script text
    """
    return build_script([LEGACY_ARN_LINE], TRY_CATCH_FETCH_FUNCTION)


@pytest.fixture
def storage_dir(tmp_path: Path) -> Path:
    """Toolkit storage directory inside the test's temp dir.

    Returns
    -------
    Path
        Existing storage directory
    """
    path = tmp_path / "Cursor" / "User" / "globalStorage" / "amazonwebservices.aws-toolkit-vscode"
    path.mkdir(parents=True)
    return path


@pytest.fixture
def script_file(storage_dir: Path, legacy_retry_script: str) -> Path:
    """Connection script written to the storage directory.

    Returns
    -------
    Path
        Path to sagemaker_connect.ps1
    """
    path = storage_dir / "sagemaker_connect.ps1"
    path.write_text(legacy_retry_script, encoding="utf-8")
    return path


@pytest.fixture
def ssh_config_text(storage_dir: Path) -> str:
    """SSH config whose sagemaker entry uses %n and lacks the env pointer.

    Returns
    -------
    str
        Config text
    """
    script = storage_dir / "sagemaker_connect.ps1"
    return (
        "Host github.com\n"
        "    User git\n"
        "\n"
        "Host sagemaker\n"
        "    HostName sm_lc_arn_._aws_._sagemaker_._us-east-1_._123456789012_._space__d-abc123__my-space\n"
        "    User sagemaker-user\n"
        f"    ProxyCommand powershell.exe -NoProfile -Command \"& '{script}' %n\"\n"
    )


@pytest.fixture
def ssh_config_file(tmp_path: Path, ssh_config_text: str) -> Path:
    """SSH config file holding ``ssh_config_text``.

    Returns
    -------
    Path
        Path to the config file
    """
    path = tmp_path / "ssh" / "config"
    path.parent.mkdir()
    path.write_text(ssh_config_text, encoding="utf-8")
    return path
