"""Repairs for the PowerShell connection script used as SSH ProxyCommand.

The AWS Toolkit regenerates ``sagemaker_connect.ps1`` whenever a remote
connection is opened from the editor. Three problems keep coming back in the
generated script, each handled by one rule:

``arn_normalization``
    Hostnames encode ARN separators as ``_._``, ``._`` and ``__``. Older
    scripts only decode two of them and pass app ARNs through, while the
    local server only accepts space ARNs.
``retry_loop_install``
    ``Get-SSMSessionInfo`` fetches the session descriptor once and exits on
    the first failure, although the local server answers HTTP 500 until it
    has finished starting.
``debug_output_suppression``
    The script writes progress with ``Write-Host``. Everything it prints to
    stdout is read by ssh as protocol data, so it must go to stderr.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from spacelink.constants import CANONICAL_RETRY_COUNT
from spacelink.core.errors import PatchConflict
from spacelink.repair.engine import (
    PatchEngine,
    PatchResult,
    PatchRule,
    balanced_delimiters,
    read_text_preserving_newlines,
    unique_markers,
)

logger = logging.getLogger(__name__)

ARN_MARKER = "# Convert app ARN to space ARN if needed (server only accepts space ARNs)"
RETRY_MARKER = "# Fetch session info with retries, backing off while the server answers 500"
DEBUG_MARKER = "# Suppress debug output for SSH ProxyCommand compatibility"

FETCH_FUNCTION = "Get-SSMSessionInfo"

CURRENT_ARN_LINE = (
    "$AWS_RESOURCE_ARN = $matches[2] -replace '_\\._', ':' -replace '\\._', ':' -replace '__', '/'"
)

ARN_LINE_PATTERN = re.compile(r"^(?P<indent>[ \t]*)\$AWS_RESOURCE_ARN\s*=\s*\$matches\[2\].*$", re.M)
LEGACY_ARN_LINE_PATTERN = re.compile(
    r"^(?P<indent>[ \t]*)\$AWS_RESOURCE_ARN\s*=\s*\$matches\[2\]\s*"
    r"-replace\s*'_\\\._',\s*':'\s*-replace\s*'__',\s*'/'[ \t]*$",
    re.M,
)

ARN_CONVERSION_BLOCK = (
    ARN_MARKER,
    "if ($AWS_RESOURCE_ARN -match '^arn:aws:sagemaker:([^:]+):(\\d+):app/([^/]+)/([^/]+)/.*$') {",
    "    $arnRegion = $matches[1]",
    "    $arnAccount = $matches[2]",
    "    $arnDomain = $matches[3]",
    "    $arnSpace = $matches[4]",
    '    $AWS_RESOURCE_ARN = "arn:aws:sagemaker:" + $arnRegion + ":" + $arnAccount + ":space/" + $arnDomain + "/" + $arnSpace',
    '    Write-Host "Converted app ARN to space ARN: $AWS_RESOURCE_ARN"',
    "}",
)

RETRY_BLOCK = (
    RETRY_MARKER,
    f"$maxRetries = {CANONICAL_RETRY_COUNT}",
    "$baseRetryInterval = 1",
    "$lastError = $null",
    "for ($attempt = 1; $attempt -le $maxRetries; $attempt++) {",
    "    try {",
    "        $response = Invoke-WebRequest -Uri $url -UseBasicParsing -TimeoutSec 3 -ErrorAction Stop",
    "        if ($response.StatusCode -eq 200 -and $response.Content) {",
    "            $script:SSM_SESSION_JSON = $response.Content",
    '            Write-Host "Session JSON successfully retrieved on attempt ${attempt}"',
    "            return",
    "        }",
    '        $lastError = "Empty response on attempt ${attempt}"',
    "    } catch {",
    "        if ($_.Exception.Response) {",
    "            $statusCode = [int]$_.Exception.Response.StatusCode",
    "            if ($statusCode -eq 500) {",
    "                $waitTime = [Math]::Min($baseRetryInterval * [Math]::Pow(1.5, $attempt - 1), 15)",
    '                $lastError = "HTTP 500 on attempt ${attempt}, server not ready"',
    '                Write-Host "Server not ready (HTTP 500), retrying in $([Math]::Round($waitTime)) s"',
    "                Start-Sleep -Seconds ([Math]::Round($waitTime))",
    "                continue",
    "            }",
    '            $lastError = "HTTP error ${statusCode} on attempt ${attempt}: $($_.Exception.Message)"',
    "        } else {",
    '            $lastError = "Error on attempt ${attempt}: $($_.Exception.Message)"',
    "        }",
    "    }",
    "    if ($attempt -lt $maxRetries) {",
    "        Start-Sleep -Seconds $baseRetryInterval",
    "    }",
    "}",
    'Write-Error "Failed to get SSM session info after $maxRetries attempts. Last error: $lastError"',
    "exit 1",
)

DEBUG_BLOCK = (
    DEBUG_MARKER,
    "$DebugPreference = 'SilentlyContinue'",
    "$VerbosePreference = 'SilentlyContinue'",
    "function Write-Host {",
    "    $parts = @()",
    "    $skipNext = $false",
    "    foreach ($arg in $args) {",
    "        if ($skipNext) { $skipNext = $false; continue }",
    "        if (\"$arg\" -match '^-(ForegroundColor|BackgroundColor|Separator)$') { $skipNext = $true; continue }",
    "        if (\"$arg\" -eq '-NoNewline') { continue }",
    '        $parts += "$arg"',
    "    }",
    "    [Console]::Error.WriteLine(($parts -join ' '))",
    "}",
)

BAD_SYNTAX_FRAGMENTS = (
    "HTTP error $statusCode on attempt $attempt:",
    "HTTP $statusCode:",
    "Error on attempt $attempt:",
)
"""Interpolations PowerShell parses as a drive-qualified variable (``$attempt:``)."""

BROKEN_SCRIPT_INDICATORS = (
    "Missing ')' in function parameter list",
    "Unexpected token '-Object'",
)

RETRY_COUNT_PATTERN = re.compile(r"\$maxRetries\s*=\s*(\d+)")

LEGACY_LOOP_PATTERN = re.compile(
    r"^(?P<indent>[ \t]*)\$maxRetries\s*=\s*\d+[\s\S]*?"
    r"Write-Error\s+\"Failed to get SSM session info after[^\n]*\n[ \t]*exit\s+1",
    re.M,
)

FETCH_TRY_CATCH_PATTERN = re.compile(
    r"^(?P<indent>[ \t]*)try\s*\{(?:(?!^[ \t]*try\s*\{)[\s\S])*?"
    r"\$script:SSM_SESSION_JSON\s*=\s*\$response\.Content[\s\S]*?"
    r"Write-Host\s+\"Session JSON successfully retrieved\"[\s\S]*?"
    r"\}\s*catch\s*\{[\s\S]*?"
    r"Write-Error\s+\"Exception in Get-SSMSessionInfo: \$_\"[\s\S]*?"
    r"exit\s+1[\s\S]*?\}",
    re.M,
)

PERMISSIVE_TRY_CATCH_PATTERN = re.compile(
    r"^(?P<indent>[ \t]*)try\s*\{[\s\S]*?\}\s*catch\s*\{[\s\S]*?"
    r"Write-Error\s+\"Exception in Get-SSMSessionInfo: \$_\"[\s\S]*?"
    r"exit\s+1[\s\S]*?\}",
    re.M,
)

DEBUG_LINE_PATTERN = re.compile(
    r'^(?P<indent>[ \t]*)Write-Host\s+"DEBUG:\s*(?P<line>\d+)\+\s+>>>>\s+(?P<text>.+?)"[ \t]*$',
    re.M,
)

ATTRIBUTE_LINE = re.compile(r"^\s*\[[A-Za-z][\w.]*(\(.*\))?\]\s*$")
PARAM_START = re.compile(r"^\s*param\s*\(", re.I)


def _indent_block(lines: tuple[str, ...], indent: str) -> str:
    return "\n".join(f"{indent}{line}" if line else "" for line in lines)


def _marker_lines(text: str, marker: str) -> int:
    return sum(1 for line in text.splitlines() if line.strip() == marker)


def _drop_marker_lines(text: str, marker: str) -> str:
    kept = [line for line in text.split("\n") if line.strip() != marker]
    return "\n".join(kept)


def function_body_span(text: str, name: str) -> tuple[int, int] | None:
    """Locate the body of a PowerShell function.

    Parameters
    ----------
    text : str
        Script text
    name : str
        Function name, matched exactly

    Returns
    -------
    tuple[int, int] | None
        Offsets just after the opening brace and at the closing brace, or
        None when the function is missing or its braces never close
    """
    match = re.search(rf"^[ \t]*function\s+{re.escape(name)}\s*\{{", text, re.M | re.I)
    if match is None:
        return None

    depth = 1
    for index in range(match.end(), len(text)):
        char = text[index]
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return match.end(), index
    return None


def _fetch_region(text: str) -> tuple[int, int]:
    span = function_body_span(text, FETCH_FUNCTION)
    return span if span is not None else (0, len(text))


def retry_count(text: str) -> int | None:
    """Return the retry count configured in the session info fetch, if any."""
    start, end = _fetch_region(text)
    match = RETRY_COUNT_PATTERN.search(text, start, end)
    return int(match.group(1)) if match else None


def bad_syntax_fragments(text: str) -> list[str]:
    return [fragment for fragment in BAD_SYNTAX_FRAGMENTS if fragment in text]


def is_broken(text: str) -> bool:
    """Whether the script carries residue of an earlier failed patch."""
    return any(indicator in text for indicator in BROKEN_SCRIPT_INDICATORS)


def _strip_bad_lines(text: str) -> str:
    lines = text.split("\n")
    kept = [line for line in lines if not any(f in line for f in BAD_SYNTAX_FRAGMENTS)]
    return "\n".join(kept)


def detect_arn_normalization(text: str) -> bool:
    return _marker_lines(text, ARN_MARKER) > 0 and LEGACY_ARN_LINE_PATTERN.search(text) is None


def apply_arn_normalization(text: str) -> str:
    anchor = ARN_LINE_PATTERN.search(text)
    if anchor is None:
        raise PatchConflict("$AWS_RESOURCE_ARN derivation line not found")

    text = LEGACY_ARN_LINE_PATTERN.sub(
        lambda m: f"{m.group('indent')}{CURRENT_ARN_LINE}", text, count=1
    )

    if _marker_lines(text, ARN_MARKER) == 0:
        anchor = ARN_LINE_PATTERN.search(text)
        block = _indent_block(ARN_CONVERSION_BLOCK, anchor.group("indent"))
        text = f"{text[: anchor.end()]}\n{block}{text[anchor.end():]}"

    return text


def detect_retry_loop(text: str) -> bool:
    start, end = _fetch_region(text)
    region = text[start:end]
    return (
        _marker_lines(region, RETRY_MARKER) > 0
        and retry_count(text) == CANONICAL_RETRY_COUNT
        and not bad_syntax_fragments(text)
    )


def apply_retry_loop(text: str) -> str:
    span = function_body_span(text, FETCH_FUNCTION)
    start, end = span if span is not None else (0, len(text))
    region = _drop_marker_lines(text[start:end], RETRY_MARKER)

    patterns = [LEGACY_LOOP_PATTERN, FETCH_TRY_CATCH_PATTERN]
    if span is not None:
        patterns.append(PERMISSIVE_TRY_CATCH_PATTERN)

    for pattern in patterns:
        match = pattern.search(region)
        if match is None:
            continue
        block = _indent_block(RETRY_BLOCK, match.group("indent"))
        region = f"{region[: match.start()]}{block}{region[match.end():]}"
        logger.debug("Replaced session info fetch matched by %s", pattern.pattern[:40])
        return _strip_bad_lines(f"{text[:start]}{region}{text[end:]}")

    stripped = _strip_bad_lines(text)
    if stripped == text:
        raise PatchConflict(f"No session info fetch block found in {FETCH_FUNCTION}")
    logger.warning("Retry block not found; removed lines with invalid interpolation only")
    return stripped


def _preamble_end(lines: list[str]) -> int:
    """Index of the line before which the debug block is inserted."""
    index = 0
    in_block_comment = False

    while index < len(lines):
        stripped = lines[index].strip()
        if in_block_comment:
            if "#>" in stripped:
                in_block_comment = False
            index += 1
            continue
        if stripped.startswith("<#"):
            in_block_comment = "#>" not in stripped[2:]
            index += 1
            continue
        if not stripped or stripped.startswith("#"):
            index += 1
            continue
        break

    first_code = index
    while index < len(lines) and ATTRIBUTE_LINE.match(lines[index]):
        index += 1

    if index < len(lines) and PARAM_START.match(lines[index]):
        depth = 0
        while index < len(lines):
            depth += lines[index].count("(") - lines[index].count(")")
            index += 1
            if depth <= 0:
                return index
        return first_code

    return first_code


def detect_debug_suppression(text: str) -> bool:
    return _marker_lines(text, DEBUG_MARKER) > 0 and DEBUG_LINE_PATTERN.search(text) is None


def apply_debug_suppression(text: str) -> str:
    text = DEBUG_LINE_PATTERN.sub(
        lambda m: f"{m.group('indent')}# Suppressed debug output: {m.group('line')}+ >>>> {m.group('text')}",
        text,
    )

    if _marker_lines(text, DEBUG_MARKER) > 0:
        return text

    lines = text.split("\n")
    position = _preamble_end(lines)
    block = list(DEBUG_BLOCK)
    if position > 0 and lines[position - 1].strip():
        block.insert(0, "")
    if position < len(lines) and lines[position].strip():
        block.append("")
    return "\n".join(lines[:position] + block + lines[position:])


ARN_RULE = PatchRule(
    name="arn_normalization",
    detect=detect_arn_normalization,
    apply=apply_arn_normalization,
)

RETRY_RULE = PatchRule(
    name="retry_loop_install",
    detect=detect_retry_loop,
    apply=apply_retry_loop,
)

DEBUG_RULE = PatchRule(
    name="debug_output_suppression",
    detect=detect_debug_suppression,
    apply=apply_debug_suppression,
)

SCRIPT_RULES = (ARN_RULE, RETRY_RULE, DEBUG_RULE)


@dataclass
class ScriptStatus:
    """What a connection script currently contains.

    Attributes
    ----------
    exists : bool
        Whether the script file exists
    arn_normalized : bool
        ARN conversion marker present and derivation line current
    retry_installed : bool
        Canonical retry block present with the canonical count
    retry_count : int | None
        Retry count found in the fetch function
    debug_suppressed : bool
        Debug suppression marker present
    bad_fragments : list[str]
        Invalid interpolations found
    broken : bool
        Residue of an earlier failed patch found
    """

    exists: bool = False
    arn_normalized: bool = False
    retry_installed: bool = False
    retry_count: int | None = None
    debug_suppressed: bool = False
    bad_fragments: list[str] = field(default_factory=list)
    broken: bool = False

    @property
    def fully_patched(self) -> bool:
        return self.exists and self.arn_normalized and self.retry_installed and self.debug_suppressed


def inspect_script(text: str) -> ScriptStatus:
    return ScriptStatus(
        exists=True,
        arn_normalized=detect_arn_normalization(text),
        retry_installed=detect_retry_loop(text),
        retry_count=retry_count(text),
        debug_suppressed=detect_debug_suppression(text),
        bad_fragments=bad_syntax_fragments(text),
        broken=is_broken(text),
    )


class ScriptRepair:
    """Repair the connection script in place.

    Parameters
    ----------
    script_path : Path
        Location of ``sagemaker_connect.ps1``
    engine : PatchEngine | None
        Engine applying the rules
    """

    def __init__(self, script_path: Path, engine: PatchEngine | None = None) -> None:
        self.script_path = Path(script_path)
        self.engine = engine or PatchEngine(
            validators=[
                balanced_delimiters,
                unique_markers(ARN_MARKER, RETRY_MARKER, DEBUG_MARKER),
            ]
        )

    @property
    def rules(self) -> tuple[PatchRule, ...]:
        return SCRIPT_RULES

    def exists(self) -> bool:
        return self.script_path.is_file()

    def inspect(self) -> ScriptStatus:
        """Report the script's current state without modifying it."""
        if not self.exists():
            return ScriptStatus()
        return inspect_script(read_text_preserving_newlines(self.script_path).replace("\r\n", "\n"))

    def repair(self, dry_run: bool = False) -> PatchResult:
        """Apply all script rules.

        Raises
        ------
        FileNotFoundError
            If the script does not exist yet
        """
        logger.info("Repairing connection script %s", self.script_path)
        return self.engine.repair_file(self.script_path, self.rules, dry_run=dry_run)

    def restore(self) -> Path | None:
        """Restore the newest backup of the script."""
        return self.engine.restore_latest_backup(self.script_path)

    def restore_if_broken(self) -> Path | None:
        """Restore the newest backup if the script shows signs of a failed patch.

        Returns
        -------
        Path | None
            Backup restored, None if the script is fine or there is no backup
        """
        if not self.exists():
            return None
        if not is_broken(read_text_preserving_newlines(self.script_path)):
            return None

        logger.warning("Connection script %s looks broken, restoring backup", self.script_path)
        restored = self.restore()
        if restored is None:
            logger.warning("No backup of %s to restore", self.script_path)
        return restored
