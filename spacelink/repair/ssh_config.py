"""Repairs for the SSH client config entry of the SageMaker host alias."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import paramiko

from spacelink.constants import (
    CONNECT_SCRIPT_FILENAME,
    KNOWN_HOSTS_STALE_MARKER,
    REMOTE_USER,
    SERVER_INFO_FILENAME,
    Editor,
)
from spacelink.core.errors import CommandTimeout, ExecutionFailed, PatchConflict, ToolMissing
from spacelink.repair.engine import PatchEngine, PatchResult, PatchRule
from spacelink.services.process import ProcessRunner
from spacelink.utils import atomic_file_write, write_backup

logger = logging.getLogger(__name__)

HEADER_PATTERN = re.compile(r"^\s*(Host|Match)\s+(?P<patterns>.*?)\s*$", re.I)
OPTION_PATTERN = re.compile(r"^(?P<indent>\s*)(?P<key>[A-Za-z]+)(?:\s*=\s*|\s+)(?P<value>.*)$")
SCRIPT_PATH_PATTERN = re.compile(r"&\s*'(?P<path>[^']+)'")
BARE_SCRIPT_PATH_PATTERN = re.compile(r"(?P<path>[^\s'\"]+\.ps1)", re.I)
ENV_POINTER = "SAGEMAKER_LOCAL_SERVER_FILE_PATH"

KEEPALIVE_DEFAULTS = (
    ("ServerAliveInterval", "60"),
    ("ServerAliveCountMax", "3"),
    ("ConnectTimeout", "30"),
)

REQUIRED_OPTIONS = ("HostName", "User", "ProxyCommand")

SPACE_ARN_PATTERN = re.compile(
    r"^arn:(?P<partition>aws[\w-]*):sagemaker:(?P<region>[a-z0-9-]+):(?P<account>\d{12}):"
    r"(?P<kind>space|app)/(?P<domain>[^/]+)/(?P<space>[^/]+)(?:/.*)?$"
)

DEFAULT_INDENT = "    "


@dataclass(frozen=True)
class HostBlock:
    """Span of one ``Host`` block within a config document.

    Attributes
    ----------
    start : int
        Offset of the header line
    end : int
        Offset just past the block's last line
    text : str
        Block text including the header line
    """

    start: int
    end: int
    text: str


@dataclass(frozen=True)
class SpaceArn:
    """Parsed SageMaker space ARN."""

    region: str
    account: str
    domain: str
    space: str
    partition: str = "aws"

    def __str__(self) -> str:
        return (
            f"arn:{self.partition}:sagemaker:{self.region}:{self.account}:"
            f"space/{self.domain}/{self.space}"
        )

    @property
    def hostname(self) -> str:
        """Hostname the connection script decodes back into this ARN."""
        return (
            f"sm_lc_arn_._{self.partition}_._sagemaker_._{self.region}_._{self.account}"
            f"_._space__{self.domain}__{self.space}"
        )


def parse_space_arn(arn: str) -> SpaceArn:
    """Parse a space ARN, converting app ARNs to the space they run in.

    Parameters
    ----------
    arn : str
        ``arn:aws:sagemaker:<region>:<account>:space/<domain>/<space>`` or an
        app ARN ``...:app/<domain>/<space>/<type>/<name>``

    Returns
    -------
    SpaceArn
        Parsed space ARN

    Raises
    ------
    ValueError
        If the ARN is not a SageMaker space or app ARN
    """
    match = SPACE_ARN_PATTERN.match(arn.strip())
    if match is None:
        raise ValueError(
            f"Invalid SageMaker space ARN: {arn!r}. Expected "
            "arn:aws:sagemaker:<region>:<account>:space/<domain-id>/<space-name>"
        )
    return SpaceArn(
        region=match.group("region"),
        account=match.group("account"),
        domain=match.group("domain"),
        space=match.group("space"),
        partition=match.group("partition"),
    )


def _header_patterns(line: str) -> list[str] | None:
    match = HEADER_PATTERN.match(line)
    if match is None or match.group(1).lower() != "host":
        return None
    return match.group("patterns").split()


def has_host_entry(text: str, alias: str) -> bool:
    """Whether a ``Host`` line of the config names ``alias`` exactly."""
    return any(alias in (_header_patterns(line) or ()) for line in text.splitlines())


def find_host_block(text: str, alias: str) -> HostBlock | None:
    """Locate the block whose ``Host`` line names ``alias``.

    The block runs from its header to the next ``Host`` or ``Match`` header,
    or to the end of the document.
    """
    offset = 0
    start = None
    for line in text.splitlines(keepends=True):
        if start is not None and HEADER_PATTERN.match(line):
            return HostBlock(start=start, end=offset, text=text[start:offset])
        if start is None and alias in (_header_patterns(line) or ()):
            start = offset
        offset += len(line)

    if start is None:
        return None
    return HostBlock(start=start, end=len(text), text=text[start:])


def _block_option(block: str, key: str) -> tuple[int, str, str] | None:
    """Find an option line in a block: (line index, indent, value)."""
    for index, line in enumerate(block.split("\n")[1:], start=1):
        match = OPTION_PATTERN.match(line)
        if match and match.group("key").lower() == key.lower():
            return index, match.group("indent"), match.group("value")
    return None


def _block_indent(block: str) -> str:
    for line in block.split("\n")[1:]:
        match = OPTION_PATTERN.match(line)
        if match and match.group("indent"):
            return match.group("indent")
    return DEFAULT_INDENT


def _last_content_line(lines: list[str]) -> int:
    for index in range(len(lines) - 1, -1, -1):
        if lines[index].strip():
            return index
    return 0


class ConfigRepair:
    """Repair and create the host alias entry in the SSH client config.

    Parameters
    ----------
    ssh_config_path : Path
        SSH client config file
    host_alias : str
        Host alias of the SageMaker entry
    storage_dir : Path
        Toolkit storage directory holding the server descriptor and script
    editor : Editor | str
        Editor whose storage paths the entry should point at
    engine : PatchEngine | None
        Engine applying the rules
    """

    def __init__(
        self,
        ssh_config_path: Path,
        host_alias: str,
        storage_dir: Path,
        editor: Editor | str = Editor.CURSOR,
        engine: PatchEngine | None = None,
    ) -> None:
        self.ssh_config_path = Path(ssh_config_path).expanduser()
        self.host_alias = host_alias
        self.storage_dir = Path(storage_dir)
        self.editor = Editor(editor)
        self.engine = engine or PatchEngine()

    @property
    def server_info_path(self) -> Path:
        return self.storage_dir / SERVER_INFO_FILENAME

    @property
    def script_path(self) -> Path:
        return self.storage_dir / CONNECT_SCRIPT_FILENAME

    def proxy_command(self, script_path: str | None = None) -> str:
        """ProxyCommand value exporting the server descriptor location."""
        script = script_path or str(self.script_path)
        return (
            f"powershell.exe -NoProfile -Command \"$env:{ENV_POINTER}='{self.server_info_path}'; "
            f"& '{script}' %h\""
        )

    def _block_rule(
        self,
        name: str,
        detect: Callable[[str], bool],
        apply: Callable[[str], str],
    ) -> PatchRule:
        def detect_text(text: str) -> bool:
            block = find_host_block(text, self.host_alias)
            return block is not None and detect(block.text)

        def apply_text(text: str) -> str:
            block = find_host_block(text, self.host_alias)
            if block is None:
                raise PatchConflict(f"No 'Host {self.host_alias}' entry")
            return f"{text[: block.start]}{apply(block.text)}{text[block.end:]}"

        return PatchRule(name=name, detect=detect_text, apply=apply_text)

    @property
    def rules(self) -> tuple[PatchRule, ...]:
        return (
            self._block_rule(
                "placeholder_substitution", self._placeholder_ok, self._fix_placeholder
            ),
            self._block_rule("stale_path_correction", self._paths_ok, self._fix_paths),
            self._block_rule("keepalive_defaults", self._keepalive_ok, self._add_keepalive),
            self._block_rule("env_pointer_injection", self._env_pointer_ok, self._inject_env_pointer),
        )

    @staticmethod
    def _placeholder_ok(block: str) -> bool:
        return not ("%n" in block and "%h" not in block)

    @staticmethod
    def _fix_placeholder(block: str) -> str:
        return block.replace("%n", "%h")

    def _stale_path_pattern(self) -> re.Pattern:
        wrong = Editor.CODE if self.editor is Editor.CURSOR else Editor.CURSOR
        return re.compile(rf"(?<![A-Za-z]){wrong.dirname}(?P<sep>[\\/])User")

    def _paths_ok(self, block: str) -> bool:
        return self._stale_path_pattern().search(block) is None

    def _fix_paths(self, block: str) -> str:
        right = self.editor.dirname
        return self._stale_path_pattern().sub(lambda m: f"{right}{m.group('sep')}User", block)

    @staticmethod
    def _keepalive_ok(block: str) -> bool:
        return all(_block_option(block, key) is not None for key, _ in KEEPALIVE_DEFAULTS)

    @staticmethod
    def _add_keepalive(block: str) -> str:
        indent = _block_indent(block)
        missing = [
            f"{indent}{key} {value}"
            for key, value in KEEPALIVE_DEFAULTS
            if _block_option(block, key) is None
        ]
        lines = block.split("\n")

        strict = _block_option(block, "StrictHostKeyChecking")
        proxy = _block_option(block, "ProxyCommand")
        if strict is not None:
            position = strict[0] + 1
        elif proxy is not None:
            position = proxy[0]
        else:
            position = _last_content_line(lines) + 1

        return "\n".join(lines[:position] + missing + lines[position:])

    @staticmethod
    def _env_pointer_ok(block: str) -> bool:
        proxy = _block_option(block, "ProxyCommand")
        return proxy is not None and ENV_POINTER in proxy[2]

    def _inject_env_pointer(self, block: str) -> str:
        proxy = _block_option(block, "ProxyCommand")
        if proxy is None:
            raise PatchConflict(f"'Host {self.host_alias}' entry has no ProxyCommand")

        index, indent, value = proxy
        match = SCRIPT_PATH_PATTERN.search(value) or BARE_SCRIPT_PATH_PATTERN.search(value)
        script = match.group("path") if match else None

        lines = block.split("\n")
        lines[index] = f"{indent}ProxyCommand {self.proxy_command(script)}"
        return "\n".join(lines)

    def repair(self, dry_run: bool = False) -> PatchResult:
        """Apply all entry rules to the SSH config.

        Raises
        ------
        FileNotFoundError
            If the SSH config does not exist
        """
        logger.info("Repairing SSH config %s", self.ssh_config_path)
        return self.engine.repair_file(self.ssh_config_path, self.rules, dry_run=dry_run)

    def has_entry(self) -> bool:
        try:
            text = self.ssh_config_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return False
        return has_host_entry(text, self.host_alias)

    def render_entry(self, space_arn: str) -> str:
        """Render a complete entry for a space.

        Raises
        ------
        ValueError
            If ``space_arn`` is not a SageMaker space or app ARN
        """
        arn = parse_space_arn(space_arn)
        options = [
            ("HostName", arn.hostname),
            ("User", REMOTE_USER),
            ("ForwardAgent", "yes"),
            ("AddKeysToAgent", "yes"),
            ("StrictHostKeyChecking", "accept-new"),
            *KEEPALIVE_DEFAULTS,
            ("ProxyCommand", self.proxy_command()),
        ]
        lines = [f"Host {self.host_alias}"]
        lines.extend(f"{DEFAULT_INDENT}{key} {value}" for key, value in options)
        return "\n".join(lines) + "\n"

    def setup_entry(self, space_arn: str) -> bool:
        """Append an entry for the space to the SSH config.

        Parameters
        ----------
        space_arn : str
            Space (or app) ARN to connect to

        Returns
        -------
        bool
            True if an entry was added, False if one already exists

        Raises
        ------
        ValueError
            If ``space_arn`` is invalid
        """
        entry = self.render_entry(space_arn)

        existing = ""
        if self.ssh_config_path.exists():
            existing = self.ssh_config_path.read_text(encoding="utf-8")
            if has_host_entry(existing, self.host_alias):
                logger.info("SSH config already contains Host %s", self.host_alias)
                return False
            write_backup(self.ssh_config_path, existing)
        else:
            self.ssh_config_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

        separator = ""
        if existing and not existing.endswith("\n"):
            separator = "\n\n"
        elif existing:
            separator = "\n"

        atomic_file_write(self.ssh_config_path, f"{existing}{separator}{entry}")
        logger.info("Added Host %s to %s", self.host_alias, self.ssh_config_path)
        return True

    def analyze(self, runner: ProcessRunner | None = None) -> ConfigAnalysis:
        """Inspect the entry for problems without changing it.

        Parameters
        ----------
        runner : ProcessRunner | None
            When given, ``ssh -G`` is run to report the settings ssh resolves

        Returns
        -------
        ConfigAnalysis
            Issues, warnings and the effective settings of the alias
        """
        analysis = ConfigAnalysis(config_path=self.ssh_config_path)

        try:
            text = self.ssh_config_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            analysis.issues.append(f"SSH config {self.ssh_config_path} does not exist")
            return analysis

        block = find_host_block(text, self.host_alias)
        if block is None:
            analysis.issues.append(f"No 'Host {self.host_alias}' entry in {self.ssh_config_path}")
            return analysis

        analysis.block_found = True
        self._analyze_block(block.text, analysis)
        self._analyze_wildcard(text, analysis)

        try:
            parsed = paramiko.SSHConfig.from_text(text)
            analysis.settings = {
                key: " ".join(value) if isinstance(value, list) else str(value)
                for key, value in parsed.lookup(self.host_alias).items()
            }
        except (paramiko.ssh_exception.ConfigParseError, ValueError) as e:
            analysis.issues.append(f"SSH config could not be parsed: {e}")

        if runner is not None:
            analysis.resolved = self._resolve_with_ssh(runner, analysis)

        return analysis

    def _analyze_block(self, block: str, analysis: ConfigAnalysis) -> None:
        for line in block.split("\n")[1:]:
            if line.strip() and not line.strip().startswith("#") and line == line.lstrip():
                analysis.warnings.append(f"Option line is not indented: {line.strip()}")

        for key in REQUIRED_OPTIONS:
            if _block_option(block, key) is None:
                analysis.issues.append(f"Missing required option {key}")

        proxy = _block_option(block, "ProxyCommand")
        if proxy is not None:
            value = proxy[2]
            match = SCRIPT_PATH_PATTERN.search(value) or BARE_SCRIPT_PATH_PATTERN.search(value)
            if match is None:
                analysis.issues.append("ProxyCommand does not reference a connection script")
            elif not Path(match.group("path")).exists():
                analysis.issues.append(f"Connection script not found: {match.group('path')}")
            if ENV_POINTER not in value:
                analysis.issues.append(f"ProxyCommand does not set {ENV_POINTER}")

        if not self._placeholder_ok(block):
            analysis.issues.append("Entry uses %n instead of %h")
        if not self._paths_ok(block):
            analysis.issues.append(f"Entry points at the wrong editor storage (expected {self.editor.dirname})")
        if not self._keepalive_ok(block):
            analysis.warnings.append("Keep-alive settings are missing")

    def _analyze_wildcard(self, text: str, analysis: ConfigAnalysis) -> None:
        wildcard = find_host_block(text, "sm_*")
        if wildcard is None:
            return
        if not self._paths_ok(wildcard.text):
            analysis.warnings.append("'Host sm_*' entry points at the wrong editor storage")
        if "%n" in wildcard.text:
            analysis.warnings.append("'Host sm_*' entry uses %n instead of %h")

    def _resolve_with_ssh(self, runner: ProcessRunner, analysis: ConfigAnalysis) -> dict[str, str]:
        try:
            result = runner.run(
                "ssh", ["-F", str(self.ssh_config_path), "-G", self.host_alias], timeout=10
            )
        except (ToolMissing, CommandTimeout, ExecutionFailed) as e:
            analysis.warnings.append(f"Could not run ssh -G: {e}")
            return {}

        if not result.ok:
            analysis.issues.append(f"ssh rejected the config: {result.stderr.strip()}")
            return {}

        resolved = {}
        for line in result.stdout.splitlines():
            key, _, value = line.partition(" ")
            if key in ("hostname", "user", "proxycommand", "serveraliveinterval", "connecttimeout"):
                resolved[key] = value
        return resolved


@dataclass
class ConfigAnalysis:
    """Findings about the host alias entry.

    Attributes
    ----------
    config_path : Path
        Analyzed config file
    block_found : bool
        Whether the alias entry exists
    issues : list[str]
        Problems that break connections
    warnings : list[str]
        Problems worth fixing that do not break connections
    settings : dict[str, str]
        Effective options for the alias as parsed by paramiko
    resolved : dict[str, str]
        Selected options as resolved by ``ssh -G``
    """

    config_path: Path
    block_found: bool = False
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    settings: dict[str, str] = field(default_factory=dict)
    resolved: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.block_found and not self.issues


def prune_known_hosts(path: Path, marker: str = KNOWN_HOSTS_STALE_MARKER) -> int:
    """Remove host keys recorded for SageMaker spaces.

    Spaces get a new host key each time they restart, so old keys make ssh
    refuse the connection.

    Parameters
    ----------
    path : Path
        known_hosts file
    marker : str
        Substring identifying the keys to remove

    Returns
    -------
    int
        Number of lines removed
    """
    path = Path(path).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return 0

    lines = text.splitlines(keepends=True)
    kept = [line for line in lines if marker not in line]
    removed = len(lines) - len(kept)
    if removed:
        write_backup(path, text)
        atomic_file_write(path, "".join(kept))
        logger.info("Removed %d stale host key(s) from %s", removed, path)
    return removed
