"""Idempotent text patching with backups and structural validation."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from spacelink.core.errors import PatchConflict
from spacelink.utils import atomic_file_write, list_backups, write_backup

logger = logging.getLogger(__name__)

Validator = Callable[[str, str], list[str]]
"""Structural check taking (original, patched) text and returning violations."""


@dataclass(frozen=True)
class PatchRule:
    """A named, idempotent text transformation.

    Attributes
    ----------
    name : str
        Rule identifier used in results and conflict lists
    detect : Callable[[str], bool]
        Returns True when the text already satisfies the rule
    apply : Callable[[str], str]
        Returns the transformed text; raises PatchConflict when its anchor
        is missing
    conflicts_with : tuple[str, ...]
        Rules that must not run in the same pass once this one applied
    """

    name: str
    detect: Callable[[str], bool]
    apply: Callable[[str], str]
    conflicts_with: tuple[str, ...] = ()


@dataclass(frozen=True)
class PatchWarning:
    """Non-fatal problem noticed while applying a rule."""

    rule: str
    message: str

    def __str__(self) -> str:
        return f"{self.rule}: {self.message}"


@dataclass
class PatchResult:
    """Outcome of one patch run.

    Attributes
    ----------
    original_text : str
        Text before any rule ran
    patched_text : str
        Text after all applicable rules ran
    applied_rules : list[str]
        Rules that changed the text, in order
    skipped_rules : list[str]
        Rules already satisfied, in conflict, or unable to apply
    warnings : list[PatchWarning]
        Conflicts and post-condition failures
    violations : list[str]
        Structural checks the patched text failed
    backup_location : Path | None
        Backup of the original file, set when any rule applied on disk
    written : bool
        Whether the patched text was written back
    """

    original_text: str
    patched_text: str
    applied_rules: list[str] = field(default_factory=list)
    skipped_rules: list[str] = field(default_factory=list)
    warnings: list[PatchWarning] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)
    backup_location: Path | None = None
    written: bool = False

    @property
    def needs_fix(self) -> bool:
        return bool(self.applied_rules)

    @property
    def failed(self) -> bool:
        return bool(self.violations)

    @property
    def changed(self) -> bool:
        return self.patched_text != self.original_text


def _imbalance(text: str, opener: str, closer: str) -> int:
    return text.count(opener) - text.count(closer)


def balanced_delimiters(original: str, patched: str) -> list[str]:
    """Check braces and parentheses stay as balanced as they were.

    Only a change in balance is reported, so text that was already
    unbalanced before patching is not blamed on the patch.
    """
    violations = []
    for opener, closer in (("{", "}"), ("(", ")")):
        before = _imbalance(original, opener, closer)
        after = _imbalance(patched, opener, closer)
        if after != before:
            violations.append(
                f"Unbalanced '{opener}{closer}' after patching "
                f"(imbalance {before} before, {after} after)"
            )
    return violations


def unique_markers(*markers: str) -> Validator:
    """Build a validator rejecting patches that duplicate a marker line."""

    def validate(original: str, patched: str) -> list[str]:
        violations = []
        for marker in markers:
            before = sum(1 for line in original.splitlines() if line.strip() == marker)
            after = sum(1 for line in patched.splitlines() if line.strip() == marker)
            if after > 1 and after > before:
                violations.append(f"Marker {marker!r} appears {after} times")
        return violations

    return validate


class PatchEngine:
    """Apply patch rules to text and files.

    Parameters
    ----------
    validators : Sequence[Validator] | None
        Structural checks run on the final text, ``balanced_delimiters`` by
        default
    """

    def __init__(self, validators: Sequence[Validator] | None = None) -> None:
        self.validators = list(validators) if validators is not None else [balanced_delimiters]

    def apply_rules(self, text: str, rules: Sequence[PatchRule]) -> PatchResult:
        """Apply rules to text in order, without touching disk.

        Parameters
        ----------
        text : str
            Input text
        rules : Sequence[PatchRule]
            Rules applied in order, each seeing the previous rule's output

        Returns
        -------
        PatchResult
            Result of the run
        """
        result = PatchResult(original_text=text, patched_text=text)
        current = text

        for rule in rules:
            if rule.detect(current):
                logger.debug("Rule %s already satisfied", rule.name)
                result.skipped_rules.append(rule.name)
                continue

            conflict = self._conflicting_rule(rule, rules, result.applied_rules)
            if conflict is not None:
                result.skipped_rules.append(rule.name)
                result.warnings.append(
                    PatchWarning(rule.name, f"skipped, conflicts with applied rule {conflict}")
                )
                continue

            try:
                patched = rule.apply(current)
            except PatchConflict as e:
                logger.warning("Rule %s could not be applied: %s", rule.name, e)
                result.skipped_rules.append(rule.name)
                result.warnings.append(PatchWarning(rule.name, str(e)))
                continue

            if patched == current:
                result.skipped_rules.append(rule.name)
                result.warnings.append(PatchWarning(rule.name, "no change produced"))
                continue

            current = patched
            result.applied_rules.append(rule.name)
            logger.info("Applied %s", rule.name)

            if not rule.detect(current):
                result.warnings.append(
                    PatchWarning(rule.name, "applied but its check still does not pass")
                )

        result.patched_text = current
        if result.applied_rules:
            for validator in self.validators:
                result.violations.extend(validator(text, current))

        return result

    @staticmethod
    def _conflicting_rule(
        rule: PatchRule, rules: Sequence[PatchRule], applied: list[str]
    ) -> str | None:
        by_name = {r.name: r for r in rules}
        for name in applied:
            other = by_name.get(name)
            if name in rule.conflicts_with or (other is not None and rule.name in other.conflicts_with):
                return name
        return None

    def repair_file(
        self, path: Path, rules: Sequence[PatchRule], dry_run: bool = False
    ) -> PatchResult:
        """Apply rules to a file.

        When any rule applies, the original is backed up before anything else.
        The patched text is only written if it passes every validator;
        otherwise the file is left untouched and the backup is kept so it can
        be restored.

        Parameters
        ----------
        path : Path
            File to repair
        rules : Sequence[PatchRule]
            Rules applied in order
        dry_run : bool
            Compute the result without writing anything

        Returns
        -------
        PatchResult
            Result of the run, with ``backup_location`` and ``written`` set

        Raises
        ------
        FileNotFoundError
            If the file does not exist
        OSError
            If the backup or the patched file cannot be written
        """
        path = Path(path)
        raw = read_text_preserving_newlines(path)
        newline = "\r\n" if "\r\n" in raw else "\n"
        text = raw.replace("\r\n", "\n")

        result = self.apply_rules(text, rules)

        if dry_run or not result.needs_fix:
            return result

        result.backup_location = write_backup(path, raw)

        if result.failed:
            logger.error(
                "Not writing %s, patched text failed validation: %s",
                path,
                "; ".join(result.violations),
            )
            return result

        atomic_file_write(path, result.patched_text.replace("\n", newline))
        result.written = True
        logger.info("Repaired %s (backup at %s)", path, result.backup_location)
        return result

    def restore_latest_backup(self, path: Path) -> Path | None:
        """Restore the newest backup of ``path``.

        Returns
        -------
        Path | None
            Backup that was restored, None if there is none
        """
        backups = list_backups(path)
        if not backups:
            return None

        latest = backups[0]
        atomic_file_write(Path(path), read_text_preserving_newlines(latest))
        logger.info("Restored %s from %s", path, latest)
        return latest


def read_text_preserving_newlines(path: Path) -> str:
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()
