"""Tests for PatchEngine."""

from pathlib import Path

from spacelink.core.errors import PatchConflict
from spacelink.repair.engine import (
    PatchEngine,
    PatchRule,
    balanced_delimiters,
    unique_markers,
)
from spacelink.utils import list_backups


def _append_rule(name: str, line: str, conflicts_with: tuple[str, ...] = ()) -> PatchRule:
    return PatchRule(
        name=name,
        detect=lambda text: line in text.split("\n"),
        apply=lambda text: text.rstrip("\n") + f"\n{line}\n",
        conflicts_with=conflicts_with,
    )


def _conflicting_anchor(text: str) -> str:
    raise PatchConflict("anchor not found")


class TestApplyRules:
    """Test rule application on text."""

    def test_rules_apply_in_order(self) -> None:
        engine = PatchEngine()
        rules = [_append_rule("first", "one"), _append_rule("second", "two")]

        result = engine.apply_rules("start\n", rules)

        assert result.applied_rules == ["first", "second"]
        assert result.patched_text == "start\none\ntwo\n"
        assert result.needs_fix
        assert not result.failed

    def test_satisfied_rules_are_skipped(self) -> None:
        engine = PatchEngine()

        result = engine.apply_rules("start\none\n", [_append_rule("first", "one")])

        assert result.applied_rules == []
        assert result.skipped_rules == ["first"]
        assert not result.changed

    def test_applying_twice_is_a_no_op(self) -> None:
        engine = PatchEngine()
        rules = [_append_rule("first", "one")]

        once = engine.apply_rules("start\n", rules).patched_text
        twice = engine.apply_rules(once, rules)

        assert twice.patched_text == once
        assert twice.applied_rules == []

    def test_conflicting_rule_is_skipped_with_warning(self) -> None:
        engine = PatchEngine()
        rules = [
            _append_rule("first", "one"),
            _append_rule("second", "two", conflicts_with=("first",)),
        ]

        result = engine.apply_rules("start\n", rules)

        assert result.applied_rules == ["first"]
        assert "second" in result.skipped_rules
        assert [w.rule for w in result.warnings] == ["second"]
        assert "conflicts with applied rule first" in str(result.warnings[0])

    def test_conflicts_are_symmetric(self) -> None:
        engine = PatchEngine()
        rules = [
            _append_rule("first", "one", conflicts_with=("second",)),
            _append_rule("second", "two"),
        ]

        result = engine.apply_rules("start\n", rules)

        assert result.applied_rules == ["first"]
        assert result.skipped_rules == ["second"]

    def test_patch_conflict_skips_rule(self) -> None:
        engine = PatchEngine()
        rules = [
            PatchRule("anchored", detect=lambda text: False, apply=_conflicting_anchor),
            _append_rule("other", "two"),
        ]

        result = engine.apply_rules("start\n", rules)

        assert result.applied_rules == ["other"]
        assert result.skipped_rules == ["anchored"]
        assert result.warnings[0].message == "anchor not found"

    def test_rule_producing_no_change_is_reported(self) -> None:
        engine = PatchEngine()
        rules = [PatchRule("noop", detect=lambda text: False, apply=lambda text: text)]

        result = engine.apply_rules("start\n", rules)

        assert result.applied_rules == []
        assert result.warnings[0].message == "no change produced"

    def test_failed_post_condition_is_a_warning(self) -> None:
        engine = PatchEngine()
        rules = [PatchRule("stubborn", detect=lambda text: False, apply=lambda text: text + "x")]

        result = engine.apply_rules("start", rules)

        assert result.applied_rules == ["stubborn"]
        assert "check still does not pass" in result.warnings[0].message

    def test_validators_run_only_when_rules_applied(self) -> None:
        calls = []

        def validator(original: str, patched: str) -> list[str]:
            calls.append((original, patched))
            return []

        engine = PatchEngine(validators=[validator])
        engine.apply_rules("start\none\n", [_append_rule("first", "one")])

        assert calls == []


class TestValidators:
    def test_balanced_delimiters_reports_new_imbalance(self) -> None:
        violations = balanced_delimiters("f() { }", "f() { ")

        assert len(violations) == 1
        assert "'{}'" in violations[0]

    def test_balanced_delimiters_ignores_existing_imbalance(self) -> None:
        """Text that was unbalanced before patching is not blamed on the patch."""
        assert balanced_delimiters("{ (", "{ ( x") == []

    def test_unique_markers(self) -> None:
        validate = unique_markers("# marker")

        assert validate("a\n", "# marker\nb\n") == []
        assert validate("a\n", "# marker\n# marker\n") != []
        assert validate("# marker\n# marker\n", "# marker\n# marker\n") == []


class TestRepairFile:
    """Test file repair with backups."""

    def test_backup_holds_original_and_file_is_patched(self, tmp_path: Path) -> None:
        target = tmp_path / "file.txt"
        target.write_text("start\n")

        result = PatchEngine().repair_file(target, [_append_rule("first", "one")])

        assert result.written
        assert result.backup_location is not None
        assert result.backup_location.read_text() == "start\n"
        assert target.read_text() == "start\none\n"

    def test_no_backup_when_nothing_applies(self, tmp_path: Path) -> None:
        target = tmp_path / "file.txt"
        target.write_text("start\none\n")

        result = PatchEngine().repair_file(target, [_append_rule("first", "one")])

        assert not result.written
        assert result.backup_location is None
        assert list_backups(target) == []

    def test_dry_run_writes_nothing(self, tmp_path: Path) -> None:
        target = tmp_path / "file.txt"
        target.write_text("start\n")

        result = PatchEngine().repair_file(target, [_append_rule("first", "one")], dry_run=True)

        assert result.needs_fix
        assert not result.written
        assert target.read_text() == "start\n"
        assert list_backups(target) == []

    def test_validation_failure_keeps_file_and_backup(self, tmp_path: Path) -> None:
        target = tmp_path / "file.txt"
        target.write_text("f() {\n}\n")
        rules = [PatchRule("breaks", detect=lambda t: "{{" in t, apply=lambda t: t + "{{\n")]

        result = PatchEngine().repair_file(target, rules)

        assert result.failed
        assert not result.written
        assert target.read_text() == "f() {\n}\n"
        assert result.backup_location is not None
        assert result.backup_location.read_text() == "f() {\n}\n"

    def test_crlf_is_preserved(self, tmp_path: Path) -> None:
        target = tmp_path / "file.txt"
        target.write_bytes(b"start\r\n")

        result = PatchEngine().repair_file(target, [_append_rule("first", "one")])

        assert result.written
        assert target.read_bytes() == b"start\r\none\r\n"
        assert result.backup_location.read_bytes() == b"start\r\n"

    def test_restore_latest_backup(self, tmp_path: Path) -> None:
        target = tmp_path / "file.txt"
        target.write_text("start\n")
        engine = PatchEngine()
        engine.repair_file(target, [_append_rule("first", "one")])

        restored = engine.restore_latest_backup(target)

        assert restored is not None
        assert target.read_text() == "start\n"

    def test_restore_without_backup(self, tmp_path: Path) -> None:
        target = tmp_path / "file.txt"
        target.write_text("start\n")

        assert PatchEngine().restore_latest_backup(target) is None
