"""Tests for shelltide_pkg.models module."""

import pytest

from shelltide_pkg.constants import LATEST
from shelltide_pkg.errors import InvalidTarget
from shelltide_pkg.models import (
    Change,
    DatabaseRef,
    DiffResult,
    ExecutionOutcome,
    ExecutionProgress,
    RevisionMarker,
    parse_target,
)


class TestDatabaseRef:
    """Tests for DatabaseRef parsing."""

    def test_parse(self):
        ref = DatabaseRef.parse("prod/app")
        assert ref == DatabaseRef("prod", "app")
        assert str(ref) == "prod/app"

    @pytest.mark.parametrize("text", ["prod", "prod/", "/app", "a/b/c", ""])
    def test_parse_invalid(self, text):
        with pytest.raises(ValueError, match="<env>/<database>"):
            DatabaseRef.parse(text)

    def test_hashable_and_ordered(self):
        refs = {DatabaseRef("b", "x"), DatabaseRef("a", "y"), DatabaseRef("b", "x")}
        assert sorted(refs) == [DatabaseRef("a", "y"), DatabaseRef("b", "x")]


class TestRevisionMarker:
    """Tests for the label#number marker encoding."""

    def test_decode(self):
        marker = RevisionMarker.decode("proj-dev#244", sheet="projects/p/sheets/1")
        assert marker.source_label == "proj-dev"
        assert marker.issue_id == 244
        assert marker.sheet == "projects/p/sheets/1"

    def test_encode(self):
        assert RevisionMarker("proj-dev", 244).encode() == "proj-dev#244"
        assert str(RevisionMarker("proj-dev", 7)) == "proj-dev#7"

    @pytest.mark.parametrize("version", ["244", "proj#abc", "a#b#1", "proj#-1", ""])
    def test_decode_invalid(self, version):
        with pytest.raises(ValueError):
            RevisionMarker.decode(version)


class TestParseTarget:
    """Tests for --to parsing."""

    @pytest.mark.parametrize("raw", ["LATEST", "latest", " Latest "])
    def test_latest(self, raw):
        assert parse_target(raw) == LATEST

    def test_number(self):
        assert parse_target("244") == 244
        assert parse_target(244) == 244

    @pytest.mark.parametrize("raw", ["abc", "-3", "24.5", ""])
    def test_invalid(self, raw):
        with pytest.raises(InvalidTarget) as exc_info:
            parse_target(raw)
        assert "Must be an integer or 'LATEST'" in str(exc_info.value)
        assert exc_info.value.exit_code == 1


class TestExecutionTypes:
    """Tests for outcome, progress and diff result helpers."""

    def test_outcome_constructors(self):
        ok = ExecutionOutcome.ok()
        assert ok.success and ok.applied_at is not None

        failed = ExecutionOutcome.failed("boom", unknown=True)
        assert not failed.success
        assert failed.unknown
        assert failed.diagnostic == "boom"

    def test_progress_tracks_checkpoint(self):
        progress = ExecutionProgress()
        assert progress.checkpoint_id is None

        progress.record(Change(id=241))
        progress.record(Change(id=242))

        assert progress.applied_ids == [241, 242]
        assert progress.checkpoint_id == 242

    def test_already_satisfied(self):
        assert DiffResult(current_id=244, target_id=244).already_satisfied
        assert DiffResult(current_id=244, target_id=240).already_satisfied
        assert not DiffResult(current_id=None, target_id=1).already_satisfied
        assert not DiffResult(current_id=240, target_id=244).already_satisfied
