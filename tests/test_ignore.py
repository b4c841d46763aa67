"""Tests for .docsyncignore rules."""

from pathlib import Path

import pytest

from docsync.core.ignore import IGNORE_FILENAME, IgnoreRules
from docsync.core.storage import FilesystemStorage


class TestIgnoreRules:
    """Tests for pattern matching."""

    def test_comments_and_blank_lines_skipped(self) -> None:
        rules = IgnoreRules.from_text("# scratch files\n\n   \n*.tmp\n")

        assert len(rules) == 1
        assert rules.is_ignored("notes/a.tmp")

    def test_plain_glob_matches_any_depth(self) -> None:
        rules = IgnoreRules.from_text("*.draft.md")

        assert rules.is_ignored("idea.draft.md")
        assert rules.is_ignored("deep/nested/idea.draft.md")
        assert not rules.is_ignored("idea.md")

    def test_star_stays_within_segment(self) -> None:
        rules = IgnoreRules.from_text("drafts/*.md")

        assert rules.is_ignored("drafts/a.md")
        assert not rules.is_ignored("drafts/sub/a.md")

    def test_double_star_spans_segments(self) -> None:
        rules = IgnoreRules.from_text("archive/**/old.md")

        assert rules.is_ignored("archive/old.md")
        assert rules.is_ignored("archive/2023/q1/old.md")
        assert not rules.is_ignored("archive/2023/new.md")

    def test_trailing_slash_matches_directory_contents(self) -> None:
        rules = IgnoreRules.from_text("private/")

        assert rules.is_ignored("private/secret.md")
        assert rules.is_ignored("team/private/secret.md")
        assert not rules.is_ignored("private")
        assert not rules.is_ignored("private.md")

    def test_leading_slash_anchors_at_root(self) -> None:
        rules = IgnoreRules.from_text("/README.md")

        assert rules.is_ignored("README.md")
        assert not rules.is_ignored("docs/README.md")

    def test_negation_reincludes(self) -> None:
        rules = IgnoreRules.from_text("journal/\n!journal/keep.md\n")

        assert rules.is_ignored("journal/monday.md")
        assert not rules.is_ignored("journal/keep.md")

    def test_last_matching_rule_wins(self) -> None:
        rules = IgnoreRules.from_text("!a.md\n*.md\n")
        assert rules.is_ignored("a.md")

    def test_question_mark_single_character(self) -> None:
        rules = IgnoreRules.from_text("note?.md")

        assert rules.is_ignored("note1.md")
        assert not rules.is_ignored("note10.md")

    def test_path_normalized_before_matching(self) -> None:
        rules = IgnoreRules.from_text("/tmp.md")

        assert rules.is_ignored("./tmp.md")
        assert rules.is_ignored("/tmp.md")

    def test_empty_rules_ignore_nothing(self) -> None:
        assert not IgnoreRules().is_ignored("anything.md")


class TestLoad:
    """Tests for reading the ignore file through storage."""

    @pytest.mark.asyncio
    async def test_missing_file_means_no_rules(self, tmp_path: Path) -> None:
        rules = await IgnoreRules.load(FilesystemStorage(tmp_path))
        assert len(rules) == 0

    @pytest.mark.asyncio
    async def test_loads_from_root(self, tmp_path: Path) -> None:
        (tmp_path / IGNORE_FILENAME).write_text("scratch/\n")

        rules = await IgnoreRules.load(FilesystemStorage(tmp_path))

        assert rules.is_ignored("scratch/x.md")

    @pytest.mark.asyncio
    async def test_unreadable_file_means_no_rules(self, tmp_path: Path) -> None:
        (tmp_path / IGNORE_FILENAME).mkdir()

        rules = await IgnoreRules.load(FilesystemStorage(tmp_path))

        assert len(rules) == 0
