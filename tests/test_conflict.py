"""Tests for conflict policies."""

import pytest

from docsync.core.conflict import (
    ConflictPolicy,
    ConflictResolver,
    LineMerger,
    Resolution,
    Winner,
    has_unresolved_conflicts,
)
from docsync.core.frontmatter import fingerprint
from docsync.errors import ConflictUnresolved


class TestConflictResolver:
    """Tests for ConflictResolver policies."""

    def test_prefer_doc(self) -> None:
        resolution = ConflictResolver("prefer-doc").resolve("local", "remote")

        assert resolution.winner == Winner.REMOTE
        assert resolution.content == "remote"
        assert not resolution.has_conflicts

    def test_prefer_md(self) -> None:
        resolution = ConflictResolver(ConflictPolicy.PREFER_MD).resolve("local", "remote")

        assert resolution.winner == Winner.LOCAL
        assert resolution.content == "local"

    def test_prompt_raises(self) -> None:
        resolver = ConflictResolver("prompt")

        with pytest.raises(ConflictUnresolved) as exc_info:
            resolver.resolve("local", "remote", filepath="notes/a.md", remote_id="doc1")

        err = exc_info.value
        assert err.local_fingerprint == fingerprint("local")
        assert err.remote_fingerprint == fingerprint("remote")
        assert err.context.path == "notes/a.md"
        assert err.context.resource_id == "doc1"

    def test_unknown_policy(self) -> None:
        with pytest.raises(ValueError):
            ConflictResolver("coin-flip")

    def test_merge_uses_collaborator(self) -> None:
        class Upper:
            def merge(self, local: str, remote: str) -> Resolution:
                return Resolution(Winner.MERGED, (local + remote).upper())

        resolution = ConflictResolver("merge", merger=Upper()).resolve("a", "b")
        assert resolution.content == "AB"

    def test_policy_descriptions(self) -> None:
        for policy in ConflictPolicy:
            assert policy.description


class TestLineMerger:
    """Tests for the default merge collaborator."""

    def test_local_extends_remote(self) -> None:
        resolution = LineMerger().merge("one\ntwo\nthree", "one\ntwo")

        assert resolution.winner == Winner.LOCAL
        assert resolution.content == "one\ntwo\nthree"

    def test_remote_extends_local(self) -> None:
        resolution = LineMerger().merge("one", "one\nadded remotely")
        assert resolution.winner == Winner.REMOTE

    def test_divergent_writes_markers(self) -> None:
        resolution = LineMerger().merge("local line\n", "remote line\n")

        assert resolution.has_conflicts
        assert resolution.content == (
            "<<<<<<< LOCAL\nlocal line\n=======\nremote line\n>>>>>>> REMOTE\n"
        )
        assert has_unresolved_conflicts(resolution.content)

    def test_trailing_newline_does_not_block_extension(self) -> None:
        resolution = LineMerger().merge("a\n", "a\nb\n")
        assert resolution.winner == Winner.REMOTE


class TestHasUnresolvedConflicts:
    """Tests for conflict marker detection."""

    def test_clean_text(self) -> None:
        assert not has_unresolved_conflicts("# Title\n\nBody\n")

    def test_setext_heading_is_not_a_conflict(self) -> None:
        assert not has_unresolved_conflicts("Title\n=======\n\nBody\n")

    def test_markers_must_start_lines(self) -> None:
        assert not has_unresolved_conflicts("inline <<<<<<< LOCAL and >>>>>>> REMOTE")
