"""Tests for the frontmatter codec."""

from docsync.core.frontmatter import build, fingerprint, has_frontmatter, parse
from docsync.models.records import DocumentRecord


class TestFingerprint:
    """Tests for body fingerprints."""

    def test_deterministic(self) -> None:
        assert fingerprint("Hello, World!") == fingerprint("Hello, World!")
        assert len(fingerprint("Hello, World!")) == 64  # SHA-256 hex length

    def test_different_content(self) -> None:
        assert fingerprint("Hello") != fingerprint("World")
        assert fingerprint("line\n") != fingerprint("line")

    def test_known_value(self) -> None:
        assert fingerprint("") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


class TestParse:
    """Tests for splitting documents."""

    def test_no_block(self) -> None:
        raw = "# Title\n\nSome text\n"
        assert parse(raw) == ({}, raw)

    def test_horizontal_rule_is_not_a_block(self) -> None:
        raw = "Intro\n---\nMore\n"
        assert parse(raw) == ({}, raw)

    def test_block_and_body(self) -> None:
        raw = "---\ngoogle-doc-id: abc\nsha256: deadbeef\n---\n# Title\n"
        metadata, body = parse(raw)

        assert metadata == {"google-doc-id": "abc", "sha256": "deadbeef"}
        assert body == "# Title\n"

    def test_empty_block(self) -> None:
        metadata, body = parse("---\n---\nBody")
        assert metadata == {}
        assert body == "Body"

    def test_crlf_block(self) -> None:
        metadata, body = parse("---\r\ntitle: Notes\r\n---\r\nBody\r\n")
        assert metadata == {"title": "Notes"}
        assert body == "Body\r\n"

    def test_malformed_yaml_recovers_lines(self) -> None:
        raw = "---\ngoogle-doc-id: abc\ntitle: [unclosed\n---\nBody\n"
        metadata, body = parse(raw)

        assert metadata["google-doc-id"] == "abc"
        assert metadata["title"] == "[unclosed"
        assert body == "Body\n"

    def test_non_mapping_recovers_lines(self) -> None:
        metadata, body = parse("---\n- just\n- a list\n---\nBody")
        assert metadata == {}
        assert body == "Body"


class TestBuild:
    """Tests for serializing documents."""

    def test_empty_metadata_returns_body(self) -> None:
        assert build({}, "Body\n") == "Body\n"

    def test_round_trip(self) -> None:
        metadata = {
            "google-doc-id": "1AbCdEfGhIjKlMnOpQrStUvWxYz",
            "revisionId": "ALm37BWx",
            "sha256": fingerprint("Body"),
            "last-synced": "2024-05-01T12:00:00+00:00",
            "tags": ["a", "b"],
            "title": "Notes: draft",
        }
        body = "# Heading\n\nText with --- inside\n"

        assert parse(build(metadata, body)) == (metadata, body)

    def test_deterministic_key_order(self) -> None:
        first = build({"zeta": 1, "sha256": "x", "alpha": 2, "google-doc-id": "id"}, "B")
        second = build({"alpha": 2, "google-doc-id": "id", "zeta": 1, "sha256": "x"}, "B")

        assert first == second
        assert first.splitlines()[1] == "google-doc-id: id"
        assert first.index("alpha") < first.index("zeta")

    def test_rebuild_is_byte_identical(self) -> None:
        raw = build({"google-doc-id": "id", "note": "ünïcode"}, "Body")
        metadata, body = parse(raw)
        assert build(metadata, body) == raw

    def test_none_values_dropped(self) -> None:
        raw = build({"google-doc-id": "id", "revisionId": None}, "")
        assert "revisionId" not in raw

    def test_has_frontmatter(self) -> None:
        assert has_frontmatter(build({"a": 1}, "B"))
        assert not has_frontmatter("B")


class TestDocumentRecord:
    """Tests for the record bridge."""

    def test_missing_id_means_never_synced(self) -> None:
        assert DocumentRecord.from_metadata({"title": "x"}) is None

    def test_legacy_id(self) -> None:
        record = DocumentRecord.from_metadata({"docId": "legacy", "sha256": "f"})
        assert record is not None
        assert record.remote_id == "legacy"
        assert "docId" not in record.extra

    def test_passthrough_preserved(self) -> None:
        metadata = {"google-doc-id": "id", "revisionId": 12, "tags": ["x"], "author": "me"}
        record = DocumentRecord.from_metadata(metadata)

        assert record is not None
        assert record.revision == "12"
        assert record.extra == {"tags": ["x"], "author": "me"}
        assert record.to_metadata() == {
            "tags": ["x"], "author": "me", "google-doc-id": "id", "revisionId": "12",
        }
