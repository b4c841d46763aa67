"""Tests for the storage backends."""

import asyncio
from pathlib import Path

import pytest

from docsync.core.storage import (
    FilesystemStorage,
    StorageAdapter,
    VaultStorage,
    create_storage,
)
from docsync.errors import StorageError

from .conftest import FakeVaultHost


@pytest.fixture(params=["filesystem", "vault"])
def backend(request: pytest.FixtureRequest, tmp_path: Path) -> StorageAdapter:
    if request.param == "filesystem":
        return FilesystemStorage(tmp_path)
    return VaultStorage(FakeVaultHost(), "notes")


class TestStorageContract:
    """Behaviour both backends share."""

    @pytest.mark.asyncio
    async def test_write_creates_parents(self, backend: StorageAdapter) -> None:
        await backend.write_file("a/b/c.md", "content")

        assert await backend.read_file("a/b/c.md") == "content"
        assert await backend.is_directory("a/b")
        assert await backend.is_file("a/b/c.md")
        assert not await backend.is_file("a/b")

    @pytest.mark.asyncio
    async def test_crlf_preserved(self, backend: StorageAdapter) -> None:
        await backend.write_file("crlf.md", "one\r\ntwo\r\n")
        assert await backend.read_file("crlf.md") == "one\r\ntwo\r\n"

    @pytest.mark.asyncio
    async def test_exists_and_delete(self, backend: StorageAdapter) -> None:
        await backend.write_file("x.md", "x")
        assert await backend.exists("x.md")

        await backend.delete_file("x.md")
        assert not await backend.exists("x.md")

    @pytest.mark.asyncio
    async def test_read_missing_raises_with_path(self, backend: StorageAdapter) -> None:
        with pytest.raises(StorageError) as exc_info:
            await backend.read_file("missing.md")

        assert exc_info.value.path == "missing.md"
        assert exc_info.value.operation == "read_file"

    @pytest.mark.asyncio
    async def test_delete_missing_raises(self, backend: StorageAdapter) -> None:
        with pytest.raises(StorageError):
            await backend.delete_file("missing.md")

    @pytest.mark.asyncio
    async def test_list_files_with_pattern(self, backend: StorageAdapter) -> None:
        await backend.write_file("docs/one.md", "1")
        await backend.write_file("docs/two.txt", "2")
        await backend.write_file("docs/sub/three.md", "3")

        assert await backend.list_files("docs") == ["one.md", "two.txt"]
        assert await backend.list_files("docs", "*.md") == ["one.md"]

    @pytest.mark.asyncio
    async def test_walk_skips_hidden_directories(self, backend: StorageAdapter) -> None:
        await backend.write_file("top.md", "t")
        await backend.write_file("sub/deep/leaf.md", "l")
        await backend.write_file("sub/notes.txt", "n")
        await backend.write_file(".docsync-backups/top_20240101_000000.md", "b")

        assert await backend.walk("", "*.md") == ["sub/deep/leaf.md", "top.md"]
        assert await backend.walk("sub") == ["sub/deep/leaf.md", "sub/notes.txt"]

    @pytest.mark.asyncio
    async def test_create_directory_idempotent(self, backend: StorageAdapter) -> None:
        await backend.create_directory("made/here")
        await backend.create_directory("made/here")

        assert await backend.is_directory("made/here")

    @pytest.mark.asyncio
    async def test_move_creates_destination_parent(self, backend: StorageAdapter) -> None:
        await backend.write_file("from.md", "moving")
        await backend.move_file("from.md", "to/dir/dest.md")

        assert not await backend.exists("from.md")
        assert await backend.read_file("to/dir/dest.md") == "moving"

    @pytest.mark.asyncio
    async def test_copy(self, backend: StorageAdapter) -> None:
        await backend.write_file("src.md", "copy me")
        await backend.copy_file("src.md", "backup/src.md")

        assert await backend.read_file("src.md") == "copy me"
        assert await backend.read_file("backup/src.md") == "copy me"

    @pytest.mark.asyncio
    async def test_metadata(self, backend: StorageAdapter) -> None:
        await backend.write_file("sized.md", "héllo")

        assert await backend.get_file_size("sized.md") == len("héllo".encode())
        assert await backend.get_modified_time("sized.md") > 0

    @pytest.mark.asyncio
    async def test_metadata_missing_raises(self, backend: StorageAdapter) -> None:
        with pytest.raises(StorageError):
            await backend.get_file_size("nope.md")

    def test_path_helpers(self, backend: StorageAdapter) -> None:
        assert backend.basename("a/b/c.md") == "c.md"
        assert backend.dirname("a/b/c.md") == "a/b"
        assert backend.dirname("c.md") == ""
        assert backend.join("", "a", "b.md") == "a/b.md"
        assert backend.normalize("a\\b/../c.md") == "a/c.md"
        assert backend.normalize("./") == ""


class TestFilesystemStorage:
    """Filesystem-specific behaviour."""

    @pytest.mark.asyncio
    async def test_files_land_under_base_dir(self, tmp_path: Path) -> None:
        storage = FilesystemStorage(tmp_path)
        await storage.write_file("notes/a.md", "A")

        assert (tmp_path / "notes" / "a.md").read_text() == "A"

    @pytest.mark.asyncio
    async def test_write_into_file_path_fails(self, tmp_path: Path) -> None:
        storage = FilesystemStorage(tmp_path)
        await storage.write_file("blocker", "file")

        with pytest.raises(StorageError) as exc_info:
            await storage.write_file("blocker/child.md", "x")
        assert exc_info.value.path == "blocker/child.md"

    @pytest.mark.asyncio
    async def test_watch_reports_changes(self, tmp_path: Path) -> None:
        storage = FilesystemStorage(tmp_path)
        seen: list[tuple[str, str]] = []
        changed = asyncio.Event()

        def on_change(event_type: str, path: str) -> None:
            seen.append((event_type, path))
            if path == "watched.md":
                changed.set()

        stop = await storage.watch("", on_change)
        try:
            await storage.write_file("watched.md", "x")
            await asyncio.wait_for(changed.wait(), timeout=5)
        finally:
            stop()

        assert any(path == "watched.md" for _, path in seen)

    def test_create_storage_picks_backend(self, tmp_path: Path) -> None:
        assert isinstance(create_storage(tmp_path), FilesystemStorage)
        assert isinstance(create_storage(host=FakeVaultHost()), VaultStorage)


class TestVaultStorage:
    """Vault-specific behaviour."""

    @pytest.mark.asyncio
    async def test_paths_are_under_base_folder(self) -> None:
        host = FakeVaultHost()
        storage = VaultStorage(host, "notes")
        await storage.write_file("a/b.md", "B")

        assert host.files == {"notes/a/b.md": "B"}
        assert {"notes", "notes/a"} <= host.folders

    @pytest.mark.asyncio
    async def test_host_failure_wrapped(self) -> None:
        class BrokenHost(FakeVaultHost):
            async def write(self, path: str, content: str) -> None:
                raise PermissionError("read-only vault")

        with pytest.raises(StorageError) as exc_info:
            await VaultStorage(BrokenHost()).write_file("x.md", "x")
        assert isinstance(exc_info.value.cause, PermissionError)

    @pytest.mark.asyncio
    async def test_watch_uses_host_hook(self) -> None:
        host = FakeVaultHost()
        storage = VaultStorage(host, "notes")
        seen: list[tuple[str, str]] = []

        stop = await storage.watch("", lambda event, path: seen.append((event, path)))
        await storage.write_file("a.md", "x")
        stop()
        await storage.write_file("b.md", "x")

        assert seen == [("modified", "a.md")]

    @pytest.mark.asyncio
    async def test_watch_without_hook_is_noop(self) -> None:
        class QuietHost(FakeVaultHost):
            on_change = None  # type: ignore[assignment]

        stop = await VaultStorage(QuietHost()).watch("", lambda event, path: None)
        stop()
