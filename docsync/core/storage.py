"""Local replica storage: native filesystem or a host application's vault.

Both backends expose the same async capability set and raise StorageError
(carrying the operation and path) for any failure. Paths are POSIX-style
and relative to the backend's root unless absolute.
"""

import asyncio
import fnmatch
import logging
import os
import posixpath
import shutil
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol, TypeVar

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChangeCallback = Callable[[str, str], None]  # (event_type, path)
Unsubscribe = Callable[[], None]


def _is_hidden(name: str) -> bool:
    return name.startswith(".")


def _matches(name: str, pattern: str | None) -> bool:
    return pattern is None or fnmatch.fnmatch(name, pattern)


class StorageAdapter(Protocol):
    """Capabilities the sync engine needs from the local replica."""

    async def read_file(self, path: str) -> str: ...

    async def write_file(self, path: str, content: str) -> None: ...

    async def delete_file(self, path: str) -> None: ...

    async def exists(self, path: str) -> bool: ...

    async def list_files(self, directory: str, pattern: str | None = None) -> list[str]: ...

    async def get_modified_time(self, path: str) -> float: ...

    async def get_file_size(self, path: str) -> int: ...

    async def create_directory(self, path: str) -> None: ...

    async def move_file(self, source: str, destination: str) -> None: ...

    async def copy_file(self, source: str, destination: str) -> None: ...

    async def is_file(self, path: str) -> bool: ...

    async def is_directory(self, path: str) -> bool: ...

    async def walk(self, directory: str = "", pattern: str | None = None) -> list[str]: ...

    async def watch(self, path: str, callback: ChangeCallback) -> Unsubscribe: ...

    def basename(self, path: str) -> str: ...

    def dirname(self, path: str) -> str: ...

    def join(self, *parts: str) -> str: ...

    def normalize(self, path: str) -> str: ...


class _PosixPaths:
    """Path helpers shared by both backends."""

    def basename(self, path: str) -> str:
        return posixpath.basename(self.normalize(path))

    def dirname(self, path: str) -> str:
        return posixpath.dirname(self.normalize(path))

    def join(self, *parts: str) -> str:
        return self.normalize(posixpath.join(*(p for p in parts if p)))

    def normalize(self, path: str) -> str:
        path = path.replace("\\", "/")
        if not path:
            return ""
        normalized = posixpath.normpath(path)
        return "" if normalized == "." else normalized


# =============================================================================
# Native filesystem
# =============================================================================


class _ForwardingHandler(FileSystemEventHandler):
    """Hands watchdog events from the observer thread to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback: ChangeCallback, relative_to: Path) -> None:
        super().__init__()
        self.loop = loop
        self.callback = callback
        self.relative_to = relative_to

    def _relative(self, src: str | bytes) -> str:
        src = os.fsdecode(src)
        try:
            return Path(src).relative_to(self.relative_to).as_posix()
        except ValueError:
            return Path(src).as_posix()

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed", "closed_no_write"):
            return
        self.loop.call_soon_threadsafe(self.callback, event.event_type, self._relative(event.src_path))


class FilesystemStorage(_PosixPaths):
    """Storage on the process filesystem, rooted at ``base_dir``."""

    def __init__(self, base_dir: Path | str | None = None) -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()

    def resolve(self, path: str) -> Path:
        candidate = Path(path)
        if candidate.is_absolute():
            return candidate
        return self.base_dir / candidate

    def relative(self, path: Path) -> str:
        try:
            return path.relative_to(self.base_dir).as_posix()
        except ValueError:
            return path.as_posix()

    async def _run(self, operation: str, path: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(func, *args)
        except (OSError, UnicodeError) as e:
            raise StorageError(f"Failed to {operation.replace('_', ' ')} {path}: {e}", operation, path, e) from e

    async def read_file(self, path: str) -> str:
        def read() -> str:
            # newline="" keeps CRLF intact so fingerprints see the real bytes
            with open(self.resolve(path), encoding="utf-8", newline="") as f:
                return f.read()

        return await self._run("read_file", path, read)

    async def write_file(self, path: str, content: str) -> None:
        def write() -> None:
            target = self.resolve(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "w", encoding="utf-8", newline="") as f:
                f.write(content)

        await self._run("write_file", path, write)

    async def delete_file(self, path: str) -> None:
        await self._run("delete_file", path, self.resolve(path).unlink)

    async def exists(self, path: str) -> bool:
        return await self._run("exists", path, self.resolve(path).exists)

    async def list_files(self, directory: str, pattern: str | None = None) -> list[str]:
        def listing() -> list[str]:
            root = self.resolve(directory)
            return sorted(
                entry.name for entry in root.iterdir()
                if entry.is_file() and _matches(entry.name, pattern)
            )

        return await self._run("list_files", directory, listing)

    async def get_modified_time(self, path: str) -> float:
        stat = await self._run("get_modified_time", path, self.resolve(path).stat)
        return stat.st_mtime

    async def get_file_size(self, path: str) -> int:
        stat = await self._run("get_file_size", path, self.resolve(path).stat)
        return stat.st_size

    async def create_directory(self, path: str) -> None:
        await self._run("create_directory", path, lambda: self.resolve(path).mkdir(parents=True, exist_ok=True))

    async def move_file(self, source: str, destination: str) -> None:
        def move() -> None:
            target = self.resolve(destination)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(self.resolve(source)), str(target))

        await self._run("move_file", source, move)

    async def copy_file(self, source: str, destination: str) -> None:
        def copy() -> None:
            target = self.resolve(destination)
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self.resolve(source), target)

        await self._run("copy_file", source, copy)

    async def is_file(self, path: str) -> bool:
        return await self._run("is_file", path, self.resolve(path).is_file)

    async def is_directory(self, path: str) -> bool:
        return await self._run("is_directory", path, self.resolve(path).is_dir)

    async def walk(self, directory: str = "", pattern: str | None = None) -> list[str]:
        """Recursively list files under ``directory``, skipping hidden directories.

        Returns:
            Sorted paths relative to the storage root
        """
        def collect() -> list[str]:
            found: list[str] = []
            for dirpath, dirnames, filenames in os.walk(self.resolve(directory)):
                dirnames[:] = sorted(d for d in dirnames if not _is_hidden(d))
                for name in filenames:
                    if _matches(name, pattern):
                        found.append(self.relative(Path(dirpath) / name))
            return sorted(found)

        return await self._run("walk", directory, collect)

    async def watch(self, path: str, callback: ChangeCallback) -> Unsubscribe:
        """Watch ``path`` recursively; callback runs on the event loop.

        Returns:
            Callable that stops the observer
        """
        loop = asyncio.get_running_loop()
        target = self.resolve(path)
        observer = Observer()
        observer.schedule(_ForwardingHandler(loop, callback, self.base_dir), str(target), recursive=True)
        try:
            observer.start()
        except OSError as e:
            raise StorageError(f"Failed to watch {path}: {e}", "watch", path, e) from e
        logger.debug("Watching %s", target)

        def stop() -> None:
            observer.stop()
            observer.join(timeout=5.0)

        return stop


# =============================================================================
# Host vault
# =============================================================================


class VaultHost(Protocol):
    """File API of a host application's virtual file tree.

    Paths are vault-relative with forward slashes. ``stat`` returns None for
    a missing path, else a mapping with ``type`` ("file" or "folder"),
    ``mtime`` (epoch seconds) and ``size``. ``list`` returns the direct
    children as ``(files, folders)`` full paths.
    """

    async def read(self, path: str) -> str: ...

    async def write(self, path: str, content: str) -> None: ...

    async def remove(self, path: str) -> None: ...

    async def exists(self, path: str) -> bool: ...

    async def stat(self, path: str) -> dict[str, Any] | None: ...

    async def list(self, path: str) -> tuple[list[str], list[str]]: ...

    async def mkdir(self, path: str) -> None: ...

    async def rename(self, source: str, destination: str) -> None: ...


class VaultStorage(_PosixPaths):
    """Storage inside a host vault, optionally under a sub-folder."""

    def __init__(self, host: VaultHost, base_dir: str = "") -> None:
        self.host = host
        self.base_dir = self.normalize(base_dir.strip("/"))

    def resolve(self, path: str) -> str:
        path = self.normalize(path.lstrip("/"))
        if self.base_dir and not (path == self.base_dir or path.startswith(self.base_dir + "/")):
            path = self.join(self.base_dir, path)
        return path

    def relative(self, path: str) -> str:
        if self.base_dir and path.startswith(self.base_dir + "/"):
            return path[len(self.base_dir) + 1:]
        return path

    async def _call(self, operation: str, path: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            return await call()
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to {operation.replace('_', ' ')} {path}: {e}", operation, path, e) from e

    async def _stat(self, path: str) -> dict[str, Any] | None:
        return await self._call("stat", path, lambda: self.host.stat(self.resolve(path)))

    async def _ensure_folder(self, folder: str, operation: str, path: str) -> None:
        if not folder:
            return
        current = ""
        for segment in folder.split("/"):
            current = f"{current}/{segment}" if current else segment
            stat = await self._call(operation, path, lambda p=current: self.host.stat(p))
            if stat is None:
                await self._call(operation, path, lambda p=current: self.host.mkdir(p))
            elif stat.get("type") != "folder":
                raise StorageError(f"Cannot create folder {current}: a file exists there", operation, path)

    async def read_file(self, path: str) -> str:
        return await self._call("read_file", path, lambda: self.host.read(self.resolve(path)))

    async def write_file(self, path: str, content: str) -> None:
        resolved = self.resolve(path)
        await self._ensure_folder(posixpath.dirname(resolved), "write_file", path)
        await self._call("write_file", path, lambda: self.host.write(resolved, content))

    async def delete_file(self, path: str) -> None:
        if await self._stat(path) is None:
            raise StorageError(f"Failed to delete file {path}: not found", "delete_file", path)
        await self._call("delete_file", path, lambda: self.host.remove(self.resolve(path)))

    async def exists(self, path: str) -> bool:
        return await self._call("exists", path, lambda: self.host.exists(self.resolve(path)))

    async def list_files(self, directory: str, pattern: str | None = None) -> list[str]:
        files, _ = await self._call("list_files", directory, lambda: self.host.list(self.resolve(directory)))
        return sorted(
            posixpath.basename(f) for f in files
            if _matches(posixpath.basename(f), pattern)
        )

    async def _require_stat(self, operation: str, path: str) -> dict[str, Any]:
        stat = await self._stat(path)
        if stat is None:
            raise StorageError(f"Failed to {operation.replace('_', ' ')} {path}: not found", operation, path)
        return stat

    async def get_modified_time(self, path: str) -> float:
        stat = await self._require_stat("get_modified_time", path)
        return float(stat.get("mtime") or 0)

    async def get_file_size(self, path: str) -> int:
        stat = await self._require_stat("get_file_size", path)
        return int(stat.get("size") or 0)

    async def create_directory(self, path: str) -> None:
        await self._ensure_folder(self.resolve(path), "create_directory", path)

    async def move_file(self, source: str, destination: str) -> None:
        await self._require_stat("move_file", source)
        target = self.resolve(destination)
        await self._ensure_folder(posixpath.dirname(target), "move_file", source)
        await self._call("move_file", source, lambda: self.host.rename(self.resolve(source), target))

    async def copy_file(self, source: str, destination: str) -> None:
        content = await self.read_file(source)
        await self.write_file(destination, content)

    async def is_file(self, path: str) -> bool:
        stat = await self._stat(path)
        return stat is not None and stat.get("type") == "file"

    async def is_directory(self, path: str) -> bool:
        stat = await self._stat(path)
        return stat is not None and stat.get("type") == "folder"

    async def walk(self, directory: str = "", pattern: str | None = None) -> list[str]:
        found: list[str] = []
        pending = [self.resolve(directory)]
        while pending:
            folder = pending.pop()
            files, folders = await self._call("walk", directory, lambda f=folder: self.host.list(f))
            for file_path in files:
                if _matches(posixpath.basename(file_path), pattern):
                    found.append(self.relative(file_path))
            pending.extend(f for f in folders if not _is_hidden(posixpath.basename(f)))
        return sorted(found)

    async def watch(self, path: str, callback: ChangeCallback) -> Unsubscribe:
        """Subscribe to host change events under ``path``.

        Hosts without an ``on_change`` hook get a no-op subscription.
        """
        subscribe = getattr(self.host, "on_change", None)
        if subscribe is None:
            logger.debug("Vault host has no change hook; watch is a no-op")
            return lambda: None

        prefix = self.resolve(path)

        def forward(event_type: str, changed: str) -> None:
            if not prefix or changed == prefix or changed.startswith(prefix + "/"):
                callback(event_type, self.relative(changed))

        return subscribe(forward)


def create_storage(base_dir: Path | str | None = None, host: VaultHost | None = None) -> StorageAdapter:
    """Pick the storage backend: the host vault when given, else the filesystem."""
    if host is not None:
        return VaultStorage(host, str(base_dir or ""))
    return FilesystemStorage(base_dir)
