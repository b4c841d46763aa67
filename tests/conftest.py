"""Shared fixtures: an in-memory Drive/Docs service and host fakes."""

import json
import re
from pathlib import Path
from typing import Any
from urllib.parse import unquote

import pytest

from docsync.core.client import (
    DOCS_URL,
    DOCUMENT_MIME,
    DRIVE_ABOUT_URL,
    DRIVE_FILES_URL,
    FOLDER_MIME,
    SHORTCUT_MIME,
    RemoteDocumentClient,
)
from docsync.core.engine import SyncEngine
from docsync.core.storage import FilesystemStorage
from docsync.core.transport import HttpResponse
from docsync.errors import TransportError
from docsync.models.config import NetworkConfig, RetryConfig, SyncSettings

_NAME_RE = re.compile(r"name='((?:[^'\\]|\\.)*)'")
_MIME_RE = re.compile(r"mimeType='([^']*)'")
_PARENT_RE = re.compile(r"'((?:[^'\\]|\\.)*)' in parents")


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)


def _json_response(payload: Any, status: int = 200) -> HttpResponse:
    return HttpResponse(status, {"Content-Type": "application/json"}, json.dumps(payload).encode())


def _error(status: int, message: str) -> HttpResponse:
    return _json_response({"error": {"code": status, "message": message}}, status)


class FakeDrive:
    """In-memory Drive v3 + Docs v1, speaking the requester contract."""

    def __init__(self, page_size: int = 100) -> None:
        self.page_size = page_size
        self.files: dict[str, dict[str, Any]] = {}
        self.texts: dict[str, str] = {}
        self.calls: list[tuple[str, str, dict[str, Any], Any]] = []
        self.batch_updates: list[tuple[str, list[dict[str, Any]]]] = []
        self.failures: list[tuple[str, str, Any, int]] = []
        self._counter = 0

    # ---- Fixtures ----

    def _new_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}{self._counter:0>30}"

    def _tick(self) -> str:
        self._counter += 1
        return f"2024-01-01T00:00:{self._counter % 60:02d}.{self._counter:03d}Z"

    def add_folder(self, name: str, parent: str = "root", folder_id: str | None = None) -> str:
        folder_id = folder_id or self._new_id("fld")
        self.files[folder_id] = {
            "id": folder_id, "name": name, "mimeType": FOLDER_MIME, "parents": [parent],
            "modifiedTime": self._tick(), "trashed": False,
        }
        return folder_id

    def add_doc(self, name: str, parent: str, text: str = "", doc_id: str | None = None, **extra: Any) -> str:
        doc_id = doc_id or self._new_id("doc")
        self.files[doc_id] = {
            "id": doc_id, "name": name, "mimeType": DOCUMENT_MIME, "parents": [parent],
            "modifiedTime": self._tick(), "headRevisionId": self._new_id("rev"), "trashed": False,
            "webViewLink": f"https://docs.google.com/document/d/{doc_id}/edit",
            **extra,
        }
        self.texts[doc_id] = text
        return doc_id

    def add_shortcut(self, name: str, parent: str, target_id: str, target_mime: str = DOCUMENT_MIME) -> str:
        shortcut_id = self._new_id("sc")
        self.files[shortcut_id] = {
            "id": shortcut_id, "name": name, "mimeType": SHORTCUT_MIME, "parents": [parent],
            "modifiedTime": self._tick(), "trashed": False,
            "shortcutDetails": {"targetId": target_id, "targetMimeType": target_mime},
        }
        return shortcut_id

    def edit(self, doc_id: str, text: str) -> None:
        """Simulate an edit made in the Google Docs editor."""
        self.texts[doc_id] = text
        self.bump_revision(doc_id)

    def bump_revision(self, doc_id: str) -> None:
        self.files[doc_id]["headRevisionId"] = self._new_id("rev")
        self.files[doc_id]["modifiedTime"] = self._tick()

    def fail(self, method: str, url_part: str, error: HttpResponse | TransportError | int, times: int = 1) -> None:
        """Make the next ``times`` matching requests fail."""
        self.failures.append((method, url_part, error, times))

    def count(self, method: str, url_part: str) -> int:
        return sum(1 for m, url, _, _ in self.calls if m == method and url_part in url)

    def children(self, parent: str) -> list[dict[str, Any]]:
        return [f for f in self.files.values() if parent in f.get("parents", []) and not f.get("trashed")]

    # ---- Requester ----

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> HttpResponse:
        params = dict(params or {})
        self.calls.append((method, url, params, json))

        for i, (f_method, f_part, error, times) in enumerate(self.failures):
            if f_method == method and f_part in url:
                if times <= 1:
                    del self.failures[i]
                else:
                    self.failures[i] = (f_method, f_part, error, times - 1)
                if isinstance(error, TransportError):
                    raise error
                if isinstance(error, int):
                    return _error(error, f"Injected {error}")
                return error

        if url == DRIVE_ABOUT_URL:
            return _json_response({"user": {"displayName": "Test User", "emailAddress": "test@example.com"}})
        if url == DRIVE_FILES_URL:
            if method == "GET":
                return self._list(params)
            return self._create(json)
        if url.startswith(DRIVE_FILES_URL + "/"):
            rest = url[len(DRIVE_FILES_URL) + 1:]
            if rest.endswith("/export"):
                return self._export(rest[: -len("/export")])
            return self._file(method, unquote(rest), json)
        if url.startswith(DOCS_URL + "/"):
            rest = url[len(DOCS_URL) + 1:]
            if rest.endswith(":batchUpdate"):
                return self._batch_update(rest[: -len(":batchUpdate")], json)
            return self._document(rest)
        return _error(404, f"Unknown endpoint {url}")

    def _list(self, params: dict[str, Any]) -> HttpResponse:
        query = params.get("q", "")
        name = _NAME_RE.search(query)
        mime = _MIME_RE.search(query)
        parent = _PARENT_RE.search(query)

        matches = []
        for item in self.files.values():
            if item.get("trashed") and "trashed=false" in query:
                continue
            if name and item["name"] != _unescape(name.group(1)):
                continue
            if mime and item["mimeType"] != mime.group(1):
                continue
            if parent and _unescape(parent.group(1)) not in item.get("parents", []):
                continue
            matches.append(item)

        offset = int(params.get("pageToken") or 0)
        page = matches[offset: offset + self.page_size]
        payload: dict[str, Any] = {"files": page}
        if offset + self.page_size < len(matches):
            payload["nextPageToken"] = str(offset + self.page_size)
        return _json_response(payload)

    def _create(self, body: dict[str, Any]) -> HttpResponse:
        parent = (body.get("parents") or ["root"])[0]
        if body.get("mimeType") == FOLDER_MIME:
            new_id = self.add_folder(body["name"], parent)
        else:
            new_id = self.add_doc(body["name"], parent)
        return _json_response({"id": new_id})

    def _file(self, method: str, file_id: str, body: Any) -> HttpResponse:
        item = self.files.get(file_id)
        if item is None:
            return _error(404, f"File not found: {file_id}")
        if method == "PATCH":
            props = dict(item.get("appProperties") or {})
            for key, value in (body.get("appProperties") or {}).items():
                if value is None:
                    props.pop(key, None)
                else:
                    props[key] = value
            item["appProperties"] = props
        return _json_response(item)

    def _export(self, doc_id: str) -> HttpResponse:
        if doc_id not in self.texts:
            return _error(404, f"File not found: {doc_id}")
        # Drive exports carry a BOM and CRLF line endings
        exported = "\ufeff" + self.texts[doc_id].replace("\n", "\r\n")
        return HttpResponse(200, {"Content-Type": "text/plain"}, exported.encode("utf-8"))

    def _document(self, doc_id: str) -> HttpResponse:
        if doc_id not in self.texts:
            return _error(404, f"Document not found: {doc_id}")
        text = self.texts[doc_id]
        content = [
            {"endIndex": 1, "sectionBreak": {}},
            {"startIndex": 1, "endIndex": len(text) + 2, "paragraph": {}},
        ]
        return _json_response({"documentId": doc_id, "body": {"content": content}})

    def _batch_update(self, doc_id: str, body: dict[str, Any]) -> HttpResponse:
        if doc_id not in self.texts:
            return _error(404, f"Document not found: {doc_id}")
        requests = body.get("requests") or []
        text = self.texts[doc_id]
        for req in requests:
            if "deleteContentRange" in req:
                rng = req["deleteContentRange"]["range"]
                start, end = rng["startIndex"], rng["endIndex"]
                if start >= end:
                    return _error(400, "Invalid deletion range: the range cannot be empty")
                text = text[: start - 1] + text[end - 1:]
            elif "insertText" in req:
                inserted = req["insertText"]["text"]
                if not inserted:
                    return _error(400, "Insert text request must not be empty")
                index = req["insertText"]["location"]["index"]
                text = text[: index - 1] + inserted + text[index - 1:]
        self.batch_updates.append((doc_id, requests))
        self.texts[doc_id] = text
        self.bump_revision(doc_id)
        return _json_response({"documentId": doc_id, "replies": [{} for _ in requests]})


class FakeAuth:
    """Credential provider with a fixed bearer token."""

    def __init__(self) -> None:
        self.invalidations = 0

    async def authorization_headers(self) -> dict[str, str]:
        return {"Authorization": "Bearer test-token"}

    def invalidate(self) -> None:
        self.invalidations += 1


class FakeVaultHost:
    """In-memory host vault implementing the VaultHost contract."""

    def __init__(self) -> None:
        self.files: dict[str, str] = {}
        self.folders: set[str] = {""}
        self.listeners: list[Any] = []

    def _parent(self, path: str) -> str:
        return path.rpartition("/")[0]

    async def read(self, path: str) -> str:
        if path not in self.files:
            raise FileNotFoundError(path)
        return self.files[path]

    async def write(self, path: str, content: str) -> None:
        if self._parent(path) not in self.folders:
            raise FileNotFoundError(self._parent(path))
        self.files[path] = content
        for listener in self.listeners:
            listener("modified", path)

    async def remove(self, path: str) -> None:
        del self.files[path]

    async def exists(self, path: str) -> bool:
        return path in self.files or path in self.folders

    async def stat(self, path: str) -> dict[str, Any] | None:
        if path in self.files:
            return {"type": "file", "mtime": 1700000000.0, "size": len(self.files[path].encode())}
        if path in self.folders:
            return {"type": "folder", "mtime": 1700000000.0, "size": 0}
        return None

    async def list(self, path: str) -> tuple[list[str], list[str]]:
        files = [f for f in self.files if self._parent(f) == path]
        folders = [f for f in self.folders if f and self._parent(f) == path]
        return sorted(files), sorted(folders)

    async def mkdir(self, path: str) -> None:
        self.folders.add(path)

    async def rename(self, source: str, destination: str) -> None:
        self.files[destination] = self.files.pop(source)

    def on_change(self, callback: Any) -> Any:
        self.listeners.append(callback)
        return lambda: self.listeners.remove(callback)


class FakeHostData:
    """Host data dictionary for HostCredentialStore."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self.data = data
        self.saves = 0

    async def load_data(self) -> dict[str, Any] | None:
        return self.data

    async def save_data(self, data: dict[str, Any]) -> None:
        self.data = data
        self.saves += 1


@pytest.fixture
def network() -> NetworkConfig:
    return NetworkConfig(retry=RetryConfig(initial_delay=0.0, max_delay=0.0, jitter=0.0))


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def fake_auth() -> FakeAuth:
    return FakeAuth()


@pytest.fixture
def client(drive: FakeDrive, fake_auth: FakeAuth, network: NetworkConfig) -> RemoteDocumentClient:
    return RemoteDocumentClient(fake_auth, network=network, requester=drive)


@pytest.fixture
def root_id(drive: FakeDrive) -> str:
    return drive.add_folder("Notes")


@pytest.fixture
def storage(tmp_path: Path) -> FilesystemStorage:
    return FilesystemStorage(tmp_path)


@pytest.fixture
def settings(root_id: str, tmp_path: Path) -> SyncSettings:
    return SyncSettings(drive_folder=root_id, local_root=str(tmp_path))


@pytest.fixture
def engine(settings: SyncSettings, client: RemoteDocumentClient, storage: FilesystemStorage) -> SyncEngine:
    return SyncEngine(settings, client, storage)
