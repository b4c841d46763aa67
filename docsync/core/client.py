"""HTTP client for the Google Drive v3 and Docs v1 APIs."""

import asyncio
import logging
import re
from collections.abc import Awaitable
from dataclasses import replace
from typing import Any, Protocol, TypeVar

from ..errors import AuthenticationRequired, DocSyncError, ErrorContext, RemoteServiceError, TransportError
from ..models.config import NetworkConfig
from ..models.records import FolderLookup, Found, NotFound, RemoteDocumentSummary
from .retry import RetryPolicy
from .transport import HttpResponse, Requester, RequestsRequester, raise_for_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"
DRIVE_ABOUT_URL = "https://www.googleapis.com/drive/v3/about"
DOCS_URL = "https://docs.googleapis.com/v1/documents"

FOLDER_MIME = "application/vnd.google-apps.folder"
DOCUMENT_MIME = "application/vnd.google-apps.document"
SHORTCUT_MIME = "application/vnd.google-apps.shortcut"

# Drive ids are long url-safe tokens; anything else is a folder name.
FOLDER_ID_RE = re.compile(r"^[A-Za-z0-9_-]{25,}$")

LIST_FIELDS = "id,name,mimeType,parents,modifiedTime,webViewLink,shortcutDetails(targetId,targetMimeType)"
METADATA_FIELDS = "id,name,mimeType,modifiedTime,headRevisionId,parents,webViewLink,trashed,appProperties"
PAGE_SIZE = 1000


class CredentialProvider(Protocol):
    """Supplies request authorization headers (TokenLifecycle in practice)."""

    async def authorization_headers(self) -> dict[str, str]:
        ...

    def invalidate(self) -> None:
        ...


def escape_query_value(value: str) -> str:
    """Escape a literal for use inside a Drive ``q`` string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _join(path: str, name: str) -> str:
    return f"{path}/{name}" if path else name


async def _gather_or_cancel(coros: list[Awaitable[T]]) -> list[T]:
    """Gather coroutines; on the first failure cancel and drain the rest."""
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class RemoteDocumentClient:
    """Folder resolution, discovery and content operations on Drive/Docs.

    Every call is retried per the configured policy and bounded by a shared
    concurrency semaphore, so callers may fan out freely.
    """

    def __init__(
        self,
        auth: CredentialProvider,
        network: NetworkConfig | None = None,
        requester: Requester | None = None,
    ) -> None:
        """Initialize client.

        Args:
            auth: Source of authorization headers
            network: Timeout, concurrency and retry settings
            requester: HTTP requester (a requests-backed one if not provided)
        """
        self.auth = auth
        self.network = network or NetworkConfig()
        self.requester = requester or RequestsRequester(timeout=self.network.timeout)
        self.retry = RetryPolicy(self.network.retry)
        self._semaphore = asyncio.Semaphore(self.network.concurrency)
        self._folder_cache: dict[tuple[str, str], asyncio.Future[str]] = {}

    def begin_run(self) -> None:
        """Start a new top-level sync; forgets folder ids resolved earlier."""
        self._folder_cache.clear()

    async def _request(
        self,
        method: str,
        url: str,
        context: ErrorContext,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> HttpResponse:
        """Make an authenticated, retried request.

        Raises:
            AuthenticationRequired: On a missing credential or a 401
            RemoteServiceError: On an error status, once retries are exhausted
            TransportError: On a network failure, once retries are exhausted
        """
        error_context = context.with_payload(json) if json is not None else context

        async def call() -> HttpResponse:
            async with self._semaphore:
                headers = await self.auth.authorization_headers()
                if json is not None:
                    headers["Content-Type"] = "application/json"
                try:
                    response = await self.requester.request(
                        method,
                        url,
                        params=params,
                        json=json,
                        headers=headers,
                        timeout=self.network.timeout,
                    )
                except TransportError as err:
                    err.context = replace(
                        error_context, metadata={**error_context.metadata, "request": f"{method} {url}"}
                    )
                    raise
            try:
                raise_for_status(response, error_context)
            except RemoteServiceError as err:
                if err.status_code == 401:
                    self.auth.invalidate()
                    raise AuthenticationRequired(
                        "Remote service rejected the credential", error_context, cause=err
                    ) from err
                raise
            return response

        return await self.retry.run(context.operation, call)

    async def _json(
        self,
        method: str,
        url: str,
        context: ErrorContext,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        response = await self._request(method, url, context, params=params, json=json)
        data = response.json()
        return data if isinstance(data, dict) else {}

    async def _list_files(self, query: str, context: ErrorContext) -> list[dict[str, Any]]:
        """Run a Drive files.list query, following nextPageToken to the end."""
        files: list[dict[str, Any]] = []
        params: dict[str, Any] = {
            "q": query,
            "fields": f"nextPageToken,files({LIST_FIELDS})",
            "pageSize": PAGE_SIZE,
            "supportsAllDrives": "true",
            "includeItemsFromAllDrives": "true",
        }
        while True:
            data = await self._json("GET", DRIVE_FILES_URL, context, params=dict(params))
            files.extend(data.get("files") or [])
            token = data.get("nextPageToken")
            if not token:
                return files
            params["pageToken"] = token

    # -------------------------------------------------------------------------
    # Folder Operations
    # -------------------------------------------------------------------------

    async def resolve_folder_id(self, name_or_id: str) -> str:
        """Resolve a folder name or id to an id.

        Id-shaped strings are returned unchanged. A name is searched for under
        the Drive root and created there when absent.
        """
        value = name_or_id.strip()
        if FOLDER_ID_RE.match(value):
            return value
        lookup = await self.find_folder(value, "root")
        if isinstance(lookup, Found):
            logger.debug("Resolved folder '%s' to %s", value, lookup.folder_id)
            return lookup.folder_id
        logger.info("Folder '%s' not found in Drive root, creating it", value)
        return await self.create_folder(value, "root")

    async def find_folder(self, name: str, parent_id: str) -> FolderLookup:
        """Look up a folder by name under a parent; the first match wins."""
        query = (
            f"name='{escape_query_value(name)}' and mimeType='{FOLDER_MIME}' "
            f"and '{escape_query_value(parent_id)}' in parents and trashed=false"
        )
        files = await self._list_files(
            query, ErrorContext(operation="find_folder", resource_id=parent_id, resource_name=name)
        )
        if files:
            return Found(files[0]["id"])
        return NotFound(name)

    async def create_folder(self, name: str, parent_id: str) -> str:
        """Create a folder and return its id."""
        data = await self._json(
            "POST",
            DRIVE_FILES_URL,
            ErrorContext(operation="create_folder", resource_id=parent_id, resource_name=name),
            params={"fields": "id", "supportsAllDrives": "true"},
            json={"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id]},
        )
        logger.info("Created Drive folder '%s'", name)
        return data["id"]

    async def find_or_create_folder(self, name: str, parent_id: str) -> str:
        lookup = await self.find_folder(name, parent_id)
        if isinstance(lookup, Found):
            return lookup.folder_id
        return await self.create_folder(name, parent_id)

    async def ensure_folder_path(self, relative_path: str, base_id: str) -> str:
        """Resolve (creating as needed) the folder for ``a/b/c`` under ``base_id``.

        Each ``(parent id, path so far)`` is resolved once per run; concurrent
        callers asking for the same folder share the same lookup.

        Returns:
            Id of the deepest folder (``base_id`` for an empty path)
        """
        segments = [s for s in relative_path.replace("\\", "/").split("/") if s and s != "."]
        current = base_id
        so_far = ""
        for segment in segments:
            so_far = _join(so_far, segment)
            key = (current, so_far)
            pending = self._folder_cache.get(key)
            if pending is None:
                pending = asyncio.ensure_future(self.find_or_create_folder(segment, current))
                self._folder_cache[key] = pending
            try:
                current = await asyncio.shield(pending)
            except Exception:
                if self._folder_cache.get(key) is pending:
                    del self._folder_cache[key]
                raise
        return current

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def _list_children(self, folder_id: str) -> list[dict[str, Any]]:
        query = f"'{escape_query_value(folder_id)}' in parents and trashed=false"
        return await self._list_files(query, ErrorContext(operation="list_children", resource_id=folder_id))

    async def _resolve_shortcut_target(self, target_id: str) -> dict[str, Any] | None:
        try:
            metadata = await self.get_metadata(target_id)
        except RemoteServiceError as err:
            if err.status_code in (403, 404):
                logger.warning("Shortcut target %s is not accessible, skipping", target_id)
                return None
            raise
        if metadata.get("trashed"):
            return None
        return metadata

    async def list_documents(self, root_id: str, reconcile: bool = True) -> list[RemoteDocumentSummary]:
        """Discover every Google Doc under a folder, recursively.

        Folders are walked breadth-first, one wave of concurrent listings per
        depth level. Shortcuts to documents are reported under the shortcut's
        name and location; shortcuts to folders are walked like folders. With
        ``reconcile`` a final type-wide query adds documents whose parent is a
        visited folder but which the per-folder listings missed.

        Args:
            root_id: Folder to start from
            reconcile: Run the root-level reconciliation query

        Returns:
            One summary per document id, sorted by path
        """
        visited: dict[str, str] = {root_id: ""}
        documents: dict[str, RemoteDocumentSummary] = {}
        wave: list[tuple[str, str]] = [(root_id, "")]

        while wave:
            listings = await _gather_or_cancel([self._list_children(folder_id) for folder_id, _ in wave])
            next_wave: list[tuple[str, str]] = []
            shortcuts: list[tuple[dict[str, Any], str, str]] = []

            for (folder_id, path), children in zip(wave, listings):
                for child in children:
                    mime = child.get("mimeType")
                    if mime == DOCUMENT_MIME:
                        if child["id"] not in documents:
                            documents[child["id"]] = self._summary(child, folder_id, path)
                    elif mime == FOLDER_MIME:
                        if child["id"] not in visited:
                            child_path = _join(path, child.get("name", ""))
                            visited[child["id"]] = child_path
                            next_wave.append((child["id"], child_path))
                    elif mime == SHORTCUT_MIME:
                        shortcuts.append((child, folder_id, path))

            for child, folder_id, path in shortcuts:
                details = child.get("shortcutDetails") or {}
                target_id = details.get("targetId")
                if not target_id:
                    continue
                if details.get("targetMimeType") == FOLDER_MIME and target_id not in visited:
                    child_path = _join(path, child.get("name", ""))
                    visited[target_id] = child_path
                    next_wave.append((target_id, child_path))

            document_shortcuts = [
                (child, folder_id, path) for child, folder_id, path in shortcuts
                if (child.get("shortcutDetails") or {}).get("targetMimeType") == DOCUMENT_MIME
            ]
            targets = await _gather_or_cancel([
                self._resolve_shortcut_target(child["shortcutDetails"]["targetId"])
                for child, _, _ in document_shortcuts
            ])
            for (child, folder_id, path), target in zip(document_shortcuts, targets):
                if target is None:
                    continue
                existing = documents.get(target["id"])
                # a shortcut names the document even when it is also listed directly
                if existing is not None and existing.via_shortcut:
                    continue
                summary = self._summary(target, folder_id, path)
                summary.name = child.get("name", summary.name)
                summary.via_shortcut = True
                documents[target["id"]] = summary

            wave = next_wave

        if reconcile:
            try:
                await self._reconcile_root(visited, documents)
            except DocSyncError as err:
                logger.warning("Root reconciliation query failed, continuing without it: %s", err)

        return sorted(documents.values(), key=lambda d: (d.relative_path, d.name, d.remote_id))

    async def _reconcile_root(self, visited: dict[str, str], documents: dict[str, RemoteDocumentSummary]) -> None:
        """Add docs whose parents include a visited folder but were not listed."""
        query = f"mimeType='{DOCUMENT_MIME}' and trashed=false"
        candidates = await self._list_files(query, ErrorContext(operation="reconcile_root"))
        recovered = 0
        for item in candidates:
            if item["id"] in documents:
                continue
            for parent in item.get("parents") or []:
                if parent in visited:
                    documents[item["id"]] = self._summary(item, parent, visited[parent])
                    recovered += 1
                    break
        if recovered:
            logger.info("Reconciliation recovered %d document(s) missing from folder listings", recovered)

    @staticmethod
    def _summary(item: dict[str, Any], parent_id: str, path: str) -> RemoteDocumentSummary:
        return RemoteDocumentSummary(
            remote_id=item["id"],
            name=item.get("name", ""),
            parent_id=parent_id,
            modified_time=item.get("modifiedTime", ""),
            relative_path=path,
            web_link=item.get("webViewLink", ""),
        )

    # -------------------------------------------------------------------------
    # Document Operations
    # -------------------------------------------------------------------------

    async def get_metadata(self, doc_id: str) -> dict[str, Any]:
        """Get Drive metadata for a file, including its head revision."""
        return await self._json(
            "GET",
            f"{DRIVE_FILES_URL}/{doc_id}",
            ErrorContext(operation="get_metadata", resource_id=doc_id),
            params={"fields": METADATA_FIELDS, "supportsAllDrives": "true"},
        )

    @staticmethod
    def revision_of(metadata: dict[str, Any]) -> str:
        """Revision marker: headRevisionId, else modifiedTime."""
        return str(metadata.get("headRevisionId") or metadata.get("modifiedTime") or "")

    async def create_document(self, name: str, folder_id: str, text: str = "") -> str:
        """Create a Google Doc in a folder, optionally with initial text.

        Returns:
            New document id
        """
        data = await self._json(
            "POST",
            DRIVE_FILES_URL,
            ErrorContext(operation="create_document", resource_id=folder_id, resource_name=name),
            params={"fields": "id", "supportsAllDrives": "true"},
            json={"name": name, "mimeType": DOCUMENT_MIME, "parents": [folder_id]},
        )
        doc_id = data["id"]
        logger.info("Created Google Doc '%s' (%s)", name, doc_id)
        if text:
            await self.replace_content(doc_id, text)
        return doc_id

    async def export_text(self, doc_id: str) -> str:
        """Export a document as plain text, without BOM and with LF line endings."""
        response = await self._request(
            "GET",
            f"{DRIVE_FILES_URL}/{doc_id}/export",
            ErrorContext(operation="export_text", resource_id=doc_id),
            params={"mimeType": "text/plain"},
        )
        text = response.content.decode("utf-8-sig", errors="replace")
        return text.replace("\r\n", "\n")

    async def replace_content(self, doc_id: str, text: str) -> dict[str, Any]:
        """Replace the whole body of a document in one batchUpdate.

        The existing range ``[1, end)`` is deleted first unless the document
        is already empty.
        """
        context = ErrorContext(operation="replace_content", resource_id=doc_id)
        document = await self._json("GET", f"{DOCS_URL}/{doc_id}", context)
        content = (document.get("body") or {}).get("content") or []
        end_index = (content[-1].get("endIndex", 1) - 1) if content else 1

        batch: list[dict[str, Any]] = []
        if end_index > 1:
            batch.append({"deleteContentRange": {"range": {"startIndex": 1, "endIndex": end_index}}})
        if text:
            batch.append({"insertText": {"location": {"index": 1}, "text": text}})
        if not batch:
            return {}

        return await self._json("POST", f"{DOCS_URL}/{doc_id}:batchUpdate", context, json={"requests": batch})

    async def get_properties(self, doc_id: str) -> dict[str, str]:
        """Get the app-private key/value properties of a file."""
        data = await self._json(
            "GET",
            f"{DRIVE_FILES_URL}/{doc_id}",
            ErrorContext(operation="get_properties", resource_id=doc_id),
            params={"fields": "appProperties", "supportsAllDrives": "true"},
        )
        return dict(data.get("appProperties") or {})

    async def set_properties(self, doc_id: str, properties: dict[str, str]) -> None:
        """Merge app-private properties into a file. A None value deletes the key."""
        await self._json(
            "PATCH",
            f"{DRIVE_FILES_URL}/{doc_id}",
            ErrorContext(operation="set_properties", resource_id=doc_id),
            params={"fields": "id,appProperties", "supportsAllDrives": "true"},
            json={"appProperties": properties},
        )

    # -------------------------------------------------------------------------
    # Health Check
    # -------------------------------------------------------------------------

    async def verify_connection(self) -> dict[str, Any]:
        """Fetch the signed-in user to prove the credential works."""
        data = await self._json(
            "GET",
            DRIVE_ABOUT_URL,
            ErrorContext(operation="verify_connection"),
            params={"fields": "user(displayName,emailAddress)"},
        )
        return data.get("user") or {}
