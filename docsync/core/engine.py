"""Sync engine: per-document change detection and policy application."""

import asyncio
import logging
import posixpath
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..errors import (
    ConfigurationError,
    ConflictUnresolved,
    DocSyncError,
    ErrorContext,
    RemoteServiceError,
    ValidationError,
)
from ..models.config import SyncSettings, sanitize_filename
from ..models.records import (
    KEY_FINGERPRINT,
    KEY_LAST_SYNCED,
    KEY_LEGACY_REMOTE_ID,
    KEY_REMOTE_ID,
    KEY_REVISION,
    KEY_TITLE,
    KEY_URL,
    ChangeState,
    DocumentRecord,
    RemoteDocumentSummary,
    RemoteState,
)
from . import frontmatter
from .client import RemoteDocumentClient
from .conflict import ConflictResolver, Resolution, Winner, has_unresolved_conflicts
from .ignore import IgnoreRules
from .state import ChangeInfo, detect_change, revision_moved
from .storage import StorageAdapter

logger = logging.getLogger(__name__)

REMOTE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{25,}$")
FINGERPRINT_RE = re.compile(r"^[0-9a-fA-F]{64}$")

DOC_URL_TEMPLATE = "https://docs.google.com/document/d/{}/edit"

KEY_ORIGINAL_REMOTE_ID = "original-doc-id"
KEY_ORIGINAL_PATH = "original-path"
KEY_DELETION_REASON = "deletion-reason"


@dataclass
class ValidationResult:
    """Outcome of checking a document's metadata before any mutation."""

    errors: list[ValidationError] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def message(self) -> str:
        return "; ".join(e.message for e in self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [{"field": e.field_name, "message": e.message} for e in self.errors],
        }


@dataclass
class SyncOutcome:
    """Result of a sync operation."""

    success: bool
    filepath: str
    operation: str  # "push", "pull", "create", "recreate", "archive", "resolve", "noop", "status", "validate", "sync"
    message: str
    change_state: ChangeState | None = None
    conflict: bool = False
    skipped: bool = False
    error: DocSyncError | None = None
    validation: ValidationResult | None = None
    remote_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "filepath": self.filepath,
            "operation": self.operation,
            "message": self.message,
            "change_state": self.change_state.value if self.change_state else None,
            "conflict": self.conflict,
            "skipped": self.skipped,
            "error": self.error.to_dict() if self.error else None,
            "validation": self.validation.to_dict() if self.validation else None,
            "remote_id": self.remote_id,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """Keeps local Markdown files and Google Docs in step."""

    def __init__(
        self,
        settings: SyncSettings,
        client: RemoteDocumentClient,
        storage: StorageAdapter,
        resolver: ConflictResolver | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        """Initialize the engine.

        Args:
            settings: Sync settings (policy, Drive folder, extension, backups)
            client: Remote document client
            storage: Local replica storage, rooted at the sync root
            resolver: Conflict resolver (built from settings if not provided)
            clock: Returns the current UTC time
        """
        self.settings = settings
        self.client = client
        self.storage = storage
        self.resolver = resolver or ConflictResolver(settings.conflict_policy)
        self.clock = clock
        self._root_task: asyncio.Future[str] | None = None
        self._ignore: IgnoreRules | None = None

    def begin_run(self) -> None:
        """Reset per-run caches before a top-level sync."""
        self.client.begin_run()
        self._root_task = None
        self._ignore = None

    async def root_folder_id(self) -> str:
        """Drive id of the sync root, resolved once per run."""
        if self._root_task is None:
            if not self.settings.drive_folder:
                raise ConfigurationError(
                    "No Drive folder configured. Set sync.drive_folder or DOCSYNC_DRIVE_FOLDER.",
                    key="sync.drive_folder",
                )
            self._root_task = asyncio.ensure_future(self.client.resolve_folder_id(self.settings.drive_folder))
        try:
            return await asyncio.shield(self._root_task)
        except DocSyncError:
            self._root_task = None
            raise

    def _now(self) -> str:
        return self.clock().isoformat(timespec="seconds")

    # =========================================================================
    # Validation
    # =========================================================================

    def validate(self, metadata: dict[str, Any], body: str) -> ValidationResult:
        """Check sync metadata and body before any mutating action.

        Problems are collected and returned, never raised, so batch callers
        can report them and move on.
        """
        errors: list[ValidationError] = []
        context = ErrorContext(operation="validate")

        remote_id = metadata.get(KEY_REMOTE_ID, metadata.get(KEY_LEGACY_REMOTE_ID))
        if remote_id is not None and (not isinstance(remote_id, str) or not REMOTE_ID_RE.match(remote_id)):
            errors.append(ValidationError(
                f"Malformed {KEY_REMOTE_ID}: {remote_id!r}", KEY_REMOTE_ID, remote_id, context,
            ))

        fp = metadata.get(KEY_FINGERPRINT)
        if fp is not None and fp != "" and (not isinstance(fp, str) or not FINGERPRINT_RE.match(fp)):
            errors.append(ValidationError(
                f"{KEY_FINGERPRINT} must be 64 hex characters", KEY_FINGERPRINT, fp, context,
            ))

        synced = metadata.get(KEY_LAST_SYNCED)
        if synced is not None and synced != "" and not isinstance(synced, datetime):
            try:
                datetime.fromisoformat(str(synced).replace("Z", "+00:00"))
            except ValueError:
                errors.append(ValidationError(
                    f"{KEY_LAST_SYNCED} is not an ISO-8601 timestamp", KEY_LAST_SYNCED, synced, context,
                ))

        revision = metadata.get(KEY_REVISION)
        if revision is not None and (isinstance(revision, bool) or not isinstance(revision, (str, int))):
            errors.append(ValidationError(
                f"{KEY_REVISION} must be a scalar", KEY_REVISION, revision, context,
            ))

        if remote_id is None and (fp or revision):
            errors.append(ValidationError(
                f"Sync fields present without {KEY_REMOTE_ID}", KEY_REMOTE_ID, None, context,
            ))

        if has_unresolved_conflicts(body):
            errors.append(ValidationError(
                "Body contains unresolved conflict markers", "body", None, context,
            ))

        return ValidationResult(errors)

    # =========================================================================
    # Single document
    # =========================================================================

    async def sync_document(
        self,
        path: str,
        target_remote_id: str | None = None,
        dry_run: bool = False,
    ) -> SyncOutcome:
        """Sync one local file with its Google Doc.

        Read local, validate, read remote, decide, mutate, write the record;
        strictly in that order.

        Args:
            path: File path relative to the storage root
            target_remote_id: Link the file to this existing document
            dry_run: Report what would happen without changing anything

        Returns:
            SyncOutcome (failures are reported, not raised)
        """
        try:
            raw = await self.storage.read_file(path)
            metadata, body = frontmatter.parse(raw)

            validation = self.validate(metadata, body)
            if not validation.valid:
                for err in validation.errors:
                    err.context.path = path
                logger.warning("Skipping %s: %s", path, validation.message)
                return SyncOutcome(
                    success=False,
                    filepath=path,
                    operation="validate",
                    message=f"Validation failed: {validation.message}",
                    error=validation.errors[0],
                    validation=validation,
                )

            record = DocumentRecord.from_metadata(metadata)
            if target_remote_id and (record is None or record.remote_id != target_remote_id):
                extra = {k: v for k, v in metadata.items()
                         if k not in (KEY_REMOTE_ID, KEY_LEGACY_REMOTE_ID, KEY_REVISION, KEY_FINGERPRINT, KEY_LAST_SYNCED)}
                record = DocumentRecord(remote_id=target_remote_id, extra=extra)
                logger.info("Linking %s to existing document %s", path, target_remote_id)

            if record is None:
                return await self._create_remote(path, metadata, body, dry_run)
            return await self._sync_linked(path, record, body, dry_run)

        except DocSyncError as err:
            logger.error("Sync failed for %s: %s", path, err)
            return SyncOutcome(
                success=False,
                filepath=path,
                operation="sync",
                message=f"Failed: {err}",
                error=err,
            )

    async def _create_remote(self, path: str, metadata: dict[str, Any], body: str, dry_run: bool) -> SyncOutcome:
        directory = self.storage.dirname(path)
        title = str(metadata.get(KEY_TITLE) or posixpath.splitext(self.storage.basename(path))[0])

        if dry_run:
            return SyncOutcome(
                success=True, filepath=path, operation="create",
                message=f"[DRY RUN] Would create Google Doc '{title}'", skipped=True,
            )

        root_id = await self.root_folder_id()
        folder_id = await self.client.ensure_folder_path(directory, root_id)
        doc_id = await self.client.create_document(title, folder_id, body)
        remote_meta = await self.client.get_metadata(doc_id)

        record = DocumentRecord(
            remote_id=doc_id,
            revision=self.client.revision_of(remote_meta),
            fingerprint=frontmatter.fingerprint(body),
            last_synced=self._now(),
            extra=dict(metadata),
        )
        await self._write_local(path, record, body, remote_meta)
        return SyncOutcome(
            success=True, filepath=path, operation="create",
            message=f"Created Google Doc '{title}'", remote_id=doc_id,
        )

    async def _sync_linked(self, path: str, record: DocumentRecord, body: str, dry_run: bool) -> SyncOutcome:
        try:
            remote_meta = await self.client.get_metadata(record.remote_id)
        except RemoteServiceError as err:
            if err.status_code != 404:
                raise
            return await self._remote_deleted(path, record, body, dry_run, "deleted")
        if remote_meta.get("trashed"):
            return await self._remote_deleted(path, record, body, dry_run, "trashed")

        remote = RemoteState(
            revision=self.client.revision_of(remote_meta),
            modified_time=remote_meta.get("modifiedTime", ""),
        )
        if revision_moved(record, remote.revision):
            remote.text = await self.client.export_text(record.remote_id)
            remote.fingerprint = frontmatter.fingerprint(remote.text)

        info = detect_change(record, frontmatter.fingerprint(body), remote, path)
        logger.debug("%s: %s", path, info.message)

        if dry_run:
            return SyncOutcome(
                success=True, filepath=path, operation="status",
                message=f"[DRY RUN] {info.message}", change_state=info.state,
                conflict=info.state is ChangeState.BOTH_CHANGED, skipped=True, remote_id=record.remote_id,
            )

        if info.state is ChangeState.UNCHANGED:
            if info.converged:
                await self._write_local(path, self._next_record(record, remote.revision, body), body, remote_meta)
            return SyncOutcome(
                success=True, filepath=path, operation="noop", message=info.message,
                change_state=info.state, skipped=True, remote_id=record.remote_id,
            )
        if info.state is ChangeState.LOCAL_ONLY:
            return await self._push(path, record, body, info)
        if info.state is ChangeState.REMOTE_ONLY:
            return await self._pull(path, record, remote.text or "", remote_meta, info)
        return await self._resolve(path, record, body, remote, remote_meta, info)

    async def _remote_deleted(
        self,
        path: str,
        record: DocumentRecord,
        body: str,
        dry_run: bool,
        reason: str,
    ) -> SyncOutcome:
        """Apply the delete handling setting to a file whose Google Doc is gone.

        Local edits since the last sync win over the delete: unless handling
        is ``ignore`` the document is recreated from the file. An unedited
        file is archived under ``archive`` and restored under ``recreate``.
        """
        handling = self.settings.delete_handling
        edited = record.fingerprint != frontmatter.fingerprint(body)
        logger.warning("Google Doc %s for %s was %s (handling: %s)", record.remote_id, path, reason, handling)

        if handling == "ignore":
            return SyncOutcome(
                success=False, filepath=path, operation="sync",
                message=f"Remote document was {reason}", skipped=True, remote_id=record.remote_id,
            )
        if handling == "archive" and not edited:
            return await self._archive_local(path, record, body, dry_run, reason)

        metadata = dict(record.extra)
        metadata[KEY_ORIGINAL_REMOTE_ID] = record.remote_id
        outcome = await self._create_remote(path, metadata, body, dry_run)
        outcome.operation = "recreate"
        if not dry_run:
            outcome.message = f"Recreated Google Doc {outcome.remote_id} (was {record.remote_id}, {reason})"
        return outcome

    async def _archive_local(
        self,
        path: str,
        record: DocumentRecord,
        body: str,
        dry_run: bool,
        reason: str,
    ) -> SyncOutcome:
        now = self.clock()
        stem, suffix = posixpath.splitext(self.storage.basename(path))
        archive_path = self.storage.join(
            self.settings.trash_dir,
            now.strftime("%Y-%m-%d"),
            self.storage.dirname(path),
            f"{stem}_{now.strftime('%Y%m%d_%H%M%S')}{suffix}",
        )
        if dry_run:
            return SyncOutcome(
                success=True, filepath=path, operation="archive",
                message=f"[DRY RUN] Would archive to {archive_path}", skipped=True, remote_id=record.remote_id,
            )

        metadata = record.to_metadata()
        metadata[KEY_ORIGINAL_PATH] = path
        metadata[KEY_DELETION_REASON] = f"Remote {reason}: {self._now()}"
        await self.storage.move_file(path, archive_path)
        await self.storage.write_file(archive_path, frontmatter.build(metadata, body))
        logger.info("Archived %s to %s", path, archive_path)
        return SyncOutcome(
            success=True, filepath=path, operation="archive",
            message=f"Archived to {archive_path}", remote_id=record.remote_id,
        )

    def _next_record(self, record: DocumentRecord, revision: str, body: str) -> DocumentRecord:
        return DocumentRecord(
            remote_id=record.remote_id,
            revision=revision,
            fingerprint=frontmatter.fingerprint(body),
            last_synced=self._now(),
            extra=dict(record.extra),
        )

    async def _push(
        self,
        path: str,
        record: DocumentRecord,
        body: str,
        info: ChangeInfo,
        message: str = "Pushed local changes",
    ) -> SyncOutcome:
        await self.client.replace_content(record.remote_id, body)
        remote_meta = await self.client.get_metadata(record.remote_id)
        updated = self._next_record(record, self.client.revision_of(remote_meta), body)
        await self._write_local(path, updated, body, remote_meta)
        return SyncOutcome(
            success=True, filepath=path, operation="push", message=message,
            change_state=info.state, remote_id=record.remote_id,
        )

    async def _pull(
        self,
        path: str,
        record: DocumentRecord,
        text: str,
        remote_meta: dict[str, Any],
        info: ChangeInfo,
        message: str = "Pulled remote changes",
    ) -> SyncOutcome:
        await self._backup_file(path)
        updated = self._next_record(record, self.client.revision_of(remote_meta), text)
        await self._write_local(path, updated, text, remote_meta)
        return SyncOutcome(
            success=True, filepath=path, operation="pull", message=message,
            change_state=info.state, remote_id=record.remote_id,
        )

    async def _resolve(
        self,
        path: str,
        record: DocumentRecord,
        body: str,
        remote: RemoteState,
        remote_meta: dict[str, Any],
        info: ChangeInfo,
    ) -> SyncOutcome:
        remote_text = remote.text or ""
        try:
            resolution: Resolution = self.resolver.resolve(body, remote_text, path, record.remote_id)
        except ConflictUnresolved as err:
            logger.warning("Conflict in %s left for the user", path)
            return SyncOutcome(
                success=False, filepath=path, operation="resolve", message=err.message,
                change_state=info.state, conflict=True, error=err, remote_id=record.remote_id,
            )

        note = "; ".join(resolution.notes)
        if resolution.has_conflicts:
            # Baseline moves to the remote side so the hand-resolved file pushes next time.
            await self._backup_file(path)
            baseline = DocumentRecord(
                remote_id=record.remote_id,
                revision=remote.revision,
                fingerprint=remote.fingerprint or frontmatter.fingerprint(remote_text),
                last_synced=self._now(),
                extra=dict(record.extra),
            )
            await self._write_local(path, baseline, resolution.content, remote_meta)
            return SyncOutcome(
                success=True, filepath=path, operation="resolve", message=note or "Conflict markers written",
                change_state=info.state, conflict=True, remote_id=record.remote_id,
            )
        if resolution.winner == Winner.LOCAL:
            return await self._push(path, record, resolution.content, info, message=note or "Kept local version")
        if resolution.winner == Winner.REMOTE:
            return await self._pull(path, record, resolution.content, remote_meta, info, message=note or "Kept remote version")

        await self._backup_file(path)
        return await self._push(path, record, resolution.content, info, message=note or "Merged both versions")

    async def _write_local(
        self,
        path: str,
        record: DocumentRecord,
        body: str,
        remote_meta: dict[str, Any],
    ) -> None:
        metadata = record.to_metadata()
        metadata[KEY_URL] = remote_meta.get("webViewLink") or DOC_URL_TEMPLATE.format(record.remote_id)
        if remote_meta.get("name"):
            metadata[KEY_TITLE] = remote_meta["name"]
        metadata.pop(KEY_LEGACY_REMOTE_ID, None)
        await self.storage.write_file(path, frontmatter.build(metadata, body))

    async def _backup_file(self, path: str) -> str | None:
        """Copy a file into the backup directory before overwriting it."""
        if not self.settings.backup_on_pull or not await self.storage.exists(path):
            return None
        stem, suffix = posixpath.splitext(self.storage.basename(path))
        timestamp = self.clock().strftime("%Y%m%d_%H%M%S")
        backup_path = self.storage.join(
            self.settings.backup_dir, self.storage.dirname(path), f"{stem}_{timestamp}{suffix}"
        )
        await self.storage.copy_file(path, backup_path)
        logger.debug("Backed up %s to %s", path, backup_path)
        return backup_path

    # =========================================================================
    # Batches
    # =========================================================================

    async def _ignore_rules(self) -> IgnoreRules:
        if self._ignore is None:
            self._ignore = await IgnoreRules.load(self.storage)
        return self._ignore

    async def _is_excluded(self, path: str) -> bool:
        if self.settings.should_exclude(path):
            return True
        return (await self._ignore_rules()).is_ignored(path)

    async def discover_local(self) -> list[str]:
        """Local files to sync: extension match, minus ignore rules and excludes."""
        candidates = await self.storage.walk("", f"*{self.settings.file_extension}")
        return [p for p in candidates if not await self._is_excluded(p)]

    async def _isolated(self, path: str, coro_factory: Callable[[], Any]) -> SyncOutcome:
        try:
            return await coro_factory()
        except DocSyncError as err:
            return SyncOutcome(success=False, filepath=path, operation="sync", message=f"Failed: {err}", error=err)
        except Exception as e:
            logger.exception("Unexpected error syncing %s", path)
            err = DocSyncError(f"Unexpected error: {e}", ErrorContext(operation="sync", path=path), cause=e)
            return SyncOutcome(success=False, filepath=path, operation="sync", message=f"Failed: {err}", error=err)

    async def _run_batch(self, items: list[tuple[str, Callable[[], Any]]]) -> list[SyncOutcome]:
        """Run per-document jobs concurrently under the batch timeout.

        Jobs still running when the timeout fires are cancelled and reported
        as failed; finished ones keep their outcome.
        """
        limit = asyncio.Semaphore(self.client.network.concurrency)

        async def run(path: str, factory: Callable[[], Any]) -> SyncOutcome:
            async with limit:
                return await self._isolated(path, factory)

        tasks = [asyncio.ensure_future(run(path, factory)) for path, factory in items]
        if not tasks:
            return []
        try:
            async with asyncio.timeout(self.settings.sync_timeout):
                await asyncio.gather(*tasks)
        except TimeoutError:
            logger.error("Batch timed out after %.0f seconds", self.settings.sync_timeout)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        outcomes = []
        for (path, _), task in zip(items, tasks):
            if task.cancelled():
                err = DocSyncError(
                    f"Timed out after {self.settings.sync_timeout:.0f} seconds",
                    ErrorContext(operation="sync", path=path),
                )
                outcomes.append(SyncOutcome(success=False, filepath=path, operation="sync", message=str(err), error=err))
            else:
                outcomes.append(task.result())
        return outcomes

    async def sync_all(self, paths: list[str] | None = None, dry_run: bool = False) -> list[SyncOutcome]:
        """Sync many local files; one failure never stops the others.

        Args:
            paths: Files to sync (every eligible file under the root if None)
            dry_run: Report what would happen without changing anything

        Returns:
            One SyncOutcome per file, in input order
        """
        self.begin_run()
        return await self._sync_paths(paths, dry_run)

    async def _sync_paths(self, paths: list[str] | None, dry_run: bool) -> list[SyncOutcome]:
        if paths is None:
            paths = await self.discover_local()
        logger.info("Syncing %d file(s)", len(paths))
        return await self._run_batch([
            (path, lambda p=path: self.sync_document(p, dry_run=dry_run)) for path in paths
        ])

    async def linked_documents(self) -> dict[str, str]:
        """Map remote id to local path for every linked local file."""
        linked: dict[str, str] = {}
        for path in await self.storage.walk("", f"*{self.settings.file_extension}"):
            try:
                metadata, _ = frontmatter.parse(await self.storage.read_file(path))
            except DocSyncError as err:
                logger.warning("Could not read %s: %s", path, err)
                continue
            record = DocumentRecord.from_metadata(metadata)
            if record is not None:
                linked.setdefault(record.remote_id, path)
        return linked

    def _local_path_for(self, summary: RemoteDocumentSummary) -> str:
        folders = [sanitize_filename(p) for p in summary.relative_path.split("/") if p]
        return self.storage.join(*folders, sanitize_filename(summary.name) + self.settings.file_extension)

    async def pull_new_documents(self, dry_run: bool = False, begin: bool = True) -> list[SyncOutcome]:
        """Create local files for remote documents no local file links to.

        Args:
            dry_run: Report what would be pulled without writing
            begin: Start a new run (False when called inside one)

        Returns:
            One SyncOutcome per newly discovered document
        """
        if begin:
            self.begin_run()
        root_id = await self.root_folder_id()
        documents = await self.client.list_documents(root_id, reconcile=self.settings.reconcile_root)
        linked = await self.linked_documents()

        items: list[tuple[str, Callable[[], Any]]] = []
        outcomes: list[SyncOutcome] = []
        taken: set[str] = set()
        for summary in documents:
            if summary.remote_id in linked:
                continue
            path = self._local_path_for(summary)
            if path in taken or await self.storage.exists(path):
                stem, suffix = posixpath.splitext(path)
                path = f"{stem} ({summary.remote_id[:8]}){suffix}"
            taken.add(path)

            if await self._is_excluded(path):
                outcomes.append(SyncOutcome(
                    success=True, filepath=path, operation="pull", message="Excluded by ignore rules",
                    skipped=True, remote_id=summary.remote_id,
                ))
                continue
            if dry_run:
                outcomes.append(SyncOutcome(
                    success=True, filepath=path, operation="pull",
                    message=f"[DRY RUN] Would pull '{summary.display_path}'", skipped=True,
                    remote_id=summary.remote_id,
                ))
                continue
            items.append((path, lambda p=path, s=summary: self._pull_new(p, s)))

        logger.info("Pulling %d new document(s)", len(items))
        return outcomes + await self._run_batch(items)

    async def _pull_new(self, path: str, summary: RemoteDocumentSummary) -> SyncOutcome:
        remote_meta = await self.client.get_metadata(summary.remote_id)
        text = await self.client.export_text(summary.remote_id)
        record = DocumentRecord(
            remote_id=summary.remote_id,
            revision=self.client.revision_of(remote_meta),
            fingerprint=frontmatter.fingerprint(text),
            last_synced=self._now(),
            extra=dict(remote_meta.get("appProperties") or {}),
        )
        await self._write_local(path, record, text, remote_meta)
        return SyncOutcome(
            success=True, filepath=path, operation="pull",
            message=f"Pulled new document '{summary.display_path}'", remote_id=summary.remote_id,
        )

    async def sync_folder(self, dry_run: bool = False) -> list[SyncOutcome]:
        """Sync every local file, then pull remote documents not yet local."""
        self.begin_run()
        outcomes = await self._sync_paths(None, dry_run)
        outcomes.extend(await self.pull_new_documents(dry_run=dry_run, begin=False))
        return outcomes
