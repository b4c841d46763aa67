"""Change detection between the local file, its record and the remote doc."""

from dataclasses import dataclass
from typing import Any

from ..models.records import ChangeState, DocumentRecord, RemoteState
from .frontmatter import fingerprint

EMPTY_FINGERPRINT = fingerprint("")


@dataclass
class ChangeInfo:
    """Outcome of comparing both replicas against the stored record."""

    filepath: str
    state: ChangeState
    local_fingerprint: str
    stored_fingerprint: str | None = None
    remote_fingerprint: str | None = None
    remote_revision: str | None = None
    stored_revision: str | None = None
    converged: bool = False  # both sides changed to identical content
    message: str = ""

    @property
    def local_changed(self) -> bool:
        return self.state in (ChangeState.LOCAL_ONLY, ChangeState.BOTH_CHANGED)

    @property
    def remote_changed(self) -> bool:
        return self.state in (ChangeState.REMOTE_ONLY, ChangeState.BOTH_CHANGED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "filepath": self.filepath,
            "state": self.state.value,
            "local_fingerprint": self.local_fingerprint,
            "stored_fingerprint": self.stored_fingerprint,
            "remote_fingerprint": self.remote_fingerprint,
            "remote_revision": self.remote_revision,
            "stored_revision": self.stored_revision,
            "converged": self.converged,
            "message": self.message,
        }


def revision_moved(record: DocumentRecord | None, remote_revision: str) -> bool:
    """Whether the remote revision differs from the stored one.

    The engine only exports remote text when this is true.
    """
    if record is None or not record.revision:
        return True
    return remote_revision != record.revision


def detect_change(
    record: DocumentRecord | None,
    local_fingerprint: str,
    remote: RemoteState,
    filepath: str = "",
) -> ChangeInfo:
    """Classify a document pair.

    Change detection:
    - Local changed: the body fingerprint differs from the stored one
    - Remote changed: the revision moved AND the exported text's fingerprint
      differs from the stored one (a revision bump without a content change
      does not count)
    - Without a baseline (first link), any non-empty side counts as changed

    Args:
        record: Stored sync record, None if never synced
        local_fingerprint: Fingerprint of the current local body
        remote: Current remote revision, with its fingerprint when fetched
        filepath: Path used in the returned info

    Returns:
        ChangeInfo with the derived ChangeState
    """
    stored_fp = record.fingerprint if record else ""
    stored_rev = record.revision if record else ""

    if not stored_fp and not stored_rev:
        local_changed = local_fingerprint != EMPTY_FINGERPRINT
        remote_changed = remote.fingerprint is not None and remote.fingerprint != EMPTY_FINGERPRINT
    else:
        local_changed = local_fingerprint != stored_fp
        remote_changed = revision_moved(record, remote.revision) and (
            remote.fingerprint is None or remote.fingerprint != stored_fp
        )

    converged = False
    if local_changed and remote_changed and remote.fingerprint == local_fingerprint:
        local_changed = remote_changed = False
        converged = True

    if local_changed and remote_changed:
        state = ChangeState.BOTH_CHANGED
        message = "Both local and remote have changes"
    elif local_changed:
        state = ChangeState.LOCAL_ONLY
        message = "Local changes to push"
    elif remote_changed:
        state = ChangeState.REMOTE_ONLY
        message = "Remote changes to pull"
    else:
        state = ChangeState.UNCHANGED
        message = "Both sides changed identically" if converged else "Already in sync"

    return ChangeInfo(
        filepath=filepath,
        state=state,
        local_fingerprint=local_fingerprint,
        stored_fingerprint=stored_fp or None,
        remote_fingerprint=remote.fingerprint,
        remote_revision=remote.revision,
        stored_revision=stored_rev or None,
        converged=converged,
        message=message,
    )
