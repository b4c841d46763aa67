"""Conflict policies for documents changed on both sides."""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from ..errors import ConflictUnresolved, ErrorContext
from .frontmatter import fingerprint

logger = logging.getLogger(__name__)

LOCAL_MARKER = "<<<<<<< LOCAL"
SEPARATOR_MARKER = "======="
REMOTE_MARKER = ">>>>>>> REMOTE"

_OPEN_RE = re.compile(r"^<<<<<<< LOCAL\b", re.MULTILINE)
_CLOSE_RE = re.compile(r"^>>>>>>> REMOTE\b", re.MULTILINE)


class ConflictPolicy(str, Enum):
    """How to settle a document changed on both sides."""

    PREFER_DOC = "prefer-doc"
    PREFER_MD = "prefer-md"
    MERGE = "merge"
    PROMPT = "prompt"

    @property
    def description(self) -> str:
        return {
            ConflictPolicy.PREFER_DOC: "Always use the Google Doc version",
            ConflictPolicy.PREFER_MD: "Always use the Markdown file version",
            ConflictPolicy.MERGE: "Merge when one side extends the other, else write conflict markers",
            ConflictPolicy.PROMPT: "Leave both sides untouched and report the conflict",
        }[self]


class Winner:
    """Which replica's content a resolution keeps."""

    LOCAL = "local"
    REMOTE = "remote"
    MERGED = "merged"


@dataclass
class Resolution:
    """Result of settling a conflict."""

    winner: str
    content: str
    has_conflicts: bool = False
    notes: list[str] = field(default_factory=list)


class Merger(Protocol):
    """Combines two divergent bodies."""

    def merge(self, local: str, remote: str) -> Resolution:
        ...


def _extends(longer: list[str], shorter: list[str]) -> bool:
    return len(longer) > len(shorter) and longer[: len(shorter)] == shorter


class LineMerger:
    """Accepts a side that only appends lines; otherwise writes conflict markers."""

    def merge(self, local: str, remote: str) -> Resolution:
        local_lines = local.rstrip("\n").split("\n")
        remote_lines = remote.rstrip("\n").split("\n")

        if _extends(local_lines, remote_lines):
            return Resolution(Winner.LOCAL, local, notes=["Local version extends the remote content"])
        if _extends(remote_lines, local_lines):
            return Resolution(Winner.REMOTE, remote, notes=["Remote version extends the local content"])

        merged = "\n".join([LOCAL_MARKER, local.rstrip("\n"), SEPARATOR_MARKER, remote.rstrip("\n"), REMOTE_MARKER, ""])
        return Resolution(
            Winner.MERGED,
            merged,
            has_conflicts=True,
            notes=[
                f"Local {fingerprint(local)[:8]} and remote {fingerprint(remote)[:8]} both kept in conflict markers",
                "Edit the file to resolve the conflict, then sync again",
            ],
        )


def has_unresolved_conflicts(text: str) -> bool:
    """Whether text still contains an opening and a closing conflict marker."""
    return bool(_OPEN_RE.search(text) and _CLOSE_RE.search(text))


class ConflictResolver:
    """Applies the configured policy to a BOTH_CHANGED document."""

    def __init__(self, policy: ConflictPolicy | str, merger: Merger | None = None) -> None:
        self.policy = ConflictPolicy(policy)
        self.merger = merger or LineMerger()

    def resolve(self, local: str, remote: str, filepath: str = "", remote_id: str = "") -> Resolution:
        """Pick or build the content both replicas should end up with.

        Args:
            local: Current local body
            remote: Current exported remote text
            filepath: Local path, for error context
            remote_id: Remote document id, for error context

        Returns:
            Resolution naming the winner and the content to apply

        Raises:
            ConflictUnresolved: Under the prompt policy
        """
        if self.policy is ConflictPolicy.PREFER_DOC:
            return Resolution(Winner.REMOTE, remote, notes=["Local changes overwritten by the Google Doc (prefer-doc)"])
        if self.policy is ConflictPolicy.PREFER_MD:
            return Resolution(Winner.LOCAL, local, notes=["Google Doc overwritten by local changes (prefer-md)"])
        if self.policy is ConflictPolicy.MERGE:
            resolution = self.merger.merge(local, remote)
            if resolution.has_conflicts:
                logger.warning("Merge of %s left conflict markers", filepath or remote_id)
            return resolution

        raise ConflictUnresolved(
            "Both local and remote changed; resolve manually or choose a policy",
            local_fingerprint=fingerprint(local),
            remote_fingerprint=fingerprint(remote),
            context=ErrorContext(operation="resolve_conflict", resource_id=remote_id, path=filepath),
        )
