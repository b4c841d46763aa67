"""Gitignore-style rules from a ``.docsyncignore`` file."""

import logging
import re
from dataclasses import dataclass, field

from ..errors import StorageError
from .storage import StorageAdapter

logger = logging.getLogger(__name__)

IGNORE_FILENAME = ".docsyncignore"


@dataclass(frozen=True)
class IgnoreRule:
    """One non-comment line of an ignore file."""

    pattern: str
    negated: bool
    regex: re.Pattern[str]


def _translate(pattern: str) -> re.Pattern[str]:
    """Compile a gitignore pattern to a regex over relative POSIX paths.

    ``*`` and ``?`` stay within one segment, ``**`` spans segments, a
    leading ``/`` anchors at the root and a trailing ``/`` matches a
    directory and everything below it.
    """
    directory_only = pattern.endswith("/")
    anchored = pattern.startswith("/")
    body = pattern.strip("/")

    out = []
    i = 0
    while i < len(body):
        if body.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif body.startswith("**", i):
            out.append(".*")
            i += 2
        elif body[i] == "*":
            out.append("[^/]*")
            i += 1
        elif body[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(body[i]))
            i += 1

    prefix = "^" if anchored else "(?:^|/)"
    suffix = "/.*$" if directory_only else "(?:$|/.*$)"
    return re.compile(prefix + "".join(out) + suffix)


@dataclass
class IgnoreRules:
    """Ordered ignore rules; the last matching rule decides."""

    rules: list[IgnoreRule] = field(default_factory=list)

    @classmethod
    def from_text(cls, content: str) -> "IgnoreRules":
        rules = []
        for line in content.splitlines():
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            negated = stripped.startswith("!")
            pattern = (stripped[1:] if negated else stripped).replace("\\", "/")
            if not pattern:
                continue
            rules.append(IgnoreRule(pattern=pattern, negated=negated, regex=_translate(pattern)))
        return cls(rules)

    @classmethod
    async def load(cls, storage: StorageAdapter, directory: str = "") -> "IgnoreRules":
        """Read the ignore file from ``directory``; missing or unreadable means no rules."""
        path = storage.join(directory, IGNORE_FILENAME)
        try:
            if not await storage.exists(path):
                return cls()
            return cls.from_text(await storage.read_file(path))
        except StorageError as e:
            logger.warning("Could not read %s: %s", path, e)
            return cls()

    def is_ignored(self, path: str) -> bool:
        """Check a path relative to the sync root."""
        normalized = path.replace("\\", "/")
        while normalized.startswith("./"):
            normalized = normalized[2:]
        normalized = normalized.lstrip("/")
        ignored = False
        for rule in self.rules:
            if rule.regex.search(normalized):
                ignored = not rule.negated
        return ignored

    def __len__(self) -> int:
        return len(self.rules)
