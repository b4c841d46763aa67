"""YAML frontmatter parsing and serialization.

A synced document starts with a ``---`` delimited YAML block carrying its
sync record, followed by the human-authored body::

    ---
    google-doc-id: 1AbC...
    revisionId: ALm37...
    sha256: 9f86d0...
    last-synced: '2024-05-01T12:00:00+00:00'
    ---
    # Body

Fingerprints cover the body only, so rewriting the block never looks like a
content change.
"""

import hashlib
import logging
import re
from typing import Any

import yaml

from ..models.records import (
    KEY_FINGERPRINT,
    KEY_LAST_SYNCED,
    KEY_LEGACY_REMOTE_ID,
    KEY_REMOTE_ID,
    KEY_REVISION,
    KEY_TITLE,
    KEY_URL,
)

logger = logging.getLogger(__name__)

DELIMITER = "---"

_BLOCK_RE = re.compile(
    r"\A---[ \t]*\r?\n(?P<yaml>.*?)^---[ \t]*(?:\r?\n|\Z)",
    re.DOTALL | re.MULTILINE,
)
_LINE_KEY_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_-]*)\s*:\s*(.*)$")

# Serialization order; anything else follows alphabetically.
KEY_ORDER = (
    KEY_REMOTE_ID,
    KEY_LEGACY_REMOTE_ID,
    KEY_TITLE,
    KEY_URL,
    KEY_REVISION,
    KEY_FINGERPRINT,
    KEY_LAST_SYNCED,
)


def fingerprint(body: str) -> str:
    """SHA-256 hex digest of the UTF-8 body."""
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def _recover_lines(block: str) -> dict[str, Any]:
    """Best-effort ``key: value`` recovery for a block YAML rejects.

    Unindented ``key:`` lines start an entry; an empty value collects the
    following lines until the next key.
    """
    data: dict[str, Any] = {}
    lines = block.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        stripped = line.strip()
        i += 1
        if not stripped or stripped.startswith("#"):
            continue
        match = _LINE_KEY_RE.match(line)
        if not match:
            continue
        key, value = match.group(1), match.group(2).strip()
        if value:
            data[key] = value
            continue
        collected = []
        while i < len(lines) and not _LINE_KEY_RE.match(lines[i]):
            collected.append(lines[i])
            i += 1
        data[key] = "\n".join(collected).strip()
    return data


def parse(raw: str) -> tuple[dict[str, Any], str]:
    """Split a document into its metadata and body.

    Args:
        raw: Full document text

    Returns:
        (metadata, body). Text without a leading block yields ``({}, raw)``.
    """
    match = _BLOCK_RE.match(raw)
    if not match:
        return {}, raw

    block = match.group("yaml")
    body = raw[match.end():]
    try:
        data = yaml.safe_load(block)
    except yaml.YAMLError as e:
        logger.warning("Frontmatter is not valid YAML, recovering key/value lines: %s", e)
        return _recover_lines(block), body

    if data is None:
        return {}, body
    if not isinstance(data, dict):
        logger.warning("Frontmatter is not a mapping, recovering key/value lines")
        return _recover_lines(block), body
    return {str(k): v for k, v in data.items()}, body


def _ordered(metadata: dict[str, Any]) -> dict[str, Any]:
    ordered = {k: metadata[k] for k in KEY_ORDER if k in metadata and metadata[k] is not None}
    for key in sorted(k for k in metadata if k not in ordered):
        if metadata[key] is not None:
            ordered[key] = metadata[key]
    return ordered


def build(metadata: dict[str, Any], body: str = "") -> str:
    """Serialize metadata and body into document text.

    Output is deterministic: the same metadata always yields the same bytes.
    ``None`` values are dropped and empty metadata returns the body as is.
    """
    ordered = _ordered(metadata)
    if not ordered:
        return body
    dumped = yaml.safe_dump(
        ordered,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=4096,
    )
    return f"{DELIMITER}\n{dumped}{DELIMITER}\n{body}"


def has_frontmatter(raw: str) -> bool:
    return _BLOCK_RE.match(raw) is not None
