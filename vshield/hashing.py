"""Integrity digests for evidence artifacts and claims.

Every captured file gets a SHA-256 digest at capture time. A claim's
*evidence hash* combines the digests of all its artifacts with its capture
timestamp and coordinates, so that altering, adding or removing any artifact,
or moving the capture time or place, changes the evidence hash, while the
order in which artifacts were captured does not.

Digests are written as ``sha256:<64 lowercase hex>``. The only degraded value
is the `HASH_FAILED` sentinel, produced solely by `digest_file_or_sentinel`
so that an unreadable file is never dressed up as a valid proof.
"""

import hashlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Iterable

from pydantic import StringConstraints

from vshield.errors import ArtifactReadError

logger = logging.getLogger(__name__)

SCHEME = "sha256"
HASH_FAILED = "hash-failed"
COMBINE_DELIMITER = ":"
_CHUNK_SIZE = 1 << 20

Digest = Annotated[str, StringConstraints(pattern=r"^(sha256:[0-9a-f]{64}|hash-failed)$")]


def _tag(hex_digest: str) -> str:
    return f"{SCHEME}:{hex_digest}"


def digest_bytes(data: bytes) -> str:
    """Return the tagged SHA-256 digest of raw bytes."""
    return _tag(hashlib.sha256(data).hexdigest())


def digest_file(path: str | Path) -> str:
    """Hash a file in chunks.

    Raises:
        ArtifactReadError: the file is missing or unreadable.
    """
    hasher = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
                hasher.update(chunk)
    except OSError as e:
        raise ArtifactReadError(str(path), e.strerror or str(e)) from e
    return _tag(hasher.hexdigest())


def digest_file_or_sentinel(path: str | Path) -> str:
    """Hash a file, falling back to `HASH_FAILED` if it cannot be read."""
    try:
        return digest_file(path)
    except ArtifactReadError as e:
        logger.warning("Evidence hash unavailable, storing %s sentinel: %s", HASH_FAILED, e)
        return HASH_FAILED


def is_degraded(digest: str) -> bool:
    return digest == HASH_FAILED


def combine(digests: Iterable[str]) -> str:
    """Combine digests into one, independent of their order.

    Inputs are treated as a multiset: sorted, joined with ``:``, then hashed.
    """
    joined = COMBINE_DELIMITER.join(sorted(digests))
    return digest_bytes(joined.encode("utf-8"))


def _format_coordinate(value: float | None) -> str:
    return "-" if value is None else f"{value:.7f}"


def canonical_capture_context(
    captured_at: datetime,
    latitude: float | None,
    longitude: float | None,
) -> str:
    """Stable text form of when and where a claim was captured."""
    if captured_at.tzinfo is None:
        raise ValueError("captured_at must be timezone-aware")
    stamp = captured_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    return f"captured_at={stamp};lat={_format_coordinate(latitude)};lon={_format_coordinate(longitude)}"


def evidence_hash(
    artifact_digests: Iterable[str],
    captured_at: datetime,
    latitude: float | None = None,
    longitude: float | None = None,
) -> str:
    """Composite evidence hash of a claim."""
    context = canonical_capture_context(captured_at, latitude, longitude)
    return combine([*artifact_digests, digest_bytes(context.encode("utf-8"))])


def verify(data: bytes, expected: str) -> bool:
    """Recompute the digest of `data` and compare. Never raises."""
    if is_degraded(expected):
        return False
    return digest_bytes(data) == expected


def verify_file(path: str | Path, expected: str) -> bool:
    """Check a file against its recorded digest.

    An unreadable file or a degraded expected digest counts as a failed check.
    """
    if is_degraded(expected):
        logger.warning("Cannot verify %s: recorded digest is %s", path, HASH_FAILED)
        return False
    try:
        return digest_file(path) == expected
    except ArtifactReadError as e:
        logger.warning("Integrity check failed for %s: %s", path, e)
        return False


def short_digest(digest: str) -> str:
    """Display form: ``sha256:7a3f...e91b``."""
    if is_degraded(digest) or not digest.startswith(f"{SCHEME}:"):
        return digest
    hex_part = digest[len(SCHEME) + 1:]
    if len(hex_part) <= 8:
        return digest
    return f"{SCHEME}:{hex_part[:4]}...{hex_part[-4:]}"
