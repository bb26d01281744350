"""File fingerprints used to tell whether a runner call changed anything."""

from __future__ import annotations

import hashlib
from pathlib import Path

from runledger.constants import (
    ABSENT_FINGERPRINT,
    DEFAULT_FINGERPRINT_METHOD,
    FINGERPRINT_FALLBACK_METHOD,
)

_CHUNK_SIZE = 1024 * 1024


def _stat_fingerprint(path: Path) -> str:
    # Two writes of equal length inside one clock tick collide here.
    stat = path.stat()
    return f"{FINGERPRINT_FALLBACK_METHOD}:{stat.st_mtime_ns}:{stat.st_size}"


def _resolve_hash_method(method: str) -> str | None:
    normalized = str(method).strip().lower()
    if not normalized or normalized == FINGERPRINT_FALLBACK_METHOD:
        return None
    if normalized not in hashlib.algorithms_available:
        return None
    return normalized


def is_supported_method(method: str) -> bool:
    normalized = str(method).strip().lower()
    return normalized == FINGERPRINT_FALLBACK_METHOD or _resolve_hash_method(normalized) is not None


def fingerprint(path: Path, *, method: str = DEFAULT_FINGERPRINT_METHOD) -> str:
    """Return a digest string for *path* that changes when its bytes change.

    Content hashes look like ``sha256:<hex>``. When *method* is ``mtime_size``
    or names an algorithm this interpreter lacks, the digest falls back to
    modification time and size. A missing file yields ``absent`` so that
    creating a file is observed as a change.
    """
    if not path.is_file():
        return ABSENT_FINGERPRINT
    algorithm = _resolve_hash_method(method)
    if algorithm is None:
        return _stat_fingerprint(path)
    try:
        digest = hashlib.new(algorithm)
    except ValueError:
        return _stat_fingerprint(path)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    try:
        hexdigest = digest.hexdigest()
    except TypeError:
        # shake_* digests need an explicit length.
        hexdigest = digest.hexdigest(32)  # type: ignore[call-arg]
    return f"{algorithm}:{hexdigest}"
