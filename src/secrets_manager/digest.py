"""SHA-256 digests for byte strings and files."""

from __future__ import annotations

import hashlib
import hmac
from pathlib import Path

DIGEST_HEX_LEN = 64


def digest(data: bytes) -> str:
    """Compute the SHA-256 hex digest of bytes.

    Args:
        data: Bytes to hash.

    Returns:
        Lowercase hex-encoded SHA-256 digest.
    """
    return hashlib.sha256(data).hexdigest()


def digest_file(path: Path) -> str:
    """Compute the SHA-256 hex digest of a file without loading it whole.

    Args:
        path: File to hash.

    Returns:
        Lowercase hex-encoded SHA-256 digest.
    """
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def digest_equal(a: str, b: str) -> bool:
    """Compare two hex digests, ignoring case, in constant time."""
    return hmac.compare_digest(a.lower().encode("ascii"), b.lower().encode("ascii"))
