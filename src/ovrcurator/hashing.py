"""Content fingerprinting for duplicate detection."""

from __future__ import annotations

import hashlib
from typing import Final

CONTENT_HASH_ALGO: Final[str] = "sha256"


def content_hash(data: bytes) -> str:
    """Return the SHA-256 digest of ``data`` as a 64-character lowercase hex string.

    Unlike the builtin ``hash``, the digest is stable across process restarts.
    """
    return hashlib.sha256(data).hexdigest()
