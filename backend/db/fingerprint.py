"""Content fingerprints used as the per-user memory dedup key."""

import hashlib

FINGERPRINT_LENGTH = 64


def content_fingerprint(content: str) -> str:
    """Return the hex SHA-256 digest of the UTF-8 encoded content."""
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()
