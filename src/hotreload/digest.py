"""
Integrity digest for deployment packages.

The digest is an MD5 checksum over the raw package bytes, lowercase hex.
It detects transmission and storage corruption; it is not a signature.
Sender and receiver compute it the same way over the whole archive, never
per entry.
"""

from __future__ import annotations

import hashlib
import hmac

from hotreload.errors import IntegrityError

DIGEST_HEADER = "X-Content-MD5"


def compute_digest(data: bytes) -> str:
    """Return the lowercase hex MD5 digest of ``data``."""
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


def normalize_digest(value: str | None) -> str:
    """Normalize a declared digest for comparison (strip, lowercase)."""
    return (value or "").strip().lower()


def verify_digest(data: bytes, declared: str | None) -> str:
    """
    Verify package bytes against a declared digest.

    Args:
        data: Raw package bytes as received.
        declared: Declared digest (hex). Missing or empty always fails.

    Returns:
        The computed digest.

    Raises:
        IntegrityError: If no digest was declared or the digests differ.
    """
    expected = normalize_digest(declared)
    actual = compute_digest(data)

    if not expected:
        raise IntegrityError(
            f"Missing {DIGEST_HEADER} digest",
            details={"actual": actual},
        )

    if not hmac.compare_digest(actual.encode(), expected.encode()):
        raise IntegrityError(
            f"MD5 checksum mismatch: expected {expected}, got {actual}",
            details={"expected": expected, "actual": actual, "size": len(data)},
        )

    return actual
