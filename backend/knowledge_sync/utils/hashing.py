"""Hashing utilities."""

from __future__ import annotations

import hashlib


def sha256_bytes(data: bytes) -> str:
    """Return hex digest for bytes input."""
    return hashlib.sha256(data).hexdigest()


def content_hash(content: bytes | str) -> str:
    """Deterministic digest used to detect changed source content."""
    payload = content.encode("utf-8") if isinstance(content, str) else content
    return sha256_bytes(payload)
