"""
Content hashing shared by file-level change detection and entry-level dedup.
"""

from __future__ import annotations

import hashlib


def hash_content(content: str) -> str:
    """
    Return the SHA-256 hex digest of *content*.

    Line endings are normalized (CRLF -> LF) first, so the same text checked
    out on different platforms hashes identically.
    """
    normalized = content.replace("\r\n", "\n")
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()
