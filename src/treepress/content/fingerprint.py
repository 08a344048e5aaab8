"""Deterministic content fingerprint used as the HTTP ETag."""

from __future__ import annotations

import hashlib
from typing import Iterable

_LENGTH_BYTES = 8


def _length_prefixed(data: bytes) -> bytes:
    return len(data).to_bytes(_LENGTH_BYTES, "big") + data


def compute_fingerprint(entries: Iterable[tuple[str, bytes]]) -> str:
    """
    Hash (identifier, content) pairs into a hex digest.

    Pairs are sorted by identifier so iteration order never matters, and both
    halves of every pair are length-prefixed so that ("ab", b"c") and
    ("a", b"bc") produce different digests.
    """
    hasher = hashlib.sha256()
    for identifier, content in sorted(entries, key=lambda item: item[0]):
        hasher.update(_length_prefixed(identifier.encode("utf-8")))
        hasher.update(_length_prefixed(content))
    return hasher.hexdigest()
