from __future__ import annotations

"""Deterministic digests used for config and topology fingerprints."""

import hashlib
from typing import Final, Iterable

_SHA256_PREFIX: Final[str] = "sha256:"


def hash_bytes(data: bytes) -> str:
    """Return a ``"sha256:"`` prefixed hex digest of ``data``."""

    payload = data if isinstance(data, bytes) else bytes(data)
    return f"{_SHA256_PREFIX}{hashlib.sha256(payload).hexdigest()}"


def hash_parts(parts: Iterable[str]) -> str:
    """Digest an ordered sequence of strings.

    Each part is length-prefixed so that ``["ab", "c"]`` and ``["a", "bc"]``
    never collide.
    """

    h = hashlib.sha256()
    for part in parts:
        encoded = part.encode("utf-8")
        h.update(len(encoded).to_bytes(4, "big"))
        h.update(encoded)
    return f"{_SHA256_PREFIX}{h.hexdigest()}"


__all__ = ["hash_bytes", "hash_parts"]
