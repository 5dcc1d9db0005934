"""Incremental digests over streamed bytes.

This module provides:
- `DigestStream`: a pass-through transform that hashes every chunk it
  forwards, so artifacts are verified without being held in memory.
- `algorithm_for`: the algorithm an SRI digest names, so the stream hashes
  with the same one.
- `normalize_digest` / `digests_match`: comparison of an expected digest as
  published by a registry (hex in any case, or SRI ``algo-base64``) with a
  computed hex digest.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
from collections.abc import AsyncIterable, AsyncIterator

_SRI_ALGORITHMS = ("sha1", "sha256", "sha384", "sha512")


class DigestStream:
    """Forward bytes unchanged while updating a running digest.

    Parameters
    ----------
    algorithm : str
        Any name accepted by :func:`hashlib.new` (``sha1`` for npm shasums).
    """

    def __init__(self, algorithm: str = "sha1") -> None:
        self.algorithm = algorithm
        self._hash = hashlib.new(algorithm)
        self._digest: str | None = None
        self.bytes_seen = 0

    def update(self, chunk: bytes) -> bytes:
        """Hash `chunk` and hand it back untouched."""
        if self._digest is not None:
            raise RuntimeError("digest already finalized")
        self._hash.update(chunk)
        self.bytes_seen += len(chunk)
        return chunk

    async def pipe(self, source: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        """Wrap an upstream producer; each chunk is yielded as soon as it is hashed."""
        async for chunk in source:
            if chunk:
                yield self.update(chunk)

    def hexdigest(self) -> str:
        """Finalize and return the lowercase hex digest of every byte seen, in order."""
        if self._digest is None:
            self._digest = self._hash.hexdigest()
        return self._digest


def algorithm_for(expected: str, default: str = "sha1") -> str:
    """Return the hash algorithm an expected digest was computed with.

    SRI strings name it in their prefix (``sha512-<base64>``); plain hex
    carries no algorithm, so `default` applies.
    """
    algo, sep, _ = expected.strip().partition("-")
    if sep and algo.lower() in _SRI_ALGORITHMS:
        return algo.lower()
    return default


def normalize_digest(value: str) -> str:
    """Return `value` as lowercase hex.

    Accepts plain hex in any case and SRI strings such as ``sha1-<base64>``.
    Unparseable input is returned stripped and lowercased so it simply fails
    to match.
    """
    text = value.strip()
    algo, sep, encoded = text.partition("-")
    if sep and algo.lower() in _SRI_ALGORITHMS:
        try:
            return base64.b64decode(encoded, validate=True).hex()
        except (binascii.Error, ValueError):
            return text.lower()
    return text.lower()


def digests_match(expected: str, actual: str) -> bool:
    """Compare two digests after normalization."""
    return normalize_digest(expected) == normalize_digest(actual)
